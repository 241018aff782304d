"""
Segment file naming for Stream Archiver.

Layout: <root>/<yyyy-MM-dd>/<stream>/<yyyy-MM-dd>_<stream>_<HH-mm>_<uuid>.<ext>
"""

import re
import uuid
from datetime import datetime, timedelta, timezone
from pathlib import Path
from typing import Optional, Union


def _now(utc_offset_hours: Optional[float]) -> datetime:
    if utc_offset_hours is None:
        return datetime.now()
    return datetime.now(timezone(timedelta(hours=utc_offset_hours)))


def safe_stream_name(name: str) -> str:
    """Strip characters that are not valid in a path component."""
    cleaned = re.sub(r'[<>:"/\\|?*\n\r\t]', '_', name).strip().strip('.')
    return cleaned or "stream"


def build_segment_path(
    output_root: Union[str, Path],
    stream_name: str,
    extension: str = "ts",
    now: Optional[datetime] = None,
    utc_offset_hours: Optional[float] = None,
) -> Path:
    """
    Return a fresh segment path, creating its directory if absent.

    Args:
        output_root: Root directory of the archive.
        stream_name: Stream the segment belongs to.
        extension: File extension without the dot.
        now: Timestamp to format; defaults to the current time.
        utc_offset_hours: Fixed clock offset, local time when None.
    """
    stamp = now or _now(utc_offset_hours)
    day = stamp.strftime('%Y-%m-%d')
    name = safe_stream_name(stream_name)

    directory = Path(output_root) / day / name
    directory.mkdir(parents=True, exist_ok=True)

    filename = f"{day}_{name}_{stamp.strftime('%H-%M')}_{uuid.uuid4()}.{extension.lstrip('.')}"
    return directory / filename
