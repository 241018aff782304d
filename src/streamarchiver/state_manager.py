"""
State Manager for Stream Archiver.
JSON-based store of which streams should be recording, used to resume them
after a restart or crash.
"""

import asyncio
import json
from dataclasses import dataclass
from datetime import datetime
from enum import Enum
from pathlib import Path
from typing import Dict, List, Optional

import aiofiles

from .logger import get_logger


class StreamStatus(Enum):
    """Desired/observed recording status of a stream."""
    RECORDING = "recording"   # Should be recording; resumed on restart
    STOPPED = "stopped"       # Stopped on request
    ERROR = "error"           # Last start attempt failed


@dataclass
class StreamRecord:
    """Persisted record of one stream."""
    name: str
    url: str
    output_root: str
    status: StreamStatus = StreamStatus.STOPPED
    started_at: Optional[str] = None
    stopped_at: Optional[str] = None
    slice_count: int = 0
    error_message: Optional[str] = None

    def to_dict(self) -> dict:
        return {
            'name': self.name,
            'url': self.url,
            'output_root': self.output_root,
            'status': self.status.value,
            'started_at': self.started_at,
            'stopped_at': self.stopped_at,
            'slice_count': self.slice_count,
            'error_message': self.error_message,
        }

    @classmethod
    def from_dict(cls, data: dict) -> 'StreamRecord':
        return cls(
            name=data['name'],
            url=data['url'],
            output_root=data.get('output_root', ''),
            status=StreamStatus(data.get('status', 'stopped')),
            started_at=data.get('started_at'),
            stopped_at=data.get('stopped_at'),
            slice_count=data.get('slice_count', 0),
            error_message=data.get('error_message'),
        )


class StateManager:
    """
    Persists stream records.

    Features:
    - JSON-based storage, written atomically
    - Automatic saving on changes
    - Serialized with an asyncio lock
    """

    def __init__(self, state_file: str = "./data/state.json"):
        """
        Initialize state manager.

        Args:
            state_file: Path to JSON state file.
        """
        self.state_file = Path(state_file)
        self._logger = get_logger('state')
        self._lock = asyncio.Lock()
        self._records: Dict[str, StreamRecord] = {}

        self.state_file.parent.mkdir(parents=True, exist_ok=True)

    async def load(self) -> None:
        """Load state from file."""
        async with self._lock:
            if not self.state_file.exists():
                self._logger.info("No state file found, starting fresh")
                return

            try:
                async with aiofiles.open(self.state_file, 'r', encoding='utf-8') as f:
                    data = json.loads(await f.read())

                for name, record_data in data.get('streams', {}).items():
                    self._records[name] = StreamRecord.from_dict(record_data)

                self._logger.info(f"Loaded state: {len(self._records)} streams")

            except Exception as e:
                self._logger.error(f"Failed to load state: {e}")

    async def _save_unlocked(self) -> None:
        """Save state to file (caller must hold lock)."""
        data = {
            'streams': {name: record.to_dict() for name, record in self._records.items()},
            'last_updated': datetime.now().isoformat(),
        }

        tmp_file = self.state_file.with_suffix(self.state_file.suffix + ".tmp")

        try:
            async with aiofiles.open(tmp_file, 'w', encoding='utf-8') as f:
                await f.write(json.dumps(data, indent=2, ensure_ascii=False))
            tmp_file.replace(self.state_file)
        except Exception as e:
            self._logger.error(f"Failed to save state: {e}")

    async def save(self) -> None:
        """Save state to file."""
        async with self._lock:
            await self._save_unlocked()

    def get(self, name: str) -> Optional[StreamRecord]:
        return self._records.get(name)

    def all(self) -> List[StreamRecord]:
        return list(self._records.values())

    def get_resumable(self) -> List[StreamRecord]:
        """Streams that were recording when the service last ran."""
        return [r for r in self._records.values() if r.status == StreamStatus.RECORDING]

    async def mark_recording(self, name: str, url: str, output_root: str) -> None:
        async with self._lock:
            record = self._records.get(name)
            if record is None or record.url != url or record.output_root != output_root:
                record = StreamRecord(name=name, url=url, output_root=output_root)
                self._records[name] = record
            record.status = StreamStatus.RECORDING
            record.started_at = datetime.now().isoformat()
            record.error_message = None
            await self._save_unlocked()

    async def mark_stopped(self, name: str) -> None:
        async with self._lock:
            record = self._records.get(name)
            if record is None:
                return
            record.status = StreamStatus.STOPPED
            record.stopped_at = datetime.now().isoformat()
            await self._save_unlocked()

    async def mark_error(self, name: str, url: str, output_root: str, error: str) -> None:
        async with self._lock:
            record = self._records.get(name)
            if record is None:
                record = StreamRecord(name=name, url=url, output_root=output_root)
                self._records[name] = record
            record.status = StreamStatus.ERROR
            record.error_message = error[:500]
            await self._save_unlocked()

    async def increment_slices(self, name: str) -> None:
        async with self._lock:
            record = self._records.get(name)
            if record is None:
                return
            record.slice_count += 1
            await self._save_unlocked()
