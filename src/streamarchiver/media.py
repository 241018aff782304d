"""
Media I/O for Stream Archiver.
Thin wrappers around PyAV input/output containers used by recording sessions.
"""

import queue
import threading
from fractions import Fraction
from pathlib import Path
from typing import Any, Callable, Dict, List, Optional, Sequence, Tuple, Union

import av

from .logger import get_logger


INT64_MIN = -(2 ** 63)
INT64_MAX = 2 ** 63 - 1

# Media types copied into output files; anything else maps to None.
CARRIED_MEDIA_TYPES = frozenset({"audio", "video", "subtitle"})

StreamMapping = List[Optional[int]]

# Raised by demux() when FFmpeg's read timeout fires (AVERROR_EXIT from
# PyAV's interrupt callback, or ETIMEDOUT from the protocol layer).
READ_TIMEOUT_ERRORS = (av.error.ExitError, TimeoutError)


class MediaError(RuntimeError):
    """Base class for media input/output failures."""


class InputOpenError(MediaError):
    """Raised when an input cannot be opened."""


class InputReadError(MediaError):
    """Raised when reading from an open input fails."""


class InputInterrupted(MediaError):
    """Raised when the interrupt hook aborts a blocking open or read."""


def build_stream_mapping(streams: Sequence[Any]) -> StreamMapping:
    """
    Map each input stream to its output stream index.

    Audio, video and subtitle streams receive consecutive output indices in
    input order; every other stream maps to None and is not carried.
    """
    mapping: StreamMapping = []
    next_index = 0
    for stream in streams:
        if getattr(stream, "type", None) in CARRIED_MEDIA_TYPES:
            mapping.append(next_index)
            next_index += 1
        else:
            mapping.append(None)
    return mapping


def rescale_ts(
    value: Optional[int],
    source: Union[Fraction, None],
    target: Union[Fraction, None],
    pass_min_max: bool = True,
) -> Optional[int]:
    """
    Rescale a timestamp between timebases, rounding to nearest.

    Halfway cases round away from zero. None (no timestamp) is returned
    unchanged, as are int64 min/max when ``pass_min_max`` is set.
    """
    if value is None:
        return None
    if pass_min_max and value in (INT64_MIN, INT64_MAX):
        return value
    if not source or not target:
        raise ValueError(f"Cannot rescale between time bases {source!r} and {target!r}")

    scaled = Fraction(value) * Fraction(source) / Fraction(target)
    rounded = int(abs(scaled) + Fraction(1, 2))
    return rounded if scaled >= 0 else -rounded


class MediaInput:
    """
    Blocking packet reader over a PyAV input container.

    Demuxing happens on a private reader thread. ``read_packet`` waits for the
    next packet in ``poll_interval`` steps and calls ``interrupt`` at every
    step; when it returns True the wait is abandoned with InputInterrupted.
    The hook is the only reference the input keeps to its owner.

    FFmpeg read timeouts only bound how long the reader thread sits in one
    read; the reader resumes demuxing after them, so a stall of any length
    is reported through the hook rather than as a read error.
    """

    def __init__(
        self,
        locator: str,
        interrupt: Callable[[], bool],
        poll_interval: float = 0.1,
        open_timeout: float = 10.0,
        read_timeout: float = 10.0,
        options: Optional[Dict[str, str]] = None,
        queue_size: int = 512,
    ):
        self.locator = locator
        self.poll_interval = poll_interval
        self.open_timeout = open_timeout
        self.read_timeout = read_timeout
        self.options = dict(options or {})

        self._interrupt = interrupt
        self._queue: "queue.Queue[Tuple[str, Any]]" = queue.Queue(maxsize=queue_size)
        self._closed = threading.Event()
        self._finished = False
        self._thread: Optional[threading.Thread] = None
        self._container = None
        self._streams: List[Any] = []
        self._logger = get_logger('media')

    @property
    def streams(self) -> List[Any]:
        """Input streams, available once ``open`` returned."""
        return self._streams

    def open(self) -> None:
        """Open the input, blocking until stream info is known."""
        self._thread = threading.Thread(
            target=self._reader,
            name=f"input-reader:{self.locator}",
            daemon=True,
        )
        self._thread.start()

        kind, payload = self._wait()
        if kind == "error":
            self._finished = True
            raise InputOpenError(f"Failed to open {self.locator}: {payload}") from payload
        self._streams = list(self._container.streams)

    def read_packet(self):
        """
        Return the next packet, or None at end of stream.

        Raises:
            InputInterrupted: The interrupt hook requested an abort.
            InputReadError: Demuxing failed.
        """
        if self._finished:
            return None

        kind, payload = self._wait()
        if kind == "packet":
            return payload
        self._finished = True
        if kind == "error":
            raise InputReadError(f"Read failed on {self.locator}: {payload}") from payload
        return None

    def close(self) -> None:
        """Release the input. The reader thread closes the container itself."""
        self._closed.set()
        self._finished = True
        # Unblock a reader stuck on a full queue
        while True:
            try:
                self._queue.get_nowait()
            except queue.Empty:
                break
        if self._thread is not None and self._thread is not threading.current_thread():
            self._thread.join(timeout=self.poll_interval)

    def _wait(self) -> Tuple[str, Any]:
        while True:
            if self._interrupt():
                raise InputInterrupted(f"Interrupted while reading {self.locator}")
            try:
                return self._queue.get(timeout=self.poll_interval)
            except queue.Empty:
                continue

    def _put(self, item: Tuple[str, Any]) -> bool:
        while not self._closed.is_set():
            try:
                self._queue.put(item, timeout=self.poll_interval)
                return True
            except queue.Full:
                continue
        return False

    def _reader(self) -> None:
        try:
            container = av.open(
                self.locator,
                mode="r",
                options=self.options,
                timeout=(self.open_timeout, self.read_timeout),
            )
        except Exception as e:
            self._put(("error", e))
            return

        self._container = container
        try:
            if not self._put(("ready", None)):
                return
            while not self._closed.is_set():
                try:
                    for packet in container.demux():
                        if self._closed.is_set():
                            return
                        # Demuxer flush packets carry no data
                        if packet.dts is None and packet.size == 0:
                            continue
                        if not self._put(("packet", packet)):
                            return
                except READ_TIMEOUT_ERRORS as e:
                    # A stall, not a failure: the watchdog decides what it means
                    self._logger.debug(f"Read timeout on {self.locator}, resuming: {e}")
                    continue
                self._put(("eof", None))
                return
        except Exception as e:
            self._put(("error", e))
        finally:
            try:
                container.close()
            except Exception as e:
                self._logger.debug(f"Error closing input {self.locator}: {e}")


class MediaOutput:
    """PyAV output container whose streams are copied from an input."""

    def __init__(self, path: Path, container, mapping: StreamMapping):
        self.path = Path(path)
        self.mapping = mapping
        self._container = container
        self._closed = False
        self.packets_written = 0

    @classmethod
    def create(
        cls,
        path: Union[str, Path],
        template_streams: Sequence[Any],
        mapping: StreamMapping,
        container_format: Optional[str] = "mpegts",
    ) -> "MediaOutput":
        """
        Create the file, allocate streams from the templates and write the header.

        Args:
            path: Destination file.
            template_streams: Input streams, indexed like ``mapping``.
            mapping: Output index per input stream, None when not carried.
            container_format: FFmpeg muxer name, guessed from the path when None.
        """
        container = av.open(str(path), mode="w", format=container_format)
        try:
            for in_index, out_index in enumerate(mapping):
                if out_index is None:
                    continue
                container.add_stream_from_template(template_streams[in_index])
            container.start_encoding()
        except Exception:
            container.close()
            raise
        return cls(Path(path), container, mapping)

    def time_base(self, index: int) -> Fraction:
        return self._container.streams[index].time_base

    def write(self, packet, index: int) -> None:
        """Mux a packet whose timestamps are already in the output stream's timebase."""
        stream = self._container.streams[index]
        packet.stream = stream
        packet.time_base = stream.time_base
        self._container.mux(packet)
        self.packets_written += 1

    def close(self) -> None:
        """Write the trailer and close the file. Safe to call twice."""
        if self._closed:
            return
        self._closed = True
        self._container.close()
