"""
Recording session for Stream Archiver.
Copies one live input into segmented container files, riding out stalls and
rotating output files on request.
"""

import threading
import time
from enum import Enum
from pathlib import Path
from typing import Any, Callable, Dict, List, Optional

from .config import RecordingConfig
from .logger import get_stream_logger
from .media import (
    InputInterrupted,
    MediaInput,
    MediaOutput,
    build_stream_mapping,
    rescale_ts,
)
from .paths import build_segment_path


SliceCallback = Callable[[Optional[BaseException]], None]
StopCallback = Callable[[], None]


class SessionState(Enum):
    """Recording session state."""
    STOP = "stop"
    RECORDING = "recording"
    INTERRUPTED = "interrupted"   # Input stalled, no output file open


class StartupTimeout(RuntimeError):
    """Raised when the input produced nothing within the stall threshold."""


class SessionNotRunning(RuntimeError):
    """Raised when an operation needs a running session."""


class SessionStopped(RuntimeError):
    """Passed to slice callbacks that were still waiting when the session exited."""


class RecordingSession:
    """
    Records one named stream.

    State machine: STOP -> RECORDING <-> INTERRUPTED -> STOP.

    ``start`` blocks for the whole recording and is meant to run on a worker
    thread. ``stop`` and ``slice`` may be called from any thread; their
    outcome is delivered through callbacks.
    """

    def __init__(
        self,
        stream_name: str,
        input_locator: str,
        output_root: str,
        settings: Optional[RecordingConfig] = None,
        input_factory: Callable[..., Any] = MediaInput,
        output_factory: Callable[..., Any] = MediaOutput.create,
        clock: Callable[[], float] = time.monotonic,
    ):
        """
        Initialize a stopped session.

        Args:
            stream_name: Unique name of the stream.
            input_locator: URL or path handed to the input.
            output_root: Archive root directory.
            settings: Recording settings, defaults when None.
            input_factory: Builds the input, called as
                ``factory(locator, interrupt, **options)``.
            output_factory: Builds an output, called as
                ``factory(path, template_streams, mapping, container_format=...)``.
            clock: Monotonic time source in seconds.
        """
        self.stream_name = stream_name
        self.input_locator = input_locator
        self.output_root = output_root
        self.settings = settings or RecordingConfig()
        self.state = SessionState.STOP
        self.slice_count = 0

        self._input_factory = input_factory
        self._output_factory = output_factory
        self._clock = clock
        self._logger = get_stream_logger(stream_name, 'session')

        # Guards state changes made from control threads and the rotation fields
        self._lock = threading.Lock()
        self._running = False
        self._exiting = False
        self._abort_requested = False
        self._startup_timed_out = False
        self._last_read = clock()

        self._input = None
        self._stream_mapping: List[Optional[int]] = []
        self._output = None
        self._pending_output = None
        self._rotation_requested = False

        self._slice_callbacks: List[SliceCallback] = []
        self._stop_callbacks: List[StopCallback] = []
        self._on_exit: Optional[Callable[[], None]] = None

    # ------------------------------------------------------------------
    # Control surface
    # ------------------------------------------------------------------

    def on_exit(self, callback: Callable[[], None]) -> None:
        """Register the hook called once each time the run loop exits."""
        self._on_exit = callback

    def start(self, on_started: Callable[[], None]) -> None:
        """
        Open input and output, then record until the input ends or stop is requested.

        No-op unless the session is stopped. ``on_started`` fires once the
        first output file is open, before the read loop begins.

        Raises:
            StartupTimeout: The input did not open within the stall threshold.
            Exception: Any failure opening the input or the first output.
        """
        with self._lock:
            if self.state is not SessionState.STOP or self._running:
                return
            self._running = True
            self._abort_requested = False
            self._startup_timed_out = False

        try:
            self._open_input()
            try:
                self._output = self._create_output()
            except Exception:
                self._release_input()
                raise
        except Exception:
            with self._lock:
                self._running = False
            raise

        self._set_state(SessionState.RECORDING)
        self._logger.info(f"Start Recording: {self._output.path.name}")

        try:
            on_started()
            self._run_loop()
        finally:
            self._finish()

    def stop(self, on_complete: StopCallback) -> None:
        """
        Request the session to stop.

        When already stopped, ``on_complete`` runs before this returns.
        Otherwise it runs after the read loop has exited and the last file
        has been finalized.
        """
        with self._lock:
            stopped = self.state is SessionState.STOP
            if not stopped:
                self._stop_callbacks.append(on_complete)
                self._abort_requested = True

        if stopped:
            on_complete()

    def slice(self, on_complete: SliceCallback) -> None:
        """
        Rotate into a new output file at the next packet boundary.

        The next file is opened right away; the swap happens when the read
        loop sees the next packet. ``on_complete(None)`` fires after the
        swap, or ``on_complete(SessionStopped)`` if the session exits first.

        Raises:
            SessionNotRunning: The session is stopped or shutting down.
        """
        with self._lock:
            if self.state is SessionState.STOP or self._exiting:
                raise SessionNotRunning(f"{self.stream_name} is not recording")
            self._slice_callbacks.append(on_complete)
            self._rotation_requested = True
            if self._pending_output is None:
                self._pending_output = self._try_create_output()

    def snapshot(self) -> Dict[str, Any]:
        """Observable session state."""
        output = self._output
        return {
            'name': self.stream_name,
            'url': self.input_locator,
            'output_root': str(self.output_root),
            'state': self.state.value,
            'segment': str(output.path) if output is not None else None,
            'slices': self.slice_count,
            'slice_pending': self._rotation_requested,
        }

    # ------------------------------------------------------------------
    # Watchdog
    # ------------------------------------------------------------------

    def _watchdog(self) -> bool:
        """Poll hook run by the input while it blocks. Returns True to abort."""
        elapsed = self._clock() - self._last_read
        if elapsed > self.settings.stall_threshold:
            if self.state is SessionState.RECORDING:
                self._close_output()
                self._set_state(SessionState.INTERRUPTED)
                self._logger.warning(f"Interrupted: no data for {elapsed:.1f}s, segment closed")
            elif self.state is SessionState.STOP:
                self._startup_timed_out = True
                return True
        elif self.state is SessionState.INTERRUPTED:
            self._set_state(SessionState.RECORDING)
            self._logger.warning("Recovered: input is flowing again")
        return self._abort_requested

    # ------------------------------------------------------------------
    # Read loop
    # ------------------------------------------------------------------

    def _run_loop(self) -> None:
        while True:
            try:
                packet = self._read_next()
            except InputInterrupted:
                self._logger.info("Stop requested")
                break
            except Exception as e:
                self._logger.error(f"Exit: {e}")
                break

            if packet is None:
                self._logger.info("End of stream")
                break

            self._rotate_if_requested()
            self._write_packet(packet)

    def _read_next(self):
        self._last_read = self._clock()
        return self._input.read_packet()

    def _rotate_if_requested(self) -> None:
        if not self._rotation_requested:
            return

        with self._lock:
            if not self._rotation_requested:
                return
            pending = self._pending_output
            if pending is None:
                # Keep the request; retry on every packet until the file opens
                self._pending_output = self._try_create_output()
                return
            self._pending_output = None
            self._rotation_requested = False
            callbacks, self._slice_callbacks = self._slice_callbacks, []

        self._close_output()
        self._output = pending
        self.slice_count += 1
        self._logger.info(f"Sliced: now writing {pending.path.name}")

        for callback in callbacks:
            self._notify(callback, None)

    def _write_packet(self, packet) -> None:
        index = packet.stream_index
        destination = self._stream_mapping[index] if index < len(self._stream_mapping) else None
        if destination is None:
            return

        if self._output is None:
            self._output = self._try_create_output()
            if self._output is None:
                return
            self._logger.info(f"Resumed into {self._output.path.name}")

        # Byte position is left as read; muxers assign their own.
        try:
            source_tb = self._input.streams[index].time_base
            target_tb = self._output.time_base(destination)
            for field in ('pts', 'dts', 'duration'):
                value = getattr(packet, field)
                if value is not None:
                    setattr(packet, field, rescale_ts(value, source_tb, target_tb))
        except Exception as e:
            self._logger.error(f"Dropped packet on stream {index}: {e}")
            return

        try:
            self._output.write(packet, destination)
        except Exception as e:
            self._logger.error(f"Write error, closing {self._output.path.name}: {e}")
            self._close_output()

    # ------------------------------------------------------------------
    # Resources
    # ------------------------------------------------------------------

    def _open_input(self) -> None:
        self._last_read = self._clock()
        self._input = self._input_factory(
            self.input_locator,
            self._watchdog,
            poll_interval=self.settings.poll_interval,
            open_timeout=self.settings.open_timeout,
            read_timeout=self.settings.read_timeout,
            options=self.settings.input_options,
        )
        try:
            self._input.open()
        except InputInterrupted as e:
            self._release_input()
            if self._startup_timed_out:
                raise StartupTimeout(
                    f"{self.stream_name}: no data within {self.settings.stall_threshold}s"
                ) from e
            raise
        except Exception:
            self._release_input()
            raise
        self._stream_mapping = build_stream_mapping(self._input.streams)

    def _release_input(self) -> None:
        source, self._input = self._input, None
        if source is not None:
            source.close()

    def _create_output(self):
        source = self._input
        if source is None:
            raise SessionNotRunning(f"{self.stream_name} has no open input")
        path = build_segment_path(
            self.output_root,
            self.stream_name,
            extension=self.settings.extension,
            utc_offset_hours=self.settings.utc_offset_hours,
        )
        output = self._output_factory(
            path,
            source.streams,
            self._stream_mapping,
            container_format=self.settings.container_format,
        )
        self._logger.debug(f"Opened segment {Path(path).name}")
        return output

    def _try_create_output(self):
        try:
            return self._create_output()
        except Exception as e:
            self._logger.error(f"Failed to open segment: {e}")
            return None

    def _close_output(self) -> None:
        output, self._output = self._output, None
        if output is None:
            return
        try:
            output.close()
        except Exception as e:
            self._logger.error(f"Failed to finalize {output.path.name}: {e}")

    def _finish(self) -> None:
        with self._lock:
            self._exiting = True
            pending, self._pending_output = self._pending_output, None
            abandoned, self._slice_callbacks = self._slice_callbacks, []
            self._rotation_requested = False

        self._close_output()
        if pending is not None:
            try:
                pending.close()
            except Exception as e:
                self._logger.error(f"Failed to finalize {pending.path.name}: {e}")
        self._release_input()

        with self._lock:
            self._set_state(SessionState.STOP)
            self._exiting = False
            self._running = False
            self._abort_requested = False
            stop_callbacks, self._stop_callbacks = self._stop_callbacks, []

        if self._on_exit is not None:
            self._notify(self._on_exit)

        self._logger.warning("Stop Recording")

        for callback in abandoned:
            self._notify(callback, SessionStopped(f"{self.stream_name} stopped before the slice completed"))
        for callback in stop_callbacks:
            self._notify(callback)

    def _set_state(self, state: SessionState) -> None:
        if state is not self.state:
            self._logger.debug(f"State {self.state.value} -> {state.value}")
            self.state = state

    def _notify(self, callback: Callable[..., None], *args) -> None:
        try:
            callback(*args)
        except Exception:
            self._logger.exception("Session callback failed")
