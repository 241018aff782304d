"""
Session registry for Stream Archiver.
Keeps at most one live recording session per stream name and runs sessions
on a shared worker pool.
"""

import asyncio
import functools
import threading
from concurrent.futures import ThreadPoolExecutor
from dataclasses import dataclass, field
from typing import Callable, Dict, List, Optional

from .config import RecordingConfig
from .logger import get_logger
from .session import (
    RecordingSession,
    SessionNotRunning,
    SessionState,
    SliceCallback,
    StopCallback,
)


StartCallback = Callable[[Optional[BaseException]], None]


@dataclass
class _PendingStart:
    """A start dispatched to the pool that has not succeeded or failed yet."""
    session: RecordingSession
    waiters: List[StartCallback]
    stop_waiters: List[StopCallback] = field(default_factory=list)


class SessionRegistry:
    """
    Thread-safe map of stream name to recording session.

    Features:
    - One live pipeline per name, concurrent starts for a name share one outcome
    - Sessions deregister themselves when their read loop exits
    - Callback control surface plus asyncio wrappers
    """

    def __init__(
        self,
        settings: Optional[RecordingConfig] = None,
        max_sessions: int = 32,
        control_threads: int = 4,
        session_factory: Callable[..., RecordingSession] = RecordingSession,
    ):
        """
        Initialize the registry.

        Args:
            settings: Recording settings handed to every session.
            max_sessions: Worker threads for session read loops.
            control_threads: Worker threads for slice requests.
            session_factory: Builds sessions, called as
                ``factory(name, locator, output_root, settings=...)``.
        """
        self.settings = settings or RecordingConfig()
        self._session_factory = session_factory
        self._logger = get_logger('registry')

        self._lock = threading.Lock()
        self._sessions: Dict[str, RecordingSession] = {}
        self._starting: Dict[str, _PendingStart] = {}

        self._executor = ThreadPoolExecutor(max_workers=max_sessions, thread_name_prefix="session")
        self._control = ThreadPoolExecutor(max_workers=control_threads, thread_name_prefix="control")

    # ------------------------------------------------------------------
    # Map access
    # ------------------------------------------------------------------

    def get(self, name: str) -> Optional[RecordingSession]:
        with self._lock:
            return self._sessions.get(name)

    def set(self, name: str, session: RecordingSession) -> None:
        with self._lock:
            self._sessions[name] = session

    def remove(self, name: str) -> None:
        with self._lock:
            self._sessions.pop(name, None)

    def state_of(self, name: str) -> Optional[SessionState]:
        """Current state of the named session, None when unknown."""
        session = self.get(name)
        return session.state if session is not None else None

    def names(self) -> List[str]:
        with self._lock:
            return sorted(set(self._sessions) | set(self._starting))

    def snapshot(self) -> List[dict]:
        """State of every known session, including ones still starting."""
        with self._lock:
            sessions = dict(self._sessions)
            starting = {name: pending.session for name, pending in self._starting.items()}

        result = []
        for name in sorted(set(sessions) | set(starting)):
            session = sessions.get(name) or starting[name]
            info = session.snapshot()
            info['starting'] = name in starting
            result.append(info)
        return result

    # ------------------------------------------------------------------
    # Callback control surface
    # ------------------------------------------------------------------

    def start_session(
        self,
        name: str,
        input_locator: str,
        output_root: Optional[str] = None,
        on_complete: Optional[StartCallback] = None,
    ) -> None:
        """
        Start recording ``name`` unless it is already live.

        Returns immediately. ``on_complete(None)`` fires once the session is
        recording (or at once if it already was), ``on_complete(error)`` if
        it could not start.
        """
        callback = on_complete or (lambda error: None)
        output_root = output_root or self.settings.output_root

        with self._lock:
            pending = self._starting.get(name)
            if pending is not None:
                pending.waiters.append(callback)
                return

            session = self._sessions.get(name)
            if session is not None and session.state is not SessionState.STOP:
                live = True
            else:
                live = False
                if session is None or (session.input_locator, str(session.output_root)) != (input_locator, str(output_root)):
                    session = self._session_factory(name, input_locator, output_root, settings=self.settings)
                    session.on_exit(functools.partial(self._deregister, name, session))
                self._starting[name] = _PendingStart(session=session, waiters=[callback])

        if live:
            self._logger.debug(f"{name} is already recording")
            self._notify(callback, None)
            return

        self._executor.submit(self._run_session, name, session)

    def stop_session(self, name: str, on_complete: Optional[StopCallback] = None) -> None:
        """
        Stop recording ``name``.

        ``on_complete()`` fires immediately when nothing is recorded under
        that name, otherwise once the session has finalized its last file.
        A start still in flight is stopped as soon as it succeeds.
        """
        callback = on_complete or (lambda: None)

        with self._lock:
            pending = self._starting.get(name)
            if pending is not None:
                pending.stop_waiters.append(callback)
                return
            session = self._sessions.get(name)

        if session is None:
            self._notify(callback)
            return
        session.stop(callback)

    def slice_session(self, name: str, on_complete: Optional[SliceCallback] = None) -> None:
        """
        Rotate ``name`` into a new file.

        ``on_complete(None)`` fires after the swap; ``on_complete(error)``
        when the stream is not recording.
        """
        callback = on_complete or (lambda error: None)
        session = self.get(name)
        if session is None or session.state is SessionState.STOP:
            self._notify(callback, SessionNotRunning(f"{name} is not recording"))
            return
        self._control.submit(self._slice, session, callback)

    # ------------------------------------------------------------------
    # asyncio wrappers
    # ------------------------------------------------------------------

    async def start(self, name: str, input_locator: str, output_root: Optional[str] = None) -> None:
        """Start ``name``; raises the start error on failure."""
        future = asyncio.get_running_loop().create_future()
        self.start_session(name, input_locator, output_root, functools.partial(_resolve, future))
        await future

    async def stop(self, name: str) -> None:
        """Stop ``name`` and wait until its last file is finalized."""
        future = asyncio.get_running_loop().create_future()
        self.stop_session(name, functools.partial(_resolve, future, None))
        await future

    async def slice(self, name: str) -> None:
        """Rotate ``name`` and wait for the swap."""
        future = asyncio.get_running_loop().create_future()
        self.slice_session(name, functools.partial(_resolve, future))
        await future

    # ------------------------------------------------------------------
    # Shutdown
    # ------------------------------------------------------------------

    def shutdown(self, timeout: Optional[float] = None) -> None:
        """Stop every session, then release the worker pools."""
        events = []
        for name in self.names():
            event = threading.Event()
            events.append((name, event))
            self.stop_session(name, event.set)

        for name, event in events:
            if not event.wait(timeout):
                self._logger.warning(f"{name} did not stop within {timeout}s")

        self._control.shutdown(wait=True)
        self._executor.shutdown(wait=timeout is None)

    async def aclose(self, timeout: Optional[float] = None) -> None:
        await asyncio.to_thread(self.shutdown, timeout)

    # ------------------------------------------------------------------
    # Workers
    # ------------------------------------------------------------------

    def _run_session(self, name: str, session: RecordingSession) -> None:
        started = False

        def on_started() -> None:
            nonlocal started
            started = True
            self._register(name, session)

        try:
            session.start(on_started)
        except Exception as e:
            if started:
                self._logger.exception(f"{name} session ended with an error")
                return
            with self._lock:
                pending = self._starting.pop(name, None)
                # A stopped entry whose exit hook ran during this restart
                if self._sessions.get(name) is session and session.state is SessionState.STOP:
                    del self._sessions[name]
            self._logger.error(f"Failed to start {name}: {e}")
            if pending is not None:
                for callback in pending.waiters:
                    self._notify(callback, e)
                for callback in pending.stop_waiters:
                    self._notify(callback)
            return

        if not started:
            # start() returned without running: the session was already live
            self._register(name, session)

    def _register(self, name: str, session: RecordingSession) -> None:
        with self._lock:
            pending = self._starting.pop(name, None)
            self._sessions[name] = session
        self._logger.info(f"Registered {name}")

        if pending is None:
            return
        for callback in pending.waiters:
            self._notify(callback, None)
        for callback in pending.stop_waiters:
            session.stop(callback)

    def _deregister(self, name: str, session: RecordingSession) -> None:
        with self._lock:
            if self._sessions.get(name) is not session:
                return
            # Restarted before this exit hook ran
            if name in self._starting or session.state is not SessionState.STOP:
                return
            del self._sessions[name]
        self._logger.info(f"Deregistered {name}")

    def _slice(self, session: RecordingSession, callback: SliceCallback) -> None:
        try:
            session.slice(callback)
        except SessionNotRunning as e:
            self._notify(callback, e)

    def _notify(self, callback: Callable[..., None], *args) -> None:
        try:
            callback(*args)
        except Exception:
            self._logger.exception("Registry callback failed")


def _settle(future: "asyncio.Future", error: Optional[BaseException]) -> None:
    if future.done():
        return
    if error is None:
        future.set_result(None)
    else:
        future.set_exception(error)


def _resolve(future: "asyncio.Future", error: Optional[BaseException] = None) -> None:
    """Complete ``future`` from any thread."""
    loop = future.get_loop()
    if loop.is_closed():
        return
    loop.call_soon_threadsafe(_settle, future, error)
