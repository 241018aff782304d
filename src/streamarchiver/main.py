"""
Stream Archiver - Main Orchestrator.

Coordinates all modules:
1. Load configuration and set up logging
2. Resume streams that were recording before a restart
3. Start configured streams
4. Serve the HTTP control API
5. Stop every session cleanly on SIGINT/SIGTERM
"""

import asyncio
import signal
import sys
from typing import Dict, Optional

from aiohttp import web

from .api import create_app
from .config import Config, StreamConfig, load_config
from .logger import get_logger, setup_logging
from .registry import SessionRegistry
from .state_manager import StateManager


SHUTDOWN_TIMEOUT = 30.0


class ArchiverApp:
    """
    Main application.

    Handles:
    - Session registry lifecycle
    - Persisting which streams should be recording
    - HTTP control API
    """

    def __init__(self, config: Config, registry: Optional[SessionRegistry] = None):
        """Initialize application with configuration."""
        self.config = config
        self._logger = get_logger('app')

        self.registry = registry or SessionRegistry(
            settings=config.recording,
            max_sessions=config.workers.max_sessions,
            control_threads=config.workers.control_threads,
        )
        self.state = StateManager(state_file=config.state.state_file)

        self._runner: Optional[web.AppRunner] = None
        self._shutdown_event = asyncio.Event()

    async def start_stream(self, name: str, url: str, output_root: Optional[str] = None) -> None:
        """Start recording and remember it; raises the start error."""
        output_root = output_root or self.config.recording.output_root
        try:
            await self.registry.start(name, url, output_root)
        except Exception as e:
            await self.state.mark_error(name, url, output_root, str(e))
            raise
        await self.state.mark_recording(name, url, output_root)

    async def stop_stream(self, name: str) -> None:
        await self.registry.stop(name)
        await self.state.mark_stopped(name)

    async def slice_stream(self, name: str) -> None:
        await self.registry.slice(name)
        await self.state.increment_slices(name)

    async def start(self) -> None:
        """Start the application and run until a shutdown signal."""
        self._logger.info("Starting Stream Archiver...")

        await self.state.load()

        startup_task = asyncio.create_task(self._autostart())

        if self.config.api.enabled:
            await self._start_api()

        loop = asyncio.get_running_loop()
        for sig in (signal.SIGINT, signal.SIGTERM):
            loop.add_signal_handler(sig, self._shutdown_event.set)

        try:
            await self._shutdown_event.wait()
        finally:
            self._logger.info("Shutdown signal received...")
            startup_task.cancel()
            try:
                await startup_task
            except asyncio.CancelledError:
                pass
            await self._cleanup()

    def request_shutdown(self) -> None:
        self._shutdown_event.set()

    def _startup_streams(self) -> Dict[str, StreamConfig]:
        """Configured streams plus stored ones that were recording; config wins."""
        streams: Dict[str, StreamConfig] = {}
        if self.config.state.resume_on_start:
            for record in self.state.get_resumable():
                streams[record.name] = StreamConfig(
                    name=record.name, url=record.url, output_root=record.output_root or None
                )
        for stream in self.config.streams:
            streams[stream.name] = stream
        return streams

    async def _autostart(self) -> None:
        streams = self._startup_streams()
        if not streams:
            self._logger.info("No streams to start")
            return

        self._logger.info(f"Starting {len(streams)} streams: {', '.join(streams)}")
        results = await asyncio.gather(
            *(self.start_stream(s.name, s.url, s.output_root) for s in streams.values()),
            return_exceptions=True,
        )
        for stream, result in zip(streams.values(), results):
            if isinstance(result, Exception):
                self._logger.error(f"Could not start {stream.name}: {result}")

    async def _start_api(self) -> None:
        self._runner = web.AppRunner(create_app(self))
        await self._runner.setup()
        site = web.TCPSite(self._runner, self.config.api.host, self.config.api.port)
        await site.start()
        self._logger.info(f"Control API listening on http://{self.config.api.host}:{self.config.api.port}")

    async def _cleanup(self) -> None:
        """Cleanup resources. Stored records keep their status so streams resume on restart."""
        self._logger.info("Cleaning up...")

        if self._runner is not None:
            await self._runner.cleanup()
            self._runner = None

        await self.registry.aclose(timeout=SHUTDOWN_TIMEOUT)
        await self.state.save()
        self._logger.info("Stopped")


async def main(config_path: str = "config.yaml") -> None:
    """Main entry point."""
    try:
        config = load_config(config_path)
    except FileNotFoundError as e:
        print(f"Error: {e}")
        print("Please create config.yaml from config.example.yaml")
        return
    except Exception as e:
        print(f"Configuration error: {e}")
        return

    setup_logging(
        level=config.logging.level,
        log_file=config.logging.file,
        max_size_mb=config.logging.max_size_mb,
        backup_count=config.logging.backup_count,
        libav_level=config.logging.libav_level,
    )

    app = ArchiverApp(config)

    try:
        await app.start()
    except KeyboardInterrupt:
        pass
    except Exception as e:
        get_logger('app').error(f"Fatal error: {e}")
        raise


def run() -> None:
    """Console script entry point."""
    asyncio.run(main(sys.argv[1] if len(sys.argv) > 1 else "config.yaml"))


if __name__ == '__main__':
    run()
