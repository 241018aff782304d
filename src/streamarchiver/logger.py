"""
Logging for Stream Archiver.

Console output is colored and tagged with the stream a record belongs to;
the rotating log file adds the component and worker thread so interleaved
sessions can be told apart.
"""

import logging
import os
import sys
from datetime import datetime
from logging.handlers import RotatingFileHandler
from pathlib import Path
from typing import Optional


ROOT_LOGGER_NAME = 'stream_archiver'

# PyAV forwards FFmpeg's own log lines to this logger
LIBAV_LOGGER_NAME = 'libav'


class Colors:
    RESET = "\033[0m"
    RED = "\033[91m"
    GREEN = "\033[92m"
    YELLOW = "\033[93m"
    MAGENTA = "\033[95m"
    CYAN = "\033[96m"
    GRAY = "\033[90m"


def _component(record: logging.LogRecord) -> str:
    """``stream_archiver.session`` -> ``session``."""
    prefix = ROOT_LOGGER_NAME + '.'
    if record.name.startswith(prefix):
        return record.name[len(prefix):]
    return record.name


class ColoredFormatter(logging.Formatter):
    """Console formatter: time, level, [stream] message."""

    LEVEL_COLORS = {
        logging.DEBUG: Colors.GRAY,
        logging.INFO: Colors.GREEN,
        logging.WARNING: Colors.YELLOW,
        logging.ERROR: Colors.RED,
        logging.CRITICAL: Colors.MAGENTA,
    }

    def __init__(self, use_color: bool = True):
        super().__init__()
        self.use_color = use_color

    def _paint(self, text: str, color: str) -> str:
        return f"{color}{text}{Colors.RESET}" if self.use_color else text

    def format(self, record: logging.LogRecord) -> str:
        timestamp = datetime.fromtimestamp(record.created).strftime('%H:%M:%S')
        level = self._paint(f"{record.levelname:8}", self.LEVEL_COLORS.get(record.levelno, Colors.RESET))

        stream = getattr(record, 'stream', None)
        tag = self._paint(f"[{stream}]", Colors.CYAN) + " " if stream else ""

        message = f"{self._paint(timestamp, Colors.GRAY)} {level} {tag}{record.getMessage()}"
        if record.exc_info:
            message += f"\n{self.formatException(record.exc_info)}"
        return message


class FileFormatter(logging.Formatter):
    """Pipe-separated file lines: time | level | component | thread | stream | message."""

    def format(self, record: logging.LogRecord) -> str:
        timestamp = datetime.fromtimestamp(record.created).strftime('%Y-%m-%d %H:%M:%S')
        stream = getattr(record, 'stream', '-')

        message = (
            f"{timestamp} | {record.levelname:8} | {_component(record):10} | "
            f"{record.threadName:16} | {stream:20} | {record.getMessage()}"
        )
        if record.exc_info:
            message += f"\n{self.formatException(record.exc_info)}"
        return message


class StreamLoggerAdapter(logging.LoggerAdapter):
    """Adds the stream name to every record, keeping any caller-supplied extras."""

    def __init__(self, logger: logging.Logger, stream: str):
        super().__init__(logger, {'stream': stream})

    @property
    def stream(self) -> str:
        return self.extra['stream']

    def process(self, msg, kwargs):
        kwargs['extra'] = {**kwargs.get('extra', {}), 'stream': self.stream}
        return msg, kwargs


def _console_supports_color(stream) -> bool:
    if os.environ.get('NO_COLOR'):
        return False
    return hasattr(stream, 'isatty') and stream.isatty()


def setup_logging(
    level: str = "INFO",
    log_file: Optional[str] = None,
    max_size_mb: int = 10,
    backup_count: int = 5,
    libav_level: str = "WARNING",
) -> logging.Logger:
    """
    Configure the application logger and the FFmpeg log bridge.

    Args:
        level: Application log level (DEBUG, INFO, WARNING, ERROR).
        log_file: Rotating log file; console only when None.
        max_size_mb: Size at which the log file rotates.
        backup_count: Rotated files to keep.
        libav_level: Level for FFmpeg messages relayed by PyAV.

    Returns:
        The root application logger.
    """
    logger = logging.getLogger(ROOT_LOGGER_NAME)
    logger.setLevel(getattr(logging, level.upper(), logging.INFO))
    logger.propagate = False
    logger.handlers.clear()

    handlers = []
    console = logging.StreamHandler(sys.stdout)
    console.setFormatter(ColoredFormatter(use_color=_console_supports_color(sys.stdout)))
    handlers.append(console)

    if log_file:
        log_path = Path(log_file)
        log_path.parent.mkdir(parents=True, exist_ok=True)
        file_handler = RotatingFileHandler(
            log_path,
            maxBytes=max_size_mb * 1024 * 1024,
            backupCount=backup_count,
            encoding='utf-8',
        )
        file_handler.setFormatter(FileFormatter())
        handlers.append(file_handler)

    for handler in handlers:
        logger.addHandler(handler)

    libav = logging.getLogger(LIBAV_LOGGER_NAME)
    libav.setLevel(getattr(logging, libav_level.upper(), logging.WARNING))
    libav.propagate = False
    libav.handlers = list(handlers)

    return logger


def get_logger(name: Optional[str] = None) -> logging.Logger:
    """Application logger, or its ``name`` child."""
    if name:
        return logging.getLogger(f'{ROOT_LOGGER_NAME}.{name}')
    return logging.getLogger(ROOT_LOGGER_NAME)


def get_stream_logger(stream: str, name: Optional[str] = None) -> StreamLoggerAdapter:
    """
    Logger adapter that tags records with a stream name.

    Args:
        stream: Stream name shown in console and file output.
        name: Component child logger, e.g. ``session``.
    """
    return StreamLoggerAdapter(get_logger(name), stream)
