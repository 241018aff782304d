"""
Configuration module for Stream Archiver.
Loads settings from YAML file and provides typed configuration.
"""

from dataclasses import dataclass, field
from pathlib import Path
from typing import Any, Dict, List, Optional

import yaml


@dataclass
class RecordingConfig:
    """Per-session recording settings."""
    output_root: str = "./recordings"
    stall_threshold: float = 5.0      # seconds without a frame before a stall is declared
    poll_interval: float = 0.1        # watchdog granularity while a read blocks
    open_timeout: float = 10.0        # seconds FFmpeg may block opening the input
    read_timeout: float = 10.0        # seconds FFmpeg may block in a single read
    container_format: str = "mpegts"
    extension: str = "ts"
    utc_offset_hours: Optional[float] = None  # None = local time for segment names
    input_options: Dict[str, str] = field(default_factory=dict)  # passed to FFmpeg, e.g. rtsp_transport


@dataclass
class WorkerConfig:
    """Worker pool sizing."""
    max_sessions: int = 32            # concurrent recording loops
    control_threads: int = 4          # threads for slice/open work off the read loops


@dataclass
class StreamConfig:
    """A stream to start automatically."""
    name: str
    url: str
    output_root: Optional[str] = None


@dataclass
class ApiConfig:
    """HTTP control API settings."""
    enabled: bool = True
    host: str = "127.0.0.1"
    port: int = 8080


@dataclass
class LoggingConfig:
    """Logging settings."""
    level: str = "INFO"
    file: str = "./logs/archiver.log"
    max_size_mb: int = 10
    backup_count: int = 5
    libav_level: str = "WARNING"      # FFmpeg messages relayed by PyAV


@dataclass
class StateConfig:
    """State persistence settings."""
    state_file: str = "./data/state.json"
    resume_on_start: bool = True      # restart streams that were recording at shutdown/crash


@dataclass
class Config:
    """Main configuration container."""
    recording: RecordingConfig = field(default_factory=RecordingConfig)
    workers: WorkerConfig = field(default_factory=WorkerConfig)
    streams: List[StreamConfig] = field(default_factory=list)
    api: ApiConfig = field(default_factory=ApiConfig)
    logging: LoggingConfig = field(default_factory=LoggingConfig)
    state: StateConfig = field(default_factory=StateConfig)


def as_bool(value: Any, default: bool) -> bool:
    """Parse bool from YAML value with safe fallbacks."""
    if value is None:
        return default
    if isinstance(value, bool):
        return value
    if isinstance(value, (int, float)):
        return bool(value)
    if isinstance(value, str):
        text = value.strip().lower()
        if text in ("1", "true", "yes", "y", "on"):
            return True
        if text in ("0", "false", "no", "n", "off"):
            return False
    return default


def as_float(value: Any, default: Optional[float]) -> Optional[float]:
    """Parse float from YAML value with safe fallbacks."""
    if value is None:
        return default
    if isinstance(value, bool):
        return default
    if isinstance(value, (int, float)):
        return float(value)
    if isinstance(value, str):
        try:
            return float(value.strip().replace(",", "."))
        except ValueError:
            return default
    return default


def as_int(value: Any, default: int) -> int:
    """Parse int from YAML value with safe fallbacks."""
    if value is None:
        return default
    if isinstance(value, bool):
        return int(value)
    if isinstance(value, int):
        return value
    if isinstance(value, float):
        return int(value)
    if isinstance(value, str):
        text = value.strip()
        if not text:
            return default
        try:
            return int(float(text.replace(",", ".")))
        except ValueError:
            return default
    return default


def _parse_streams(items: Any) -> List[StreamConfig]:
    streams: List[StreamConfig] = []
    seen = set()
    for index, item in enumerate(items or []):
        if not isinstance(item, dict):
            raise ValueError(f"streams[{index}] must be a mapping")
        name = str(item.get('name') or '').strip()
        url = str(item.get('url') or '').strip()
        if not name or not url:
            raise ValueError(f"streams[{index}] requires 'name' and 'url'")
        if name in seen:
            raise ValueError(f"Duplicate stream name: {name}")
        seen.add(name)
        streams.append(StreamConfig(name=name, url=url, output_root=item.get('output_root')))
    return streams


def load_config(config_path: str = "config.yaml") -> Config:
    """
    Load configuration from YAML file.

    Args:
        config_path: Path to YAML configuration file.

    Returns:
        Config object with all settings.

    Raises:
        FileNotFoundError: If config file doesn't exist.
        ValueError: If the file is empty or a section is malformed.
    """
    config_path = Path(config_path)

    if not config_path.exists():
        raise FileNotFoundError(
            f"Configuration file not found: {config_path}\n"
            f"Please create a config.yaml file. See config.example.yaml for reference."
        )

    with open(config_path, 'r', encoding='utf-8') as f:
        data = yaml.safe_load(f)

    if not data:
        raise ValueError("Configuration file is empty")

    defaults = RecordingConfig()
    recording_data = data.get('recording', {}) or {}
    recording_config = RecordingConfig(
        output_root=str(recording_data.get('output_root', defaults.output_root)),
        stall_threshold=max(0.1, as_float(recording_data.get('stall_threshold'), defaults.stall_threshold)),
        poll_interval=max(0.01, as_float(recording_data.get('poll_interval'), defaults.poll_interval)),
        open_timeout=max(0.1, as_float(recording_data.get('open_timeout'), defaults.open_timeout)),
        read_timeout=max(0.1, as_float(recording_data.get('read_timeout'), defaults.read_timeout)),
        container_format=str(recording_data.get('container_format', defaults.container_format)),
        extension=str(recording_data.get('extension', defaults.extension)).lstrip('.'),
        utc_offset_hours=as_float(recording_data.get('utc_offset_hours'), None),
        input_options={str(k): str(v) for k, v in (recording_data.get('input_options') or {}).items()},
    )

    workers_data = data.get('workers', {}) or {}
    workers_config = WorkerConfig(
        max_sessions=max(1, as_int(workers_data.get('max_sessions'), 32)),
        control_threads=max(1, as_int(workers_data.get('control_threads'), 4)),
    )

    api_data = data.get('api', {}) or {}
    api_config = ApiConfig(
        enabled=as_bool(api_data.get('enabled'), True),
        host=str(api_data.get('host', '127.0.0.1')),
        port=as_int(api_data.get('port'), 8080),
    )

    logging_data = data.get('logging', {}) or {}
    logging_config = LoggingConfig(
        level=logging_data.get('level', 'INFO'),
        file=logging_data.get('file', './logs/archiver.log'),
        max_size_mb=as_int(logging_data.get('max_size_mb'), 10),
        backup_count=as_int(logging_data.get('backup_count'), 5),
        libav_level=str(logging_data.get('libav_level', 'WARNING')),
    )

    state_data = data.get('state', {}) or {}
    state_config = StateConfig(
        state_file=state_data.get('state_file', './data/state.json'),
        resume_on_start=as_bool(state_data.get('resume_on_start'), True),
    )

    return Config(
        recording=recording_config,
        workers=workers_config,
        streams=_parse_streams(data.get('streams')),
        api=api_config,
        logging=logging_config,
        state=state_config,
    )


def create_example_config(path: str = "config.example.yaml") -> None:
    """Create an example configuration file."""
    example = """# Stream Archiver Configuration

recording:
  output_root: ./recordings
  stall_threshold: 5      # seconds without frames before the current file is closed
  poll_interval: 0.1      # how often a blocked read checks for stalls and stop requests
  open_timeout: 10
  read_timeout: 10
  container_format: mpegts
  extension: ts
  # utc_offset_hours: 8   # fixed clock offset for folder/file names, local time if unset
  input_options:
    rtsp_transport: tcp

workers:
  max_sessions: 32
  control_threads: 4

streams:
  - name: gate
    url: rtsp://192.168.1.10:554/stream1
  - name: lobby
    url: rtsp://192.168.1.11:554/stream1
    output_root: /mnt/archive

api:
  enabled: true
  host: 127.0.0.1
  port: 8080

logging:
  level: INFO  # DEBUG, INFO, WARNING, ERROR
  file: ./logs/archiver.log
  max_size_mb: 10
  backup_count: 5
  libav_level: WARNING  # FFmpeg messages

state:
  state_file: ./data/state.json
  resume_on_start: true
"""
    with open(path, 'w', encoding='utf-8') as f:
        f.write(example)


if __name__ == '__main__':
    create_example_config()
    print("Created config.example.yaml")
