"""
Configuration module for the stream recorder daemon.
Parses settings loaded from config.yaml into typed configuration.
"""

import os
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any, Optional

import yaml

from .errors import ValidationError


APP_NAME = "streamrecd"
CONFIG_FILE_NAME = "config.yaml"

MIN_POLL_INTERVAL_SEC = 15
MIN_PROBE_TIMEOUT_SEC = 5
LOG_LEVELS = ("debug", "info", "warning", "error")


def resolve_user_path(value: str) -> str:
    """Expand ~ and make the path absolute."""
    return str(Path(os.path.expanduser(value)).resolve())


def default_state_dir() -> str:
    """State directory from SR_CONFIG_DIR, or ~/.config/streamrecd."""
    override = os.environ.get("SR_CONFIG_DIR")
    if override:
        return resolve_user_path(override)
    return str(Path.home() / ".config" / APP_NAME)


def default_recordings_dir() -> str:
    return str(Path.home() / "Videos" / "StreamRecorder")


@dataclass
class RecordingConfig:
    """Where and how recordings are written."""
    dir: str = field(default_factory=default_recordings_dir)
    filename_template: str = "{slug}_{startedAt}_{quality}.ts"
    default_quality: str = "best"
    max_concurrent: int = 0  # 0 = unlimited


@dataclass
class StreamlinkConfig:
    """External stream tool settings."""
    path: str = "streamlink"
    poll_interval_sec: int = 60
    probe_timeout_sec: int = 20


@dataclass
class PostprocessConfig:
    """Remux to MP4 after a recording ends."""
    enabled: bool = True
    ffmpeg_path: str = "ffmpeg"


@dataclass
class LoggingConfig:
    """Logging settings."""
    level: str = "info"
    file: str = ""  # empty = console only
    max_size_mb: int = 10
    backup_count: int = 5


@dataclass
class Config:
    """Main configuration container."""
    recording: RecordingConfig = field(default_factory=RecordingConfig)
    streamlink: StreamlinkConfig = field(default_factory=StreamlinkConfig)
    postprocess: PostprocessConfig = field(default_factory=PostprocessConfig)
    logging: LoggingConfig = field(default_factory=LoggingConfig)


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
    raise ValidationError(f"Expected a boolean, got {value!r}")


def as_int(value: Any, default: int) -> int:
    """Parse int from YAML value; None means default."""
    if value is None:
        return default
    if isinstance(value, bool):
        raise ValidationError(f"Expected an integer, got {value!r}")
    if isinstance(value, int):
        return value
    if isinstance(value, float) and value.is_integer():
        return int(value)
    if isinstance(value, str):
        text = value.strip()
        if not text:
            return default
        try:
            return int(text)
        except ValueError:
            pass
    raise ValidationError(f"Expected an integer, got {value!r}")


def as_str(value: Any, default: str, name: str) -> str:
    """Parse a non-empty string."""
    if value is None:
        return default
    text = str(value).strip()
    if not text:
        raise ValidationError(f"{name} cannot be empty")
    return text


def _section(data: dict, name: str) -> dict:
    section = data.get(name) or {}
    if not isinstance(section, dict):
        raise ValidationError(f"Config section '{name}' must be a mapping")
    return section


def parse_config(data: Optional[dict]) -> Config:
    """
    Build a Config from raw YAML data, applying defaults and validation.

    Args:
        data: Mapping loaded from config.yaml (may be None or empty).

    Returns:
        Config object with all settings.

    Raises:
        ValidationError: If a value is out of range or of the wrong type.
    """
    data = data or {}
    if not isinstance(data, dict):
        raise ValidationError("Configuration root must be a mapping")

    defaults = Config()

    recording_data = _section(data, 'recording')
    recording = RecordingConfig(
        dir=resolve_user_path(as_str(recording_data.get('dir'), defaults.recording.dir, 'recording.dir')),
        filename_template=as_str(
            recording_data.get('filename_template'),
            defaults.recording.filename_template,
            'recording.filename_template'
        ),
        default_quality=as_str(
            recording_data.get('default_quality'),
            defaults.recording.default_quality,
            'recording.default_quality'
        ),
        max_concurrent=as_int(recording_data.get('max_concurrent'), defaults.recording.max_concurrent),
    )
    if recording.max_concurrent < 0:
        raise ValidationError("recording.max_concurrent must be an integer >= 0")

    streamlink_data = _section(data, 'streamlink')
    streamlink = StreamlinkConfig(
        path=as_str(streamlink_data.get('path'), defaults.streamlink.path, 'streamlink.path'),
        poll_interval_sec=as_int(streamlink_data.get('poll_interval_sec'), defaults.streamlink.poll_interval_sec),
        probe_timeout_sec=as_int(streamlink_data.get('probe_timeout_sec'), defaults.streamlink.probe_timeout_sec),
    )
    if streamlink.poll_interval_sec < MIN_POLL_INTERVAL_SEC:
        raise ValidationError(f"streamlink.poll_interval_sec must be an integer >= {MIN_POLL_INTERVAL_SEC}")
    if streamlink.probe_timeout_sec < MIN_PROBE_TIMEOUT_SEC:
        raise ValidationError(f"streamlink.probe_timeout_sec must be an integer >= {MIN_PROBE_TIMEOUT_SEC}")

    postprocess_data = _section(data, 'postprocess')
    postprocess = PostprocessConfig(
        enabled=as_bool(postprocess_data.get('enabled'), defaults.postprocess.enabled),
        ffmpeg_path=as_str(postprocess_data.get('ffmpeg_path'), defaults.postprocess.ffmpeg_path, 'postprocess.ffmpeg_path'),
    )

    logging_data = _section(data, 'logging')
    level = as_str(logging_data.get('level'), defaults.logging.level, 'logging.level').lower()
    if level == 'warn':
        level = 'warning'
    if level not in LOG_LEVELS:
        raise ValidationError(f"logging.level must be one of: {', '.join(LOG_LEVELS)}")
    log_file = logging_data.get('file') or ''
    logging_config = LoggingConfig(
        level=level,
        file=resolve_user_path(str(log_file)) if log_file else '',
        max_size_mb=as_int(logging_data.get('max_size_mb'), defaults.logging.max_size_mb),
        backup_count=as_int(logging_data.get('backup_count'), defaults.logging.backup_count),
    )

    return Config(
        recording=recording,
        streamlink=streamlink,
        postprocess=postprocess,
        logging=logging_config,
    )


def load_config_file(config_path: str) -> Config:
    """Read and parse a config.yaml; a missing file yields defaults."""
    path = Path(config_path)
    if not path.exists():
        return parse_config({})

    with open(path, 'r', encoding='utf-8') as f:
        data = yaml.safe_load(f)

    return parse_config(data)


def create_example_config(path: str = "config.example.yaml") -> None:
    """Create an example configuration file."""
    example = """# Stream recorder daemon configuration

recording:
  dir: ~/Videos/StreamRecorder
  filename_template: "{slug}_{startedAt}_{quality}.ts"
  default_quality: best     # used when a target is added without a quality
  max_concurrent: 0         # 0 = unlimited

streamlink:
  path: streamlink
  poll_interval_sec: 60     # >= 15
  probe_timeout_sec: 20     # >= 5

postprocess:
  enabled: true             # remux finished recordings to MP4
  ffmpeg_path: ffmpeg

logging:
  level: info               # debug, info, warning, error
  file: ""                  # empty = console only
  max_size_mb: 10
  backup_count: 5
"""
    Path(path).parent.mkdir(parents=True, exist_ok=True)
    with open(path, 'w', encoding='utf-8') as f:
        f.write(example)
