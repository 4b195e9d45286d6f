"""Tests for configuration parsing and validation."""

from pathlib import Path

import pytest
import yaml

from streamrecd.config import (
    create_example_config,
    default_state_dir,
    load_config_file,
    parse_config,
)
from streamrecd.errors import ValidationError


class TestParseConfig:

    def test_defaults(self):
        config = parse_config(None)
        assert config.recording.default_quality == "best"
        assert config.recording.max_concurrent == 0
        assert config.recording.filename_template == "{slug}_{startedAt}_{quality}.ts"
        assert config.streamlink.path == "streamlink"
        assert config.streamlink.poll_interval_sec == 60
        assert config.streamlink.probe_timeout_sec == 20
        assert config.postprocess.enabled is True
        assert config.postprocess.ffmpeg_path == "ffmpeg"
        assert config.logging.level == "info"
        assert Path(config.recording.dir).is_absolute()

    def test_values_are_coerced(self):
        config = parse_config({
            "recording": {"max_concurrent": "3", "dir": "~/rec"},
            "streamlink": {"poll_interval_sec": 15.0, "probe_timeout_sec": "5"},
            "postprocess": {"enabled": "no"},
            "logging": {"level": "WARN"},
        })
        assert config.recording.max_concurrent == 3
        assert config.recording.dir == str((Path.home() / "rec").resolve())
        assert config.streamlink.poll_interval_sec == 15
        assert config.streamlink.probe_timeout_sec == 5
        assert config.postprocess.enabled is False
        assert config.logging.level == "warning"

    @pytest.mark.parametrize("data", [
        {"streamlink": {"poll_interval_sec": 14}},
        {"streamlink": {"probe_timeout_sec": 4}},
        {"recording": {"max_concurrent": -1}},
        {"recording": {"max_concurrent": "many"}},
        {"recording": {"default_quality": "  "}},
        {"postprocess": {"enabled": "maybe"}},
        {"logging": {"level": "verbose"}},
        {"streamlink": "not a mapping"},
        ["not", "a", "mapping"],
    ])
    def test_invalid_values(self, data):
        with pytest.raises(ValidationError):
            parse_config(data)


class TestConfigFiles:

    def test_missing_file_yields_defaults(self, tmp_path):
        config = load_config_file(str(tmp_path / "config.yaml"))
        assert config.streamlink.poll_interval_sec == 60

    def test_example_config_is_valid(self, tmp_path):
        path = tmp_path / "nested" / "config.yaml"
        create_example_config(str(path))

        data = yaml.safe_load(path.read_text())
        assert data["streamlink"]["poll_interval_sec"] == 60

        config = load_config_file(str(path))
        assert config.recording.default_quality == "best"

    def test_state_dir_override(self, monkeypatch, tmp_path):
        monkeypatch.setenv("SR_CONFIG_DIR", str(tmp_path / "custom"))
        assert default_state_dir() == str((tmp_path / "custom").resolve())

        monkeypatch.delenv("SR_CONFIG_DIR")
        assert default_state_dir() == str(Path.home() / ".config" / "streamrecd")
