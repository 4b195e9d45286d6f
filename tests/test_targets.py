"""Tests for target normalization and recording file naming."""

from datetime import datetime
from pathlib import Path

import pytest

from streamrecd.errors import ValidationError
from streamrecd.filename import build_recording_path, format_for_filename, slugify, unique_path
from streamrecd.targets import Target, normalize_target_input


def make_target(display_name="Alice", target_id=1):
    return Target(
        id=target_id,
        input=display_name,
        normalized_url=f"https://twitch.tv/{display_name.lower()}",
        platform="twitch",
        display_name=display_name,
        requested_quality="best",
    )


class TestNormalizeTargetInput:

    def test_bare_name_becomes_twitch(self):
        result = normalize_target_input("  somestreamer ")
        assert result.normalized_url == "https://twitch.tv/somestreamer"
        assert result.platform == "twitch"
        assert result.display_name == "somestreamer"
        assert result.input == "somestreamer"

    def test_at_prefix_is_stripped(self):
        assert normalize_target_input("@someone").normalized_url == "https://twitch.tv/someone"

    @pytest.mark.parametrize("text,url,platform,name", [
        ("https://www.twitch.tv/Alice/", "https://www.twitch.tv/Alice", "twitch", "Alice"),
        ("https://youtube.com/@chan/live#top", "https://youtube.com/@chan/live", "youtube", "live"),
        ("HTTPS://KICK.COM/bob", "https://kick.com/bob", "kick", "bob"),
        ("http://example.org", "http://example.org", "generic", "example.org"),
    ])
    def test_urls(self, text, url, platform, name):
        result = normalize_target_input(text)
        assert result.normalized_url == url
        assert result.platform == platform
        assert result.display_name == name

    @pytest.mark.parametrize("text", ["", "   ", None, "bad name", "na/me", "https://"])
    def test_invalid_input(self, text):
        with pytest.raises(ValidationError):
            normalize_target_input(text)


class TestTargetRecord:

    def test_dict_round_trip(self):
        target = make_target()
        assert Target.from_dict(target.to_dict()) == target


class TestRecordingPath:

    def test_default_template(self, tmp_path):
        started = datetime(2024, 3, 1, 12, 30, 45, 123000)
        path = build_recording_path(
            str(tmp_path), "{slug}_{startedAt}_{quality}.ts", make_target("Cool Streamer!"), "720p60", started
        )
        assert path == tmp_path / "cool-streamer_2024-03-01T12-30-45-123_720p60.ts"

    def test_missing_extension_gets_ts(self, tmp_path):
        path = build_recording_path(str(tmp_path), "{slug}", make_target(), "best")
        assert path.name == "alice.ts"

    def test_quality_is_sanitized(self, tmp_path):
        path = build_recording_path(str(tmp_path), "{quality}.ts", make_target(), "720p/alt 1")
        assert path.name == "720p_alt_1.ts"

    def test_slug_fallback(self):
        assert slugify("!!!") == "stream"
        assert slugify("Mr. Big_Stream") == "mr-big-stream"

    def test_timestamp_is_file_safe(self):
        stamp = format_for_filename(datetime(2024, 1, 2, 3, 4, 5))
        assert ":" not in stamp
        assert "." not in stamp

    def test_unique_path(self, tmp_path):
        first = tmp_path / "a.ts"
        assert unique_path(first) == first
        first.write_bytes(b"x")
        assert unique_path(first) == tmp_path / "a_1.ts"
        (tmp_path / "a_1.ts").write_bytes(b"x")
        assert unique_path(first) == tmp_path / "a_2.ts"
