"""Tests for the post-recording remux pipeline."""

import signal
from pathlib import Path

import pytest

from streamrecd.remux import Remuxer, should_postprocess, unique_mp4_path

from tests.conftest import run_async, write_script


class FakeStore:
    def __init__(self, error=None):
        self.updates = []
        self.error = error

    async def update_recording_session_output_path(self, session_id, output_path):
        if self.error is not None:
            raise self.error
        self.updates.append((session_id, output_path))


class ScriptedRemuxer(Remuxer):
    """Remuxer whose ffmpeg runs follow a script of (exit_code, output_bytes)."""

    def __init__(self, outcomes, store=None):
        super().__init__("ffmpeg", store)
        self.outcomes = list(outcomes)
        self.calls = []

    async def _run_ffmpeg(self, args):
        self.calls.append(args)
        exit_code, payload = self.outcomes.pop(0)
        if payload is not None:
            Path(args[-1]).write_bytes(payload)
        return exit_code, "" if exit_code == 0 else "Invalid data found when processing input"


@pytest.fixture
def recording(tmp_path) -> Path:
    path = tmp_path / "alice_2024-01-01T00-00-00-000_best.ts"
    path.write_bytes(b"\x47" * 188)
    return path


class TestShouldPostprocess:

    @pytest.mark.parametrize("enabled,stopping,exit_code,sig,expected", [
        (True, False, 0, None, True),
        (True, False, None, signal.SIGINT, True),
        (True, False, None, signal.SIGTERM, True),
        (True, False, 130, None, True),
        (True, False, 1, None, False),
        (True, False, None, None, False),
        (False, False, 0, None, False),
        (True, True, 0, None, False),
    ])
    def test_decision(self, enabled, stopping, exit_code, sig, expected):
        assert should_postprocess(enabled, stopping, exit_code, sig) is expected


class TestRemuxer:

    def test_fast_path(self, recording):
        store = FakeStore()
        remuxer = ScriptedRemuxer([(0, b"mp4")], store)

        result = run_async(remuxer.remux(7, str(recording)))

        output = recording.with_suffix(".mp4")
        assert result.success
        assert result.attempts == 1
        assert result.output_file == str(output)
        assert output.read_bytes() == b"mp4"
        assert not recording.exists()
        assert store.updates == [(7, str(output))]
        assert "+faststart" in remuxer.calls[0]

    def test_tolerant_retry(self, recording):
        store = FakeStore()
        remuxer = ScriptedRemuxer([(1, b"partial"), (0, b"mp4")], store)

        result = run_async(remuxer.remux(7, str(recording)))

        assert result.success
        assert result.attempts == 2
        assert "+genpts+discardcorrupt" in remuxer.calls[1]
        assert "-ignore_unknown" in remuxer.calls[1]
        assert recording.with_suffix(".mp4").read_bytes() == b"mp4"
        assert not recording.exists()

    def test_both_attempts_fail_keeps_source(self, recording):
        store = FakeStore()
        remuxer = ScriptedRemuxer([(1, b"partial"), (1, b"partial")], store)

        result = run_async(remuxer.remux(7, str(recording)))

        assert not result.success
        assert result.attempts == 2
        assert "Invalid data" in result.error
        assert recording.exists()
        assert not recording.with_suffix(".mp4").exists()
        assert store.updates == []

    def test_empty_output_counts_as_failure(self, recording):
        remuxer = ScriptedRemuxer([(0, b""), (0, b"")], FakeStore())

        result = run_async(remuxer.remux(7, str(recording)))

        assert not result.success
        assert recording.exists()
        assert not recording.with_suffix(".mp4").exists()

    def test_missing_input(self, tmp_path):
        remuxer = ScriptedRemuxer([], FakeStore())

        result = run_async(remuxer.remux(7, str(tmp_path / "gone.ts")))

        assert not result.success
        assert result.attempts == 0
        assert remuxer.calls == []

    def test_persist_failure_keeps_source(self, recording):
        remuxer = ScriptedRemuxer([(0, b"mp4")], FakeStore(error=OSError("read-only")))

        result = run_async(remuxer.remux(7, str(recording)))

        assert not result.success
        assert recording.exists()
        assert not recording.with_suffix(".mp4").exists()

    def test_existing_mp4_is_not_overwritten(self, recording):
        existing = recording.with_suffix(".mp4")
        existing.write_bytes(b"keep me")
        remuxer = ScriptedRemuxer([(0, b"mp4")], FakeStore())

        result = run_async(remuxer.remux(7, str(recording)))

        assert result.output_file == str(existing.with_name(f"{existing.stem}_1.mp4"))
        assert existing.read_bytes() == b"keep me"

    def test_unique_mp4_path(self, tmp_path):
        source = tmp_path / "a.ts"
        assert unique_mp4_path(source) == tmp_path / "a.mp4"

    def test_real_process_with_fake_ffmpeg(self, recording, tmp_path):
        ffmpeg = write_script(tmp_path / "ffmpeg", """for last; do :; done
printf 'remuxed' > "$last\"""")
        store = FakeStore()
        remuxer = Remuxer(str(ffmpeg), store)

        result = run_async(remuxer.remux(1, str(recording)))

        assert result.success
        assert Path(result.output_file).read_bytes() == b"remuxed"
        assert not recording.exists()
