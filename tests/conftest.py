"""Shared pytest fixtures and fakes for the streamrecd test suite."""

import asyncio
import stat
from pathlib import Path
from typing import Any, Callable, Coroutine, Dict, List, Optional, TypeVar

import pytest

from streamrecd.config import parse_config
from streamrecd.errors import ToolUnavailableError
from streamrecd.streamlink_adapter import ProbeResult


T = TypeVar("T")


def run_async(coro: Coroutine[Any, Any, T]) -> T:
    """Run an async coroutine synchronously for testing."""
    loop = asyncio.new_event_loop()
    try:
        return loop.run_until_complete(coro)
    finally:
        loop.close()


async def wait_until(predicate: Callable[[], bool], timeout: float = 3.0) -> None:
    """Poll until predicate() is true; state writes go through a thread pool."""
    deadline = asyncio.get_running_loop().time() + timeout
    while not predicate():
        if asyncio.get_running_loop().time() > deadline:
            raise AssertionError("condition not met in time")
        await asyncio.sleep(0.01)


def write_script(path: Path, body: str) -> Path:
    """Write an executable /bin/sh script."""
    path.write_text(f"#!/bin/sh\n{body}\n", encoding="utf-8")
    path.chmod(path.stat().st_mode | stat.S_IXUSR | stat.S_IXGRP | stat.S_IXOTH)
    return path


# =============================================================================
# Fakes
# =============================================================================


class FakeProcess:
    """Stands in for asyncio.subprocess.Process."""

    _next_pid = 40000

    def __init__(self, pid: Optional[int] = None):
        FakeProcess._next_pid += 1
        self.pid = pid if pid is not None else FakeProcess._next_pid
        self.returncode: Optional[int] = None
        self.signals: List[int] = []
        self.terminated = False
        self._done = asyncio.Event()
        self._error: Optional[BaseException] = None

    def finish(self, returncode: int) -> None:
        self.returncode = returncode
        self._done.set()

    def fail(self, error: BaseException) -> None:
        self._error = error
        self._done.set()

    async def wait(self) -> int:
        await self._done.wait()
        if self._error is not None:
            raise self._error
        return self.returncode

    def send_signal(self, sig: int) -> None:
        self.signals.append(sig)
        self.finish(-sig)

    def terminate(self) -> None:
        self.terminated = True


class FakeAdapter:
    """Scriptable replacement for StreamlinkAdapter."""

    def __init__(self, results: Optional[Dict[str, ProbeResult]] = None):
        self.results = results or {}
        self.probe_calls: List[str] = []
        self.spawn_calls: List[tuple] = []
        self.processes: List[FakeProcess] = []
        self.probe_gate: Optional[asyncio.Event] = None
        self.spawn_error: Optional[BaseException] = None
        self.spawn_gate: Optional[asyncio.Event] = None
        self.available = True

    def assert_available(self) -> None:
        if not self.available:
            raise ToolUnavailableError("streamlink missing")

    async def probe(self, url: str) -> ProbeResult:
        self.probe_calls.append(url)
        if self.probe_gate is not None:
            await self.probe_gate.wait()
        result = self.results.get(url, ProbeResult(is_live=False))
        if isinstance(result, Exception):
            raise result
        return result

    async def spawn_recording(self, url: str, quality: str, output_path: str) -> FakeProcess:
        self.spawn_calls.append((url, quality, output_path))
        await asyncio.sleep(0)
        if self.spawn_gate is not None:
            await self.spawn_gate.wait()
        if self.spawn_error is not None:
            raise self.spawn_error
        process = FakeProcess()
        self.processes.append(process)
        return process


class FakeRemuxer:
    """Records remux requests instead of running ffmpeg."""

    def __init__(self):
        self.calls: List[tuple] = []

    async def remux(self, session_id: int, input_path: str):
        self.calls.append((session_id, input_path))


def live(*qualities: str) -> ProbeResult:
    return ProbeResult(
        is_live=True,
        available_qualities=list(qualities),
        raw_json={"streams": {q: {} for q in qualities}}
    )


# =============================================================================
# Shared Fixtures
# =============================================================================


@pytest.fixture
def state_dir(tmp_path: Path) -> str:
    path = tmp_path / "state"
    path.mkdir()
    return str(path)


@pytest.fixture
def recordings_dir(tmp_path: Path) -> Path:
    return tmp_path / "recordings"


@pytest.fixture
def make_config(recordings_dir: Path):
    """Config factory with recordings under tmp_path."""

    def factory(**sections):
        data = {"recording": {"dir": str(recordings_dir)}}
        for name, values in sections.items():
            data.setdefault(name, {}).update(values)
        return parse_config(data)

    return factory
