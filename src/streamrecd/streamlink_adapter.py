"""
Streamlink adapter for the stream recorder daemon.
Probes stream availability and launches recording processes.
"""

import asyncio
import json
import subprocess
from dataclasses import dataclass, field
from typing import Any, List, Optional

from .errors import ToolUnavailableError
from .logger import get_logger


TIMEOUT_EXIT_CODE = 124


@dataclass
class ProbeResult:
    """Result of a liveness probe."""
    is_live: bool
    available_qualities: List[str] = field(default_factory=list)
    raw_json: Optional[Any] = None
    error: Optional[str] = None

    def to_dict(self) -> dict:
        return {
            'is_live': self.is_live,
            'available_qualities': self.available_qualities,
            'raw_json': self.raw_json,
            'error': self.error,
        }


def _safe_parse_json(text: str) -> Optional[Any]:
    if not text.strip():
        return None
    try:
        return json.loads(text)
    except ValueError:
        return None


class StreamlinkAdapter:
    """
    Wraps the streamlink binary.

    Probing runs `streamlink --json <url>` with a hard timeout; recording
    runs `streamlink <url> <quality> --output <path>` and returns the
    process handle without waiting for it.
    """

    def __init__(self, binary_path: str = "streamlink", probe_timeout_sec: int = 20):
        self.binary_path = binary_path
        self.probe_timeout_sec = probe_timeout_sec
        self._logger = get_logger('streamlink')

    def assert_available(self) -> None:
        """
        Check that the binary runs.

        Raises:
            ToolUnavailableError: If `<binary> --version` cannot run or fails.
        """
        try:
            result = subprocess.run(
                [self.binary_path, '--version'],
                stdin=subprocess.DEVNULL,
                stdout=subprocess.DEVNULL,
                stderr=subprocess.DEVNULL,
                timeout=self.probe_timeout_sec
            )
        except (OSError, subprocess.SubprocessError) as e:
            raise ToolUnavailableError(
                f"Unable to execute streamlink binary at '{self.binary_path}': {e}. "
                f"Set streamlink.path to a valid executable."
            ) from e

        if result.returncode != 0:
            raise ToolUnavailableError(
                f"Streamlink binary at '{self.binary_path}' exited with {result.returncode}. "
                f"Set streamlink.path to a valid executable."
            )

    async def _run_probe_command(self, url: str) -> tuple:
        """Run the probe and return (exit_code, stdout, stderr)."""
        try:
            process = await asyncio.create_subprocess_exec(
                self.binary_path, '--json', url,
                stdin=asyncio.subprocess.DEVNULL,
                stdout=asyncio.subprocess.PIPE,
                stderr=asyncio.subprocess.PIPE
            )
        except OSError as e:
            return 1, "", str(e)

        try:
            stdout, stderr = await asyncio.wait_for(
                process.communicate(),
                timeout=self.probe_timeout_sec
            )
        except asyncio.TimeoutError:
            try:
                process.kill()
            except ProcessLookupError:
                pass
            await process.wait()
            return TIMEOUT_EXIT_CODE, "", f"probe timed out after {self.probe_timeout_sec}s"

        return (
            process.returncode,
            stdout.decode('utf-8', errors='replace'),
            stderr.decode('utf-8', errors='replace'),
        )

    async def probe(self, url: str) -> ProbeResult:
        """
        Check whether a stream is live and which qualities it offers.

        Never raises; every failure is reported through ProbeResult.error.

        Args:
            url: Canonical stream URL.

        Returns:
            ProbeResult for this moment.
        """
        exit_code, stdout, stderr = await self._run_probe_command(url)
        parsed = _safe_parse_json(stdout)

        # --json reports errors such as "No playable streams found" on stdout
        json_error = parsed.get('error') if isinstance(parsed, dict) else None
        error_text = (
            stderr.strip()
            or (json_error if isinstance(json_error, str) else "")
            or f"streamlink exited with {exit_code}"
        )

        if isinstance(parsed, dict) and 'streams' in parsed:
            streams = parsed['streams']
            qualities = list(streams.keys()) if isinstance(streams, dict) else []
            return ProbeResult(
                is_live=len(qualities) > 0,
                available_qualities=qualities,
                raw_json=parsed,
                error=None if exit_code == 0 else error_text
            )

        if exit_code == 0:
            return ProbeResult(is_live=False, raw_json=parsed)

        return ProbeResult(is_live=False, error=error_text)

    async def spawn_recording(self, url: str, quality: str, output_path: str) -> asyncio.subprocess.Process:
        """
        Launch a recording process. The caller supervises its exit.

        Raises:
            OSError: If the process could not be started.
        """
        self._logger.debug(f"Running: {self.binary_path} {url} {quality} --output {output_path}")
        return await asyncio.create_subprocess_exec(
            self.binary_path, url, quality, '--output', output_path,
            stdin=asyncio.subprocess.DEVNULL,
            stdout=asyncio.subprocess.DEVNULL,
            stderr=asyncio.subprocess.DEVNULL
        )
