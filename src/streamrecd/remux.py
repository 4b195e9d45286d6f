"""
Post-recording remux for the stream recorder daemon.
Converts finished MPEG-TS recordings to MP4 with ffmpeg, without re-encoding.
"""

import asyncio
from dataclasses import dataclass
from pathlib import Path
from typing import List, Optional

from .filename import unique_path
from .logger import get_logger


REMUX_TIMEOUT_SEC = 3600


def should_postprocess(
    enabled: bool,
    is_stopping: bool,
    exit_code: Optional[int],
    signal: Optional[int]
) -> bool:
    """
    Decide whether a finished recording should be remuxed.

    True for a clean exit, for an explicit termination signal, and for
    exit codes >= 128 without a signal (shells and some tools report
    signal deaths as 128 + signum).
    """
    if not enabled or is_stopping:
        return False

    if exit_code == 0:
        return True

    if signal is not None:
        return True

    return exit_code is not None and exit_code >= 128


def unique_mp4_path(input_path: Path) -> Path:
    """Sibling .mp4 path that does not collide with an existing file."""
    return unique_path(input_path.with_suffix('.mp4'))


@dataclass
class RemuxResult:
    """Result of a remux run."""
    input_file: str
    output_file: Optional[str]
    success: bool
    attempts: int
    error: Optional[str] = None


class Remuxer:
    """
    Remuxes recordings into MP4.

    A fast stream-copy attempt runs first; if it fails, the partial output
    is removed and one error-tolerant attempt follows. The source file is
    only deleted once a non-empty replacement exists and its path has been
    persisted.
    """

    def __init__(self, ffmpeg_path: str = "ffmpeg", store=None, timeout_sec: int = REMUX_TIMEOUT_SEC):
        """
        Initialize remuxer.

        Args:
            ffmpeg_path: ffmpeg executable.
            store: StateManager used to persist the new output path.
            timeout_sec: Upper bound for a single ffmpeg run.
        """
        self.ffmpeg_path = ffmpeg_path
        self.store = store
        self.timeout_sec = timeout_sec
        self._logger = get_logger('remux')

    def fast_args(self, input_path: Path, output_path: Path) -> List[str]:
        return [
            '-y', '-hide_banner', '-loglevel', 'error',
            '-i', str(input_path),
            '-c', 'copy',
            '-movflags', '+faststart',
            str(output_path),
        ]

    def tolerant_args(self, input_path: Path, output_path: Path) -> List[str]:
        return [
            '-y', '-hide_banner', '-loglevel', 'error',
            '-fflags', '+genpts+discardcorrupt',
            '-err_detect', 'ignore_err',
            '-i', str(input_path),
            '-map', '0',
            '-c', 'copy',
            '-ignore_unknown',
            '-movflags', '+faststart',
            str(output_path),
        ]

    async def _run_ffmpeg(self, args: List[str]) -> tuple:
        """Run ffmpeg and return (exit_code, stderr_text)."""
        try:
            process = await asyncio.create_subprocess_exec(
                self.ffmpeg_path, *args,
                stdin=asyncio.subprocess.DEVNULL,
                stdout=asyncio.subprocess.DEVNULL,
                stderr=asyncio.subprocess.PIPE
            )
        except OSError as e:
            return 1, str(e)

        try:
            _, stderr = await asyncio.wait_for(process.communicate(), timeout=self.timeout_sec)
        except asyncio.TimeoutError:
            try:
                process.kill()
            except ProcessLookupError:
                pass
            await process.wait()
            return 1, f"ffmpeg timed out after {self.timeout_sec}s"

        return process.returncode, stderr.decode('utf-8', errors='ignore')

    @staticmethod
    def _remove_partial(path: Path) -> None:
        if path.exists():
            path.unlink()

    async def _attempt(self, args: List[str], output_path: Path, label: str) -> Optional[str]:
        """Run one attempt. Returns None on success, else an error string."""
        exit_code, stderr = await self._run_ffmpeg(args)
        if exit_code == 0 and output_path.exists() and output_path.stat().st_size > 0:
            return None

        error_lines = stderr.strip().splitlines()
        error = '\n'.join(error_lines[-5:]) or f"ffmpeg exited with {exit_code}"
        self._logger.warning(f"{label} remux failed for {output_path.name}: {error}")
        self._remove_partial(output_path)
        return error

    async def remux(self, session_id: int, input_path: str) -> RemuxResult:
        """
        Remux one recording and update its session row.

        Args:
            session_id: Recording session to update on success.
            input_path: Finished recording file.

        Returns:
            RemuxResult; the source file survives unless success is True.
        """
        source = Path(input_path)
        if not source.exists():
            self._logger.warning(f"Skipping remux, recording file is missing: {input_path}")
            return RemuxResult(input_path, None, False, 0, "input file missing")

        output = unique_mp4_path(source)
        self._logger.info(f"Remuxing {source.name} -> {output.name}")

        error = await self._attempt(self.fast_args(source, output), output, "Fast")
        attempts = 1
        if error is not None:
            attempts = 2
            error = await self._attempt(self.tolerant_args(source, output), output, "Tolerant")

        if error is not None:
            self._logger.error(f"Remux failed after {attempts} attempts, keeping original: {source}")
            return RemuxResult(input_path, None, False, attempts, error)

        if self.store is not None:
            try:
                await self.store.update_recording_session_output_path(session_id, str(output))
            except Exception as e:
                self._logger.error(f"Failed to persist remuxed path, keeping original: {e}")
                self._remove_partial(output)
                return RemuxResult(input_path, None, False, attempts, str(e))

        try:
            source.unlink()
        except OSError as e:
            self._logger.warning(f"Remuxed, but failed to delete original {source.name}: {e}")

        self._logger.info(f"Remux complete: {output}")
        return RemuxResult(input_path, str(output), True, attempts)
