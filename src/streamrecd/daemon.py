"""
Recorder daemon - main orchestrator.

Coordinates the recording workflow:
1. Poll enabled targets on a fixed interval
2. Probe each one with streamlink and pick a quality
3. Admit new recordings under the concurrency ceiling
4. Supervise recording processes and persist their sessions
5. Remux finished recordings to MP4
6. Serve the loopback control plane
"""

import asyncio
import os
import secrets
import signal
from dataclasses import dataclass
from datetime import datetime, timedelta
from pathlib import Path
from typing import Any, Callable, Coroutine, Dict, Iterable, List, Optional, Set

from .api import ControlServer
from .config import Config, parse_config
from .filename import build_recording_path, unique_path
from .logger import get_logger, get_target_logger, set_level
from .quality import select_quality
from .remux import Remuxer, should_postprocess
from .runtime import DaemonRuntime, acquire_lock, clear_runtime, release_lock, write_runtime
from .state_manager import StateManager
from .streamlink_adapter import ProbeResult, StreamlinkAdapter
from .targets import Target


# Exit code recorded when waiting on a recording process itself fails
PROCESS_ERROR_EXIT_CODE = 1
SHUTDOWN_DELAY_SEC = 0.1


def adapter_from_config(config: Config) -> StreamlinkAdapter:
    return StreamlinkAdapter(
        binary_path=config.streamlink.path,
        probe_timeout_sec=config.streamlink.probe_timeout_sec
    )


@dataclass
class ActiveRecording:
    """A recording process that is currently running."""
    session_id: int
    target: Target
    process: Any
    selected_quality: str
    output_path: str
    started_at: str

    @property
    def pid(self) -> int:
        return self.process.pid

    def to_dict(self) -> dict:
        return {
            'session_id': self.session_id,
            'target_id': self.target.id,
            'target': self.target.display_name,
            'pid': self.pid,
            'selected_quality': self.selected_quality,
            'output_path': self.output_path,
            'started_at': self.started_at,
        }


class AdmissionController:
    """
    Concurrency ceiling for recordings (0 = unlimited).

    try_reserve() checks and reserves in one step with no suspension point,
    so two starts for the same target, or two starts competing for the last
    free slot, cannot both be admitted.
    """

    def __init__(self, max_concurrent: int = 0):
        self.max_concurrent = max_concurrent
        self._reserved: Set[int] = set()

    @property
    def pending(self) -> int:
        """Starts that are admitted but not yet tracked as active."""
        return len(self._reserved)

    def ceiling_reached(self, active_count: int) -> bool:
        return self.max_concurrent > 0 and active_count >= self.max_concurrent

    def try_reserve(self, target_id: int, active_ids: Iterable[int], enforce_ceiling: bool = True) -> bool:
        active_ids = set(active_ids)
        if target_id in active_ids or target_id in self._reserved:
            return False
        if enforce_ceiling and self.ceiling_reached(len(active_ids) + len(self._reserved)):
            return False
        self._reserved.add(target_id)
        return True

    def release(self, target_id: int) -> None:
        self._reserved.discard(target_id)


class RecorderDaemon:
    """
    The daemon process state: one instance per process.

    Handles:
    - Poll scheduling (one pass in flight at most)
    - Admission control and recording start
    - Process supervision and session persistence
    - Remux after recordings end
    - Lock, advertisement and control plane lifecycle
    """

    def __init__(
        self,
        state_dir: str,
        config: Config,
        store: StateManager,
        adapter: Optional[StreamlinkAdapter] = None,
        adapter_factory: Callable[[Config], StreamlinkAdapter] = adapter_from_config,
        remuxer: Optional[Remuxer] = None
    ):
        """Initialize the daemon; nothing runs until start()."""
        self.state_dir = state_dir
        self.config = config
        self.store = store
        self.adapter_factory = adapter_factory
        self.adapter = adapter or adapter_factory(config)
        self.remuxer = remuxer or Remuxer(config.postprocess.ffmpeg_path, store)
        self.admission = AdmissionController(config.recording.max_concurrent)
        self.token = secrets.token_hex(24)
        self._logger = get_logger('daemon')

        # Runtime state
        self.server: Optional[ControlServer] = None
        self.started_at: Optional[datetime] = None
        self.next_poll_at: Optional[datetime] = None
        self.poll_in_progress = False
        self.is_stopping = False
        self._active: Dict[int, ActiveRecording] = {}
        self._poll_task: Optional[asyncio.Task] = None
        self._background: Set[asyncio.Task] = set()
        self._stopped = asyncio.Event()

    # Lifecycle

    async def start(self) -> None:
        """
        Start the daemon.

        Raises:
            ToolUnavailableError: If streamlink cannot be executed.
            DaemonLockedError: If another live daemon owns the state directory.
        """
        self.adapter.assert_available()
        acquire_lock(self.state_dir)

        try:
            self.started_at = datetime.now()
            await self.store.upsert_daemon_meta('lastStartedAt', self.started_at.isoformat())

            self.server = ControlServer(self, self.token)
            await self.server.start()

            write_runtime(self.state_dir, DaemonRuntime(
                pid=os.getpid(),
                port=self.server.port,
                token=self.token,
                started_at=self.started_at.isoformat(),
                state_dir=self.state_dir
            ))
        except BaseException:
            if self.server:
                await self.server.stop()
                self.server = None
            clear_runtime(self.state_dir)
            release_lock(self.state_dir)
            raise

        self._logger.info(f"Daemon started (pid={os.getpid()}, port={self.server.port})")

        self._spawn_background(self.poll_once(), 'poll-initial')
        self.reset_poll_interval()

    async def stop(self) -> None:
        """
        Stop the daemon.

        Recording processes get SIGTERM but are not awaited; remux tasks
        already running are left to finish on their own.
        """
        if self.is_stopping:
            await self._stopped.wait()
            return
        self.is_stopping = True
        self._logger.info("Stopping daemon...")

        if self._poll_task:
            self._poll_task.cancel()
            self._poll_task = None

        for record in list(self._active.values()):
            self._terminate(record)

        if self.server:
            await self.server.stop()
            self.server = None

        clear_runtime(self.state_dir)
        release_lock(self.state_dir)
        self._logger.info("Daemon stopped")
        self._stopped.set()

    def request_shutdown(self) -> None:
        """Stop shortly, after the current control-plane response is sent."""
        loop = asyncio.get_running_loop()
        loop.call_later(
            SHUTDOWN_DELAY_SEC,
            lambda: self._spawn_background(self.stop(), 'shutdown')
        )

    async def wait_stopped(self) -> None:
        await self._stopped.wait()

    # Poll scheduling

    def reset_poll_interval(self) -> None:
        """Replace the poll timer; an in-flight pass is not affected."""
        if self._poll_task:
            self._poll_task.cancel()
        self._poll_task = asyncio.create_task(
            self._poll_loop(self.config.streamlink.poll_interval_sec)
        )

    async def _poll_loop(self, interval_sec: int) -> None:
        while True:
            await asyncio.sleep(interval_sec)
            self._spawn_background(self.poll_once(), 'poll')

    async def poll_once(self) -> None:
        """
        Evaluate every enabled target once.

        Overlapping calls are dropped, not queued: while a pass runs (or
        the daemon is stopping) this returns without doing anything.
        """
        if self.poll_in_progress or self.is_stopping:
            return

        self.poll_in_progress = True
        self.next_poll_at = datetime.now() + timedelta(seconds=self.config.streamlink.poll_interval_sec)

        try:
            await self.store.upsert_daemon_meta('lastPollAt', datetime.now().isoformat())
            targets = await self.store.list_enabled_targets()

            for target in targets:
                if self.is_stopping:
                    break
                try:
                    if target.id in self._active:
                        continue

                    if self.admission.ceiling_reached(self.active_count()):
                        self._logger.debug("Concurrency ceiling reached, remaining targets wait for next poll")
                        break

                    await self._evaluate_target(target)
                except Exception as e:
                    get_target_logger(target.display_name).error(f"Target poll failed: {e}", exc_info=True)
        except Exception as e:
            self._logger.error(f"Poll pass failed: {e}", exc_info=True)
        finally:
            self.poll_in_progress = False

    async def _evaluate_target(self, target: Target) -> None:
        logger = get_target_logger(target.display_name)
        probe = await self.adapter.probe(target.normalized_url)
        if not probe.is_live:
            if probe.error:
                logger.debug(f"Probe reported not live: {probe.error}")
            return

        quality = select_quality(target.requested_quality, probe.available_qualities)
        await self.start_recording(target, quality)

    # Recording start and supervision

    def active_count(self) -> int:
        """Active recordings plus admitted starts still spawning."""
        return len(self._active) + self.admission.pending

    def is_recording(self, target_id: int) -> bool:
        return target_id in self._active

    async def start_recording(self, target: Target, quality: str, enforce_ceiling: bool = True) -> bool:
        """
        Start recording a target if admission allows it.

        Returns:
            True if a recording process was started and tracked.
        """
        if self.is_stopping:
            get_target_logger(target.display_name).debug("Recording not started, daemon is stopping")
            return False

        if not self.admission.try_reserve(target.id, self._active.keys(), enforce_ceiling):
            get_target_logger(target.display_name).debug("Recording not admitted (already recording or ceiling reached)")
            return False

        try:
            return await self._spawn_recording(target, quality)
        finally:
            self.admission.release(target.id)

    async def _spawn_recording(self, target: Target, quality: str) -> bool:
        logger = get_target_logger(target.display_name)
        recordings_dir = self.config.recording.dir
        Path(recordings_dir).mkdir(parents=True, exist_ok=True)

        started = datetime.now()
        output_path = unique_path(build_recording_path(
            recordings_dir,
            self.config.recording.filename_template,
            target,
            quality,
            started
        ))

        try:
            process = await self.adapter.spawn_recording(target.normalized_url, quality, str(output_path))
        except OSError as e:
            logger.error(f"Failed to spawn recording process: {e}")
            return False

        pid = process.pid or -1
        if pid <= 0:
            logger.error("Failed to spawn recording process (no pid)")
            return False

        started_at = started.isoformat()
        try:
            session_id = await self.store.insert_recording_session(
                target_id=target.id,
                pid=pid,
                selected_quality=quality,
                output_path=str(output_path),
                started_at=started_at
            )
        except Exception:
            try:
                process.terminate()
            except ProcessLookupError:
                pass
            raise

        record = ActiveRecording(
            session_id=session_id,
            target=target,
            process=process,
            selected_quality=quality,
            output_path=str(output_path),
            started_at=started_at
        )
        self._active[target.id] = record
        logger.info(f"Recording started: pid={pid} quality={quality} output={output_path}")

        self._spawn_background(self._supervise(record), f"supervise-{target.id}")

        # stop() ran while this process was being spawned and did not see it
        if self.is_stopping:
            self._terminate(record)
        return True

    def _terminate(self, record: ActiveRecording) -> None:
        try:
            record.process.send_signal(signal.SIGTERM)
        except ProcessLookupError:
            pass
        except Exception as e:
            self._logger.warning(f"Failed to signal recording pid={record.pid}: {e}")

    def _forget(self, record: ActiveRecording) -> None:
        if self._active.get(record.target.id) is record:
            del self._active[record.target.id]

    async def _supervise(self, record: ActiveRecording) -> None:
        """Wait for a recording process to end, then persist and remux."""
        logger = get_target_logger(record.target.display_name)

        try:
            returncode = await record.process.wait()
        except asyncio.CancelledError:
            raise
        except Exception as e:
            self._forget(record)
            logger.error(f"Recording process errored (pid={record.pid}): {e}")
            await self._finish_session(record, PROCESS_ERROR_EXIT_CODE)
            return

        self._forget(record)

        # asyncio reports death by signal N as returncode -N
        if returncode is not None and returncode < 0:
            exit_code, signum = None, -returncode
        else:
            exit_code, signum = returncode, None

        await self._finish_session(record, exit_code)
        logger.info(f"Recording exited: pid={record.pid} code={exit_code} signal={signum}")

        if should_postprocess(
            enabled=self.config.postprocess.enabled,
            is_stopping=self.is_stopping,
            exit_code=exit_code,
            signal=signum
        ):
            self._spawn_background(
                self.remuxer.remux(record.session_id, record.output_path),
                f"remux-{record.session_id}"
            )

    async def _finish_session(self, record: ActiveRecording, exit_code: Optional[int]) -> None:
        try:
            await self.store.finish_recording_session(
                record.session_id,
                ended_at=datetime.now().isoformat(),
                exit_code=exit_code
            )
        except Exception as e:
            self._logger.error(f"Failed to persist end of session {record.session_id}: {e}")

    # Control-plane operations

    async def probe_target(self, target_id: int) -> ProbeResult:
        """
        Probe one target now; start recording if live and not recording.

        Manual starts bypass the concurrency ceiling but never start a
        second recording for the same target.

        Raises:
            NotFoundError: If the target does not exist.
        """
        target = await self.store.get_target_by_id(target_id)
        probe = await self.adapter.probe(target.normalized_url)

        if probe.is_live and not self.is_stopping and target.id not in self._active:
            quality = select_quality(target.requested_quality, probe.available_qualities)
            await self.start_recording(target, quality, enforce_ceiling=False)

        return probe

    async def reload(self) -> None:
        """
        Re-read configuration and rebuild the streamlink adapter.

        The new configuration only takes effect if the new adapter passes
        its preflight check.
        """
        raw = await self.store.list_config_raw()
        new_config = parse_config(raw)
        adapter = self.adapter_factory(new_config)
        adapter.assert_available()

        previous = self.config
        self.config = new_config
        self.adapter = adapter
        self.admission.max_concurrent = new_config.recording.max_concurrent
        self.remuxer = Remuxer(new_config.postprocess.ffmpeg_path, self.store)
        set_level(new_config.logging.level)

        if previous.streamlink.poll_interval_sec != new_config.streamlink.poll_interval_sec and not self.is_stopping:
            self.reset_poll_interval()

        self._logger.info("Configuration reloaded")

    def status(self) -> dict:
        uptime = 0
        if self.started_at:
            uptime = max(0, int((datetime.now() - self.started_at).total_seconds()))

        return {
            'running': not self.is_stopping,
            'pid': os.getpid(),
            'port': self.server.port if self.server else None,
            'uptime_sec': uptime,
            'active_recordings': len(self._active),
            'next_poll_at': self.next_poll_at.isoformat() if self.next_poll_at else None,
        }

    def recordings(self) -> List[dict]:
        return [record.to_dict() for record in self._active.values()]

    # Background tasks

    def _spawn_background(self, coro: Coroutine, name: str) -> asyncio.Task:
        task = asyncio.create_task(coro, name=name)
        self._background.add(task)
        task.add_done_callback(self._on_background_done)
        return task

    def _on_background_done(self, task: asyncio.Task) -> None:
        self._background.discard(task)
        if task.cancelled():
            return
        error = task.exception()
        if error is not None:
            self._logger.error(f"Background task {task.get_name()} failed: {error!r}", exc_info=error)
