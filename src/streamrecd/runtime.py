"""
Daemon lock and advertisement files.

daemon.lock holds the pid of the daemon owning a state directory;
runtime.json tells clients how to reach it (port, bearer token).
"""

import json
import os
from dataclasses import asdict, dataclass
from pathlib import Path
from typing import Optional

from .errors import DaemonLockedError
from .logger import get_logger


LOCK_FILE_NAME = "daemon.lock"
RUNTIME_FILE_NAME = "runtime.json"

logger = get_logger('runtime')


@dataclass
class DaemonRuntime:
    """How to reach a running daemon."""
    pid: int
    port: int
    token: str
    started_at: str
    state_dir: str

    @classmethod
    def from_dict(cls, data: dict) -> 'DaemonRuntime':
        return cls(
            pid=int(data['pid']),
            port=int(data['port']),
            token=str(data['token']),
            started_at=data.get('started_at', ''),
            state_dir=data.get('state_dir', ''),
        )


def is_pid_running(pid: int) -> bool:
    """Check whether a process exists (signal 0 probe)."""
    if not isinstance(pid, int) or pid <= 0:
        return False
    try:
        os.kill(pid, 0)
    except ProcessLookupError:
        return False
    except PermissionError:
        # Exists, owned by another user
        return True
    except OSError:
        return False
    return True


def lock_file_path(state_dir: str) -> Path:
    return Path(state_dir) / LOCK_FILE_NAME


def runtime_file_path(state_dir: str) -> Path:
    return Path(state_dir) / RUNTIME_FILE_NAME


def _read_lock_pid(path: Path) -> Optional[int]:
    try:
        return int(path.read_text(encoding='utf-8').strip())
    except (OSError, ValueError):
        return None


def acquire_lock(state_dir: str) -> None:
    """
    Take the single-instance lock for a state directory.

    A lock left behind by a dead process (or one that cannot be parsed)
    is taken over.

    Raises:
        DaemonLockedError: If the recorded pid is still alive.
    """
    path = lock_file_path(state_dir)
    path.parent.mkdir(parents=True, exist_ok=True)

    if path.exists():
        pid = _read_lock_pid(path)
        if pid is not None and pid != os.getpid() and is_pid_running(pid):
            raise DaemonLockedError(f"Daemon lock exists and process {pid} is still running.")
        logger.info(f"Taking over stale daemon lock (pid={pid})")

    path.write_text(f"{os.getpid()}\n", encoding='utf-8')


def release_lock(state_dir: str) -> None:
    path = lock_file_path(state_dir)
    if path.exists() and _read_lock_pid(path) in (None, os.getpid()):
        path.unlink()


def write_runtime(state_dir: str, runtime: DaemonRuntime) -> None:
    """Write the advertisement (owner-only permissions, it holds the token)."""
    path = runtime_file_path(state_dir)
    path.parent.mkdir(parents=True, exist_ok=True)
    tmp = path.with_suffix('.json.tmp')

    fd = os.open(tmp, os.O_WRONLY | os.O_CREAT | os.O_TRUNC, 0o600)
    with os.fdopen(fd, 'w', encoding='utf-8') as f:
        f.write(json.dumps(asdict(runtime), indent=2) + "\n")
    tmp.replace(path)


def read_runtime(state_dir: str) -> Optional[DaemonRuntime]:
    """Read the advertisement; a stale one (dead pid) is removed and None returned."""
    path = runtime_file_path(state_dir)
    try:
        data = json.loads(path.read_text(encoding='utf-8'))
        runtime = DaemonRuntime.from_dict(data)
    except (OSError, ValueError, KeyError, TypeError):
        return None

    if not is_pid_running(runtime.pid):
        clear_runtime(state_dir)
        return None
    return runtime


def clear_runtime(state_dir: str) -> None:
    path = runtime_file_path(state_dir)
    if path.exists():
        path.unlink()
