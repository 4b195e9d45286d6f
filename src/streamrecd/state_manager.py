"""
State Manager for the stream recorder daemon.
JSON-based store for targets, recording sessions and daemon metadata,
plus access to the YAML configuration kept next to it.
"""

import asyncio
import json
from dataclasses import dataclass
from datetime import datetime
from pathlib import Path
from typing import Any, Dict, List, Optional

import aiofiles
import yaml

from .config import CONFIG_FILE_NAME
from .errors import NotFoundError, ValidationError
from .logger import get_logger
from .targets import NormalizedTarget, Target


STATE_FILE_NAME = "state.json"


@dataclass
class RecordingSession:
    """One recording attempt for a target."""
    id: int
    target_id: int
    pid: int
    selected_quality: str
    output_path: str
    started_at: str
    ended_at: Optional[str] = None
    exit_code: Optional[int] = None

    def to_dict(self) -> dict:
        return {
            'id': self.id,
            'target_id': self.target_id,
            'pid': self.pid,
            'selected_quality': self.selected_quality,
            'output_path': self.output_path,
            'started_at': self.started_at,
            'ended_at': self.ended_at,
            'exit_code': self.exit_code,
        }

    @classmethod
    def from_dict(cls, data: dict) -> 'RecordingSession':
        return cls(
            id=int(data['id']),
            target_id=int(data['target_id']),
            pid=int(data['pid']),
            selected_quality=data.get('selected_quality', ''),
            output_path=data.get('output_path', ''),
            started_at=data.get('started_at', ''),
            ended_at=data.get('ended_at'),
            exit_code=data.get('exit_code'),
        )


def _empty_state() -> dict:
    return {
        'next_target_id': 1,
        'next_session_id': 1,
        'targets': [],
        'sessions': [],
        'daemon_meta': {},
    }


class StateManager:
    """
    Persistent store consumed by the daemon and the CLI.

    Features:
    - JSON document written atomically (temp file + replace)
    - Every operation re-reads the file, so edits made by another
      process (the CLI) are visible to a running daemon
    - Serialized with an asyncio lock inside one process
    """

    def __init__(self, state_dir: str):
        """
        Initialize state manager.

        Args:
            state_dir: Directory holding state.json and config.yaml.
        """
        self.state_dir = Path(state_dir)
        self.state_file = self.state_dir / STATE_FILE_NAME
        self.config_file = self.state_dir / CONFIG_FILE_NAME
        self._logger = get_logger('state')
        self._lock = asyncio.Lock()

        self.state_dir.mkdir(parents=True, exist_ok=True)

    async def load(self) -> None:
        """Check that the state file is readable, starting fresh if absent."""
        async with self._lock:
            if not self.state_file.exists():
                self._logger.info("No state file found, starting fresh")
                await self._write_unlocked(_empty_state())
                return

            data = await self._read_unlocked()
            active = sum(1 for s in data['sessions'] if s.get('ended_at') is None)
            self._logger.info(
                f"Loaded state: {len(data['targets'])} targets, "
                f"{len(data['sessions'])} sessions ({active} without end time)"
            )

    async def _read_unlocked(self) -> dict:
        """Read state from file (caller must hold lock)."""
        if not self.state_file.exists():
            return _empty_state()

        async with aiofiles.open(self.state_file, 'r', encoding='utf-8') as f:
            raw = await f.read()

        try:
            data = json.loads(raw) if raw.strip() else {}
        except json.JSONDecodeError as e:
            backup = self.state_file.with_suffix(f".corrupt-{datetime.now():%Y%m%d%H%M%S}.json")
            self.state_file.replace(backup)
            self._logger.error(f"State file is corrupt ({e}), moved to {backup.name} and starting fresh")
            return _empty_state()

        state = _empty_state()
        state.update(data)
        return state

    async def _write_unlocked(self, data: dict) -> None:
        """Save state to file (caller must hold lock)."""
        data['last_updated'] = datetime.now().isoformat()
        tmp_file = self.state_file.with_suffix(self.state_file.suffix + ".tmp")

        async with aiofiles.open(tmp_file, 'w', encoding='utf-8') as f:
            await f.write(json.dumps(data, indent=2, ensure_ascii=False))
        tmp_file.replace(self.state_file)

    # Targets

    async def list_targets(self) -> List[Target]:
        """All targets in creation order."""
        async with self._lock:
            data = await self._read_unlocked()
        return [Target.from_dict(t) for t in data['targets']]

    async def list_enabled_targets(self) -> List[Target]:
        """Enabled targets in creation order."""
        return [t for t in await self.list_targets() if t.enabled]

    async def get_target_by_id(self, target_id: int) -> Target:
        for target in await self.list_targets():
            if target.id == target_id:
                return target
        raise NotFoundError(f"Target id {target_id} not found")

    async def find_target(self, identifier: str) -> Target:
        """Look a target up by id, URL, original input or display name."""
        targets = await self.list_targets()

        if identifier.isdigit():
            for target in targets:
                if target.id == int(identifier):
                    return target

        for target in targets:
            if identifier in (target.normalized_url, target.input, target.display_name):
                return target

        raise NotFoundError(f"Target not found: {identifier}")

    async def add_target(self, normalized: NormalizedTarget, requested_quality: str) -> Target:
        """
        Add a new enabled target.

        Raises:
            ValidationError: If a target with the same URL already exists.
        """
        async with self._lock:
            data = await self._read_unlocked()
            if any(t['normalized_url'] == normalized.normalized_url for t in data['targets']):
                raise ValidationError(f"Target already exists: {normalized.normalized_url}")

            now = datetime.now().isoformat()
            target = Target(
                id=data['next_target_id'],
                input=normalized.input,
                normalized_url=normalized.normalized_url,
                platform=normalized.platform,
                display_name=normalized.display_name,
                requested_quality=requested_quality,
                enabled=True,
                created_at=now,
                updated_at=now,
            )
            data['next_target_id'] += 1
            data['targets'].append(target.to_dict())
            await self._write_unlocked(data)

        return target

    async def remove_target(self, identifier: str) -> Target:
        target = await self.find_target(identifier)
        async with self._lock:
            data = await self._read_unlocked()
            data['targets'] = [t for t in data['targets'] if t['id'] != target.id]
            await self._write_unlocked(data)
        return target

    async def update_target(self, identifier: str, **changes: Any) -> Target:
        """Update fields (requested_quality, enabled, display_name, ...) of a target."""
        target = await self.find_target(identifier)
        async with self._lock:
            data = await self._read_unlocked()
            for row in data['targets']:
                if row['id'] == target.id:
                    new_url = changes.get('normalized_url')
                    if new_url and any(
                        t['normalized_url'] == new_url and t['id'] != target.id for t in data['targets']
                    ):
                        raise ValidationError(f"Target already exists: {new_url}")
                    for key, value in changes.items():
                        if key in ('id', 'created_at') or key not in row:
                            raise ValidationError(f"Cannot update target field: {key}")
                        row[key] = value
                    row['updated_at'] = datetime.now().isoformat()
                    updated = Target.from_dict(row)
                    break
            else:
                raise NotFoundError(f"Target not found: {identifier}")
            await self._write_unlocked(data)
        return updated

    # Recording sessions

    async def insert_recording_session(
        self,
        target_id: int,
        pid: int,
        selected_quality: str,
        output_path: str,
        started_at: str
    ) -> int:
        """Persist a new session row and return its id."""
        async with self._lock:
            data = await self._read_unlocked()
            session = RecordingSession(
                id=data['next_session_id'],
                target_id=target_id,
                pid=pid,
                selected_quality=selected_quality,
                output_path=output_path,
                started_at=started_at,
            )
            data['next_session_id'] += 1
            data['sessions'].append(session.to_dict())
            await self._write_unlocked(data)
        return session.id

    async def _update_session(self, session_id: int, **fields: Any) -> None:
        async with self._lock:
            data = await self._read_unlocked()
            for row in data['sessions']:
                if row['id'] == session_id:
                    row.update(fields)
                    break
            else:
                raise NotFoundError(f"Recording session {session_id} not found")
            await self._write_unlocked(data)

    async def finish_recording_session(self, session_id: int, ended_at: str, exit_code: Optional[int]) -> None:
        await self._update_session(session_id, ended_at=ended_at, exit_code=exit_code)

    async def update_recording_session_output_path(self, session_id: int, output_path: str) -> None:
        await self._update_session(session_id, output_path=output_path)

    async def list_sessions(self) -> List[RecordingSession]:
        async with self._lock:
            data = await self._read_unlocked()
        return [RecordingSession.from_dict(s) for s in data['sessions']]

    async def list_active_sessions(self) -> List[RecordingSession]:
        """Sessions without an end time (running, or orphaned by a crash)."""
        return [s for s in await self.list_sessions() if s.ended_at is None]

    async def get_stats(self) -> Dict[str, Dict[str, int]]:
        """Target and session counts, plus the summed duration of finished sessions."""
        async with self._lock:
            data = await self._read_unlocked()

        targets = data['targets']
        sessions = data['sessions']
        finished = [s for s in sessions if s.get('ended_at')]

        duration = 0.0
        for session in finished:
            try:
                delta = datetime.fromisoformat(session['ended_at']) - datetime.fromisoformat(session['started_at'])
            except (KeyError, TypeError, ValueError):
                continue
            duration += max(delta.total_seconds(), 0.0)

        return {
            'targets': {
                'total': len(targets),
                'enabled': sum(1 for t in targets if t.get('enabled')),
            },
            'sessions': {
                'total': len(sessions),
                'active': len(sessions) - len(finished),
                'finished': len(finished),
                'total_duration_sec': int(duration),
            },
        }

    # Daemon metadata

    async def get_daemon_meta(self, key: str) -> Optional[str]:
        async with self._lock:
            data = await self._read_unlocked()
        return data['daemon_meta'].get(key)

    async def upsert_daemon_meta(self, key: str, value: str) -> None:
        async with self._lock:
            data = await self._read_unlocked()
            data['daemon_meta'][key] = value
            await self._write_unlocked(data)

    # Configuration

    async def list_config_raw(self) -> Dict[str, Any]:
        """Raw mapping from config.yaml ({} when the file is missing)."""
        if not self.config_file.exists():
            return {}

        async with aiofiles.open(self.config_file, 'r', encoding='utf-8') as f:
            data = yaml.safe_load(await f.read())

        if data is None:
            return {}
        if not isinstance(data, dict):
            raise ValidationError(f"{self.config_file.name} must contain a mapping")
        return data

    async def set_config_value(self, section: str, key: str, value: Any) -> None:
        """Write one value into config.yaml, keeping the rest of the file."""
        async with self._lock:
            data = await self.list_config_raw()
            data.setdefault(section, {})[key] = value
            async with aiofiles.open(self.config_file, 'w', encoding='utf-8') as f:
                await f.write(yaml.safe_dump(data, sort_keys=False))
