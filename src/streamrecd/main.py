"""
streamrecd - command-line entry point.

Runs the recorder daemon in the foreground, manages targets in the state
directory, and talks to a running daemon over its control plane.
"""

import argparse
import asyncio
import json
import signal
import sys
from dataclasses import asdict
from typing import Any, Optional, Tuple

import aiohttp
import yaml

from .client import DaemonApiClient
from .config import CONFIG_FILE_NAME, Config, create_example_config, default_state_dir, parse_config, resolve_user_path
from .daemon import RecorderDaemon
from .errors import AppError, ValidationError
from .logger import get_logger, setup_logging
from .runtime import read_runtime
from .state_manager import StateManager
from .targets import normalize_target_input


def _print_json(data) -> None:
    print(json.dumps(data, indent=2, ensure_ascii=False))


async def run_daemon(state_dir: str) -> int:
    """Run the daemon until SIGINT/SIGTERM or a shutdown request."""
    store = StateManager(state_dir)
    await store.load()
    config = parse_config(await store.list_config_raw())

    setup_logging(
        level=config.logging.level,
        log_file=config.logging.file or None,
        max_size_mb=config.logging.max_size_mb,
        backup_count=config.logging.backup_count
    )

    daemon = RecorderDaemon(state_dir, config, store)
    await daemon.start()

    loop = asyncio.get_running_loop()
    for sig in (signal.SIGINT, signal.SIGTERM):
        loop.add_signal_handler(sig, lambda: asyncio.create_task(daemon.stop()))

    try:
        await daemon.wait_stopped()
    finally:
        for sig in (signal.SIGINT, signal.SIGTERM):
            loop.remove_signal_handler(sig)

    return 0


async def call_daemon(state_dir: str, action: str, target_id: Optional[int] = None) -> int:
    """Send one control-plane request to the running daemon and print the answer."""
    runtime = read_runtime(state_dir)
    if runtime is None:
        print("Daemon is not running")
        return 1

    async with DaemonApiClient(runtime) as client:
        if action == 'status':
            _print_json(await client.status())
        elif action == 'reload':
            await client.reload()
            print("Configuration reloaded")
        elif action == 'recordings':
            _print_json(await client.recordings())
        elif action == 'probe':
            _print_json(await client.probe(target_id))
        elif action == 'stop':
            await client.shutdown()
            print("Daemon is stopping")

    return 0


async def _reload_if_running(state_dir: str) -> None:
    runtime = read_runtime(state_dir)
    if runtime is None:
        return

    try:
        async with DaemonApiClient(runtime) as client:
            await client.reload()
    except Exception as e:
        print(f"Warning: saved, but the running daemon did not reload: {e}")


async def add_target(state_dir: str, text: str, quality: Optional[str]) -> int:
    store = StateManager(state_dir)
    config = parse_config(await store.list_config_raw())
    normalized = normalize_target_input(text)

    requested = (quality or config.recording.default_quality).strip() or config.recording.default_quality
    target = await store.add_target(normalized, requested)
    print(f"Added target #{target.id}: {target.normalized_url} ({target.requested_quality})")

    await _reload_if_running(state_dir)
    return 0


async def remove_target(state_dir: str, identifier: str) -> int:
    store = StateManager(state_dir)
    target = await store.remove_target(identifier)
    print(f"Removed target #{target.id}: {target.normalized_url}")

    await _reload_if_running(state_dir)
    return 0


async def list_targets(state_dir: str) -> int:
    store = StateManager(state_dir)
    targets = await store.list_targets()
    if not targets:
        print("No targets configured")
        return 0

    for target in targets:
        state = "enabled" if target.enabled else "disabled"
        print(f"#{target.id:<4} {target.display_name:20} {target.requested_quality:10} {state:9} {target.normalized_url}")
    return 0


async def edit_target(
    state_dir: str,
    identifier: str,
    quality: Optional[str] = None,
    enabled: Optional[bool] = None,
    name: Optional[str] = None,
    url: Optional[str] = None
) -> int:
    changes = {}
    if url is not None:
        normalized = normalize_target_input(url)
        changes.update(
            input=normalized.input,
            normalized_url=normalized.normalized_url,
            platform=normalized.platform,
            display_name=normalized.display_name
        )
    if name is not None:
        if not name.strip():
            raise ValidationError("Display name cannot be empty")
        changes['display_name'] = name.strip()
    if quality is not None:
        if not quality.strip():
            raise ValidationError("Quality cannot be empty")
        changes['requested_quality'] = quality.strip()
    if enabled is not None:
        changes['enabled'] = enabled
    if not changes:
        raise ValidationError("Nothing to change (use --quality, --enable, --disable, --name or --url)")

    store = StateManager(state_dir)
    target = await store.update_target(identifier, **changes)
    state = "enabled" if target.enabled else "disabled"
    print(f"Updated target #{target.id}: {target.display_name} ({target.requested_quality}, {state})")

    await _reload_if_running(state_dir)
    return 0


async def show_stats(state_dir: str, as_json: bool = False) -> int:
    store = StateManager(state_dir)
    stats = await store.get_stats()
    runtime = read_runtime(state_dir)
    stats['daemon'] = {
        'running': runtime is not None,
        'pid': runtime.pid if runtime else None,
        'started_at': runtime.started_at if runtime else None,
        'last_started_at': await store.get_daemon_meta('lastStartedAt'),
        'last_poll_at': await store.get_daemon_meta('lastPollAt'),
    }

    if as_json:
        _print_json(stats)
        return 0

    targets, sessions, daemon = stats['targets'], stats['sessions'], stats['daemon']
    print(f"Targets: total={targets['total']} enabled={targets['enabled']}")
    print(
        f"Sessions: total={sessions['total']} active={sessions['active']} "
        f"finished={sessions['finished']} duration_sec={sessions['total_duration_sec']}"
    )
    line = f"Daemon: running={'yes' if daemon['running'] else 'no'}"
    if daemon['pid']:
        line += f" pid={daemon['pid']}"
    if daemon['last_poll_at']:
        line += f" last_poll={daemon['last_poll_at']}"
    print(line)
    return 0


# Configuration

def _format_value(value: Any) -> str:
    if isinstance(value, bool):
        return "true" if value else "false"
    return str(value)


def _config_key(text: str) -> Tuple[str, str]:
    """Split 'section.key' and check it names a known setting."""
    section, _, key = text.partition('.')
    known = asdict(Config())
    if section not in known or key not in known[section]:
        raise ValidationError(f"Unknown config key: {text}")
    return section, key


async def list_config(state_dir: str) -> int:
    store = StateManager(state_dir)
    effective = asdict(parse_config(await store.list_config_raw()))
    print(f"state_dir={state_dir}")
    for section, values in effective.items():
        for key, value in values.items():
            print(f"{section}.{key}={_format_value(value)}")
    return 0


async def get_config(state_dir: str, text: str) -> int:
    section, key = _config_key(text)
    store = StateManager(state_dir)
    config = parse_config(await store.list_config_raw())
    print(_format_value(getattr(getattr(config, section), key)))
    return 0


async def set_config(state_dir: str, text: str, raw_value: str) -> int:
    """Validate the whole config with the new value before writing it."""
    section, key = _config_key(text)
    try:
        value = yaml.safe_load(raw_value)
    except yaml.YAMLError as e:
        raise ValidationError(f"Invalid value for {text}: {e}")
    if isinstance(value, (dict, list)):
        raise ValidationError(f"Invalid value for {text}: expected a scalar")

    store = StateManager(state_dir)
    candidate = dict(await store.list_config_raw())
    section_data = candidate.get(section) or {}
    if not isinstance(section_data, dict):
        raise ValidationError(f"Config section '{section}' must be a mapping")
    candidate[section] = {**section_data, key: value}
    config = parse_config(candidate)

    await store.set_config_value(section, key, value)
    print(f"Updated {text}={_format_value(getattr(getattr(config, section), key))}")

    await _reload_if_running(state_dir)
    return 0


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(
        prog="streamrecd",
        description="Stream recording daemon built around streamlink and ffmpeg."
    )
    parser.add_argument(
        "--state-dir",
        default=None,
        help="State directory (default: $SR_CONFIG_DIR or ~/.config/streamrecd)"
    )

    subparsers = parser.add_subparsers(dest="command", required=True)
    subparsers.add_parser("daemon", help="Run the daemon in the foreground")
    subparsers.add_parser("status", help="Show daemon status")
    subparsers.add_parser("reload", help="Make the daemon re-read its configuration")
    subparsers.add_parser("recordings", help="List active recordings")
    subparsers.add_parser("stop", help="Stop the daemon")

    probe = subparsers.add_parser("probe", help="Probe a target now and record if live")
    probe.add_argument("target_id", type=int)

    add = subparsers.add_parser("add", help="Add a target (URL or streamer name)")
    add.add_argument("target")
    add.add_argument("quality", nargs="?", default=None)

    rm = subparsers.add_parser("rm", help="Remove a target (id, URL or name)")
    rm.add_argument("target")

    subparsers.add_parser("ls", help="List targets")

    edit = subparsers.add_parser("edit", help="Change a target (id, URL or name)")
    edit.add_argument("target")
    edit.add_argument("--quality", default=None, help="Requested quality")
    edit.add_argument("--name", default=None, help="Display name")
    edit.add_argument("--url", default=None, help="Stream URL or streamer name")
    toggle = edit.add_mutually_exclusive_group()
    toggle.add_argument("--enable", dest="enabled", action="store_const", const=True, default=None)
    toggle.add_argument("--disable", dest="enabled", action="store_const", const=False)

    stats = subparsers.add_parser("stats", help="Show target, session and daemon counts")
    stats.add_argument("--json", action="store_true", help="Output JSON")

    config = subparsers.add_parser("config", help="Read and update configuration")
    config_commands = config.add_subparsers(dest="config_command", required=True)
    config_commands.add_parser("list", help="Show every effective setting")
    config_get = config_commands.add_parser("get", help="Show one setting (section.key)")
    config_get.add_argument("key")
    config_set = config_commands.add_parser("set", help="Change one setting (section.key value)")
    config_set.add_argument("key")
    config_set.add_argument("value")

    example = subparsers.add_parser("config-example", help="Write an example config file")
    example.add_argument("path", nargs="?", default=None, help=f"Output path (default: <state-dir>/{CONFIG_FILE_NAME})")

    return parser


async def main(argv: Optional[list] = None) -> int:
    """Main entry point."""
    args = build_parser().parse_args(argv)
    state_dir = resolve_user_path(args.state_dir) if args.state_dir else default_state_dir()

    try:
        if args.command == "daemon":
            return await run_daemon(state_dir)
        if args.command in ("status", "reload", "recordings", "stop"):
            return await call_daemon(state_dir, args.command)
        if args.command == "probe":
            return await call_daemon(state_dir, "probe", args.target_id)
        if args.command == "add":
            return await add_target(state_dir, args.target, args.quality)
        if args.command == "rm":
            return await remove_target(state_dir, args.target)
        if args.command == "ls":
            return await list_targets(state_dir)
        if args.command == "edit":
            return await edit_target(state_dir, args.target, args.quality, args.enabled, args.name, args.url)
        if args.command == "stats":
            return await show_stats(state_dir, args.json)
        if args.command == "config":
            if args.config_command == "list":
                return await list_config(state_dir)
            if args.config_command == "get":
                return await get_config(state_dir, args.key)
            return await set_config(state_dir, args.key, args.value)
        if args.command == "config-example":
            path = args.path or f"{state_dir}/{CONFIG_FILE_NAME}"
            create_example_config(path)
            print(f"Example configuration written to {path}")
            return 0
    except AppError as e:
        print(f"Error: {e.message}")
        return 1
    except aiohttp.ClientError as e:
        print(f"Error: cannot reach daemon: {e}")
        return 1
    except Exception as e:
        get_logger('app').error(f"Fatal error: {e}")
        raise

    return 1


def run() -> None:
    sys.exit(asyncio.run(main()))


if __name__ == '__main__':
    run()
