"""
Logging module for the stream recorder daemon.
Provides colored console output, rotating file logs and per-target context.
"""

import logging
import sys
from datetime import datetime
from logging.handlers import RotatingFileHandler
from pathlib import Path
from typing import List, Optional


ROOT_LOGGER = 'streamrecd'
LIBRARY_LOGGERS = ('aiohttp.server', 'aiohttp.web')


# ANSI color codes for console output
class Colors:
    RESET = "\033[0m"
    RED = "\033[91m"
    GREEN = "\033[92m"
    YELLOW = "\033[93m"
    MAGENTA = "\033[95m"
    CYAN = "\033[96m"
    GRAY = "\033[90m"


class ColoredFormatter(logging.Formatter):
    """Console formatter with level colors and target prefix."""

    LEVEL_COLORS = {
        logging.DEBUG: Colors.GRAY,
        logging.INFO: Colors.GREEN,
        logging.WARNING: Colors.YELLOW,
        logging.ERROR: Colors.RED,
        logging.CRITICAL: Colors.MAGENTA,
    }

    def format(self, record: logging.LogRecord) -> str:
        color = self.LEVEL_COLORS.get(record.levelno, Colors.RESET)
        timestamp = datetime.fromtimestamp(record.created).strftime('%H:%M:%S')

        target = getattr(record, 'target', None)
        if target:
            context = f"{Colors.CYAN}[{target}]{Colors.RESET} "
        else:
            context = f"{Colors.GRAY}({_component(record)}){Colors.RESET} "

        level_str = f"{color}{record.levelname:8}{Colors.RESET}"
        message = f"{Colors.GRAY}{timestamp}{Colors.RESET} {level_str} {context}{record.getMessage()}"

        if record.exc_info:
            message += f"\n{self.formatException(record.exc_info)}"

        return message


def _component(record: logging.LogRecord) -> str:
    """'streamrecd.daemon' -> 'daemon'; foreign loggers keep their name."""
    if record.name == ROOT_LOGGER:
        return 'core'
    if record.name.startswith(f'{ROOT_LOGGER}.'):
        return record.name[len(ROOT_LOGGER) + 1:]
    return record.name


class FileFormatter(logging.Formatter):
    """Plain single-line formatter for the rotating log file."""

    def format(self, record: logging.LogRecord) -> str:
        timestamp = datetime.fromtimestamp(record.created).strftime('%Y-%m-%d %H:%M:%S')
        target = getattr(record, 'target', None) or '-'

        message = (
            f"{timestamp} | {record.levelname:8} | {_component(record):10} | "
            f"{target:20} | {record.getMessage()}"
        )

        if record.exc_info:
            message += f"\n{self.formatException(record.exc_info)}"

        return message


class TargetLoggerAdapter(logging.LoggerAdapter):
    """Tags every record with the target it concerns."""

    def __init__(self, logger: logging.Logger, target: str):
        super().__init__(logger, {'target': target})

    def process(self, msg, kwargs):
        extra = kwargs.setdefault('extra', {})
        extra['target'] = self.extra['target']
        return msg, kwargs


def _level_from_name(level: str) -> int:
    name = level.upper()
    if name == 'WARN':
        name = 'WARNING'
    return getattr(logging, name, logging.INFO)


def _build_handlers(log_file: Optional[str], max_size_mb: int, backup_count: int) -> List[logging.Handler]:
    console_handler = logging.StreamHandler(sys.stdout)
    console_handler.setFormatter(ColoredFormatter())
    handlers: List[logging.Handler] = [console_handler]

    if log_file:
        log_path = Path(log_file)
        log_path.parent.mkdir(parents=True, exist_ok=True)

        file_handler = RotatingFileHandler(
            log_path,
            maxBytes=max_size_mb * 1024 * 1024,
            backupCount=backup_count,
            encoding='utf-8'
        )
        file_handler.setFormatter(FileFormatter())
        handlers.append(file_handler)

    return handlers


def setup_logging(
    level: str = "info",
    log_file: Optional[str] = None,
    max_size_mb: int = 10,
    backup_count: int = 5
) -> logging.Logger:
    """
    Set up daemon logging.

    The daemon's own loggers log at `level`. aiohttp's server loggers share
    the same handlers at WARNING, so control-plane failures that never reach
    a handler still end up in the log.

    Args:
        level: debug, info, warning or error (case-insensitive).
        log_file: Path to log file. If None or empty, logs only to console.
        max_size_mb: Maximum log file size before rotation.
        backup_count: Number of rotated files to keep.

    Returns:
        The daemon's root logger.
    """
    handlers = _build_handlers(log_file, max_size_mb, backup_count)

    logger = logging.getLogger(ROOT_LOGGER)
    logger.setLevel(_level_from_name(level))
    logger.propagate = False
    logger.handlers.clear()
    for handler in handlers:
        logger.addHandler(handler)

    for name in LIBRARY_LOGGERS:
        library_logger = logging.getLogger(name)
        library_logger.setLevel(logging.WARNING)
        library_logger.propagate = False
        library_logger.handlers.clear()
        for handler in handlers:
            library_logger.addHandler(handler)

    return logger


def set_level(level: str) -> None:
    """Change the daemon log level at runtime (used on reload)."""
    logging.getLogger(ROOT_LOGGER).setLevel(_level_from_name(level))


def get_logger(name: Optional[str] = None) -> logging.Logger:
    """
    Get the daemon logger.

    Args:
        name: Optional name for child logger.

    Returns:
        Logger instance.
    """
    if name:
        return logging.getLogger(f'{ROOT_LOGGER}.{name}')
    return logging.getLogger(ROOT_LOGGER)


def get_target_logger(target: str) -> TargetLoggerAdapter:
    """
    Get a logger adapter for a specific target.

    Args:
        target: Display name of the monitored target.

    Returns:
        TargetLoggerAdapter with target context.
    """
    return TargetLoggerAdapter(get_logger(), target)
