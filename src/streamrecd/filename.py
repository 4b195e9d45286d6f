"""
Recording file naming.
"""

import re
from datetime import datetime
from pathlib import Path
from typing import Optional

from .targets import Target


def slugify(value: str) -> str:
    slug = re.sub(r'[^a-z0-9]+', '-', value.lower()).strip('-')
    return slug or "stream"


def sanitize_segment(value: str) -> str:
    return re.sub(r'[^A-Za-z0-9_.-]', '_', value)


def format_for_filename(moment: datetime) -> str:
    """ISO timestamp safe for file names (':' and '.' become '-')."""
    return re.sub(r'[.:]', '-', moment.isoformat(timespec='milliseconds'))


def build_recording_path(
    recordings_dir: str,
    filename_template: str,
    target: Target,
    quality: str,
    started_at: Optional[datetime] = None
) -> Path:
    """
    Expand the filename template for a new recording.

    Supported placeholders: {slug}, {startedAt}, {quality}. A template
    without an extension gets '.ts'.
    """
    started_at = started_at or datetime.now()
    slug = slugify(target.display_name or str(target.id))

    name = (
        filename_template
        .replace('{slug}', slug)
        .replace('{startedAt}', format_for_filename(started_at))
        .replace('{quality}', sanitize_segment(quality))
    )
    if not Path(name).suffix:
        name = f"{name}.ts"

    return Path(recordings_dir) / name


def unique_path(path: Path) -> Path:
    """Return path, or the first free '<stem>_N<suffix>' sibling."""
    if not path.exists():
        return path

    counter = 1
    while True:
        candidate = path.with_name(f"{path.stem}_{counter}{path.suffix}")
        if not candidate.exists():
            return candidate
        counter += 1
