"""
Quality fallback selection.

Picks the rendition label passed to streamlink from the quality a target
asked for and the labels the stream currently offers.
"""

import re
from dataclasses import dataclass
from typing import List, Optional


QUALITY_PATTERN = re.compile(r'^(\d{3,4})p(\d{2,3})?', re.IGNORECASE)
SUFFIX_DELIMITERS = re.compile(r'[,_+]')
DEFAULT_FPS = 30


@dataclass(frozen=True)
class QualityCandidate:
    label: str
    height: int
    fps: int


def parse_quality(label: str) -> Optional[QualityCandidate]:
    """Parse '<height>p[<fps>]' (ignoring a _/+/, suffix), or None."""
    cleaned = SUFFIX_DELIMITERS.split(label, maxsplit=1)[0].strip()
    match = QUALITY_PATTERN.match(cleaned)
    if not match:
        return None

    height = int(match.group(1))
    fps = int(match.group(2)) if match.group(2) else DEFAULT_FPS
    return QualityCandidate(label=label, height=height, fps=fps)


def select_quality(requested: str, available: List[str]) -> str:
    """
    Resolve the requested quality against the available renditions.

    Args:
        requested: Quality the target asked for, e.g. "1080p", "best".
        available: Labels reported by the probe. Order is not significant.

    Returns:
        The label to record. "best"/"worst" are passed through for
        streamlink to interpret.
    """
    if not available:
        return requested or "best"

    normalized = (requested or "").strip().lower()
    if not normalized:
        return "best"

    if normalized in ("best", "worst"):
        return normalized

    for label in available:
        if label.lower() == normalized:
            return label

    wanted = parse_quality(normalized)
    candidates = [c for c in (parse_quality(label) for label in available) if c is not None]

    if wanted is None or not candidates:
        return "best" if "best" in available else available[0]

    lower_or_equal = [c for c in candidates if c.height <= wanted.height]
    if lower_or_equal:
        top_height = max(c.height for c in lower_or_equal)
        same_height = [c for c in lower_or_equal if c.height == top_height]
        for candidate in same_height:
            if candidate.fps == 60:
                return candidate.label
        # max() keeps the first of equal fps, so the result follows input order
        return max(same_height, key=lambda c: c.fps).label

    closest = min(
        candidates,
        key=lambda c: (abs(c.height - wanted.height), -c.fps, -c.height)
    )
    return closest.label
