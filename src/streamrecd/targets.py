"""
Monitored targets and normalization of user input into canonical URLs.
"""

import re
from dataclasses import dataclass
from typing import Optional
from urllib.parse import urlsplit, urlunsplit

from .errors import ValidationError


NAME_PATTERN = re.compile(r'^[A-Za-z0-9_\-.]+$')
SCHEME_PATTERN = re.compile(r'^https?://', re.IGNORECASE)


@dataclass
class Target:
    """A configured stream source."""
    id: int
    input: str
    normalized_url: str
    platform: str
    display_name: str
    requested_quality: str
    enabled: bool = True
    created_at: str = ""
    updated_at: str = ""

    def to_dict(self) -> dict:
        return {
            'id': self.id,
            'input': self.input,
            'normalized_url': self.normalized_url,
            'platform': self.platform,
            'display_name': self.display_name,
            'requested_quality': self.requested_quality,
            'enabled': self.enabled,
            'created_at': self.created_at,
            'updated_at': self.updated_at,
        }

    @classmethod
    def from_dict(cls, data: dict) -> 'Target':
        return cls(
            id=int(data['id']),
            input=data.get('input', ''),
            normalized_url=data['normalized_url'],
            platform=data.get('platform', 'generic'),
            display_name=data.get('display_name', ''),
            requested_quality=data.get('requested_quality', 'best'),
            enabled=bool(data.get('enabled', True)),
            created_at=data.get('created_at', ''),
            updated_at=data.get('updated_at', ''),
        )


@dataclass
class NormalizedTarget:
    input: str
    normalized_url: str
    platform: str
    display_name: str


def platform_from_host(hostname: str) -> str:
    host = hostname.lower()
    if 'twitch.tv' in host:
        return 'twitch'
    if 'youtube.com' in host or 'youtu.be' in host:
        return 'youtube'
    if 'kick.com' in host:
        return 'kick'
    return 'generic'


def normalize_target_input(text: Optional[str]) -> NormalizedTarget:
    """
    Turn a URL or a bare streamer name into a canonical target.

    Bare names default to Twitch.

    Raises:
        ValidationError: If the input is empty or not a valid name.
    """
    trimmed = (text or '').strip()
    if not trimmed:
        raise ValidationError("Target input cannot be empty")

    if SCHEME_PATTERN.match(trimmed):
        parts = urlsplit(trimmed)
        if not parts.hostname:
            raise ValidationError(f"Invalid target URL: {trimmed}")
        path = parts.path or '/'
        normalized = urlunsplit((parts.scheme.lower(), parts.netloc.lower(), path, parts.query, ''))
        if normalized.endswith('/'):
            normalized = normalized[:-1]

        segments = [s for s in parts.path.split('/') if s]
        display_name = segments[-1] if segments else parts.hostname
        return NormalizedTarget(
            input=trimmed,
            normalized_url=normalized,
            platform=platform_from_host(parts.hostname),
            display_name=display_name,
        )

    username = trimmed[1:] if trimmed.startswith('@') else trimmed
    if not NAME_PATTERN.match(username):
        raise ValidationError(f"Invalid streamer name: {trimmed}")

    return NormalizedTarget(
        input=trimmed,
        normalized_url=f"https://twitch.tv/{username}",
        platform='twitch',
        display_name=username,
    )
