from __future__ import annotations

import os

from .constants import NAME_MAX_CHARS


class InvalidName(ValueError):
    pass


def expand_path(p: str) -> str:
    return os.path.expanduser(os.path.expandvars(p))


def normalize_name(value, max_chars: int = NAME_MAX_CHARS) -> str:
    """Return the cleaned display name or raise InvalidName."""
    if not isinstance(value, str):
        raise InvalidName("name must be text")

    s = value.strip()
    if not s:
        raise InvalidName("name must not be empty")

    if max_chars and len(s) > int(max_chars):
        raise InvalidName(f"name longer than {int(max_chars)} characters")

    # Embedded newlines or NUL would break the line framing of every
    # announcement that carries the name.
    if "\n" in s or "\r" in s or "\x00" in s:
        raise InvalidName("name contains control characters")

    return s
