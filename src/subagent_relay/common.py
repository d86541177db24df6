"""Small shared helpers."""

from __future__ import annotations

import re
from datetime import UTC, datetime

_UNSAFE_NAME_CHARS = re.compile(r"[^\w.-]+")


def utc_now() -> datetime:
    """Current UTC timestamp."""

    return datetime.now(tz=UTC)


def safe_file_stem(name: str) -> str:
    """Make an agent name usable as part of a file name."""

    return _UNSAFE_NAME_CHARS.sub("_", name)
