"""
Small text helpers shared by the session log, the CLI and agent output parsing.
"""

from __future__ import annotations

import re
from datetime import datetime
from typing import Optional

_SLUG_INVALID = re.compile(r"[^a-z0-9._-]+")


def format_duration(seconds: int) -> str:
    """45 -> '45s', 125 -> '2m 5s', 3900 -> '1h 5m'."""
    seconds = max(0, int(seconds))
    if seconds < 60:
        return f"{seconds}s"
    if seconds < 3600:
        return f"{seconds // 60}m {seconds % 60}s"
    return f"{seconds // 3600}h {(seconds % 3600) // 60}m"


def format_cost(value: float) -> str:
    return f"${value:.2f}"


def slugify(value: str) -> str:
    """Lowercase, collapse anything outside [a-z0-9._-] to '-', never empty."""
    slug = _SLUG_INVALID.sub("-", value.lower()).strip("-")
    return slug or "session"


def human_time(moment: datetime) -> str:
    """Local wall-clock time for markdown logs."""
    return moment.astimezone().strftime("%Y-%m-%d %H:%M:%S")


def session_stamp(moment: datetime) -> str:
    """Local timestamp used as the session directory prefix."""
    return moment.astimezone().strftime("%Y%m%d_%H%M%S")


def short_sha(sha: str, length: int = 7) -> str:
    return sha[:length]


def _first_token(text: str) -> str:
    parts = text.strip().strip("*`").split()
    return parts[0].strip("*`") if parts else ""


def parse_kv(output: str, key: str) -> Optional[str]:
    """
    Value of a `KEY: VALUE` status line.

    Lines that start with the key are preferred over lines that merely
    contain it. Within each pass the last occurrence wins, and only the
    first whitespace-separated token of the value is returned.

    Returns:
        The token, "" if the key is present with no value, or None.
    """
    prefix = f"{key}:"
    lines = output.splitlines()

    for line in reversed(lines):
        stripped = line.strip().lstrip("*`> ")
        if stripped.startswith(prefix):
            return _first_token(stripped[len(prefix):])

    for line in reversed(lines):
        pos = line.find(prefix)
        if pos >= 0:
            token = _first_token(line[pos + len(prefix):])
            if token:
                return token

    return None


def has_promise(output: str, tag: str) -> bool:
    return f"<promise>{tag}</promise>" in output
