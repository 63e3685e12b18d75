"""
Event log for Spec Loop runs.

This module handles:
- Appending one JSON object per event to <logs>/<spec>-YYYY-MM-DD.jsonl
- Tagging events with the session they belong to
- Forwarding warnings and errors to the stdlib `spec_loop.events` logger
- Reading a day's events back with simple filters
"""

from __future__ import annotations

import json
import logging
from contextlib import contextmanager
from datetime import datetime, timezone
from enum import Enum
from pathlib import Path
from typing import Any, Iterator, Optional, Union

_events = logging.getLogger("spec_loop.events")


class LogLevel(str, Enum):
    DEBUG = "debug"
    INFO = "info"
    WARN = "warn"
    ERROR = "error"


_STDLIB_LEVELS = {
    LogLevel.WARN: logging.WARNING,
    LogLevel.ERROR: logging.ERROR,
}


def _today() -> str:
    return datetime.now(timezone.utc).strftime("%Y-%m-%d")


def _timestamp() -> str:
    return datetime.now(timezone.utc).isoformat().replace("+00:00", "Z")


class LoopLogger:
    """
    Per-spec JSONL event log.

    Entries carry timestamp, level, event_type, spec and data; entries
    written inside session_context() also carry session_id.
    """

    def __init__(self, spec_name: str, logs_dir: Path) -> None:
        self.spec_name = spec_name
        self.logs_dir = Path(logs_dir)
        self._session_id: Optional[str] = None

    def path_for(self, date: Optional[str] = None) -> Path:
        return self.logs_dir / f"{self.spec_name}-{date or _today()}.jsonl"

    def log(
        self,
        event_type: str,
        data: Optional[dict[str, Any]] = None,
        level: Union[LogLevel, str] = LogLevel.INFO,
    ) -> None:
        level = LogLevel(level)
        entry: dict[str, Any] = {
            "timestamp": _timestamp(),
            "level": level.value,
            "event_type": event_type,
            "spec": self.spec_name,
            "data": data or {},
        }
        if self._session_id:
            entry["session_id"] = self._session_id

        path = self.path_for()
        path.parent.mkdir(parents=True, exist_ok=True)
        with open(path, "a", encoding="utf-8") as handle:
            handle.write(json.dumps(entry, default=str) + "\n")

        if level in _STDLIB_LEVELS:
            _events.log(_STDLIB_LEVELS[level], "%s %s", event_type, entry["data"])

    def debug(self, event_type: str, data: Optional[dict[str, Any]] = None) -> None:
        self.log(event_type, data, LogLevel.DEBUG)

    def info(self, event_type: str, data: Optional[dict[str, Any]] = None) -> None:
        self.log(event_type, data, LogLevel.INFO)

    def warn(self, event_type: str, data: Optional[dict[str, Any]] = None) -> None:
        self.log(event_type, data, LogLevel.WARN)

    def error(self, event_type: str, data: Optional[dict[str, Any]] = None) -> None:
        self.log(event_type, data, LogLevel.ERROR)

    @contextmanager
    def session_context(self, session_id: str) -> Iterator[LoopLogger]:
        """
        Scope events to a session.

        session_start and session_end bracket the block; the previous session
        id (if any) is restored on exit.
        """
        outer = self._session_id
        self._session_id = session_id
        self.info("session_start", {"session_id": session_id})
        try:
            yield self
        finally:
            self.info("session_end", {"session_id": session_id})
            self._session_id = outer

    def _entries(self, path: Path) -> Iterator[dict[str, Any]]:
        with open(path, "r", encoding="utf-8") as handle:
            for raw in handle:
                raw = raw.strip()
                if not raw:
                    continue
                try:
                    yield json.loads(raw)
                except json.JSONDecodeError:
                    continue

    def read_logs(
        self,
        date: Optional[str] = None,
        level: Optional[Union[LogLevel, str]] = None,
        event_type: Optional[str] = None,
        session_id: Optional[str] = None,
        limit: Optional[int] = None,
    ) -> list[dict[str, Any]]:
        """
        Events for one day (today by default), oldest first.

        Unparseable lines are skipped. Every given filter must match.
        """
        path = self.path_for(date)
        if not path.exists():
            return []

        wanted = {
            "level": LogLevel(level).value if level else None,
            "event_type": event_type,
            "session_id": session_id,
        }
        found: list[dict[str, Any]] = []
        for entry in self._entries(path):
            if any(value and entry.get(key) != value for key, value in wanted.items()):
                continue
            found.append(entry)
            if limit and len(found) >= limit:
                break
        return found
