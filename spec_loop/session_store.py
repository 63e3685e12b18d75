"""
Session persistence for Spec Loop.

A session is one directory under the sessions root:

    <sessions>/<YYYYmmdd_HHMMSS>_<spec-slug>/
        session.json    SessionRecord, rewritten whole on every change
        run.md          append-only run log (invocations, iterations, phases)
        session.md      append-only iteration summaries

This module handles:
- Creating and initializing session directories
- Recording invocations, agent session ids, phases and iterations
- Finalizing a session with its exit reason and totals
- Finding the session a new invocation should continue
"""

from __future__ import annotations

import json
from datetime import datetime, timezone
from pathlib import Path
from typing import TYPE_CHECKING, Any, Callable, Optional

from spec_loop import __version__
from spec_loop.errors import StorageError
from spec_loop.models import (
    ExitReason,
    Invocation,
    InvocationMode,
    IterationRecord,
    SessionRecord,
    model_to_json,
    parse_iso,
)
from spec_loop.utils.fs import (
    FileSystemError,
    append_text,
    ensure_dir,
    file_exists,
    list_dirs,
    read_file,
    safe_write,
)
from spec_loop.utils.text import (
    format_cost,
    format_duration,
    human_time,
    session_stamp,
    short_sha,
    slugify,
)

if TYPE_CHECKING:
    from spec_loop.logger import LoopLogger

SESSION_JSON = "session.json"
RUN_LOG = "run.md"
SESSION_LOG = "session.md"


def _iso(moment: datetime) -> str:
    return moment.astimezone(timezone.utc).strftime("%Y-%m-%dT%H:%M:%SZ")


class SessionStore:
    """
    Reads and writes session directories under one sessions root.
    """

    def __init__(
        self,
        sessions_dir: Path,
        logger: Optional[LoopLogger] = None,
        clock: Optional[Callable[[], datetime]] = None,
        version: str = __version__,
    ) -> None:
        self.sessions_dir = Path(sessions_dir)
        self._logger = logger
        self._clock = clock or (lambda: datetime.now(timezone.utc))
        self._version = version

    def _log(
        self,
        event_type: str,
        data: Optional[dict] = None,
        level: str = "info"
    ) -> None:
        """Log an event if logger is configured."""
        if self._logger:
            self._logger.log(event_type, data, level=level)

    # Paths

    @staticmethod
    def json_path(session_path: Path) -> Path:
        return Path(session_path) / SESSION_JSON

    @staticmethod
    def run_log_path(session_path: Path) -> Path:
        return Path(session_path) / RUN_LOG

    @staticmethod
    def session_log_path(session_path: Path) -> Path:
        return Path(session_path) / SESSION_LOG

    def new_session_path(self, spec_name: str) -> Path:
        """Fresh session directory path: <stamp>_<slug>. Not created here."""
        return self.sessions_dir / f"{session_stamp(self._clock())}_{slugify(spec_name)}"

    # Record I/O

    def load(self, session_path: Path) -> SessionRecord:
        """
        Read session.json.

        Raises:
            StorageError: If the file is missing, unreadable or malformed.
        """
        path = self.json_path(session_path)
        try:
            data = json.loads(read_file(path))
            return SessionRecord.from_dict(data)
        except FileSystemError as e:
            raise StorageError(f"Failed to read session: {e}", path=str(path))
        except (json.JSONDecodeError, KeyError, ValueError, TypeError) as e:
            raise StorageError(f"Failed to parse session {path}: {e}", path=str(path))

    def save(self, session_path: Path, record: SessionRecord) -> None:
        """Rewrite session.json as a whole document."""
        path = self.json_path(session_path)
        try:
            safe_write(path, model_to_json(record.to_dict(), indent=2))
        except FileSystemError as e:
            raise StorageError(f"Failed to write session: {e}", path=str(path))

    def _load_if_present(self, session_path: Path) -> Optional[SessionRecord]:
        if not file_exists(self.json_path(session_path)):
            return None
        return self.load(session_path)

    def _append(self, path: Path, content: str) -> None:
        try:
            append_text(path, content)
        except FileSystemError as e:
            raise StorageError(f"Failed to append to {path}: {e}", path=str(path))

    # Lifecycle

    def ensure_initialized(
        self,
        session_path: Path,
        spec_dir: Path,
        spec_name: str,
        limits: Optional[dict[str, int]] = None,
    ) -> SessionRecord:
        """
        Create the session directory, session.json and run.md if missing.

        An existing session is loaded and returned unchanged.
        """
        session_path = Path(session_path)
        try:
            ensure_dir(session_path)
        except FileSystemError as e:
            raise StorageError(str(e), path=str(session_path))

        record = self._load_if_present(session_path)
        if record is None:
            record = SessionRecord(
                session_id=session_path.name or "unknown-session",
                spec=str(spec_dir),
                spec_name=spec_name,
                started_at=_iso(self._clock()),
                version=self._version,
                limits=dict(limits or {}),
            )
            self.save(session_path, record)
            self._log("session_created", {"session_id": record.session_id})

        run_log = self.run_log_path(session_path)
        if not file_exists(run_log):
            self._append(run_log, (
                "# Run Log\n\n"
                f"- Spec: {spec_name}\n"
                f"- Spec path: {spec_dir}\n"
                f"- Started: {human_time(self._clock())}\n\n"
                "---\n"
            ))
        return record

    def record_invocation(
        self,
        session_path: Path,
        mode: InvocationMode,
        flags: dict[str, Any],
    ) -> None:
        """Append an invocation to session.json and its header to run.md."""
        flag_text = ", ".join(f"{key}={value}" for key, value in flags.items())
        self._append(self.run_log_path(session_path), (
            f"\n## Invocation ({human_time(self._clock())})\n"
            f"- Session ID: {Path(session_path).name}\n"
            f"- Mode: {mode.value}\n"
            f"- Flags: {flag_text}\n"
            "- Agent sessions: recorded per phase below and in session.json\n\n"
        ))

        record = self._load_if_present(session_path)
        if record is None:
            return
        record.invocations.append(Invocation(
            started_at=_iso(self._clock()),
            mode=mode,
            flags=dict(flags),
        ))
        self.save(session_path, record)
        self._log("invocation_recorded", {"mode": mode.value, "flags": flags})

    def register_agent_session(self, session_path: Path, agent_session_id: str) -> None:
        """Record an agent session id once, globally and on the current invocation."""
        agent_session_id = (agent_session_id or "").strip()
        if not agent_session_id:
            return
        record = self._load_if_present(session_path)
        if record is None:
            return

        changed = False
        if agent_session_id not in record.agent_sessions:
            record.agent_sessions.append(agent_session_id)
            changed = True
        if record.invocations:
            current = record.invocations[-1]
            if agent_session_id not in current.agent_session_ids:
                current.agent_session_ids.append(agent_session_id)
                changed = True
        if changed:
            self.save(session_path, record)

    # Run log

    def append_iteration_header(
        self,
        session_path: Path,
        index: int,
        task_name: Optional[str] = None,
    ) -> None:
        content = f"\n## Iteration {index} ({human_time(self._clock())})\n"
        if task_name:
            content += f"- Task: {task_name}\n"
        self._append(self.run_log_path(session_path), content + "\n")

    def append_phase(
        self,
        session_path: Path,
        phase_name: str,
        status: str,
        cost_usd: float,
        duration_ms: int,
        output: str,
        prompt: str = "",
        agent_session_id: str = "",
    ) -> None:
        """Append one phase section (status, cost, prompt, output) to run.md."""
        lines = [
            f"### {phase_name}",
            f"- Status: {status}",
            f"- Duration: {format_duration(duration_ms // 1000)}",
            f"- Cost: {format_cost(cost_usd)}",
        ]
        if agent_session_id.strip():
            lines.append(f"- Agent Session: {agent_session_id}")
        content = "\n".join(lines) + "\n\n"

        if prompt.strip():
            content += "#### Prompt\n\n" + prompt
            if not prompt.endswith("\n"):
                content += "\n"
            content += "\n"

        content += "#### Output\n\n" + output
        if not output.endswith("\n"):
            content += "\n"
        content += "\n"

        self._append(self.run_log_path(session_path), content)

    def append_iteration(self, session_path: Path, iteration: IterationRecord) -> None:
        """Append an iteration summary to session.md and session.json."""
        log_path = self.session_log_path(session_path)
        if not file_exists(log_path):
            self._append(log_path, "# Session Log\n\n")

        lines = [f"## Iteration {iteration.index} ({human_time(self._clock())})"]
        if iteration.task_name.strip():
            lines.append(f"- Task: {iteration.task_name}")
        lines += [
            f"- Outcome: {iteration.outcome.value}",
            f"- Duration: {format_duration(iteration.duration_seconds)}",
            f"- Cost: {format_cost(iteration.cost_usd)}",
            f"- Must-fix: {iteration.must_fix_count}",
            f"- Should-fix: {iteration.should_fix_count}",
        ]
        if iteration.progress_marker:
            lines.append(f"- Commit: {short_sha(iteration.progress_marker)}")
        self._append(log_path, "\n".join(lines) + "\n\n")

        record = self._load_if_present(session_path)
        if record is None:
            return
        record.iterations.append(iteration)
        self.save(session_path, record)
        self._log("iteration_recorded", {
            "index": iteration.index,
            "outcome": iteration.outcome.value,
            "cost_usd": iteration.cost_usd,
        })

    def finalize(
        self,
        session_path: Path,
        total_cost_usd: float,
        exit_reason: ExitReason,
        total_iterations: int,
    ) -> Optional[SessionRecord]:
        """
        Stamp end time, duration, cost, exit reason and iteration count.

        Duration is measured from the session's started_at.
        """
        record = self._load_if_present(session_path)
        if record is None:
            return None

        now = self._clock()
        started = parse_iso(record.started_at) or now
        record.ended_at = _iso(now)
        record.duration_seconds = max(0, int((now - started).total_seconds()))
        record.total_cost_usd = round(total_cost_usd, 6)
        record.exit_reason = exit_reason
        record.total_iterations = total_iterations
        self.save(session_path, record)
        self._log("session_finalized", {
            "session_id": record.session_id,
            "exit_reason": exit_reason.value,
            "total_iterations": total_iterations,
            "total_cost_usd": record.total_cost_usd,
        })
        return record

    # Queries

    def iteration_count(self, session_path: Path) -> int:
        """Iteration records appended so far; 0 if unreadable."""
        try:
            record = self._load_if_present(session_path)
        except StorageError:
            return 0
        return len(record.iterations) if record else 0

    def total_iterations(self, session_path: Path) -> int:
        """Finalized iteration total, falling back to the record count."""
        try:
            record = self._load_if_present(session_path)
        except StorageError:
            return 0
        return record.iteration_total if record else 0

    def total_cost(self, session_path: Path) -> float:
        try:
            record = self._load_if_present(session_path)
        except StorageError:
            return 0.0
        if record is None or record.total_cost_usd is None:
            return 0.0
        return record.total_cost_usd

    def list_sessions(self) -> list[Path]:
        """Session directories, newest first (by name)."""
        return sorted(list_dirs(self.sessions_dir), key=lambda p: p.name, reverse=True)

    def latest_for_spec(self, spec_dir: Path) -> Optional[Path]:
        """
        Newest session whose spec matches spec_dir.

        Sessions with a missing or unparseable session.json are skipped.
        """
        spec = str(spec_dir)
        for session_path in self.list_sessions():
            try:
                record = self._load_if_present(session_path)
            except StorageError as e:
                self._log("session_skipped", {
                    "session": session_path.name,
                    "error": str(e),
                }, level="debug")
                continue
            if record is not None and record.spec == spec:
                return session_path
        return None

    def continuation_for_spec(self, spec_dir: Path) -> Optional[Path]:
        """The latest session for spec_dir, if it stopped with a continuable exit."""
        latest = self.latest_for_spec(spec_dir)
        if latest is None:
            return None
        try:
            record = self.load(latest)
        except StorageError:
            return None
        return latest if record.is_continuable else None
