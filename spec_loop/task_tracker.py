"""
Task lifecycle tracking for Spec Loop.

Task status lives inside the task document itself, on a single marker line:

    > Status: pending

The tracker locates, reads and rewrites exactly that line and leaves every
other byte of the document untouched. Task order is the lexicographic order
of the filenames under <spec>/tasks/; "next task" selection depends on
nothing else.
"""

from __future__ import annotations

import re
from pathlib import Path
from typing import TYPE_CHECKING, Callable, Optional

from spec_loop.errors import SpecLoopError, TaskTrackerError
from spec_loop.models import TaskCounts, TaskRecord, TaskStatus
from spec_loop.utils.fs import FileSystemError, list_dirs, list_files, safe_write

if TYPE_CHECKING:
    from spec_loop.logger import LoopLogger

TASKS_SUBDIR = "tasks"
TASK_PATTERN = "*.md"

# First matching line wins; an optional blockquote prefix is allowed. Lines
# are split on "\n" only; the value stops at "\r" or any other Unicode line
# separator, and whatever follows it is kept.
_SEPARATORS = "\r\v\f\x1c\x1d\x1e\x85\u2028\u2029"
STATUS_LINE = re.compile(
    rf"^(?P<prefix>[ \t]*>?[ \t]*Status:[ \t]*)(?P<value>[^{_SEPARATORS}\n]*?)[ \t]*(?=[{_SEPARATORS}\n]|$)"
)


def _read_raw(path: Path) -> str:
    """Read a document without newline translation."""
    try:
        return path.read_bytes().decode("utf-8")
    except (OSError, UnicodeDecodeError) as e:
        raise TaskTrackerError(f"Failed to read task {path}: {e}", path=str(path))


def split_lines(content: str) -> list[str]:
    """Lines with their "\\n" kept; no other character ends a line."""
    lines = [line + "\n" for line in content.split("\n")]
    lines[-1] = lines[-1][:-1]
    if not lines[-1]:
        lines.pop()
    return lines


def find_status_line(content: str) -> Optional[tuple[int, re.Match]]:
    """
    Locate the first marker line.

    Returns:
        (line_index, match) or None if the document has no marker.
    """
    for i, line in enumerate(split_lines(content)):
        match = STATUS_LINE.match(line)
        if match:
            return i, match
    return None


def rewrite_status_line(content: str, token: str) -> str:
    """
    Replace the first marker line's value with token, or append a marker.

    Everything outside the value, including line endings and text after an
    in-line separator, is preserved verbatim. This is independent of
    TaskStatus so the storage format stays decoupled from the domain enum.
    """
    lines = split_lines(content)
    found = find_status_line(content)
    if found is not None:
        i, match = found
        prefix = match.group("prefix")
        if not prefix.endswith((" ", "\t")):
            prefix += " "
        lines[i] = f"{prefix}{token}{lines[i][match.end('value'):]}"
        return "".join(lines)

    prefix = content
    if prefix and not prefix.endswith("\n"):
        prefix += "\n"
    return f"{prefix}\n> Status: {token}\n"


class TaskTracker:
    """
    Reads and writes task status markers inside a spec directory.
    """

    def __init__(self, logger: Optional[LoopLogger] = None) -> None:
        self._logger = logger

    def _log(
        self,
        event_type: str,
        data: Optional[dict] = None,
        level: str = "info"
    ) -> None:
        """Log an event if logger is configured."""
        if self._logger:
            self._logger.log(event_type, data, level=level)

    # Listing

    def list(self, spec_dir: Path) -> list[TaskRecord]:
        """Task records in filename order. Non-markdown files are skipped."""
        return [TaskRecord(path) for path in list_files(Path(spec_dir) / TASKS_SUBDIR, TASK_PATTERN)]

    # Status

    def status(self, task: TaskRecord) -> TaskStatus:
        """
        Status from the first marker line.

        A missing marker or an unreadable document yields UNKNOWN.
        """
        try:
            content = _read_raw(task.path)
        except TaskTrackerError:
            return TaskStatus.UNKNOWN
        found = find_status_line(content)
        if found is None:
            return TaskStatus.UNKNOWN
        _, match = found
        return TaskStatus.parse(match.group("value"))

    def set_status(self, task: TaskRecord, new_status: TaskStatus) -> None:
        """
        Rewrite the task's marker line to new_status.

        Raises:
            TaskTrackerError: If the document cannot be read or written.
        """
        content = _read_raw(task.path)
        updated = rewrite_status_line(content, new_status.value)
        if updated == content:
            return
        try:
            safe_write(task.path, updated)
        except FileSystemError as e:
            raise TaskTrackerError(f"Failed to write task {task.path}: {e}", path=str(task.path))
        self._log("task_status_set", {
            "task": task.filename,
            "status": new_status.value,
        })

    def name(self, task: TaskRecord) -> str:
        """Display name: first '# ' heading, else the filename."""
        try:
            content = _read_raw(task.path)
        except TaskTrackerError:
            return str(task.path)
        for line in split_lines(content):
            if line.startswith("# "):
                return line[2:].strip()
        return task.filename

    # Selection

    def next_pending(self, spec_dir: Path) -> Optional[TaskRecord]:
        """First task (in list order) whose status is pending."""
        for task in self.list(spec_dir):
            if self.status(task) == TaskStatus.PENDING:
                return task
        return None

    def next_open(self, spec_dir: Path) -> Optional[TaskRecord]:
        """First task that is pending, in-progress or in-review."""
        for task in self.list(spec_dir):
            if self.status(task).is_active:
                return task
        return None

    def next_task(self, spec_dir: Path) -> Optional[TaskRecord]:
        """next_pending, falling back to next_open."""
        return self.next_pending(spec_dir) or self.next_open(spec_dir)

    # Aggregates

    def counts(self, spec_dir: Path) -> TaskCounts:
        counts = TaskCounts()
        for task in self.list(spec_dir):
            status = self.status(task)
            counts.total += 1
            if status == TaskStatus.DONE:
                counts.done += 1
            else:
                counts.remaining += 1
            if status == TaskStatus.PENDING:
                counts.pending += 1
            if status == TaskStatus.IN_REVIEW:
                counts.in_review += 1
            if status.is_active:
                counts.active += 1
        return counts

    def signature(self, spec_dir: Path) -> str:
        """'<file>:<status>;' for every task, in order."""
        return "".join(
            f"{task.filename}:{self.status(task).value};" for task in self.list(spec_dir)
        )


# Spec directory discovery

def spec_name(spec_dir: Path) -> str:
    """A spec's name is the last segment of its path."""
    return Path(spec_dir).name or "unknown-spec"


def list_spec_dirs(specs_dir: Path) -> list[Path]:
    """Every spec directory under specs_dir, sorted by name."""
    return list_dirs(specs_dir)


class SpecResolutionError(SpecLoopError):
    """Raised when no single spec directory can be chosen."""
    pass


def resolve_spec_dir(
    specs_dir: Path,
    explicit: Optional[str] = None,
    tracker: Optional[TaskTracker] = None,
    chooser: Optional[Callable[[list[Path]], Optional[Path]]] = None,
    warn: Optional[Callable[[str], None]] = None,
) -> Path:
    """
    Pick the spec directory a run should operate on.

    Order of preference: the explicit path; the only spec with active tasks;
    the only spec at all (with a warning); an interactive choice via chooser.

    Raises:
        SpecResolutionError: If no spec can be chosen unambiguously.
    """
    if explicit:
        path = Path(explicit)
        if not path.is_dir():
            raise SpecResolutionError(f"spec directory does not exist: {path}")
        return path

    tracker = tracker or TaskTracker()
    all_specs = list_spec_dirs(specs_dir)
    if not all_specs:
        raise SpecResolutionError(f"no spec directories found under {specs_dir}")

    active = [spec for spec in all_specs if tracker.counts(spec).active > 0]
    if len(active) == 1:
        return active[0]
    if len(active) > 1:
        raise SpecResolutionError("multiple active specs detected; pass --spec explicitly")

    if len(all_specs) == 1:
        if warn:
            warn(f"No active tasks detected. Using the only available spec: {all_specs[0]}")
        return all_specs[0]

    if chooser is not None:
        chosen = chooser(all_specs)
        if chosen is not None:
            return chosen

    raise SpecResolutionError(
        "no active specs found (no pending/in-progress/in-review tasks). pass --spec <path>"
    )
