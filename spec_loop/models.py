"""
Core data models for Spec Loop.

This module defines the foundational data structures used throughout the loop:
- Enums for task status, breaker state, phases and run exit reasons
- Dataclasses for persisted state (breaker, resume checkpoint, session record)
- Agent results and parsed review verdicts
- JSON serialization support for all models
"""

from __future__ import annotations

import json
from dataclasses import asdict, dataclass, field
from datetime import datetime, timezone
from enum import Enum
from pathlib import Path
from typing import Any, Optional

from spec_loop.utils.text import has_promise, parse_kv


def now_iso() -> str:
    """Current UTC time as an ISO 8601 string with a Z suffix."""
    return datetime.now(timezone.utc).strftime("%Y-%m-%dT%H:%M:%SZ")


def parse_iso(value: str) -> Optional[datetime]:
    """
    Parse an ISO 8601 timestamp into an aware UTC datetime.

    Returns None for empty or unparseable input.
    """
    if not value or not isinstance(value, str):
        return None
    text = value.strip()
    if text.endswith("Z"):
        text = text[:-1] + "+00:00"
    try:
        parsed = datetime.fromisoformat(text)
    except ValueError:
        return None
    if parsed.tzinfo is None:
        parsed = parsed.replace(tzinfo=timezone.utc)
    return parsed.astimezone(timezone.utc)


class TaskStatus(Enum):
    """
    Lifecycle status of a task record.

    The value is the canonical token written after "Status:" in the task
    document.
    """
    PENDING = "pending"
    IN_PROGRESS = "in-progress"
    IN_REVIEW = "in-review"
    DONE = "done"
    BLOCKED = "blocked"
    UNKNOWN = "unknown"

    @classmethod
    def parse(cls, token: str) -> TaskStatus:
        """Map a free-text status token to a status. Unrecognized -> UNKNOWN."""
        normalized = token.strip().lower()
        for status in cls:
            if status.value == normalized:
                return status
        return cls.UNKNOWN

    @property
    def is_active(self) -> bool:
        """Pending or being worked on (in-progress / in-review)."""
        return self in (TaskStatus.PENDING, TaskStatus.IN_PROGRESS, TaskStatus.IN_REVIEW)


class CircuitState(Enum):
    """Circuit breaker states, serialized in SCREAMING_SNAKE_CASE."""
    CLOSED = "CLOSED"
    OPEN = "OPEN"
    HALF_OPEN = "HALF_OPEN"


class Phase(Enum):
    """Phase within one iteration."""
    BUILD = "build"
    REVIEW = "review"
    FIX = "fix"


class InvocationMode(Enum):
    """How a CLI invocation attached to its session."""
    NEW = "new"
    RESUME = "resume"
    CONTINUE = "continue"


class ExitReason(Enum):
    """
    Run-level terminal exit reasons.

    Each maps to a process exit code; TASK_LIMIT and ONCE are voluntary stops
    that leave the session open for continuation.
    """
    COMPLETE = "COMPLETE"
    BLOCKED = "BLOCKED"
    CIRCUIT_OPEN = "CIRCUIT_OPEN"
    TASK_LIMIT = "TASK_LIMIT"
    ONCE = "ONCE"
    MAX_ITERATIONS = "MAX_ITERATIONS"
    ERROR = "ERROR"

    @property
    def exit_code(self) -> int:
        return EXIT_CODES[self]

    @property
    def is_resumable(self) -> bool:
        return self in (ExitReason.TASK_LIMIT, ExitReason.ONCE)


EXIT_OK = 0
EXIT_MAX_ITERATIONS = 1
EXIT_BLOCKED = 2
EXIT_CIRCUIT_OPEN = 3
EXIT_ERROR = 4

EXIT_CODES: dict[ExitReason, int] = {
    ExitReason.COMPLETE: EXIT_OK,
    ExitReason.TASK_LIMIT: EXIT_OK,
    ExitReason.ONCE: EXIT_OK,
    ExitReason.MAX_ITERATIONS: EXIT_MAX_ITERATIONS,
    ExitReason.BLOCKED: EXIT_BLOCKED,
    ExitReason.CIRCUIT_OPEN: EXIT_CIRCUIT_OPEN,
    ExitReason.ERROR: EXIT_ERROR,
}


class IterationOutcome(Enum):
    """Outcome recorded for a single iteration."""
    PASS = "pass"
    PASS_AFTER_FIX = "pass-after-fix"
    SKIP_REVIEW = "skip-review"
    COMPLETE = "complete"
    BLOCKED = "blocked"
    BLOCKED_NO_PENDING = "blocked-no-pending"
    NO_PENDING = "no-pending"


@dataclass(frozen=True)
class TaskRecord:
    """
    A task document inside a spec directory.

    Status is not cached here: it always comes from the file via TaskTracker.
    """
    path: Path

    @property
    def filename(self) -> str:
        return self.path.name


@dataclass
class TaskCounts:
    """Task totals for one spec directory."""
    total: int = 0
    done: int = 0
    pending: int = 0
    in_review: int = 0
    remaining: int = 0               # not done
    active: int = 0                  # pending | in-progress | in-review

    def to_dict(self) -> dict[str, Any]:
        return asdict(self)


@dataclass
class CircuitBreakerState:
    """
    Persisted circuit breaker state.

    Serialized as {state, failures, opened_at, last_progress_marker}.
    """
    state: CircuitState = CircuitState.CLOSED
    consecutive_failures: int = 0
    opened_at: str = ""
    last_progress_marker: str = ""

    def to_dict(self) -> dict[str, Any]:
        return {
            "state": self.state.value,
            "failures": self.consecutive_failures,
            "opened_at": self.opened_at,
            "last_progress_marker": self.last_progress_marker,
        }

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> CircuitBreakerState:
        failures = int(data.get("failures", 0))
        if failures < 0:
            raise ValueError(f"negative failure count: {failures}")
        return cls(
            state=CircuitState(data.get("state", CircuitState.CLOSED.value)),
            consecutive_failures=failures,
            opened_at=data.get("opened_at") or "",
            last_progress_marker=data.get("last_progress_marker") or "",
        )


@dataclass
class ResumeCheckpoint:
    """
    Where an interrupted run was: spec, iteration, session, phase and the
    progress marker captured before the build.
    """
    spec_dir: str
    loop_index: int
    session_path: str
    phase: Phase
    before_marker: str = ""
    saved_at: str = ""
    task: Optional[str] = None       # Task document being worked on, if known

    def to_dict(self) -> dict[str, Any]:
        data = asdict(self)
        data["phase"] = self.phase.value
        return data

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> ResumeCheckpoint:
        return cls(
            spec_dir=data["spec_dir"],
            loop_index=int(data["loop_index"]),
            session_path=data["session_path"],
            phase=Phase(data["phase"]),
            before_marker=data.get("before_marker") or "",
            saved_at=data.get("saved_at") or "",
            task=data.get("task") or None,
        )

    @property
    def skips_build(self) -> bool:
        """Build already happened for this iteration."""
        return self.phase in (Phase.REVIEW, Phase.FIX)


@dataclass
class Invocation:
    """One CLI-level run of the loop against a session."""
    started_at: str
    mode: InvocationMode
    flags: dict[str, Any] = field(default_factory=dict)
    agent_session_ids: list[str] = field(default_factory=list)

    def to_dict(self) -> dict[str, Any]:
        data = asdict(self)
        data["mode"] = self.mode.value
        return data

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> Invocation:
        data = data.copy()
        data["mode"] = InvocationMode(data["mode"])
        data.setdefault("flags", {})
        data.setdefault("agent_session_ids", [])
        return cls(**data)


@dataclass
class IterationRecord:
    """One task attempt as recorded in the session."""
    index: int
    task_name: str
    outcome: IterationOutcome
    duration_seconds: int = 0
    cost_usd: float = 0.0
    must_fix_count: int = 0
    should_fix_count: int = 0
    progress_marker: str = ""
    timestamp: str = ""

    def __post_init__(self) -> None:
        if not self.timestamp:
            self.timestamp = now_iso()

    def to_dict(self) -> dict[str, Any]:
        data = asdict(self)
        data["outcome"] = self.outcome.value
        return data

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> IterationRecord:
        data = data.copy()
        data["outcome"] = IterationOutcome(data["outcome"])
        return cls(**data)


@dataclass
class SessionRecord:
    """
    Durable record of one run family against one spec.

    Persisted to <sessions>/<session_id>/session.json and rewritten whole on
    every change.
    """
    session_id: str
    spec: str                        # Spec directory path (identity)
    spec_name: str
    started_at: str
    version: str = ""
    limits: dict[str, int] = field(default_factory=dict)
    agent_sessions: list[str] = field(default_factory=list)
    invocations: list[Invocation] = field(default_factory=list)
    iterations: list[IterationRecord] = field(default_factory=list)
    ended_at: Optional[str] = None
    duration_seconds: Optional[int] = None
    total_cost_usd: Optional[float] = None
    exit_reason: Optional[ExitReason] = None
    total_iterations: Optional[int] = None

    def to_dict(self) -> dict[str, Any]:
        data = asdict(self)
        data["invocations"] = [inv.to_dict() for inv in self.invocations]
        data["iterations"] = [it.to_dict() for it in self.iterations]
        data["exit_reason"] = self.exit_reason.value if self.exit_reason else None
        return data

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> SessionRecord:
        data = data.copy()
        data["invocations"] = [Invocation.from_dict(inv) for inv in data.get("invocations", [])]
        data["iterations"] = [IterationRecord.from_dict(it) for it in data.get("iterations", [])]
        reason = data.get("exit_reason")
        data["exit_reason"] = ExitReason(reason) if reason else None
        data.setdefault("limits", {})
        data.setdefault("agent_sessions", [])
        return cls(**data)

    @property
    def is_continuable(self) -> bool:
        """Last invocation stopped voluntarily (task budget or single cycle)."""
        return self.exit_reason is not None and self.exit_reason.is_resumable

    @property
    def iteration_total(self) -> int:
        if self.total_iterations is not None:
            return self.total_iterations
        return len(self.iterations)


@dataclass
class AgentResult:
    """
    Parsed result of one external agent invocation.
    """
    output_text: str
    cost_usd: float = 0.0
    duration_ms: int = 0
    session_id: str = ""

    def status(self, key: str) -> Optional[str]:
        """Value of a `KEY: VALUE` status token, last occurrence wins."""
        return parse_kv(self.output_text, key)

    def has_promise(self, tag: str) -> bool:
        """True if the output carries <promise>TAG</promise>."""
        return has_promise(self.output_text, tag)


@dataclass
class ReviewVerdict:
    """Review outcome parsed from REVIEW_STATUS and the count lines."""
    status: str = ""
    must_fix: int = 0
    should_fix: int = 0
    suggestions: int = 0
    findings: str = ""
    blocked: bool = False

    @property
    def needs_fix(self) -> bool:
        return self.status == "FAIL" or self.must_fix > 0 or self.should_fix > 0

    @property
    def is_clean(self) -> bool:
        return self.status == "PASS" and self.must_fix == 0 and self.should_fix == 0

    def summary(self) -> str:
        return f"{self.status or 'unknown'}; must_fix={self.must_fix}; should_fix={self.should_fix}"


@dataclass
class RunOutcome:
    """What LoopController.run() hands back to the CLI."""
    exit_reason: ExitReason
    session_path: Optional[Path] = None
    iterations: int = 0
    total_cost_usd: float = 0.0
    message: str = ""
    error: Optional[str] = None

    @property
    def exit_code(self) -> int:
        return self.exit_reason.exit_code


class SpecLoopEncoder(json.JSONEncoder):
    """JSON encoder that handles Spec Loop model types."""

    def default(self, obj: Any) -> Any:
        if isinstance(obj, Enum):
            return obj.value
        if isinstance(obj, Path):
            return str(obj)
        if hasattr(obj, "to_dict"):
            return obj.to_dict()
        return super().default(obj)


def model_to_json(obj: Any, **kwargs: Any) -> str:
    """Serialize a model object to JSON string."""
    return json.dumps(obj, cls=SpecLoopEncoder, **kwargs)
