# tests/conftest.py

from __future__ import annotations

from dataclasses import dataclass
from datetime import datetime, timedelta, timezone
from pathlib import Path
from typing import Optional, Union

import pytest
from typer.testing import CliRunner

from spec_loop.agent import AgentClient
from spec_loop.config import SpecLoopConfig
from spec_loop.models import AgentResult, Phase


BUILD_OK = "Implemented the task.\nBUILD_STATUS: COMPLETED_TASK"
REVIEW_PASS = (
    "Looks good.\n"
    "REVIEW_STATUS: PASS\n"
    "MUST_FIX_COUNT: 0\n"
    "SHOULD_FIX_COUNT: 0\n"
    "SUGGESTION_COUNT: 1"
)
REVIEW_FAIL = (
    "- Must fix: missing null check in parser\n"
    "REVIEW_STATUS: FAIL\n"
    "MUST_FIX_COUNT: 1\n"
    "SHOULD_FIX_COUNT: 0\n"
    "SUGGESTION_COUNT: 0"
)
FIX_OK = "Fixed the null check.\nBUILD_STATUS: FIXES_APPLIED"


class FakeClock:
    """Callable clock that advances by `step` on every read."""

    def __init__(self, start: Optional[datetime] = None, step: float = 1.0) -> None:
        self.now = start or datetime(2026, 3, 1, 12, 0, 0, tzinfo=timezone.utc)
        self.step = timedelta(seconds=step)

    def __call__(self) -> datetime:
        current = self.now
        self.now = self.now + self.step
        return current

    def advance(self, **kwargs: float) -> None:
        self.now = self.now + timedelta(**kwargs)


class FakeRepo:
    """Stands in for git HEAD: commit() moves the marker."""

    def __init__(self) -> None:
        self.commits = 1

    def head(self) -> str:
        return f"{self.commits:040x}"

    def commit(self) -> None:
        self.commits += 1


@dataclass
class Step:
    output: str
    cost_usd: float = 0.0
    session_id: str = "agent-session"
    commits: bool = False


class FakeAgent(AgentClient):
    """
    Scripted AgentClient. Each phase pops from its own queue; an exception
    in the queue is raised instead of returning.
    """

    def __init__(self, repo: Optional[FakeRepo] = None) -> None:
        self.repo = repo
        self.script: dict[Phase, list[Union[Step, Exception]]] = {phase: [] for phase in Phase}
        self.calls: list[tuple[Phase, str]] = []

    def queue(
        self,
        phase: Phase,
        output: Union[str, Exception],
        cost_usd: float = 0.0,
        session_id: str = "agent-session",
        commits: Optional[bool] = None,
    ) -> "FakeAgent":
        if isinstance(output, Exception):
            self.script[phase].append(output)
            return self
        if commits is None:
            commits = phase != Phase.REVIEW
        self.script[phase].append(Step(output, cost_usd, session_id, commits))
        return self

    def phases(self) -> list[Phase]:
        return [phase for phase, _ in self.calls]

    def invoke(self, prompt, *, phase, on_event=None) -> AgentResult:
        self.calls.append((phase, prompt))
        if not self.script[phase]:
            raise AssertionError(f"unexpected {phase.value} invocation")
        step = self.script[phase].pop(0)
        if isinstance(step, Exception):
            raise step
        if step.commits and self.repo is not None:
            self.repo.commit()
        if on_event is not None:
            on_event('{"type": "result", "total_cost_usd": 0.0, "duration_ms": 10}')
        return AgentResult(
            output_text=step.output,
            cost_usd=step.cost_usd,
            duration_ms=1500,
            session_id=step.session_id,
        )


class EventRecorder:
    """progress_callback that keeps every (event, data) pair."""

    def __init__(self) -> None:
        self.events: list[tuple[str, dict]] = []

    def __call__(self, event: str, data: dict) -> None:
        self.events.append((event, data))

    def names(self) -> list[str]:
        return [name for name, _ in self.events]

    def last(self, name: str) -> dict:
        for event, data in reversed(self.events):
            if event == name:
                return data
        raise KeyError(name)


def write_task(spec_dir: Path, filename: str, status: str = "pending", title: Optional[str] = None) -> Path:
    tasks = spec_dir / "tasks"
    tasks.mkdir(parents=True, exist_ok=True)
    path = tasks / filename
    heading = title or filename.rsplit(".", 1)[0]
    path.write_text(
        f"# {heading}\n\n> Status: {status}\n\n## Scope\n\nDo the thing.\n",
        encoding="utf-8",
    )
    return path


def make_spec(root: Path, name: str, statuses: list[str]) -> Path:
    """Create <root>/.agents/specs/<name> with one task per status."""
    spec_dir = root / ".agents" / "specs" / name
    (spec_dir).mkdir(parents=True, exist_ok=True)
    (spec_dir / "spec.md").write_text(f"# Spec: {name}\n", encoding="utf-8")
    for index, status in enumerate(statuses, start=1):
        write_task(spec_dir, f"{index:02d}-task.md", status, title=f"Task {index}")
    return spec_dir


@pytest.fixture
def project_root(tmp_path: Path) -> Path:
    root = tmp_path / "project"
    root.mkdir()
    return root


@pytest.fixture
def config(project_root: Path) -> SpecLoopConfig:
    return SpecLoopConfig(repo_root=str(project_root))


@pytest.fixture
def clock() -> FakeClock:
    return FakeClock()


@pytest.fixture
def repo() -> FakeRepo:
    return FakeRepo()


@pytest.fixture
def agent(repo: FakeRepo) -> FakeAgent:
    return FakeAgent(repo)


@pytest.fixture
def events() -> EventRecorder:
    return EventRecorder()


@pytest.fixture
def cli_runner() -> CliRunner:
    """Typer CLI test runner."""
    return CliRunner()
