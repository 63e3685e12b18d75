"""Tests for SessionStore: session.json, run.md and session.md."""
import json

import pytest

from conftest import FakeClock
from spec_loop.errors import StorageError
from spec_loop.models import ExitReason, InvocationMode, IterationOutcome, IterationRecord
from spec_loop.session_store import SessionStore


@pytest.fixture
def store(tmp_path):
    return SessionStore(tmp_path / "sessions", clock=FakeClock(step=60), version="9.9.9")


@pytest.fixture
def spec_dir(tmp_path):
    path = tmp_path / "specs" / "Auth Flow"
    path.mkdir(parents=True)
    return path


def start(store, spec_dir):
    session_path = store.new_session_path(spec_dir.name)
    store.ensure_initialized(session_path, spec_dir, spec_dir.name, limits={"max_loops": 5})
    return session_path


class TestLifecycle:

    def test_new_session_path_uses_slug(self, store, spec_dir):
        path = store.new_session_path("Auth Flow!")
        assert path.parent == store.sessions_dir
        assert path.name.endswith("_auth-flow")

    def test_ensure_initialized_writes_record_and_run_log(self, store, spec_dir):
        session_path = start(store, spec_dir)

        record = store.load(session_path)
        assert record.session_id == session_path.name
        assert record.spec == str(spec_dir)
        assert record.version == "9.9.9"
        assert record.limits == {"max_loops": 5}
        assert record.iterations == []
        assert record.exit_reason is None

        run_log = store.run_log_path(session_path).read_text(encoding="utf-8")
        assert run_log.startswith("# Run Log\n\n- Spec: Auth Flow\n")

    def test_ensure_initialized_keeps_existing(self, store, spec_dir):
        session_path = start(store, spec_dir)
        store.append_iteration(session_path, IterationRecord(1, "t", IterationOutcome.PASS))

        record = store.ensure_initialized(session_path, spec_dir, spec_dir.name)

        assert len(record.iterations) == 1
        assert store.run_log_path(session_path).read_text(encoding="utf-8").count("# Run Log") == 1

    def test_record_invocation(self, store, spec_dir):
        session_path = start(store, spec_dir)
        store.record_invocation(session_path, InvocationMode.CONTINUE, {"once": True})

        record = store.load(session_path)
        assert record.invocations[-1].mode == InvocationMode.CONTINUE
        assert record.invocations[-1].flags == {"once": True}
        run_log = store.run_log_path(session_path).read_text(encoding="utf-8")
        assert "- Mode: continue" in run_log
        assert "- Flags: once=True" in run_log

    def test_register_agent_session_once(self, store, spec_dir):
        session_path = start(store, spec_dir)
        store.record_invocation(session_path, InvocationMode.NEW, {})
        store.register_agent_session(session_path, "abc")
        store.register_agent_session(session_path, "abc")
        store.register_agent_session(session_path, "  ")

        record = store.load(session_path)
        assert record.agent_sessions == ["abc"]
        assert record.invocations[0].agent_session_ids == ["abc"]

    def test_finalize(self, store, spec_dir):
        session_path = start(store, spec_dir)
        store.finalize(session_path, 1.2345678, ExitReason.TASK_LIMIT, 7)

        record = store.load(session_path)
        assert record.exit_reason == ExitReason.TASK_LIMIT
        assert record.total_iterations == 7
        assert record.total_cost_usd == pytest.approx(1.234568)
        assert record.duration_seconds > 0
        assert record.ended_at.endswith("Z")
        assert record.is_continuable

    def test_finalize_missing_session_returns_none(self, store, tmp_path):
        assert store.finalize(tmp_path / "nope", 0.0, ExitReason.ERROR, 0) is None

    def test_load_corrupt_json_raises(self, store, spec_dir):
        session_path = start(store, spec_dir)
        store.json_path(session_path).write_text("{", encoding="utf-8")
        with pytest.raises(StorageError):
            store.load(session_path)


class TestAuditLogs:

    def test_append_phase(self, store, spec_dir):
        session_path = start(store, spec_dir)
        store.append_phase(
            session_path, "Review", "PASS; must_fix=0; should_fix=0",
            0.5, 125_000, "REVIEW_STATUS: PASS", prompt="Review it", agent_session_id="sid",
        )

        run_log = store.run_log_path(session_path).read_text(encoding="utf-8")
        assert "### Review\n- Status: PASS; must_fix=0; should_fix=0\n" in run_log
        assert "- Duration: 2m 5s" in run_log
        assert "- Cost: $0.50" in run_log
        assert "- Agent Session: sid" in run_log
        assert "#### Prompt\n\nReview it\n" in run_log
        assert "#### Output\n\nREVIEW_STATUS: PASS\n" in run_log

    def test_append_iteration(self, store, spec_dir):
        session_path = start(store, spec_dir)
        store.append_iteration(session_path, IterationRecord(
            index=3,
            task_name="Add login",
            outcome=IterationOutcome.PASS_AFTER_FIX,
            duration_seconds=45,
            cost_usd=0.25,
            must_fix_count=0,
            should_fix_count=0,
            progress_marker="0123456789abcdef",
        ))

        session_log = store.session_log_path(session_path).read_text(encoding="utf-8")
        assert session_log.startswith("# Session Log\n\n## Iteration 3 (")
        assert "- Task: Add login" in session_log
        assert "- Outcome: pass-after-fix" in session_log
        assert "- Commit: 0123456" in session_log

        record = store.load(session_path)
        assert record.iterations[0].outcome == IterationOutcome.PASS_AFTER_FIX
        assert store.iteration_count(session_path) == 1

    def test_iteration_header(self, store, spec_dir):
        session_path = start(store, spec_dir)
        store.append_iteration_header(session_path, 2, "Add login")
        run_log = store.run_log_path(session_path).read_text(encoding="utf-8")
        assert "## Iteration 2 (" in run_log
        assert "- Task: Add login" in run_log


class TestQueries:

    def test_total_iterations_prefers_finalized_value(self, store, spec_dir):
        session_path = start(store, spec_dir)
        store.append_iteration(session_path, IterationRecord(1, "t", IterationOutcome.PASS))
        assert store.total_iterations(session_path) == 1
        store.finalize(session_path, 0.0, ExitReason.ONCE, 4)
        assert store.total_iterations(session_path) == 4

    def test_total_cost(self, store, spec_dir):
        session_path = start(store, spec_dir)
        assert store.total_cost(session_path) == 0.0
        store.finalize(session_path, 2.5, ExitReason.ONCE, 1)
        assert store.total_cost(session_path) == 2.5

    def test_latest_for_spec_skips_other_specs_and_corrupt(self, store, spec_dir, tmp_path):
        other = tmp_path / "specs" / "other"
        other.mkdir()
        mine = start(store, spec_dir)
        start(store, other)
        corrupt = store.sessions_dir / "99999999_999999_broken"
        corrupt.mkdir()
        (corrupt / "session.json").write_text("not json", encoding="utf-8")

        assert store.latest_for_spec(spec_dir) == mine

    def test_list_sessions_newest_first(self, store, spec_dir):
        first = start(store, spec_dir)
        second = start(store, spec_dir)
        assert store.list_sessions() == [second, first]

    @pytest.mark.parametrize("reason,continuable", [
        (ExitReason.TASK_LIMIT, True),
        (ExitReason.ONCE, True),
        (ExitReason.COMPLETE, False),
        (ExitReason.MAX_ITERATIONS, False),
        (ExitReason.ERROR, False),
    ])
    def test_continuation_for_spec(self, store, spec_dir, reason, continuable):
        session_path = start(store, spec_dir)
        store.finalize(session_path, 0.0, reason, 1)
        expected = session_path if continuable else None
        assert store.continuation_for_spec(spec_dir) == expected

    def test_unfinalized_session_is_not_continued(self, store, spec_dir):
        start(store, spec_dir)
        assert store.continuation_for_spec(spec_dir) is None

    def test_session_json_is_pretty_printed(self, store, spec_dir):
        session_path = start(store, spec_dir)
        raw = store.json_path(session_path).read_text(encoding="utf-8")
        assert json.loads(raw)["spec_name"] == "Auth Flow"
        assert "\n  " in raw
