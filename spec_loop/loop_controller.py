"""
Iteration state machine for Spec Loop.

This module orchestrates one `spec-loop run`:
1. Session selection:
   - Resume from a review/fix checkpoint (build is skipped)
   - Continue the latest session that stopped at a task budget or --once
   - Otherwise start a new session at iteration 1
2. Per-iteration phases:
   - Build: one task, reported via BUILD_STATUS
   - Review: REVIEW_STATUS plus must-fix / should-fix counts
   - Fix and recheck, up to max_review_fix_loops attempts
3. Run-level exits:
   - COMPLETE, BLOCKED, CIRCUIT_OPEN, TASK_LIMIT, ONCE, MAX_ITERATIONS, ERROR
   - Every exit finalizes the session record before returning
"""

from __future__ import annotations

from contextlib import nullcontext
from dataclasses import dataclass
from datetime import datetime, timezone
from pathlib import Path
from typing import TYPE_CHECKING, Any, Callable, Optional

from spec_loop.agent import (
    BUILD_STATUS,
    PROMISE_BLOCKED,
    PROMISE_COMPLETE,
    AgentClient,
    StreamObserver,
    parse_review,
)
from spec_loop.circuit_breaker import CircuitBreaker
from spec_loop.errors import (
    AgentInvocationError,
    FixAttemptsExhaustedError,
    ProtocolViolationError,
    StorageError,
)
from spec_loop.git import head_sha
from spec_loop.models import (
    AgentResult,
    ExitReason,
    InvocationMode,
    IterationOutcome,
    IterationRecord,
    Phase,
    ResumeCheckpoint,
    ReviewVerdict,
    RunOutcome,
    TaskRecord,
    TaskStatus,
)
from spec_loop.prompts import build_prompt, fix_prompt, review_prompt
from spec_loop.resume import ResumeCoordinator
from spec_loop.session_store import SessionStore
from spec_loop.task_tracker import TaskTracker, spec_name as get_spec_name

if TYPE_CHECKING:
    from spec_loop.config import SpecLoopConfig
    from spec_loop.logger import LoopLogger

ProgressCallback = Callable[[str, dict[str, Any]], None]

# Exits after which the checkpoint is deleted. Resumable exits and ERROR keep it.
CLEARING_EXITS = frozenset({
    ExitReason.COMPLETE,
    ExitReason.BLOCKED,
    ExitReason.CIRCUIT_OPEN,
    ExitReason.MAX_ITERATIONS,
})

REVIEW_VERDICTS = frozenset({"PASS", "FAIL"})


@dataclass
class RunOptions:
    """Per-invocation switches from the CLI."""
    once: bool = False
    skip_review: bool = False
    resume: bool = False
    dry_run: bool = False

    def to_flags(self, max_tasks: int, max_loops: int) -> dict[str, Any]:
        return {
            "once": self.once,
            "max_tasks": max_tasks,
            "max_loops": max_loops,
            "skip_review": self.skip_review,
            "dry_run": self.dry_run,
        }


@dataclass
class _RunContext:
    """Mutable bookkeeping for one invocation."""
    spec_dir: Path
    spec_name: str
    session_path: Path
    mode: InvocationMode
    loop_index: int
    base_iterations: int
    total_cost: float
    started: datetime
    completed: int = 0

    @property
    def total_iterations(self) -> int:
        return self.base_iterations + self.completed


class LoopController:
    """
    Drives the agent through build, review and fix until the spec is done or
    a run-level exit condition is reached.

    Owns the circuit breaker, session store and resume coordinator for the
    duration of a run. Every collaborator can be injected; defaults are built
    from the config.
    """

    def __init__(
        self,
        config: SpecLoopConfig,
        agent: AgentClient,
        *,
        tracker: Optional[TaskTracker] = None,
        breaker: Optional[CircuitBreaker] = None,
        sessions: Optional[SessionStore] = None,
        resume: Optional[ResumeCoordinator] = None,
        logger: Optional[LoopLogger] = None,
        marker_source: Optional[Callable[[], str]] = None,
        clock: Optional[Callable[[], datetime]] = None,
        progress_callback: Optional[ProgressCallback] = None,
        stream_observer: Optional[StreamObserver] = None,
    ) -> None:
        """
        Args:
            config: Loaded configuration (limits, paths, project commands).
            agent: The external agent capability.
            marker_source: Returns the current progress marker. Defaults to
                the HEAD commit id of config.repo_root.
            clock: Returns the current UTC time.
            progress_callback: callback(event, data) for CLI output.
            stream_observer: Receives every raw agent stream line.
        """
        self.config = config
        self.agent = agent
        self.logger = logger
        self._clock = clock or (lambda: datetime.now(timezone.utc))
        self.tracker = tracker or TaskTracker(logger)
        self.breaker = breaker or CircuitBreaker.for_session_dir(
            config.sessions_path,
            threshold=config.circuit_breaker.no_progress_threshold,
            cooldown_minutes=config.circuit_breaker.cooldown_minutes,
            clock=self._clock,
            logger=logger,
        )
        self.sessions = sessions or SessionStore(config.sessions_path, logger, clock=self._clock)
        self.resume = resume or ResumeCoordinator(config.sessions_path, logger)
        self._marker_source = marker_source or (lambda: head_sha(Path(config.repo_root)))
        self._progress_callback = progress_callback
        self._stream_observer = stream_observer

    def _log(
        self, event_type: str, data: Optional[dict] = None, level: str = "info"
    ) -> None:
        """Log an event if logger is configured."""
        if self.logger:
            self.logger.log(event_type, data, level=level)

    def _emit_progress(self, event: str, data: Optional[dict] = None) -> None:
        """Emit progress event to callback if configured."""
        if self._progress_callback:
            self._progress_callback(event, data or {})

    def _marker(self) -> str:
        return self._marker_source() or ""

    def _elapsed(self, since: datetime) -> int:
        return max(0, int((self._clock() - since).total_seconds()))

    # =========================================================================
    # Run
    # =========================================================================

    def resumable_checkpoint(self) -> Optional[ResumeCheckpoint]:
        """The saved checkpoint if it lets a run skip straight to review/fix."""
        checkpoint = self.resume.load()
        if checkpoint is not None and checkpoint.skips_build:
            return checkpoint
        return None

    def run(self, spec_dir: Path, options: Optional[RunOptions] = None) -> RunOutcome:
        """
        Run the loop against spec_dir.

        With options.resume and a review/fix checkpoint, the checkpoint's spec
        and session win over spec_dir.

        Returns:
            RunOutcome with the exit reason. Agent failures, protocol
            violations and exhausted fix attempts come back as ERROR.

        Raises:
            StorageError: If state files cannot be read or written. The
                session is finalized as ERROR on a best-effort basis first.
        """
        options = options or RunOptions()
        checkpoint = self.resumable_checkpoint() if options.resume else None
        ctx = self._open_session(Path(spec_dir), checkpoint)

        if self.logger:
            scope = self.logger.session_context(ctx.session_path.name)
        else:
            scope = nullcontext()
        with scope:
            try:
                return self._run_loop(ctx, options, checkpoint)
            except (AgentInvocationError, ProtocolViolationError, FixAttemptsExhaustedError) as e:
                self._log("run_error", {
                    "error": str(e),
                    "error_class": type(e).__name__,
                    "loop_index": ctx.loop_index,
                }, level="error")
                return self._finish(ctx, ExitReason.ERROR, str(e), error=str(e))
            except StorageError as e:
                self._log("storage_error", {"error": str(e)}, level="error")
                try:
                    self._finish(ctx, ExitReason.ERROR, str(e), error=str(e))
                except StorageError:
                    pass
                raise

    def _open_session(
        self, spec_dir: Path, checkpoint: Optional[ResumeCheckpoint]
    ) -> _RunContext:
        """Pick resume / continue / new and initialize the session on disk."""
        if checkpoint is not None:
            spec_dir = Path(checkpoint.spec_dir)
            session_path = Path(checkpoint.session_path)
            loop_index = max(1, checkpoint.loop_index)
            mode = InvocationMode.RESUME
            message = (
                f"Resuming session for {get_spec_name(spec_dir)} at iteration "
                f"{loop_index} (phase: {checkpoint.phase.value})"
            )
        else:
            continuation = self.sessions.continuation_for_spec(spec_dir)
            if continuation is not None:
                session_path = continuation
                loop_index = self.sessions.iteration_count(continuation) + 1
                mode = InvocationMode.CONTINUE
                message = f"Continuing session {continuation.name} at iteration {loop_index}"
            else:
                session_path = self.sessions.new_session_path(get_spec_name(spec_dir))
                loop_index = 1
                mode = InvocationMode.NEW
                message = ""

        name = get_spec_name(spec_dir)
        record = self.sessions.ensure_initialized(
            session_path,
            spec_dir,
            name,
            limits={
                "max_loops": self.config.loop.max_loops,
                "max_review_fix_loops": self.config.loop.max_review_fix_loops,
                "max_tasks_per_run": self.config.loop.max_tasks_per_run,
            },
        )
        if message:
            self._emit_progress("session_info", {"message": message})

        return _RunContext(
            spec_dir=spec_dir,
            spec_name=name,
            session_path=session_path,
            mode=mode,
            loop_index=loop_index,
            base_iterations=self.sessions.total_iterations(session_path),
            total_cost=record.total_cost_usd or 0.0,
            started=self._clock(),
        )

    def _run_loop(
        self,
        ctx: _RunContext,
        options: RunOptions,
        checkpoint: Optional[ResumeCheckpoint],
    ) -> RunOutcome:
        limits = self.config.loop
        self.sessions.record_invocation(
            ctx.session_path,
            ctx.mode,
            options.to_flags(limits.max_tasks_per_run, limits.max_loops),
        )

        counts = self.tracker.counts(ctx.spec_dir)
        self._log("run_start", {
            "spec_dir": str(ctx.spec_dir),
            "mode": ctx.mode.value,
            "loop_index": ctx.loop_index,
            "counts": counts.to_dict(),
            "signature": self.tracker.signature(ctx.spec_dir),
        })
        self._emit_progress("run_start", {
            "spec_name": ctx.spec_name,
            "spec_dir": str(ctx.spec_dir),
            "session_id": ctx.session_path.name,
            "mode": ctx.mode.value,
            "loop_index": ctx.loop_index,
            "counts": counts,
            "max_tasks": limits.max_tasks_per_run,
        })

        attempts = 0
        pending_checkpoint = checkpoint
        while True:
            decision = self.breaker.check()
            if not decision.allowed:
                message = (
                    "Circuit breaker OPEN: no progress detected; cooling down "
                    f"({decision.remaining_minutes} minutes remaining)"
                )
                self._emit_progress("breaker_denied", {
                    "remaining_minutes": decision.remaining_minutes,
                    "failures": self.breaker.failures,
                })
                return self._finish(ctx, ExitReason.CIRCUIT_OPEN, message)
            if decision.reason:
                self._emit_progress("breaker_info", {
                    "state": decision.state.value,
                    "message": decision.reason,
                })

            counts = self.tracker.counts(ctx.spec_dir)
            if counts.remaining == 0:
                return self._finish(
                    ctx, ExitReason.COMPLETE,
                    f"All {counts.total} tasks complete",
                )
            if options.once and ctx.completed >= 1:
                return self._finish(
                    ctx, ExitReason.ONCE,
                    f"Single cycle completed (--once). {counts.remaining} tasks may remain.",
                )
            if limits.max_tasks_per_run > 0 and ctx.completed >= limits.max_tasks_per_run:
                return self._finish(
                    ctx, ExitReason.TASK_LIMIT,
                    f"Reached task budget ({limits.max_tasks_per_run}) for this run",
                )
            if attempts >= limits.max_loops:
                if options.once:
                    return self._finish(ctx, ExitReason.ONCE, "Single cycle completed (--once).")
                return self._finish(
                    ctx, ExitReason.MAX_ITERATIONS,
                    f"Reached max loops ({limits.max_loops}) with pending tasks still present",
                )

            attempts += 1
            exit_reason = self._run_iteration(ctx, options, pending_checkpoint)
            pending_checkpoint = None
            if exit_reason is not None:
                return self._finish(ctx, exit_reason, self._exit_message(exit_reason, ctx))

            ctx.loop_index += 1
            self.resume.save(ctx.spec_dir, ctx.loop_index, ctx.session_path, Phase.BUILD, "")

    def _exit_message(self, reason: ExitReason, ctx: _RunContext) -> str:
        if reason == ExitReason.COMPLETE:
            return "All tasks complete"
        if reason == ExitReason.BLOCKED:
            return f"Run blocked at iteration {ctx.loop_index}"
        return reason.value

    def _finish(
        self,
        ctx: _RunContext,
        reason: ExitReason,
        message: str,
        error: Optional[str] = None,
    ) -> RunOutcome:
        """Finalize the session, clear or keep the checkpoint, report."""
        self.sessions.finalize(ctx.session_path, ctx.total_cost, reason, ctx.total_iterations)
        if reason in CLEARING_EXITS:
            self.resume.clear()

        self._log("run_complete", {
            "exit_reason": reason.value,
            "iterations": ctx.completed,
            "total_iterations": ctx.total_iterations,
            "total_cost_usd": ctx.total_cost,
        }, level="error" if reason == ExitReason.ERROR else "info")

        outcome = RunOutcome(
            exit_reason=reason,
            session_path=ctx.session_path,
            iterations=ctx.completed,
            total_cost_usd=ctx.total_cost,
            message=message,
            error=error,
        )
        self._emit_progress("run_complete", {
            "exit_reason": reason,
            "message": message,
            "session_id": ctx.session_path.name,
            "spec_name": ctx.spec_name,
            "iterations": ctx.completed,
            "total_iterations": ctx.total_iterations,
            "total_cost_usd": ctx.total_cost,
            "duration_seconds": self._elapsed(ctx.started),
            "counts": self.tracker.counts(ctx.spec_dir),
            "error": error,
        })
        return outcome

    # =========================================================================
    # Iteration
    # =========================================================================

    def _target_task(
        self, spec_dir: Path, checkpoint: Optional[ResumeCheckpoint]
    ) -> Optional[TaskRecord]:
        if checkpoint is not None and checkpoint.task and Path(checkpoint.task).is_file():
            return TaskRecord(Path(checkpoint.task))
        return self.tracker.next_task(spec_dir)

    def _invoke(
        self,
        ctx: _RunContext,
        phase: Phase,
        label: str,
        prompt: str,
    ) -> AgentResult:
        """Run one agent invocation and account for its cost and session id."""
        self._emit_progress("phase_start", {"phase": phase.value, "label": label})
        result = self.agent.invoke(prompt, phase=phase, on_event=self._stream_observer)
        ctx.total_cost += result.cost_usd
        self.sessions.register_agent_session(ctx.session_path, result.session_id)
        return result

    def _record_phase(
        self,
        ctx: _RunContext,
        label: str,
        status: str,
        prompt: str,
        result: AgentResult,
    ) -> None:
        self.sessions.append_phase(
            ctx.session_path,
            label,
            status,
            result.cost_usd,
            result.duration_ms,
            result.output_text,
            prompt=prompt,
            agent_session_id=result.session_id,
        )
        self._log("phase_complete", {
            "loop_index": ctx.loop_index,
            "phase": label,
            "status": status,
            "cost_usd": result.cost_usd,
            "duration_ms": result.duration_ms,
        })
        self._emit_progress("phase_result", {
            "label": label,
            "status": status,
            "cost_usd": result.cost_usd,
            "duration_ms": result.duration_ms,
        })

    def _review(
        self,
        ctx: _RunContext,
        before_marker: str,
        label: str,
    ) -> tuple[ReviewVerdict, float]:
        """
        Review against before_marker. Returns the verdict and its cost.

        Raises:
            ProtocolViolationError: The review has no PASS/FAIL status and no
                BLOCKED promise.
        """
        prompt = review_prompt(ctx.spec_dir, self.config.project, before_marker or None)
        result = self._invoke(ctx, Phase.REVIEW, label, prompt)
        verdict = parse_review(result)
        self._record_phase(ctx, label, verdict.summary(), prompt, result)
        if verdict.status not in REVIEW_VERDICTS and not verdict.blocked:
            if verdict.status:
                message = f"Unexpected REVIEW_STATUS: {verdict.status!r}"
            else:
                message = "Review output missing REVIEW_STATUS: the agent did not follow the output format"
            raise ProtocolViolationError(message, phase=Phase.REVIEW.value, token=verdict.status)
        self._emit_progress("review_verdict", {
            "label": label,
            "status": verdict.status,
            "must_fix": verdict.must_fix,
            "should_fix": verdict.should_fix,
            "suggestions": verdict.suggestions,
        })
        return verdict, result.cost_usd

    def _append_iteration(
        self,
        ctx: _RunContext,
        task_name: str,
        outcome: IterationOutcome,
        started: datetime,
        cost: float,
        marker: str,
        verdict: Optional[ReviewVerdict] = None,
    ) -> None:
        self.sessions.append_iteration(ctx.session_path, IterationRecord(
            index=ctx.loop_index,
            task_name=task_name,
            outcome=outcome,
            duration_seconds=self._elapsed(started),
            cost_usd=cost,
            must_fix_count=verdict.must_fix if verdict else 0,
            should_fix_count=verdict.should_fix if verdict else 0,
            progress_marker=marker,
        ))

    def _record_progress(self, ctx: _RunContext, marker: str) -> None:
        progress = self.breaker.made_progress(marker)
        state = self.breaker.record(progress, marker)
        self._emit_progress("breaker_recorded", {
            "progress": progress,
            "state": state.value,
            "failures": self.breaker.failures,
        })

    def _set_status(self, task: Optional[TaskRecord], status: TaskStatus) -> None:
        if task is not None:
            self.tracker.set_status(task, status)

    def _run_iteration(
        self,
        ctx: _RunContext,
        options: RunOptions,
        checkpoint: Optional[ResumeCheckpoint],
    ) -> Optional[ExitReason]:
        """
        Advance one task.

        Returns:
            None to continue with the next iteration, or a run-level exit.

        Raises:
            ProtocolViolationError: Build or review output has no usable status token.
            FixAttemptsExhaustedError: Review never passed within the budget.
        """
        task = self._target_task(ctx.spec_dir, checkpoint)
        task_name = self.tracker.name(task) if task else ""
        started = self._clock()

        self.sessions.append_iteration_header(ctx.session_path, ctx.loop_index, task_name or None)
        self._emit_progress("iteration_start", {
            "index": ctx.loop_index,
            "task_name": task_name,
            "max_loops": self.config.loop.max_loops,
        })

        build_cost = 0.0
        if checkpoint is not None and checkpoint.skips_build:
            before_marker = checkpoint.before_marker
            after_build_marker = self._marker()
            self.resume.save(
                ctx.spec_dir, ctx.loop_index, ctx.session_path,
                checkpoint.phase, before_marker, task=task.path if task else None,
            )
            self._emit_progress("build_skipped", {"phase": checkpoint.phase.value})
        else:
            self.resume.save(
                ctx.spec_dir, ctx.loop_index, ctx.session_path,
                Phase.BUILD, "", task=task.path if task else None,
            )
            before_marker = self._marker()

            prompt = build_prompt(ctx.spec_dir, self.config.project, Path(self.config.repo_root))
            result = self._invoke(ctx, Phase.BUILD, "Build", prompt)
            build_cost = result.cost_usd
            build_status = result.status(BUILD_STATUS) or ""
            self._record_phase(ctx, "Build", build_status or "unknown", prompt, result)
            after_build_marker = self._marker()

            if result.has_promise(PROMISE_COMPLETE):
                ctx.completed += 1
                self._append_iteration(
                    ctx, task_name, IterationOutcome.COMPLETE, started, build_cost, after_build_marker,
                )
                return ExitReason.COMPLETE

            if result.has_promise(PROMISE_BLOCKED):
                self._append_iteration(
                    ctx, task_name, IterationOutcome.BLOCKED, started, build_cost, after_build_marker,
                )
                self._emit_progress("blocked", {"message": "Build is BLOCKED"})
                return ExitReason.BLOCKED

            if not build_status:
                raise ProtocolViolationError(
                    "Build output missing BUILD_STATUS: the agent did not follow the output format",
                    phase=Phase.BUILD.value,
                )

            if build_status == "NO_PENDING_TASKS":
                remaining = self.tracker.counts(ctx.spec_dir).remaining
                if remaining > 0:
                    self._append_iteration(
                        ctx, task_name, IterationOutcome.BLOCKED_NO_PENDING,
                        started, build_cost, after_build_marker,
                    )
                    self._emit_progress("blocked", {
                        "message": f"No pending tasks, but {remaining} tasks remain (likely blocked/in-review)",
                    })
                    return ExitReason.BLOCKED
                ctx.completed += 1
                self._append_iteration(
                    ctx, task_name, IterationOutcome.NO_PENDING, started, build_cost, after_build_marker,
                )
                return ExitReason.COMPLETE

            if build_status == "BLOCKED":
                self._append_iteration(
                    ctx, task_name, IterationOutcome.BLOCKED, started, build_cost, after_build_marker,
                )
                self._emit_progress("blocked", {"message": "Build reported BLOCKED"})
                return ExitReason.BLOCKED

            if build_status != "COMPLETED_TASK":
                raise ProtocolViolationError(
                    f"Unexpected BUILD_STATUS: {build_status!r}",
                    phase=Phase.BUILD.value,
                    token=build_status,
                )

            self._set_status(task, TaskStatus.IN_REVIEW)
            self.resume.save(
                ctx.spec_dir, ctx.loop_index, ctx.session_path,
                Phase.REVIEW, before_marker, task=task.path if task else None,
            )

        if options.skip_review:
            self._set_status(task, TaskStatus.IN_REVIEW)
            self._record_progress(ctx, after_build_marker)
            ctx.completed += 1
            self._append_iteration(
                ctx, task_name, IterationOutcome.SKIP_REVIEW, started, build_cost, after_build_marker,
            )
            self._emit_progress("task_complete", {
                "message": "Task ready for review",
                "remaining": self.tracker.counts(ctx.spec_dir).remaining,
            })
            return None

        verdict, review_cost = self._review(ctx, before_marker, "Review")
        if verdict.blocked:
            self._emit_progress("blocked", {"message": "Review is BLOCKED"})
            return ExitReason.BLOCKED

        if not verdict.needs_fix:
            self._set_status(task, TaskStatus.DONE)
            self._record_progress(ctx, after_build_marker)
            ctx.completed += 1
            self._append_iteration(
                ctx, task_name, IterationOutcome.PASS, started,
                build_cost + review_cost, after_build_marker, verdict,
            )
            self._emit_progress("task_complete", {
                "message": "Task done",
                "remaining": self.tracker.counts(ctx.spec_dir).remaining,
            })
            return None

        # Fix loop: every recheck diffs against the same baseline.
        self.resume.save(
            ctx.spec_dir, ctx.loop_index, ctx.session_path,
            Phase.FIX, before_marker, task=task.path if task else None,
        )
        max_attempts = self.config.loop.max_review_fix_loops
        fix_cost = 0.0
        findings = verdict.findings
        for attempt in range(1, max_attempts + 1):
            prompt = fix_prompt(ctx.spec_dir, self.config.project, findings)
            label = f"Fix (attempt {attempt})"
            result = self._invoke(ctx, Phase.FIX, label, prompt)
            fix_cost += result.cost_usd
            fix_status = result.status(BUILD_STATUS) or ""
            self._record_phase(ctx, label, fix_status or "applied", prompt, result)
            if result.has_promise(PROMISE_BLOCKED) or fix_status == "BLOCKED":
                self._emit_progress("blocked", {"message": "Fix build is BLOCKED"})
                return ExitReason.BLOCKED

            verdict, recheck_cost = self._review(ctx, before_marker, f"Review (recheck {attempt})")
            fix_cost += recheck_cost
            if verdict.blocked:
                self._emit_progress("blocked", {"message": "Review recheck is BLOCKED"})
                return ExitReason.BLOCKED
            if verdict.is_clean:
                break
            findings = verdict.findings
        else:
            raise FixAttemptsExhaustedError(max_attempts, verdict.must_fix, verdict.should_fix)

        self._set_status(task, TaskStatus.DONE)
        after_fix_marker = self._marker()
        self._record_progress(ctx, after_fix_marker)
        ctx.completed += 1
        self._append_iteration(
            ctx, task_name, IterationOutcome.PASS_AFTER_FIX, started,
            build_cost + review_cost + fix_cost, after_fix_marker, verdict,
        )
        self._emit_progress("task_complete", {
            "message": f"Task done after {attempt} fix attempt(s)",
            "remaining": self.tracker.counts(ctx.spec_dir).remaining,
        })
        return None
