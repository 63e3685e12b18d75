"""
External coding agent interface for Spec Loop.

This module provides:
- AgentClient, the capability interface the loop controller depends on
- ClaudeStreamClient, which runs the Claude Code CLI in stream-json mode
- DryRunAgentClient, which returns canned protocol-compliant outputs
- Status token parsing (KEY: VALUE lines, <promise>TAG</promise> tags)
- Review verdict parsing

Rendering the event stream is not done here: clients hand every raw stream
line to an optional observer callback and return only the parsed result.
"""

from __future__ import annotations

import json
import logging
import os
import subprocess
from abc import ABC, abstractmethod
from dataclasses import dataclass, field
from typing import TYPE_CHECKING, Any, Callable, Iterable, Optional

from spec_loop.errors import AgentErrorType, AgentInvocationError
from spec_loop.models import AgentResult, Phase, ReviewVerdict
from spec_loop.utils.text import has_promise, parse_kv

if TYPE_CHECKING:
    from spec_loop.config import ClaudeConfig
    from spec_loop.logger import LoopLogger

logger = logging.getLogger(__name__)

StreamObserver = Callable[[str], None]

BUILD_STATUS = "BUILD_STATUS"
REVIEW_STATUS = "REVIEW_STATUS"
MUST_FIX_COUNT = "MUST_FIX_COUNT"
SHOULD_FIX_COUNT = "SHOULD_FIX_COUNT"
SUGGESTION_COUNT = "SUGGESTION_COUNT"

PROMISE_COMPLETE = "COMPLETE"
PROMISE_BLOCKED = "BLOCKED"

DRY_RUN_SESSION_ID = "dry-run-session"


# Status token parsing

def parse_count(output: str, key: str) -> int:
    """Integer value of a count line; missing or malformed counts are 0."""
    value = parse_kv(output, key)
    if not value:
        return 0
    try:
        return max(0, int(value))
    except ValueError:
        return 0


def parse_review(result: AgentResult) -> ReviewVerdict:
    """Build a ReviewVerdict from a review (or recheck) result."""
    text = result.output_text
    return ReviewVerdict(
        status=(parse_kv(text, REVIEW_STATUS) or "").upper(),
        must_fix=parse_count(text, MUST_FIX_COUNT),
        should_fix=parse_count(text, SHOULD_FIX_COUNT),
        suggestions=parse_count(text, SUGGESTION_COUNT),
        findings=text,
        blocked=has_promise(text, PROMISE_BLOCKED),
    )


# Stream parsing

def _loads(line: str) -> Optional[dict[str, Any]]:
    try:
        value = json.loads(line)
    except json.JSONDecodeError:
        return None
    return value if isinstance(value, dict) else None


def parse_stream(lines: Iterable[str]) -> AgentResult:
    """
    Reduce a stream-json transcript to an AgentResult.

    The session id comes from the system/init event (or the result event as a
    fallback); text, cost and duration come from the final result event. If no
    result text was produced, the whole transcript is the output.
    """
    raw_lines = [line for line in lines if line.strip()]
    session_id = ""
    output_text = ""
    cost = 0.0
    duration_ms = 0

    for line in raw_lines:
        event = _loads(line)
        if event is None:
            continue
        event_type = event.get("type")
        if event_type == "system" and event.get("subtype") == "init":
            session_id = str(event.get("session_id") or session_id)
        elif event_type == "result":
            if not session_id:
                session_id = str(event.get("session_id") or "")
            if isinstance(event.get("result"), str):
                output_text = event["result"]
            if isinstance(event.get("total_cost_usd"), (int, float)):
                cost = float(event["total_cost_usd"])
            if isinstance(event.get("duration_ms"), (int, float)):
                duration_ms = int(event["duration_ms"])

    if not output_text:
        output_text = "\n".join(raw_lines)

    return AgentResult(
        output_text=output_text,
        cost_usd=cost,
        duration_ms=duration_ms,
        session_id=session_id,
    )


# Clients

class AgentClient(ABC):
    """
    Capability interface for the external coding agent.

    invoke() blocks until the agent finishes. on_event, when given, receives
    every raw stream line as it arrives.
    """

    @abstractmethod
    def invoke(
        self,
        prompt: str,
        *,
        phase: Phase,
        on_event: Optional[StreamObserver] = None,
    ) -> AgentResult:
        ...


@dataclass
class ClaudeStreamClient(AgentClient):
    """
    Runs `claude --print --output-format stream-json` with the prompt on stdin.
    """

    config: ClaudeConfig
    cwd: Optional[str] = None
    logger: Optional[LoopLogger] = None
    env: Optional[dict[str, str]] = field(default=None, repr=False)

    def build_command(self) -> list[str]:
        cmd = [
            self.config.binary,
            "--dangerously-skip-permissions",
            "--print",
            "--output-format", "stream-json",
            "--verbose",
        ]
        if self.config.model:
            cmd.extend(["--model", self.config.model])
        cmd.extend(self.config.extra_args)
        return cmd

    def _build_env(self) -> dict[str, str]:
        env = dict(self.env if self.env is not None else os.environ)
        # Nested sessions refuse to start when this is inherited.
        env.pop("CLAUDECODE", None)
        return env

    def _log(
        self,
        event_type: str,
        data: Optional[dict] = None,
        level: str = "info"
    ) -> None:
        """Log an event if logger is configured."""
        if self.logger:
            self.logger.log(event_type, data, level=level)

    def invoke(
        self,
        prompt: str,
        *,
        phase: Phase,
        on_event: Optional[StreamObserver] = None,
    ) -> AgentResult:
        """
        Execute one agent invocation.

        Raises:
            AgentInvocationError: If the binary is missing, the stream cannot
                be read, or the process exits non-zero.
        """
        cmd = self.build_command()
        self._log("agent_invocation_start", {
            "phase": phase.value,
            "prompt_length": len(prompt),
            "model": self.config.model or None,
        })

        try:
            proc = subprocess.Popen(
                cmd,
                stdin=subprocess.PIPE,
                stdout=subprocess.PIPE,
                stderr=None,
                text=True,
                encoding="utf-8",
                errors="replace",
                cwd=self.cwd,
                env=self._build_env(),
            )
        except FileNotFoundError:
            self._log("agent_not_found", {"binary": self.config.binary}, level="error")
            raise AgentInvocationError(
                f"Agent binary not found: {self.config.binary}",
                error_type=AgentErrorType.CLI_NOT_FOUND,
            )
        except OSError as e:
            raise AgentInvocationError(
                f"Failed to start {self.config.binary}: {e}",
                error_type=AgentErrorType.CLI_CRASH,
            )

        lines: list[str] = []
        try:
            try:
                proc.stdin.write(prompt)
            finally:
                proc.stdin.close()
            for raw in proc.stdout:
                line = raw.rstrip("\r\n")
                if not line.strip():
                    continue
                lines.append(line)
                if on_event is not None:
                    on_event(line)
        except (OSError, ValueError) as e:
            proc.kill()
            proc.wait()
            logger.warning("agent stream read failed: %s", e)
            raise AgentInvocationError(
                f"Failed to read agent stream: {e}",
                error_type=AgentErrorType.STREAM_ERROR,
            )

        returncode = proc.wait()
        if returncode != 0:
            self._log("agent_invocation_error", {
                "phase": phase.value,
                "returncode": returncode,
            }, level="error")
            raise AgentInvocationError(
                f"{self.config.binary} exited with code {returncode}",
                error_type=AgentErrorType.CLI_CRASH,
                returncode=returncode,
            )

        result = parse_stream(lines)
        self._log("agent_invocation_complete", {
            "phase": phase.value,
            "cost_usd": result.cost_usd,
            "duration_ms": result.duration_ms,
            "session_id": result.session_id,
        })
        return result


class DryRunAgentClient(AgentClient):
    """Returns canned, compliant outputs without running anything."""

    OUTPUTS = {
        Phase.BUILD: f"{BUILD_STATUS}: COMPLETED_TASK",
        Phase.REVIEW: (
            f"{REVIEW_STATUS}: PASS\n"
            f"{MUST_FIX_COUNT}: 0\n"
            f"{SHOULD_FIX_COUNT}: 0\n"
            f"{SUGGESTION_COUNT}: 0"
        ),
        Phase.FIX: f"{BUILD_STATUS}: FIXES_APPLIED",
    }

    def __init__(self) -> None:
        self.prompts: list[tuple[Phase, str]] = []

    def invoke(
        self,
        prompt: str,
        *,
        phase: Phase,
        on_event: Optional[StreamObserver] = None,
    ) -> AgentResult:
        self.prompts.append((phase, prompt))
        return AgentResult(
            output_text=self.OUTPUTS[phase],
            cost_usd=0.0,
            duration_ms=0,
            session_id=DRY_RUN_SESSION_ID,
        )
