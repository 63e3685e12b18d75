"""Display helpers and renderers for the CLI.

Contains Rich formatting for loop progress events (ProgressRenderer) and for
the agent's stream-json output (StreamRenderer), plus the spec panels shared
by `run` and `status`.
This module should NOT import from commands.py to avoid circular imports.
"""
from __future__ import annotations

import json
from pathlib import Path
from typing import Any, Optional

from rich.console import Console
from rich.markup import escape
from rich.panel import Panel
from rich.text import Text

from spec_loop.models import ExitReason, TaskCounts
from spec_loop.utils.text import format_cost, format_duration

# Exit reason display names and colors
EXIT_DISPLAY: dict[ExitReason, tuple[str, str]] = {
    ExitReason.COMPLETE: ("Complete", "green bold"),
    ExitReason.TASK_LIMIT: ("Task budget reached", "green"),
    ExitReason.ONCE: ("Single cycle done", "green"),
    ExitReason.MAX_ITERATIONS: ("Max loops reached", "yellow bold"),
    ExitReason.BLOCKED: ("Blocked", "yellow bold"),
    ExitReason.CIRCUIT_OPEN: ("Circuit open", "red"),
    ExitReason.ERROR: ("Error", "red bold"),
}

# Agent tools that only add noise to the stream unless --verbose
INTERNAL_TOOLS = frozenset({
    "TodoWrite",
    "TodoRead",
    "AskUserQuestion",
    "EnterPlanMode",
    "ExitPlanMode",
    "EnterWorktree",
})

STEP = "      "


def format_exit_reason(reason: ExitReason) -> Text:
    """Format an exit reason as colored text."""
    display_name, style = EXIT_DISPLAY.get(reason, (reason.value, "white"))
    return Text(display_name, style=style)


def progress_bar(current: int, total: int, width: int = 16, label: str = "done") -> str:
    """'████░░░░ 2/4 done' style bar."""
    if total == 0:
        return f"0/0 {label}"
    filled = width * current // total
    return f"{'█' * filled}{'░' * (width - filled)} {current}/{total} {label}"


def trim_single_line(text: str, max_len: int) -> str:
    """Collapse whitespace to single spaces and cut at max_len characters."""
    collapsed = " ".join(text.split())
    if len(collapsed) > max_len:
        return collapsed[:max_len] + "…"
    return collapsed


def compact_path(text: str, cwd: Optional[Path]) -> str:
    """Drop the '<cwd>/' prefix wherever it appears."""
    if cwd is None:
        return text
    return text.replace(f"{cwd}/", "")


def spec_panel(
    title: str,
    spec_name: str,
    counts: TaskCounts,
    branch: str,
    next_task: str = "",
    max_tasks: int = 0,
) -> Panel:
    """Spec summary panel used by `run` (header) and `status` (one per spec)."""
    lines = [
        f"[bold]{escape(spec_name)}[/bold]",
        f"{progress_bar(counts.done, counts.total)} ◆ {counts.remaining} remaining",
        f"{counts.pending} pending ◆ {counts.in_review} in-review",
        f"[dim]{escape(branch)}[/dim]",
    ]
    if next_task:
        lines.append(f"→ Next: {escape(next_task)}")
    if max_tasks > 0:
        lines.append(f"Task budget  {max_tasks} this run")
    return Panel("\n".join(lines), title=title, border_style="cyan", expand=False)


class StreamRenderer:
    """
    Observer for raw agent stream lines.

    Shows session init, tool use, thinking markers, tool errors, Bash
    results and the final result line. Counts tool uses per invocation;
    call reset() before each invocation.
    """

    def __init__(
        self,
        console: Console,
        verbose: bool = False,
        cwd: Optional[Path] = None,
    ) -> None:
        self.console = console
        self.verbose = verbose
        self.cwd = cwd
        self.tool_count = 0
        self._last_bash_tool_id = ""

    def reset(self) -> None:
        self.tool_count = 0
        self._last_bash_tool_id = ""

    def _step(self, message: str, marker: str = "[blue]→[/blue]") -> None:
        self.console.print(f"{STEP}{marker} {escape(message)}", highlight=False)

    def __call__(self, line: str) -> None:
        try:
            event = json.loads(line)
        except json.JSONDecodeError:
            event = None
        if not isinstance(event, dict):
            if self.verbose:
                self._step(f"non-json: {trim_single_line(line, 100)}")
            return

        event_type = event.get("type")
        if event_type == "system":
            if event.get("subtype") == "init":
                model = event.get("model") or "unknown"
                session = str(event.get("session_id") or "unknown")
                self._step(f"session  model={model}  id={session[:8]}")
        elif event_type == "assistant":
            self._render_assistant(_first_content(event))
        elif event_type == "user":
            self._render_tool_result(_first_content(event))
        elif event_type == "result":
            cost = float(event.get("total_cost_usd") or 0.0)
            duration = format_duration(int(event.get("duration_ms") or 0) // 1000)
            self._step(
                f"result   {duration} ◆ {format_cost(cost)} ◆ {self.tool_count} tools",
                marker="[green]✓[/green]",
            )

    def _render_assistant(self, content: Optional[dict[str, Any]]) -> None:
        if content is None:
            return
        content_type = content.get("type")

        if content_type == "tool_use":
            name = content.get("name") or "tool"
            if name in INTERNAL_TOOLS and not self.verbose:
                return
            tool_input = content.get("input")
            detail = ""
            if isinstance(tool_input, dict):
                for key in ("command", "file_path", "pattern"):
                    if tool_input.get(key) is not None:
                        value = tool_input[key]
                        detail = value if isinstance(value, str) else ""
                        break
            detail = compact_path(detail, self.cwd)

            self._last_bash_tool_id = (content.get("id") or "") if name == "Bash" else ""
            self.tool_count += 1
            if detail:
                self._step(f"{name:<8} {trim_single_line(detail, 80)}")
            else:
                self._step(name)
        elif content_type == "thinking":
            self._step("thinking...")
        elif content_type == "text" and self.verbose:
            text = content.get("text") or ""
            if text.strip():
                self._step(f"text: {trim_single_line(text, 100)}")

    def _render_tool_result(self, content: Optional[dict[str, Any]]) -> None:
        if content is None or content.get("type") != "tool_result":
            return
        body = content.get("content")
        message = body if isinstance(body, str) else ""

        if content.get("is_error"):
            self._step(f"error: {trim_single_line(message, 100)}")
        elif self._last_bash_tool_id and content.get("tool_use_id") == self._last_bash_tool_id:
            self._step(trim_single_line(message, 100) if message.strip() else "done")
            self._last_bash_tool_id = ""


def _first_content(event: dict[str, Any]) -> Optional[dict[str, Any]]:
    message = event.get("message")
    if not isinstance(message, dict):
        return None
    content = message.get("content")
    if isinstance(content, list) and content and isinstance(content[0], dict):
        return content[0]
    return None


class ProgressRenderer:
    """
    progress_callback for LoopController: prints one line (or panel) per event.
    """

    def __init__(
        self,
        console: Console,
        branch: str = "",
        stream: Optional[StreamRenderer] = None,
    ) -> None:
        self.console = console
        self.branch = branch
        self.stream = stream

    def __call__(self, event: str, data: dict[str, Any]) -> None:
        handler = getattr(self, f"_on_{event}", None)
        if handler is not None:
            handler(data)

    def _ok(self, message: str) -> None:
        self.console.print(f"{STEP}[green]✓[/green] {escape(message)}", highlight=False)

    def _warn(self, message: str) -> None:
        self.console.print(f"{STEP}[yellow]![/yellow] {escape(message)}", highlight=False)

    def _info(self, message: str) -> None:
        self.console.print(f"{STEP}[blue]→[/blue] {escape(message)}", highlight=False)

    def _on_session_info(self, data: dict[str, Any]) -> None:
        self.console.print(f"[dim]{escape(data['message'])}[/dim]")

    def _on_run_start(self, data: dict[str, Any]) -> None:
        self.console.print(spec_panel(
            "Spec",
            data["spec_name"],
            data["counts"],
            self.branch,
            max_tasks=data.get("max_tasks", 0),
        ))
        self.console.print(f"[dim]Session {escape(data['session_id'])} ({data['mode']})[/dim]")

    def _on_breaker_denied(self, data: dict[str, Any]) -> None:
        self.console.print(
            f"[red]Circuit breaker OPEN after {data['failures']} iterations without progress; "
            f"{data['remaining_minutes']} minutes of cooldown remaining[/red]"
        )

    def _on_breaker_info(self, data: dict[str, Any]) -> None:
        self._warn(data["message"])

    def _on_iteration_start(self, data: dict[str, Any]) -> None:
        label = f"Iteration {data['index']}"
        if data.get("task_name"):
            label += f" ◆ {data['task_name']}"
        self.console.rule(f"[dim]{escape(label)}[/dim]", align="left", style="dim")

    def _on_phase_start(self, data: dict[str, Any]) -> None:
        if self.stream is not None:
            self.stream.reset()
        self.console.print(f"\n  [blue]◆[/blue] [bold]{escape(data['label'])}[/bold]")

    def _on_phase_result(self, data: dict[str, Any]) -> None:
        duration = format_duration(int(data.get("duration_ms") or 0) // 1000)
        self._ok(f"{data['label']}: {data['status']} ({duration}, {format_cost(data.get('cost_usd') or 0.0)})")

    def _on_review_verdict(self, data: dict[str, Any]) -> None:
        message = (
            f"must-fix {data['must_fix']} ◆ should-fix {data['should_fix']} "
            f"◆ suggestions {data['suggestions']}"
        )
        if data.get("status") == "PASS" and not data["must_fix"] and not data["should_fix"]:
            self._ok(message)
        else:
            self._warn(message)

    def _on_build_skipped(self, data: dict[str, Any]) -> None:
        self._info(f"Build already done; resuming at {data['phase']}")

    def _on_blocked(self, data: dict[str, Any]) -> None:
        self._warn(data["message"])

    def _on_task_complete(self, data: dict[str, Any]) -> None:
        self.console.print(
            f"\n  [green]✓[/green] [bold]{escape(data['message'])}[/bold] "
            f"[dim]→ {data['remaining']} remaining[/dim]"
        )

    def _on_breaker_recorded(self, data: dict[str, Any]) -> None:
        if not data["progress"]:
            self._warn(f"No progress detected ({data['failures']} in a row, breaker {data['state']})")

    def _on_run_complete(self, data: dict[str, Any]) -> None:
        reason: ExitReason = data["exit_reason"]
        counts: TaskCounts = data["counts"]
        _, style = EXIT_DISPLAY.get(reason, (reason.value, "white"))

        lines = [
            escape(data["message"]),
            "",
            f"Spec        {escape(data['spec_name'])}",
            f"Tasks       {counts.done}/{counts.total} done",
            f"Iterations  {data['iterations']} this run, {data['total_iterations']} total",
            f"Duration    {format_duration(data['duration_seconds'])}",
            f"Cost        {format_cost(data['total_cost_usd'])}",
            f"Session     {escape(data['session_id'])}",
        ]
        if data.get("error"):
            lines.append(f"[red]Error       {escape(data['error'])}[/red]")
        self.console.print()
        self.console.print(Panel(
            "\n".join(lines),
            title=format_exit_reason(reason),
            border_style=style.split()[0],
            expand=False,
        ))
