"""
Prompt text for the build, review and fix phases.

Each prompt ends with an output contract naming the status tokens the loop
controller parses (see spec_loop.agent).
"""

from __future__ import annotations

from pathlib import Path
from typing import Optional

from spec_loop.config import ProjectConfig

FORMATTING_RULES = (
    "Formatting rules:\n"
    "- Status lines must be plain text (not in code blocks, not indented, no backticks)\n"
)


def _command_line(label: str, command: str) -> str:
    return f"- {label}: `{command}`" if command else ""


def _join(*lines: str) -> str:
    return "\n".join(line for line in lines if line)


def build_prompt(
    spec_dir: Path,
    project: ProjectConfig,
    repo_root: Optional[Path] = None,
) -> str:
    """Implement exactly one pending task; report BUILD_STATUS."""
    agents_context = ""
    if repo_root is not None and (Path(repo_root) / "AGENTS.md").exists():
        agents_context = "\n\n## Project Rules\n\nRead and follow AGENTS.md in the project root."

    checks = _join(
        _command_line("Run the verify command before finishing", project.verify_command),
        _command_line("Run tests before finishing", project.test_command),
    )
    if checks:
        checks += "\n"

    return (
        "You are implementing exactly ONE pending task from a feature spec.\n\n"
        f"## Spec\n\n{spec_dir}\n\n"
        f"Read spec.md, progress.md (if present), and tasks in {spec_dir}/tasks/."
        f"{agents_context}\n\n"
        "## Workflow\n\n"
        "1. Identify the next eligible task (status `pending`, dependencies met).\n"
        "2. Claim it by setting task status: `pending -> in-progress`.\n"
        "3. Implement only the requested task scope (no unrelated refactors).\n"
        "4. Run verification and tests.\n"
        f"{checks}"
        "5. Update task documentation:\n"
        "   - Fill **Done** checklist with specific evidence\n"
        "   - Add concrete command output notes\n"
        "   - Set status to `in-review` (not `done`)\n"
        "6. Append one entry to progress.md if present.\n"
        "7. If git is available, commit code changes with a specific message.\n"
        "   - Use `git add <specific files>` only\n"
        "   - Never stage spec files or progress.md\n\n"
        "## Constraints\n\n"
        "- Complete one task or report BLOCKED.\n"
        "- Keep response concise and factual.\n"
        "- Never mark a task `done` during build; review pass controls final completion.\n\n"
        "## CRITICAL OUTPUT CONTRACT\n\n"
        "Output EXACTLY one final status line as the very last line:\n\n"
        "BUILD_STATUS: COMPLETED_TASK\n"
        "BUILD_STATUS: BLOCKED\n"
        "BUILD_STATUS: NO_PENDING_TASKS\n\n"
        "Optional promise tags:\n"
        "- If all tasks are complete: `<promise>COMPLETE</promise>` before final status\n"
        "- If blocked: `<promise>BLOCKED</promise>` before final status\n\n"
        f"{FORMATTING_RULES}"
        "- The final BUILD_STATUS line must be the last line of the response\n"
    )


def review_prompt(
    spec_dir: Path,
    project: ProjectConfig,
    before_marker: Optional[str] = None,
) -> str:
    """
    Independent review of the changes since before_marker.

    Without a baseline commit the reviewer is pointed at the branch diff.
    """
    if before_marker:
        scope = f"Review ONLY this range: `git diff {before_marker}..HEAD`."
    else:
        scope = "Review latest changes using `git diff main...HEAD` or `git diff --staged`."

    checks = _join(
        _command_line("Run verify command", project.verify_command),
        _command_line("Run test command", project.test_command),
    )
    if checks:
        checks += "\n"

    return (
        "You are an independent reviewer. Verify, do not trust claims.\n\n"
        f"## Scope\n\n{scope}\nSpec: {spec_dir}\n\n"
        "## Checks\n\n"
        "- Project conventions from AGENTS.md (if present)\n"
        "- Task completeness and acceptance evidence\n"
        "- No debug leftovers or commented-out code\n"
        "- Reasonable structure and error handling\n"
        "- Test evidence for meaningful logic changes\n"
        f"{checks}\n"
        "If verify/test commands fail, treat as must-fix.\n\n"
        "## Report format\n\n"
        "Report:\n- Must fix\n- Should fix\n- Suggestions\n\n"
        "Then output the following 4 lines as the final lines:\n\n"
        "REVIEW_STATUS: PASS\n"
        "MUST_FIX_COUNT: 0\n"
        "SHOULD_FIX_COUNT: 0\n"
        "SUGGESTION_COUNT: 0\n\n"
        "Use FAIL with real counts when issues exist.\n"
        "If blocked, output `<promise>BLOCKED</promise>` before the status lines.\n\n"
        f"{FORMATTING_RULES}"
        "- The SUGGESTION_COUNT line must be the last line of the response\n"
    )


def fix_prompt(spec_dir: Path, project: ProjectConfig, findings: str) -> str:
    """Address the findings of a failed review; report FIXES_APPLIED or BLOCKED."""
    checks = _join(
        _command_line("Re-run verify command", project.verify_command),
        _command_line("Re-run tests", project.test_command),
    )
    if checks:
        checks += "\n"

    return (
        "You are fixing review findings from a failed review.\n\n"
        f"## Spec\n\n{spec_dir}\n\n"
        f"## Findings to fix\n\n{findings}\n\n"
        "## Workflow\n\n"
        "1. Fix all must-fix items.\n"
        "2. Fix all should-fix items.\n"
        "3. Keep scope narrow (no unrelated refactors).\n"
        "4. Re-run verification.\n"
        f"{checks}"
        "5. If git is available, commit changes with explicit file staging only.\n\n"
        "## CRITICAL OUTPUT CONTRACT\n\n"
        "Output one final status line as the very last line:\n\n"
        "BUILD_STATUS: FIXES_APPLIED\n"
        "BUILD_STATUS: BLOCKED\n\n"
        "If blocked, output `<promise>BLOCKED</promise>` before final status.\n\n"
        f"{FORMATTING_RULES}"
        "- The final BUILD_STATUS line must be the last line of the response\n"
    )
