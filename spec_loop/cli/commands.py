"""Top-level commands: run, status, init, version.

Note: This module is imported by cli/app.py after the main app is defined.
"""
from __future__ import annotations

import sys
from pathlib import Path
from typing import Optional

import typer
from rich.panel import Panel

from spec_loop import __version__
from spec_loop.cli.app import app
from spec_loop.cli.common import (
    get_config_or_default,
    get_console,
    get_project_root,
    load_config_required,
)
from spec_loop.errors import SpecLoopError
from spec_loop.models import EXIT_ERROR

console = get_console()


def _fail(message: str, code: int = EXIT_ERROR) -> None:
    console.print(f"[red]Error:[/red] {message}")
    raise typer.Exit(code)


def _choose_spec(specs: list[Path]) -> Optional[Path]:
    """Numbered prompt over spec directories."""
    console.print("[bold]No active spec found. Select one:[/bold]")
    for index, spec in enumerate(specs, start=1):
        console.print(f"  {index}. {spec.name}")
    choice = typer.prompt("Spec number", type=int, default=1)
    if 1 <= choice <= len(specs):
        return specs[choice - 1]
    return None


# =========================================================================
# run
# =========================================================================


@app.command()
def run(
    spec: Optional[str] = typer.Option(
        None,
        "--spec",
        "-s",
        help="Spec directory to work on (auto-detected if omitted).",
    ),
    once: bool = typer.Option(
        False,
        "--once",
        help="Run a single build/review cycle, then stop (the session stays open).",
    ),
    max_tasks: Optional[int] = typer.Option(
        None,
        "--max-tasks",
        min=0,
        help="Stop after this many tasks (0 = unlimited).",
    ),
    max_loops: Optional[int] = typer.Option(
        None,
        "--max-loops",
        help="Maximum iterations for this invocation.",
    ),
    max_review_fix_loops: Optional[int] = typer.Option(
        None,
        "--max-review-fix-loops",
        help="Fix attempts per task before giving up.",
    ),
    resume: bool = typer.Option(
        False,
        "--resume",
        help="Resume an interrupted review/fix phase, skipping the build.",
    ),
    skip_review: bool = typer.Option(
        False,
        "--skip-review",
        help="Build only; tasks are left in-review.",
    ),
    dry_run: bool = typer.Option(
        False,
        "--dry-run",
        help="Use canned agent output instead of running the agent.",
    ),
    verbose: bool = typer.Option(
        False,
        "--verbose",
        help="Show every agent stream event.",
    ),
    config_file: Optional[str] = typer.Option(
        None,
        "--config",
        "-c",
        help="Path to spec-loop.yaml (default: <project>/spec-loop.yaml).",
    ),
) -> None:
    """
    Run the build/review/fix loop until the spec is done or a limit is hit.

    Exit codes: 0 complete (or voluntary stop), 1 max loops, 2 blocked,
    3 circuit open, 4 error.
    """
    from spec_loop.agent import ClaudeStreamClient, DryRunAgentClient
    from spec_loop.cli.display import ProgressRenderer, StreamRenderer
    from spec_loop.config import CONFIG_FILENAME, apply_run_overrides, default_config
    from spec_loop.git import current_branch
    from spec_loop.logger import LoopLogger
    from spec_loop.loop_controller import LoopController, RunOptions
    from spec_loop.preflight import run_preflight_checks
    from spec_loop.resume import ResumeCoordinator
    from spec_loop.task_tracker import TaskTracker, resolve_spec_dir, spec_name as get_spec_name

    try:
        config_path = Path(config_file) if config_file else get_project_root() / CONFIG_FILENAME
        if config_path.exists():
            config = load_config_required(str(config_path))
        else:
            # Pre-flight reports the missing file
            config = default_config(str(get_project_root()))

        apply_run_overrides(
            config,
            max_loops=max_loops,
            max_review_fix_loops=max_review_fix_loops,
            max_tasks=max_tasks,
        )

        preflight = run_preflight_checks(config, require_agent=not dry_run)
        if not preflight.success:
            console.print(Panel(
                "\n".join(f"[red]✗[/red] {error}" for error in preflight.errors),
                title="Pre-flight checks failed",
                border_style="red",
            ))
            raise typer.Exit(EXIT_ERROR)

        checkpoint = None
        if resume:
            checkpoint = ResumeCoordinator(config.sessions_path).load()
            if checkpoint is None or not checkpoint.skips_build:
                console.print("[dim]No review/fix checkpoint to resume; starting normally.[/dim]")
                checkpoint = None

        if checkpoint is not None:
            spec_dir = Path(checkpoint.spec_dir)
        else:
            spec_dir = resolve_spec_dir(
                config.specs_path,
                explicit=spec,
                tracker=TaskTracker(),
                chooser=_choose_spec if sys.stdin.isatty() else None,
                warn=lambda message: console.print(f"[yellow]{message}[/yellow]"),
            )

        logger = LoopLogger(get_spec_name(spec_dir), config.logs_path)
        repo_root = Path(config.repo_root)

        if dry_run:
            agent = DryRunAgentClient()
            console.print("[yellow]Dry run: the agent will not be started.[/yellow]")
        else:
            agent = ClaudeStreamClient(config.claude, cwd=str(repo_root), logger=logger)

        stream = StreamRenderer(console, verbose=verbose, cwd=repo_root)
        controller = LoopController(
            config,
            agent,
            logger=logger,
            progress_callback=ProgressRenderer(console, current_branch(repo_root), stream),
            stream_observer=stream,
        )
        outcome = controller.run(
            spec_dir,
            RunOptions(once=once, skip_review=skip_review, resume=resume, dry_run=dry_run),
        )
    except SpecLoopError as e:
        _fail(str(e))

    raise typer.Exit(outcome.exit_code)


# =========================================================================
# status
# =========================================================================


@app.command()
def status(
    config_file: Optional[str] = typer.Option(
        None,
        "--config",
        "-c",
        help="Path to spec-loop.yaml (default: <project>/spec-loop.yaml).",
    ),
) -> None:
    """Show every spec with unfinished tasks, plus recent commits."""
    from spec_loop.cli.display import spec_panel
    from spec_loop.git import current_branch, recent_commits
    from spec_loop.task_tracker import TaskTracker, list_spec_dirs

    try:
        config = get_config_or_default(config_file)
        repo_root = Path(config.repo_root)
        tracker = TaskTracker()

        active = []
        for spec_dir in list_spec_dirs(config.specs_path):
            counts = tracker.counts(spec_dir)
            if counts.active > 0:
                active.append((spec_dir, counts))

        if not active:
            console.print("[dim]No active specs.[/dim]")
        else:
            branch = current_branch(repo_root)
            for spec_dir, counts in active:
                next_task = tracker.next_task(spec_dir)
                console.print(spec_panel(
                    spec_dir.name,
                    spec_dir.name,
                    counts,
                    branch,
                    next_task=tracker.name(next_task) if next_task else "",
                ))

        commits = recent_commits(5, repo_root)
        if commits:
            console.print("\n  [dim]Recent commits[/dim]")
            for line in commits:
                console.print(f"    [dim]{line}[/dim]", highlight=False)
    except SpecLoopError as e:
        _fail(str(e))


# =========================================================================
# init
# =========================================================================


@app.command()
def init(
    force: bool = typer.Option(
        False,
        "--force",
        "-f",
        help="Overwrite an existing spec-loop.yaml.",
    ),
    verify_cmd: Optional[str] = typer.Option(
        None,
        "--verify-cmd",
        help="Verify (lint/typecheck) command; skips detection.",
    ),
    test_cmd: Optional[str] = typer.Option(
        None,
        "--test-cmd",
        help="Test command; skips detection.",
    ),
    no_wizard: bool = typer.Option(
        False,
        "--no-wizard",
        help="Do not prompt; accept detected values.",
    ),
) -> None:
    """Set up spec-loop.yaml, the specs directory and templates."""
    from spec_loop.config import ProjectConfig, TEST_COMMANDS, VERIFY_COMMANDS, detect_project_type
    from spec_loop.scaffold import init_project

    root = get_project_root()
    project_type = detect_project_type(root)
    verify = verify_cmd if verify_cmd is not None else VERIFY_COMMANDS.get(project_type, "")
    test = test_cmd if test_cmd is not None else TEST_COMMANDS.get(project_type, "")

    if not no_wizard and sys.stdin.isatty():
        console.print(f"Detected project type: [cyan]{project_type}[/cyan]")
        if verify_cmd is None:
            verify = typer.prompt("Verify command", default=verify, show_default=True)
        if test_cmd is None:
            test = typer.prompt("Test command", default=test, show_default=True)

    try:
        result = init_project(
            root,
            ProjectConfig(type=project_type, verify_command=verify, test_command=test),
            force=force,
        )
    except SpecLoopError as e:
        _fail(str(e))

    lines = [f"[green]✓[/green] {path}" for path in result.created]
    if result.gitignore_updated:
        lines.append("[green]✓[/green] .gitignore (added .spec-loop/)")
    lines.append("")
    lines.append("Next: add a spec under .agents/specs/<name>/ with tasks/*.md, then run:")
    lines.append("  [cyan]spec-loop run[/cyan]")
    console.print(Panel(
        "\n".join(lines),
        title=f"Initialized ({project_type})",
        border_style="green",
    ))


# =========================================================================
# version
# =========================================================================


@app.command()
def version() -> None:
    """Show version."""
    console.print(f"spec-loop version {__version__}")
