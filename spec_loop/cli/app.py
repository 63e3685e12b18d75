"""Typer app and global options for the spec-loop CLI.

Commands live in commands.py, which decorates `app` when imported at the end
of this module.
"""
from __future__ import annotations

from pathlib import Path
from typing import Optional

import typer

from spec_loop import __version__
from spec_loop.cli.common import get_console, set_project_dir

app = typer.Typer(
    name="spec-loop",
    help="Drive a coding agent through build, review and fix cycles over a spec's tasks",
    add_completion=False,
)

console = get_console()


def _show_version(value: bool) -> None:
    if not value:
        return
    console.print(f"spec-loop version {__version__}")
    raise typer.Exit()


def _select_project(project: Optional[str]) -> None:
    """Point the CLI at --project, or back at the working directory."""
    if not project:
        set_project_dir(None)
        return
    path = Path(project)
    if not path.is_dir():
        console.print(f"[red]Error: Project directory not found: {project}[/red]")
        raise typer.Exit(1)
    set_project_dir(str(path.absolute()))


@app.callback(invoke_without_command=True)
def main(
    ctx: typer.Context,
    project: Optional[str] = typer.Option(
        None,
        "--project",
        "-p",
        help="Repository to run in (default: current directory).",
    ),
    version: bool = typer.Option(
        False,
        "--version",
        "-V",
        help="Print the version and exit.",
        callback=_show_version,
        is_eager=True,
    ),
) -> None:
    """
    Spec Loop: work through .agents/specs/<name>/tasks one task at a time,
    reviewing every build and fixing what the review finds.
    """
    _select_project(project)
    if ctx.invoked_subcommand is None:
        console.print(ctx.get_help())
        raise typer.Exit(0)


import spec_loop.cli.commands  # noqa: F401, E402


def cli_main() -> None:
    """Console-script entry point."""
    app()
