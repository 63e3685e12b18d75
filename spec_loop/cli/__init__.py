"""CLI package for spec-loop.

Modules:
    app.py      - Main Typer app, version callback, command registration
    commands.py - run / status / init / version commands
    display.py  - Rich rendering of loop progress and the agent stream
    common.py   - Shared helpers (get_console, get_project_dir, load_config_safe)

Usage:
    from spec_loop.cli import app, cli_main  # Main exports
    from spec_loop.cli.display import StreamRenderer, ProgressRenderer
    from spec_loop.cli.common import get_console, get_project_dir
"""
from spec_loop.cli.app import app, cli_main

__all__ = ["app", "cli_main"]
