"""Shared CLI state: the --project override, the Rich console and config loading.

Imported by app.py before commands.py exists, so it must not import commands.
"""
from __future__ import annotations

from pathlib import Path
from typing import TYPE_CHECKING, Optional

from rich.console import Console

if TYPE_CHECKING:
    from spec_loop.config import SpecLoopConfig

_project_dir: Optional[str] = None

_console: Optional[Console] = None


def get_project_dir() -> Optional[str]:
    """The --project override, or None."""
    return _project_dir


def set_project_dir(path: Optional[str]) -> None:
    """Called by the app callback on every invocation."""
    global _project_dir
    _project_dir = path


def get_project_root() -> Path:
    """The --project directory, or the current directory."""
    return Path(get_project_dir() or Path.cwd()).absolute()


def get_console() -> Console:
    """Process-wide Console shared by app.py and commands.py."""
    global _console
    if _console is None:
        _console = Console()
    return _console


def load_config_required(config_file: Optional[str] = None) -> "SpecLoopConfig":
    """
    Load spec-loop.yaml from the project root (or config_file).

    Raises:
        ConfigError: If the file is missing or invalid.
    """
    from spec_loop.config import CONFIG_FILENAME, load_config

    path = Path(config_file) if config_file else get_project_root() / CONFIG_FILENAME
    return load_config(str(path))


def load_config_safe(config_file: Optional[str] = None) -> Optional["SpecLoopConfig"]:
    """load_config_required(), or None when the file is missing or invalid."""
    from spec_loop.config import ConfigError

    try:
        return load_config_required(config_file)
    except ConfigError:
        return None


def get_config_or_default(config_file: Optional[str] = None) -> "SpecLoopConfig":
    """Config for read-only commands: the file if valid, else defaults for the project root."""
    config = load_config_safe(config_file)
    if config is not None:
        return config

    from spec_loop.config import default_config

    return default_config(str(get_project_root()))
