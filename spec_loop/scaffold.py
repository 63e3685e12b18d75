"""
Project scaffolding for `spec-loop init`.

This module handles:
- Writing spec-loop.yaml
- Creating the specs and sessions directories
- Installing spec/task/progress templates and starter documents
- Adding the state directory to .gitignore (once)
"""

from __future__ import annotations

from dataclasses import dataclass, field
from pathlib import Path

from spec_loop.config import CONFIG_FILENAME, DEFAULT_SPECS_DIR, DEFAULT_STATE_DIR, ProjectConfig, render_config_yaml
from spec_loop.errors import SpecLoopError
from spec_loop.utils.fs import ensure_dir, file_exists, read_file, safe_write

GITIGNORE_MARKER = "# spec-loop"

SPEC_TEMPLATE = """# Spec: <feature name>

## Goal

<!-- What should exist when every task below is done? -->

## Scope

<!-- In scope / out of scope. -->

## Acceptance

<!-- How a reviewer verifies the feature as a whole. -->
"""

TASK_TEMPLATE = """# <NN> <task title>

> Status: pending

## Scope

<!-- The single change this task makes. -->

## Acceptance

- [ ] <observable result>

## Done

<!-- Filled in by the build phase: evidence, commands run, output notes. -->
"""

PROGRESS_TEMPLATE = """# Progress

<!-- One entry per completed task, newest last. -->
"""

DECISIONS_MD = (
    "# Decisions\n\n"
    "Design decisions made during development. Append new entries at the bottom.\n"
)

AGENTS_MD = """# AGENTS.md

Project conventions and architecture rules for AI agents.

## Project Overview

<!-- Describe what this project does, its architecture, and key technologies. -->

## Conventions

<!-- Add your project's coding conventions:
- Naming: files, functions, variables
- Structure: where things live, how modules are organized
- Patterns: common patterns to follow
- Anti-patterns: things to avoid
-->

## Review Checklist

<!-- Add project-specific review criteria:
- Architecture rules
- Type safety requirements
- Test coverage expectations
- Security considerations
-->
"""

TEMPLATES = {
    "spec.md": SPEC_TEMPLATE,
    "task.md": TASK_TEMPLATE,
    "progress.md": PROGRESS_TEMPLATE,
}


class ScaffoldError(SpecLoopError):
    """Raised when `spec-loop init` cannot proceed."""
    pass


@dataclass
class ScaffoldResult:
    """What init created. Existing files are never overwritten except the config with force."""
    created: list[str] = field(default_factory=list)
    gitignore_updated: bool = False


def _write_if_missing(path: Path, content: str, result: ScaffoldResult, root: Path) -> None:
    if file_exists(path):
        return
    safe_write(path, content)
    result.created.append(str(path.relative_to(root)))


def update_gitignore(root: Path, entry: str = f"{DEFAULT_STATE_DIR}/") -> bool:
    """
    Append the state directory under a marker comment.

    Returns:
        False if the marker was already present.
    """
    path = root / ".gitignore"
    existing = read_file(path) if file_exists(path) else ""
    if GITIGNORE_MARKER in existing:
        return False

    content = existing
    if content and not content.endswith("\n"):
        content += "\n"
    content += f"\n{GITIGNORE_MARKER}\n{entry}\n"
    safe_write(path, content)
    return True


def init_project(root: Path, project: ProjectConfig, force: bool = False) -> ScaffoldResult:
    """
    Lay out a project for spec-loop.

    Raises:
        ScaffoldError: If spec-loop.yaml exists and force is not set.
    """
    root = Path(root)
    config_path = root / CONFIG_FILENAME
    if config_path.exists() and not force:
        raise ScaffoldError(f"{CONFIG_FILENAME} already exists. Use --force to overwrite.")

    result = ScaffoldResult()
    safe_write(config_path, render_config_yaml(project))
    result.created.append(CONFIG_FILENAME)

    ensure_dir(root / DEFAULT_SPECS_DIR)
    ensure_dir(root / DEFAULT_STATE_DIR / "sessions")

    templates_dir = root / ".agents" / "templates"
    for name, content in TEMPLATES.items():
        _write_if_missing(templates_dir / name, content, result, root)

    _write_if_missing(root / ".agents" / "decisions.md", DECISIONS_MD, result, root)
    _write_if_missing(root / "AGENTS.md", AGENTS_MD, result, root)

    result.gitignore_updated = update_gitignore(root)
    return result
