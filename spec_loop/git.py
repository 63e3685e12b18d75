"""
Git queries used by the loop.

The HEAD commit id is the progress marker: an iteration made progress if it
moved HEAD. All helpers degrade to an empty/placeholder value outside a
repository instead of raising.
"""

from __future__ import annotations

import logging
import subprocess
from pathlib import Path
from typing import Optional

logger = logging.getLogger(__name__)


def _git(args: list[str], cwd: Optional[Path] = None) -> Optional[str]:
    try:
        result = subprocess.run(
            ["git", *args],
            capture_output=True,
            text=True,
            cwd=cwd,
            timeout=30,
        )
    except (OSError, subprocess.TimeoutExpired) as e:
        logger.debug("git %s failed: %s", " ".join(args), e)
        return None
    if result.returncode != 0:
        return None
    return result.stdout.strip()


def head_sha(cwd: Optional[Path] = None) -> str:
    """Full HEAD commit id, or "" if there is none."""
    return _git(["rev-parse", "--verify", "HEAD"], cwd) or ""


def current_branch(cwd: Optional[Path] = None) -> str:
    return _git(["branch", "--show-current"], cwd) or "unknown"


def recent_commits(count: int = 5, cwd: Optional[Path] = None) -> list[str]:
    output = _git(["log", "--oneline", f"-{count}"], cwd)
    if not output:
        return []
    return output.splitlines()


def is_git_repo(cwd: Optional[Path] = None) -> bool:
    return _git(["rev-parse", "--is-inside-work-tree"], cwd) == "true"
