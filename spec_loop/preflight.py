"""
Pre-flight checks for Spec Loop.

This module validates, before any agent invocation, that:
- The agent CLI binary is resolvable
- The project is a git work tree (the progress marker is a commit id)
- spec-loop.yaml exists and the loop limits are usable
- The sessions directory can be created and the specs directory exists

Problems are reported up front with clear instructions instead of failing
mid-run.
"""

from __future__ import annotations

import shutil
from dataclasses import dataclass, field
from pathlib import Path
from typing import Callable, Optional

from spec_loop.config import SpecLoopConfig
from spec_loop.errors import PreflightError
from spec_loop.git import is_git_repo
from spec_loop.utils.fs import FileSystemError, ensure_dir


@dataclass
class PreflightResult:
    """Result of all pre-flight checks."""

    errors: list[str] = field(default_factory=list)

    @property
    def success(self) -> bool:
        return not self.errors

    def raise_for_errors(self) -> None:
        if self.errors:
            raise PreflightError("\n".join(self.errors))


class PreflightChecker:
    """
    Validates the environment for `spec-loop run`.

    The binary lookup and git detection are injectable for tests.
    """

    def __init__(
        self,
        config: SpecLoopConfig,
        which: Callable[[str], Optional[str]] = shutil.which,
        git_check: Callable[[Optional[Path]], bool] = is_git_repo,
    ) -> None:
        self.config = config
        self._which = which
        self._git_check = git_check

    def check_agent_installed(self) -> bool:
        binary = self.config.claude.binary
        if "/" in binary:
            return Path(binary).exists()
        return self._which(binary) is not None

    def check_git_repo(self) -> bool:
        return self._git_check(Path(self.config.repo_root))

    def check_config_file(self) -> bool:
        return self.config.config_path.exists()

    def check_all(self, require_agent: bool = True) -> PreflightResult:
        """
        Run every check and collect the failures.

        Args:
            require_agent: False for dry runs, which never start the agent.
        """
        result = PreflightResult()

        if require_agent and not self.check_agent_installed():
            result.errors.append(f"Required command not found: {self.config.claude.binary}")

        if not self.check_git_repo():
            result.errors.append("Not inside a git repository. Run 'git init' first.")

        if not self.check_config_file():
            result.errors.append(f"No {self.config.config_path.name} found. Run 'spec-loop init' first.")

        if self.config.loop.max_loops < 1:
            result.errors.append(
                f"max_loops must be a positive integer (got: {self.config.loop.max_loops})"
            )
        if self.config.loop.max_review_fix_loops < 1:
            result.errors.append(
                "max_review_fix_loops must be a positive integer "
                f"(got: {self.config.loop.max_review_fix_loops})"
            )

        try:
            ensure_dir(self.config.sessions_path)
        except FileSystemError as e:
            result.errors.append(str(e))

        if not self.config.specs_path.is_dir():
            result.errors.append(
                f"Specs directory not found: {self.config.specs_path}\n"
                "  Run 'spec-loop init' or create it manually."
            )

        return result


def run_preflight_checks(config: SpecLoopConfig, require_agent: bool = True) -> PreflightResult:
    """Convenience function to run pre-flight checks."""
    return PreflightChecker(config).check_all(require_agent=require_agent)
