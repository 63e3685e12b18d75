"""Tests for pre-flight checks and git helpers."""
import subprocess
from unittest.mock import MagicMock, patch

import pytest

from spec_loop.config import SpecLoopConfig
from spec_loop.errors import PreflightError
from spec_loop.git import current_branch, head_sha, is_git_repo, recent_commits
from spec_loop.preflight import PreflightChecker


@pytest.fixture
def ready_project(tmp_path):
    (tmp_path / "spec-loop.yaml").write_text("project: {}\n", encoding="utf-8")
    (tmp_path / ".agents" / "specs").mkdir(parents=True)
    return tmp_path


def checker(root, which=lambda name: f"/usr/bin/{name}", git=lambda path: True):
    return PreflightChecker(SpecLoopConfig(repo_root=str(root)), which=which, git_check=git)


class TestPreflightChecker:

    def test_ready_project_passes(self, ready_project):
        result = checker(ready_project).check_all()
        assert result.success
        assert (ready_project / ".spec-loop" / "sessions").is_dir()

    def test_missing_agent(self, ready_project):
        result = checker(ready_project, which=lambda name: None).check_all()
        assert result.errors == ["Required command not found: claude"]

    def test_dry_run_does_not_need_agent(self, ready_project):
        assert checker(ready_project, which=lambda name: None).check_all(require_agent=False).success

    def test_not_a_git_repo(self, ready_project):
        result = checker(ready_project, git=lambda path: False).check_all()
        assert any("git" in error for error in result.errors)

    def test_missing_config_and_specs(self, tmp_path):
        result = checker(tmp_path).check_all()
        assert any("spec-loop init" in error and "spec-loop.yaml" in error for error in result.errors)
        assert any("Specs directory not found" in error for error in result.errors)

    def test_bad_limits(self, ready_project):
        check = checker(ready_project)
        check.config.loop.max_loops = 0
        check.config.loop.max_review_fix_loops = -1
        result = check.check_all()
        assert len(result.errors) == 2

    def test_binary_path_checked_on_disk(self, ready_project, tmp_path):
        check = checker(ready_project, which=lambda name: None)
        check.config.claude.binary = str(tmp_path / "bin" / "claude")
        assert not check.check_agent_installed()

    def test_raise_for_errors(self, tmp_path):
        result = checker(tmp_path).check_all()
        with pytest.raises(PreflightError):
            result.raise_for_errors()


def completed(stdout="", returncode=0):
    return MagicMock(stdout=stdout, returncode=returncode)


class TestGitHelpers:

    @patch("spec_loop.git.subprocess.run")
    def test_head_sha(self, mock_run):
        mock_run.return_value = completed("abc123\n")
        assert head_sha() == "abc123"
        assert mock_run.call_args.args[0] == ["git", "rev-parse", "--verify", "HEAD"]

    @patch("spec_loop.git.subprocess.run")
    def test_head_sha_without_commits(self, mock_run):
        mock_run.return_value = completed(returncode=128)
        assert head_sha() == ""

    @patch("spec_loop.git.subprocess.run", side_effect=FileNotFoundError())
    def test_git_missing(self, mock_run):
        assert head_sha() == ""
        assert current_branch() == "unknown"
        assert recent_commits() == []
        assert not is_git_repo()

    @patch("spec_loop.git.subprocess.run", side_effect=subprocess.TimeoutExpired("git", 30))
    def test_timeout(self, mock_run):
        assert head_sha() == ""

    @patch("spec_loop.git.subprocess.run")
    def test_recent_commits(self, mock_run):
        mock_run.return_value = completed("a1 one\nb2 two\n")
        assert recent_commits(2) == ["a1 one", "b2 two"]
        assert "-2" in mock_run.call_args.args[0]

    @patch("spec_loop.git.subprocess.run")
    def test_is_git_repo(self, mock_run):
        mock_run.return_value = completed("true\n")
        assert is_git_repo()
