"""CLI tests for the spec-loop Typer app."""
from unittest.mock import patch

import pytest

from conftest import make_spec
from spec_loop import __version__
from spec_loop.cli.app import app
from spec_loop.config import ProjectConfig
from spec_loop.models import TaskRecord, TaskStatus
from spec_loop.preflight import PreflightResult
from spec_loop.scaffold import init_project
from spec_loop.task_tracker import TaskTracker


@pytest.fixture
def initialized(project_root):
    init_project(project_root, ProjectConfig(type="python", test_command="pytest"))
    return project_root


class TestAppBasics:

    def test_help_lists_commands(self, cli_runner):
        result = cli_runner.invoke(app, ["--help"])
        assert result.exit_code == 0
        for command in ("run", "status", "init", "version"):
            assert command in result.output

    def test_no_command_shows_help(self, cli_runner):
        result = cli_runner.invoke(app, [])
        assert result.exit_code == 0
        assert "Usage" in result.output

    def test_version_command(self, cli_runner):
        result = cli_runner.invoke(app, ["version"])
        assert result.exit_code == 0
        assert __version__ in result.output

    def test_version_flag(self, cli_runner):
        result = cli_runner.invoke(app, ["--version"])
        assert result.exit_code == 0
        assert f"spec-loop version {__version__}" in result.output

    def test_missing_project_dir(self, cli_runner, tmp_path):
        result = cli_runner.invoke(app, ["--project", str(tmp_path / "nope"), "status"])
        assert result.exit_code == 1
        assert "Project directory not found" in result.output


class TestInitCommand:

    def test_init_without_wizard(self, cli_runner, project_root):
        result = cli_runner.invoke(app, ["--project", str(project_root), "init", "--no-wizard"])

        assert result.exit_code == 0
        assert "Initialized" in result.output
        assert (project_root / "spec-loop.yaml").is_file()
        assert (project_root / ".agents" / "specs").is_dir()

    def test_init_refuses_to_overwrite(self, cli_runner, initialized):
        result = cli_runner.invoke(app, ["--project", str(initialized), "init", "--no-wizard"])
        assert result.exit_code == 4
        assert "--force" in result.output

    def test_init_force(self, cli_runner, initialized):
        result = cli_runner.invoke(
            app, ["--project", str(initialized), "init", "--no-wizard", "--force", "--test-cmd", "make test"],
        )
        assert result.exit_code == 0
        assert "make test" in (initialized / "spec-loop.yaml").read_text(encoding="utf-8")


class TestStatusCommand:

    def test_no_active_specs(self, cli_runner, project_root):
        result = cli_runner.invoke(app, ["--project", str(project_root), "status"])
        assert result.exit_code == 0
        assert "No active specs" in result.output

    def test_active_spec_panel(self, cli_runner, initialized):
        make_spec(initialized, "auth", ["done", "pending"])
        make_spec(initialized, "billing", ["done"])

        result = cli_runner.invoke(app, ["--project", str(initialized), "status"])

        assert result.exit_code == 0
        assert "auth" in result.output
        assert "billing" not in result.output
        assert "Task 2" in result.output


class TestRunCommand:

    def test_preflight_failure(self, cli_runner, project_root):
        result = cli_runner.invoke(app, ["--project", str(project_root), "run"])

        assert result.exit_code == 4
        assert "Pre-flight checks failed" in result.output

    @patch("spec_loop.git.current_branch", return_value="main")
    @patch("spec_loop.preflight.run_preflight_checks", return_value=PreflightResult())
    def test_dry_run_completes_spec(self, mock_preflight, mock_branch, cli_runner, initialized):
        spec = make_spec(initialized, "auth", ["pending"])

        result = cli_runner.invoke(app, ["--project", str(initialized), "run", "--dry-run"])

        assert result.exit_code == 0, result.output
        assert "Dry run" in result.output
        assert mock_preflight.call_args.kwargs["require_agent"] is False
        status = TaskTracker().status(TaskRecord(spec / "tasks" / "01-task.md"))
        assert status == TaskStatus.DONE

    @patch("spec_loop.git.current_branch", return_value="main")
    @patch("spec_loop.preflight.run_preflight_checks", return_value=PreflightResult())
    def test_multiple_active_specs_is_error(self, mock_preflight, mock_branch, cli_runner, initialized):
        make_spec(initialized, "auth", ["pending"])
        make_spec(initialized, "billing", ["pending"])

        result = cli_runner.invoke(app, ["--project", str(initialized), "run", "--dry-run"])

        assert result.exit_code == 4
        assert "--spec" in result.output

    @patch("spec_loop.git.current_branch", return_value="main")
    @patch("spec_loop.preflight.run_preflight_checks", return_value=PreflightResult())
    def test_explicit_spec_once(self, mock_preflight, mock_branch, cli_runner, initialized):
        make_spec(initialized, "auth", ["pending"])
        billing = make_spec(initialized, "billing", ["pending", "pending"])

        result = cli_runner.invoke(
            app,
            ["--project", str(initialized), "run", "--dry-run", "--once", "--spec", str(billing)],
        )

        assert result.exit_code == 0, result.output
        tracker = TaskTracker()
        assert tracker.status(TaskRecord(billing / "tasks" / "01-task.md")) == TaskStatus.DONE
        assert tracker.status(TaskRecord(billing / "tasks" / "02-task.md")) == TaskStatus.PENDING
