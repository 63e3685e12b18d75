"""Tests for `spec-loop init` scaffolding."""
import pytest

from spec_loop.config import ProjectConfig, load_config
from spec_loop.scaffold import AGENTS_MD, GITIGNORE_MARKER, ScaffoldError, init_project, update_gitignore


@pytest.fixture
def project():
    return ProjectConfig(type="python", verify_command="ruff check .", test_command="pytest")


class TestInitProject:

    def test_lays_out_project(self, tmp_path, project):
        result = init_project(tmp_path, project)

        assert (tmp_path / ".agents" / "specs").is_dir()
        assert (tmp_path / ".spec-loop" / "sessions").is_dir()
        for name in ("spec.md", "task.md", "progress.md"):
            assert (tmp_path / ".agents" / "templates" / name).is_file()
        assert (tmp_path / ".agents" / "decisions.md").is_file()
        assert (tmp_path / "AGENTS.md").read_text(encoding="utf-8") == AGENTS_MD
        assert result.gitignore_updated
        assert "spec-loop.yaml" in result.created
        assert load_config(str(tmp_path / "spec-loop.yaml")).project == project

    def test_task_template_has_status_marker(self, tmp_path, project):
        init_project(tmp_path, project)
        template = (tmp_path / ".agents" / "templates" / "task.md").read_text(encoding="utf-8")
        assert "> Status: pending" in template

    def test_existing_config_requires_force(self, tmp_path, project):
        init_project(tmp_path, project)
        with pytest.raises(ScaffoldError, match="--force"):
            init_project(tmp_path, project)

    def test_force_rewrites_config_but_keeps_documents(self, tmp_path, project):
        init_project(tmp_path, project)
        (tmp_path / "AGENTS.md").write_text("custom rules", encoding="utf-8")

        result = init_project(tmp_path, ProjectConfig(type="go"), force=True)

        assert load_config(str(tmp_path / "spec-loop.yaml")).project.type == "go"
        assert (tmp_path / "AGENTS.md").read_text(encoding="utf-8") == "custom rules"
        assert result.created == ["spec-loop.yaml"]
        assert not result.gitignore_updated


class TestGitignore:

    def test_appends_once(self, tmp_path):
        (tmp_path / ".gitignore").write_text("node_modules/", encoding="utf-8")

        assert update_gitignore(tmp_path)
        assert not update_gitignore(tmp_path)

        content = (tmp_path / ".gitignore").read_text(encoding="utf-8")
        assert content == f"node_modules/\n\n{GITIGNORE_MARKER}\n.spec-loop/\n"

    def test_creates_file(self, tmp_path):
        update_gitignore(tmp_path)
        assert (tmp_path / ".gitignore").read_text(encoding="utf-8") == f"\n{GITIGNORE_MARKER}\n.spec-loop/\n"
