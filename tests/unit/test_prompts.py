"""Tests for build/review/fix prompt text."""
from pathlib import Path

from spec_loop.config import ProjectConfig
from spec_loop.prompts import build_prompt, fix_prompt, review_prompt

SPEC = Path("/repo/.agents/specs/auth")


class TestBuildPrompt:

    def test_contract_and_spec_path(self):
        prompt = build_prompt(SPEC, ProjectConfig())
        assert str(SPEC) in prompt
        assert prompt.rstrip().endswith("The final BUILD_STATUS line must be the last line of the response")
        for token in ("COMPLETED_TASK", "BLOCKED", "NO_PENDING_TASKS", "<promise>COMPLETE</promise>"):
            assert token in prompt

    def test_project_commands_included(self):
        prompt = build_prompt(SPEC, ProjectConfig(verify_command="make lint", test_command="make test"))
        assert "`make lint`" in prompt
        assert "`make test`" in prompt

    def test_no_command_lines_without_commands(self):
        assert "Run tests before finishing" not in build_prompt(SPEC, ProjectConfig())

    def test_agents_md_rule_only_when_present(self, tmp_path):
        assert "AGENTS.md" not in build_prompt(SPEC, ProjectConfig(), tmp_path)
        (tmp_path / "AGENTS.md").write_text("# rules", encoding="utf-8")
        assert "Read and follow AGENTS.md" in build_prompt(SPEC, ProjectConfig(), tmp_path)


class TestReviewPrompt:

    def test_scoped_to_baseline(self):
        prompt = review_prompt(SPEC, ProjectConfig(), "abc123")
        assert "git diff abc123..HEAD" in prompt

    def test_branch_diff_without_baseline(self):
        prompt = review_prompt(SPEC, ProjectConfig(), None)
        assert "git diff main...HEAD" in prompt

    def test_status_lines(self):
        prompt = review_prompt(SPEC, ProjectConfig(test_command="pytest"), "abc")
        for token in ("REVIEW_STATUS: PASS", "MUST_FIX_COUNT: 0", "SHOULD_FIX_COUNT: 0", "SUGGESTION_COUNT: 0"):
            assert token in prompt
        assert "`pytest`" in prompt


class TestFixPrompt:

    def test_findings_embedded(self):
        prompt = fix_prompt(SPEC, ProjectConfig(), "- Must fix: null check")
        assert "- Must fix: null check" in prompt
        assert "BUILD_STATUS: FIXES_APPLIED" in prompt
