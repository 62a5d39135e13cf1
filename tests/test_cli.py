"""Tests for the command-line interface."""

import pytest
from click.testing import CliRunner

from chat_context.cli import main


@pytest.fixture
def env(settings):
    return {
        "CHAT_CONTEXT_CURSOR_DB": str(settings.cursor_db_path),
        "CHAT_CONTEXT_CLAUDE_PATH": str(settings.claude_path),
        "CHAT_CONTEXT_METADATA_DB": str(settings.metadata_db_path),
    }


@pytest.fixture
def run(env):
    runner = CliRunner()

    def _run(*args):
        return runner.invoke(main, list(args), env=env)

    return _run


class TestCli:

    def test_list(self, run):
        result = run("list")
        assert result.exit_code == 0, result.output
        lines = [line for line in result.output.splitlines() if "msgs" in line]
        assert len(lines) == 3
        assert lines[0].startswith("claude:sess-aaa")
        assert lines[2].startswith("auth-work")

    def test_list_invalid_sort(self, run):
        result = run("list", "--sort", "sideways")
        assert result.exit_code == 2

    def test_show(self, run):
        result = run("show", "auth-work")
        assert result.exit_code == 0, result.output
        assert "Session:  cursor:comp-001" in result.output
        assert "Nickname: auth-work" in result.output
        assert "Project:  my-app (/Users/me/projects/my-app)" in result.output
        assert "TOOL [list_dir]:" in result.output

    def test_show_missing_session(self, run):
        result = run("show", "nope")
        assert result.exit_code == 1
        assert "Error: Session not found: nope" in result.output

    def test_nickname(self, run):
        result = run("nickname", "sess-bbb", "monads")
        assert result.exit_code == 0, result.output
        assert "claude:sess-bbb is now 'monads'" in result.output

        result = run("nickname", "sess-aaa", "monads")
        assert result.exit_code == 1
        assert "already in use" in result.output

        result = run("nickname", "monads", "--clear")
        assert result.exit_code == 0
        assert "Cleared nickname of claude:sess-bbb" in result.output

    def test_nickname_requires_name(self, run):
        result = run("nickname", "sess-bbb")
        assert result.exit_code == 2

    def test_tags(self, run):
        result = run("tag", "add", "sess-bbb", "math", "theory")
        assert result.exit_code == 0, result.output
        assert "claude:sess-bbb: math, theory" in result.output

        result = run("tag", "remove", "sess-bbb", "math")
        assert "claude:sess-bbb: theory" in result.output

        result = run("tags")
        assert "1  theory" in result.output

    def test_search(self, run):
        result = run("search", "pagination")
        assert result.exit_code == 0
        assert "claude:sess-aaa" in result.output

        result = run("search", "nothing-like-this")
        assert "No matching sessions." in result.output

    def test_sync_and_stats(self, run):
        result = run("sync", "--source", "claude")
        assert result.exit_code == 0, result.output
        assert "Synced 2 sessions" in result.output

        result = run("stats")
        assert result.exit_code == 0, result.output
        assert "cursor: 1 synced / 3 in source" in result.output
        assert "claude: 2 synced / 3 in source" in result.output

    def test_projects(self, run):
        result = run("projects")
        assert result.exit_code == 0
        assert "my-app" in result.output
        assert "/Users/me/projects/api" in result.output
