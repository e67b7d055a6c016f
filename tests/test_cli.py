"""Tests for the agentloop command line (everything except interactive chat)."""

from __future__ import annotations

import asyncio

import pytest
from rich.console import Console
from typer.testing import CliRunner

from agentloop import __version__
from agentloop.cli import app as cli
from agentloop.config import _ENV_MAP
from agentloop.messages import UserMessage
from agentloop.session import FileSessionStore, SessionEntry

runner = CliRunner()


@pytest.fixture(autouse=True)
def isolated(monkeypatch, tmp_path):
    for name in _ENV_MAP:
        monkeypatch.delenv(name, raising=False)
    monkeypatch.setenv("HOME", str(tmp_path / "home"))
    monkeypatch.chdir(tmp_path)
    monkeypatch.setattr(cli, "console", Console(width=200))


@pytest.fixture
def sessions_dir(monkeypatch, tmp_path):
    path = tmp_path / "sessions"
    monkeypatch.setenv("AGENTLOOP_SESSION_BACKEND", "file")
    monkeypatch.setenv("AGENTLOOP_SESSION_PATH", str(path))

    async def seed():
        store = FileSessionStore(str(path))
        await store.append("s1", SessionEntry(messages=[UserMessage("remember the milk")]))

    asyncio.run(seed())
    return path


class TestVersion:
    def test_version(self):
        result = runner.invoke(cli.app, ["version"])
        assert result.exit_code == 0
        assert f"agentloop v{__version__}" in result.output


class TestModels:
    def test_list(self):
        result = runner.invoke(cli.app, ["models", "list"])
        assert result.exit_code == 0
        assert "claude-sonnet-4-5" in result.output
        assert "openai-responses" in result.output

    def test_list_one_provider(self):
        result = runner.invoke(cli.app, ["models", "list", "--provider", "mistral"])
        assert result.exit_code == 0
        assert "mistral" in result.output
        assert "anthropic-messages" not in result.output

    def test_unknown_provider(self):
        result = runner.invoke(cli.app, ["models", "list", "--provider", "nobody"])
        assert result.exit_code == 0
        assert "No models registered" in result.output


class TestConfigCommands:
    def test_validate_defaults(self):
        result = runner.invoke(cli.app, ["config", "validate"])
        assert result.exit_code == 0
        assert "Config is valid." in result.output
        assert "using defaults" in result.output

    def test_validate_reports_problems(self, monkeypatch):
        monkeypatch.setenv("AGENTLOOP_SESSION_BACKEND", "redis")
        result = runner.invoke(cli.app, ["config", "validate"])
        assert result.exit_code == 1
        assert "session.backend" in result.output

    def test_validate_from_file(self, tmp_path):
        (tmp_path / "agentloop.yaml").write_text("llm:\n  model: gpt-5-mini\n", encoding="utf-8")
        result = runner.invoke(cli.app, ["config", "validate"])
        assert result.exit_code == 0
        assert "openai/gpt-5-mini" in result.output

    def test_unknown_profile(self):
        result = runner.invoke(cli.app, ["config", "show", "--profile", "missing"])
        assert result.exit_code == 1
        assert "Config error" in result.output

    def test_show(self):
        result = runner.invoke(cli.app, ["config", "show"])
        assert result.exit_code == 0
        assert "gpt-4.1-mini" in result.output


class TestSkills:
    def test_list(self, tmp_path):
        skill_dir = tmp_path / ".agentloop" / "skills" / "release-notes"
        skill_dir.mkdir(parents=True)
        (skill_dir / "SKILL.md").write_text(
            "---\nname: release-notes\ndescription: Draft release notes.\n---\nSteps.\n"
        )
        result = runner.invoke(cli.app, ["skills", "list"])
        assert result.exit_code == 0
        assert "release-notes" in result.output
        assert "Draft release notes." in result.output

    def test_list_empty(self):
        result = runner.invoke(cli.app, ["skills", "list"])
        assert result.exit_code == 0
        assert "No skills found" in result.output


class TestSessions:
    def test_list(self, sessions_dir):
        result = runner.invoke(cli.app, ["sessions", "list"])
        assert result.exit_code == 0
        assert "s1" in result.output

    def test_show(self, sessions_dir):
        result = runner.invoke(cli.app, ["sessions", "show", "s1"])
        assert result.exit_code == 0
        assert "remember the milk" in result.output

    def test_show_unsafe_id(self, sessions_dir):
        result = runner.invoke(cli.app, ["sessions", "show", "../etc"])
        assert result.exit_code == 1
        assert "Error" in result.output

    def test_delete(self, sessions_dir):
        result = runner.invoke(cli.app, ["sessions", "delete", "s1"])
        assert result.exit_code == 0
        assert "Deleted session: s1" in result.output
        assert not (sessions_dir / "s1.jsonl").exists()

        again = runner.invoke(cli.app, ["sessions", "delete", "s1"])
        assert again.exit_code == 1
        assert "No such session" in again.output
