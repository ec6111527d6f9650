"""Tests for the command-line interface."""

import asyncio

import pytest
from typer.testing import CliRunner

from chatvault import __version__
from chatvault.cli.commands import app
from chatvault.config.loader import load_config
from chatvault.session.manager import SessionManager
from chatvault.session.models import SessionCoordinates

runner = CliRunner()


@pytest.fixture
def home(tmp_path, monkeypatch):
    monkeypatch.setenv("HOME", str(tmp_path))
    monkeypatch.setenv("CHATVAULT_STORAGE__ROOT", str(tmp_path / "data"))
    monkeypatch.setenv("CHATVAULT_COMPACTION__AUTO", "false")
    return tmp_path


def _seed_session(messages=("Add login form",)):
    async def seed():
        manager = SessionManager.from_config(load_config())
        session = await manager.get_or_create_session(
            SessionCoordinates(type="feature", agent_type="pm", feature_id="f1")
        )
        for text in messages:
            await manager.add_message(session.id, "f1", "user", text)
        await manager.close()
        return session.id

    return asyncio.run(seed())


class TestCli:
    def test_version(self):
        result = runner.invoke(app, ["--version"])
        assert result.exit_code == 0
        assert __version__ in result.output

    def test_list_empty(self, home):
        result = runner.invoke(app, ["sessions", "list"])
        assert result.exit_code == 0
        assert "No sessions." in result.output

    def test_show(self, home):
        session_id = _seed_session()
        result = runner.invoke(app, ["sessions", "show", session_id, "--feature", "f1"])
        assert result.exit_code == 0
        assert "pm-feature-f1" in result.output
        assert "Add login form" in result.output

    def test_show_unknown(self, home):
        result = runner.invoke(app, ["sessions", "show", "pm-feature-zz", "--feature", "zz"])
        assert result.exit_code == 1

    def test_preview_unknown(self, home):
        result = runner.invoke(app, ["sessions", "preview", "pm-feature-zz", "--feature", "zz"])
        assert result.exit_code == 1
        assert "Session not found" in result.output

    def test_archive(self, home):
        session_id = _seed_session()
        result = runner.invoke(app, ["sessions", "archive", session_id, "--feature", "f1"])
        assert result.exit_code == 0
        assert "Archived" in result.output

        again = runner.invoke(app, ["sessions", "archive", session_id, "--feature", "f1"])
        assert "already archived" in again.output

    def test_migrate_missing_file(self, home):
        result = runner.invoke(app, ["sessions", "migrate", "f1", str(home / "chat.json")])
        assert result.exit_code == 0
        assert "Nothing to migrate." in result.output

    def test_status(self, home):
        result = runner.invoke(app, ["status"])
        assert result.exit_code == 0
        assert "Budget: 100000 tokens" in result.output
