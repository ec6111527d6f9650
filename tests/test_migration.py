"""Tests for legacy chat import."""

import json
from unittest.mock import AsyncMock

import pytest

from chatvault.agent.compactor import Compactor
from chatvault.session.manager import SessionManager
from chatvault.session.migration import migrate_legacy_chat, needs_migration
from chatvault.session.storage import JsonFileStorage
from chatvault.session.store import SessionStore

FEATURE = "feat-1"

LEGACY = {
    "entries": [
        {"role": "user", "content": "Build a login page", "timestamp": "2025-11-02T10:00:00Z"},
        {"role": "pm", "content": "Planned 3 tasks", "timestamp": "2025-11-02T10:01:00Z"},
        {"role": "user", "content": "Start with the form"},
    ]
}


def _make_manager(tmp_path):
    store = SessionStore(JsonFileStorage(tmp_path / "store"))
    return SessionManager(store, Compactor(store, AsyncMock(), auto=False))


def _write_legacy(tmp_path, data):
    path = tmp_path / "chat.json"
    path.write_text(json.dumps(data) if not isinstance(data, str) else data)
    return path


class TestMigrateLegacyChat:
    @pytest.mark.asyncio
    async def test_imports_entries(self, tmp_path):
        manager = _make_manager(tmp_path)
        path = _write_legacy(tmp_path, LEGACY)

        result = await migrate_legacy_chat(manager, FEATURE, path, agent_type="pm")

        assert result.success
        assert result.messages_imported == 3
        assert result.session_id == "pm-feature-feat-1"
        assert result.backup_path == tmp_path / "chat.json.backup"
        assert result.backup_path.read_text() == path.read_text()

        messages = await manager.get_all_messages(result.session_id, FEATURE)
        assert [m.role for m in messages] == ["user", "assistant", "user"]
        assert messages[0].metadata.migrated_from == "chat.json"
        assert messages[0].metadata.original_timestamp == "2025-11-02T10:00:00Z"
        assert messages[2].metadata.original_timestamp is None

    @pytest.mark.asyncio
    async def test_default_agent_type(self, tmp_path):
        manager = _make_manager(tmp_path)
        result = await migrate_legacy_chat(manager, FEATURE, _write_legacy(tmp_path, LEGACY))
        assert result.session_id == "feature-feature-feat-1"

    @pytest.mark.asyncio
    async def test_missing_file(self, tmp_path):
        manager = _make_manager(tmp_path)

        result = await migrate_legacy_chat(manager, FEATURE, tmp_path / "chat.json")

        assert result.success
        assert result.messages_imported == 0
        assert result.session_id is None

    @pytest.mark.asyncio
    async def test_empty_entries(self, tmp_path):
        manager = _make_manager(tmp_path)

        result = await migrate_legacy_chat(manager, FEATURE, _write_legacy(tmp_path, {"entries": []}))

        assert result.success
        assert result.messages_imported == 0
        assert not (tmp_path / "chat.json.backup").exists()

    @pytest.mark.asyncio
    async def test_malformed_json(self, tmp_path):
        manager = _make_manager(tmp_path)

        result = await migrate_legacy_chat(manager, FEATURE, _write_legacy(tmp_path, "{oops"))

        assert result.success is False
        assert result.error
        assert result.messages_imported == 0

    @pytest.mark.asyncio
    async def test_entry_without_content(self, tmp_path):
        manager = _make_manager(tmp_path)
        path = _write_legacy(tmp_path, {"entries": [{"role": "user"}]})

        result = await migrate_legacy_chat(manager, FEATURE, path)

        assert result.success is False
        assert "entry 0" in result.error


class TestNeedsMigration:
    @pytest.mark.asyncio
    async def test_before_and_after(self, tmp_path):
        manager = _make_manager(tmp_path)
        path = _write_legacy(tmp_path, LEGACY)

        assert await needs_migration(manager, FEATURE, path) is True
        await migrate_legacy_chat(manager, FEATURE, path)
        assert await needs_migration(manager, FEATURE, path) is False

    @pytest.mark.asyncio
    async def test_no_file(self, tmp_path):
        manager = _make_manager(tmp_path)
        assert await needs_migration(manager, FEATURE, tmp_path / "chat.json") is False
