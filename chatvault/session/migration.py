"""Import of legacy single-file chat histories into sessions."""

import asyncio
import json
import shutil
from dataclasses import dataclass
from pathlib import Path
from typing import Any

from loguru import logger

from chatvault.session.errors import SessionError
from chatvault.session.manager import SessionManager
from chatvault.session.models import SessionCoordinates

LEGACY_CHAT_NAME = "chat.json"


@dataclass
class MigrationResult:
    """Outcome of importing one legacy chat file."""

    success: bool
    feature_id: str
    messages_imported: int = 0
    session_id: str | None = None
    error: str | None = None
    backup_path: Path | None = None


def _read_entries(path: Path) -> list[dict[str, Any]]:
    with open(path, encoding="utf-8") as f:
        data = json.load(f)
    if not isinstance(data, dict):
        raise ValueError(f"{path.name} is not a JSON object")

    entries = data.get("entries") or []
    if not isinstance(entries, list):
        raise ValueError(f"{path.name}: 'entries' must be a list")
    for i, entry in enumerate(entries):
        if not isinstance(entry, dict) or not isinstance(entry.get("content"), str):
            raise ValueError(f"{path.name}: entry {i} has no text content")
    return entries


async def migrate_legacy_chat(
    manager: SessionManager,
    feature_id: str,
    legacy_path: Path,
    agent_type: str = "feature",
) -> MigrationResult:
    """
    Import a legacy ``chat.json`` into the feature's session.

    The file is copied to ``chat.json.backup`` before anything is imported.
    Each entry is appended in order with ``migratedFrom`` and
    ``originalTimestamp`` metadata.

    Args:
        manager: Session manager to import into.
        feature_id: Feature that owns the chat.
        legacy_path: Path to the legacy chat file.
        agent_type: Agent type of the feature session to create or reuse.

    Returns:
        MigrationResult. A missing or empty file is a success with nothing
        imported; an unreadable file is reported, not raised.
    """
    legacy_path = Path(legacy_path)
    if not legacy_path.exists():
        return MigrationResult(success=True, feature_id=feature_id)

    imported = 0
    try:
        entries = await asyncio.to_thread(_read_entries, legacy_path)
        if not entries:
            return MigrationResult(success=True, feature_id=feature_id)

        backup_path = legacy_path.with_name(legacy_path.name + ".backup")
        await asyncio.to_thread(shutil.copyfile, legacy_path, backup_path)

        session = await manager.get_or_create_session(
            SessionCoordinates(type="feature", agent_type=agent_type, feature_id=feature_id)
        )

        for entry in entries:
            role = "user" if entry.get("role") == "user" else "assistant"
            metadata = {"migrated_from": LEGACY_CHAT_NAME}
            if entry.get("timestamp"):
                metadata["original_timestamp"] = str(entry["timestamp"])
            await manager.add_message(
                session.id, feature_id, role, entry["content"], metadata=metadata,
            )
            imported += 1
    except (OSError, ValueError, SessionError) as e:
        logger.error(f"Failed to migrate legacy chat for {feature_id}: {e}")
        return MigrationResult(
            success=False,
            feature_id=feature_id,
            messages_imported=imported,
            error=str(e),
        )

    logger.info(f"Migrated {imported} messages for feature {feature_id}")
    return MigrationResult(
        success=True,
        feature_id=feature_id,
        messages_imported=imported,
        session_id=session.id,
        backup_path=backup_path,
    )


async def needs_migration(
    manager: SessionManager,
    feature_id: str,
    legacy_path: Path,
    agent_type: str = "feature",
) -> bool:
    """True if the legacy file has entries and the feature session has no messages."""
    legacy_path = Path(legacy_path)
    if not legacy_path.exists():
        return False

    try:
        entries = await asyncio.to_thread(_read_entries, legacy_path)
    except (OSError, ValueError) as e:
        logger.debug(f"Skipping unreadable legacy chat {legacy_path}: {e}")
        return False
    if not entries:
        return False

    session_id = SessionCoordinates(
        type="feature", agent_type=agent_type, feature_id=feature_id
    ).session_id
    messages = await manager.get_all_messages(session_id, feature_id)
    return not messages
