"""Event types published by the session engine."""

from dataclasses import asdict, dataclass, field
from datetime import datetime
from typing import Any, ClassVar

from chatvault.session.models import utcnow


@dataclass(kw_only=True)
class SessionEvent:
    """Base event. ``type`` discriminates the concrete kind."""

    type: ClassVar[str] = "session"

    session_id: str
    feature_id: str
    task_id: str | None = None
    timestamp: datetime = field(default_factory=utcnow)

    def to_dict(self) -> dict[str, Any]:
        data = asdict(self)
        data["type"] = self.type
        data["timestamp"] = self.timestamp.isoformat()
        return data


@dataclass(kw_only=True)
class SessionCreated(SessionEvent):
    type: ClassVar[str] = "created"


@dataclass(kw_only=True)
class MessageAdded(SessionEvent):
    type: ClassVar[str] = "message_added"

    message_id: str


@dataclass(kw_only=True)
class SessionArchived(SessionEvent):
    type: ClassVar[str] = "archived"


@dataclass(kw_only=True)
class CompactionStarted(SessionEvent):
    type: ClassVar[str] = "compaction_start"

    messages_count: int
    estimated_tokens: int


@dataclass(kw_only=True)
class CompactionCompleted(SessionEvent):
    type: ClassVar[str] = "compaction_complete"

    messages_compacted: int
    tokens_reclaimed: int
    new_checkpoint_version: int
    compacted_at: str


@dataclass(kw_only=True)
class CompactionFailed(SessionEvent):
    type: ClassVar[str] = "compaction_error"

    error: str
