"""Session documents and the coordinates that identify a session."""

import uuid
from dataclasses import dataclass
from datetime import datetime, timezone
from typing import Any, Literal

from pydantic import BaseModel, ConfigDict, Field
from pydantic.alias_generators import to_camel

SessionType = Literal["feature", "task"]
TaskState = Literal["planning", "in_dev", "dev_complete", "in_qa", "qa_complete"]
MessageRole = Literal["user", "assistant", "system"]
SessionStatus = Literal["active", "archived"]


def utcnow() -> datetime:
    """Current time as an aware UTC datetime."""
    return datetime.now(timezone.utc)


class Document(BaseModel):
    """Base for persisted records. Stored with camelCase keys."""

    model_config = ConfigDict(alias_generator=to_camel, populate_by_name=True)

    def to_dict(self) -> dict[str, Any]:
        return self.model_dump(mode="json", by_alias=True, exclude_none=True)


# ── messages ────────────────────────────────────────────────────


class TokenUsage(Document):
    """Token counts recorded by the completion service for one turn."""
    input: int = 0
    output: int = 0

    @property
    def total(self) -> int:
        return self.input + self.output


class MessageMetadata(Document):
    """Optional message metadata. Unknown provenance keys are kept as-is."""

    model_config = ConfigDict(extra="allow", frozen=True)

    agent_type: str | None = None
    agent_id: str | None = None
    task_id: str | None = None
    iteration: int | None = None
    tokens: TokenUsage | None = None
    internal: bool = False
    migrated_from: str | None = None
    original_timestamp: str | None = None


class ChatMessage(Document):
    """One conversation turn. Never edited after creation."""

    model_config = ConfigDict(frozen=True)

    id: str = Field(default_factory=lambda: str(uuid.uuid4()))
    role: MessageRole
    content: str
    timestamp: datetime = Field(default_factory=utcnow)
    metadata: MessageMetadata | None = None

    @property
    def is_internal(self) -> bool:
        return bool(self.metadata and self.metadata.internal)

    @property
    def recorded_tokens(self) -> int | None:
        if self.metadata and self.metadata.tokens:
            return self.metadata.tokens.total
        return None


class ChatSession(Document):
    """Message log of a session: the messages not yet folded into a checkpoint."""
    messages: list[ChatMessage] = Field(default_factory=list)
    total_messages: int = 0  # lifetime count, compacted messages included
    oldest_message_timestamp: datetime | None = None
    newest_message_timestamp: datetime | None = None

    def append(self, message: ChatMessage) -> None:
        self.messages.append(message)
        self.total_messages += 1
        self.newest_message_timestamp = message.timestamp
        if self.oldest_message_timestamp is None:
            self.oldest_message_timestamp = message.timestamp

    @classmethod
    def carry_over(cls, messages: list[ChatMessage], total_messages: int) -> "ChatSession":
        """Build a log holding ``messages`` while keeping the lifetime counter."""
        return cls(
            messages=list(messages),
            total_messages=total_messages,
            oldest_message_timestamp=messages[0].timestamp if messages else None,
            newest_message_timestamp=messages[-1].timestamp if messages else None,
        )


# ── checkpoint ──────────────────────────────────────────────────


class CheckpointSummary(Document):
    """Five categorized lists that stand in for compacted messages."""
    completed: list[str] = Field(default_factory=list)
    in_progress: list[str] = Field(default_factory=list)
    pending: list[str] = Field(default_factory=list)
    blockers: list[str] = Field(default_factory=list)
    decisions: list[str] = Field(default_factory=list)

    @property
    def is_empty(self) -> bool:
        return not any(
            (self.completed, self.in_progress, self.pending, self.blockers, self.decisions)
        )


class CompactionInfo(Document):
    messages_compacted: int = 0
    oldest_message_timestamp: datetime
    newest_message_timestamp: datetime
    compacted_at: datetime


class CheckpointStats(Document):
    total_compactions: int = 0
    total_messages: int = 0
    total_tokens: int = 0


class Checkpoint(Document):
    """Versioned summary of everything compacted out of the message log."""
    version: int = 1
    created_at: datetime
    updated_at: datetime
    summary: CheckpointSummary = Field(default_factory=CheckpointSummary)
    compaction_info: CompactionInfo
    stats: CheckpointStats = Field(default_factory=CheckpointStats)

    @classmethod
    def initial(cls, now: datetime | None = None) -> "Checkpoint":
        """Version-1 checkpoint with an empty summary."""
        now = now or utcnow()
        return cls(
            version=1,
            created_at=now,
            updated_at=now,
            compaction_info=CompactionInfo(
                messages_compacted=0,
                oldest_message_timestamp=now,
                newest_message_timestamp=now,
                compacted_at=now,
            ),
        )


# ── context & agent description ─────────────────────────────────


class SessionContext(Document):
    """Snapshot of project/feature/task facts. Rebuilt by the caller."""

    model_config = ConfigDict(extra="allow")

    project_root: str = ""
    feature_id: str
    feature_name: str
    feature_goal: str | None = None
    task_id: str | None = None
    task_title: str | None = None
    task_state: TaskState | None = None
    dag_summary: str | None = None
    dependencies: list[str] | None = None
    dependents: list[str] | None = None
    project_structure: str | None = None
    project_notes: str | None = None
    project_md: str | None = None
    recent_commits: list[str] | None = None
    attachments: list[str] | None = None


class AgentDescription(Document):
    """Static role instructions for an agent type."""
    agent_type: str
    role_instructions: str
    tool_instructions: str | None = None
    created_at: datetime = Field(default_factory=utcnow)


# ── session ─────────────────────────────────────────────────────


class SessionFiles(Document):
    """Logical document name -> storage file name."""
    chat: str
    checkpoint: str
    context: str
    agent_description: str

    @classmethod
    def for_session(cls, session_id: str) -> "SessionFiles":
        return cls(
            chat=f"chat_{session_id}.json",
            checkpoint=f"checkpoint_{session_id}.json",
            context=f"context_{session_id}.json",
            agent_description=f"agent-description_{session_id}.json",
        )


class SessionStats(Document):
    total_messages: int = 0
    total_tokens: int = 0
    total_compactions: int = 0
    last_request_tokens: int | None = None
    last_compaction_at: datetime | None = None


class Session(Document):
    """Metadata for one addressable conversation thread."""
    id: str
    type: SessionType
    agent_type: str
    feature_id: str
    task_id: str | None = None
    task_state: TaskState | None = None
    created_at: datetime
    updated_at: datetime
    status: SessionStatus = "active"
    files: SessionFiles
    stats: SessionStats = Field(default_factory=SessionStats)

    def touch(self) -> None:
        self.updated_at = utcnow()

    def adopt(self, saved: "Session") -> None:
        """Take over the counters and timestamp of a stored copy of this session."""
        self.stats = saved.stats
        self.updated_at = saved.updated_at
        self.status = saved.status


@dataclass(frozen=True)
class SessionCoordinates:
    """Logical address of a session. Equal coordinates always map to the same id."""

    type: SessionType
    agent_type: str
    feature_id: str
    task_id: str | None = None
    task_state: TaskState | None = None

    @property
    def session_id(self) -> str:
        """Deterministic id.

        Feature sessions: ``{agentType}-feature-{featureId}``.
        Task sessions: ``{agentType}-task-{featureId}-{taskId}[-{taskState}]``.
        """
        parts = [self.agent_type, self.type, self.feature_id]
        if self.type == "task" and self.task_id:
            parts.append(self.task_id)
            if self.task_state:
                parts.append(self.task_state)
        return "-".join(parts)

    def new_session(self, now: datetime | None = None) -> Session:
        now = now or utcnow()
        session_id = self.session_id
        return Session(
            id=session_id,
            type=self.type,
            agent_type=self.agent_type,
            feature_id=self.feature_id,
            task_id=self.task_id,
            task_state=self.task_state,
            created_at=now,
            updated_at=now,
            files=SessionFiles.for_session(session_id),
        )

    def default_context(self) -> SessionContext:
        return SessionContext(
            feature_id=self.feature_id,
            feature_name=self.feature_id,
            task_id=self.task_id,
            task_state=self.task_state,
        )

    def default_agent_description(self) -> AgentDescription:
        return AgentDescription(agent_type=self.agent_type, role_instructions="")
