"""Session management for agent conversation history."""

from dataclasses import dataclass
from datetime import datetime
from typing import Any

from loguru import logger

from chatvault.agent.compactor import CompactionResult, Compactor
from chatvault.agent.context import AgentRequest, RequestBuilder, RequestPreview
from chatvault.agent.tokens import estimate_messages_tokens
from chatvault.bus.events import MessageAdded
from chatvault.bus.notifier import EventNotifier
from chatvault.providers.base import LLMProvider
from chatvault.session.errors import MissingComponentError, SessionNotFoundError
from chatvault.session.models import (
    AgentDescription,
    ChatMessage,
    ChatSession,
    Checkpoint,
    MessageMetadata,
    MessageRole,
    Session,
    SessionContext,
    SessionCoordinates,
    utcnow,
)
from chatvault.session.store import SessionStore


@dataclass
class CompactionMetrics:
    total_compactions: int = 0
    total_messages_compacted: int = 0
    total_tokens: int = 0
    last_compaction_at: datetime | None = None


class SessionManager:
    """
    Entry point for session operations.

    Sessions are addressed by ``(session_id, feature_id)``. Appending a
    message may start a background compaction; its failures are logged and
    reported through the notifier, never raised to the caller.
    """

    def __init__(
        self,
        store: SessionStore,
        compactor: Compactor,
        builder: RequestBuilder | None = None,
    ):
        self.store = store
        self.compactor = compactor
        self.builder = builder or RequestBuilder(compactor.budget)

    @classmethod
    def from_config(cls, config, provider: LLMProvider | None = None) -> "SessionManager":
        """Build a manager with file storage and a LiteLLM provider from config."""
        from chatvault.agent.tokens import TokenBudget
        from chatvault.session.storage import JsonFileStorage

        if provider is None:
            from chatvault.providers.litellm_provider import LiteLLMProvider

            provider_config = config.get_provider(config.compaction.model)
            provider = LiteLLMProvider(
                api_key=provider_config.api_key or None,
                api_base=provider_config.api_base,
                default_model=config.compaction.model,
            )

        store = SessionStore(JsonFileStorage(config.storage_path), EventNotifier())
        budget = TokenBudget(config.budget.limit, config.budget.compaction_threshold)
        compactor = Compactor(
            store,
            provider,
            budget=budget,
            model=config.compaction.model,
            temperature=config.compaction.temperature,
            max_tokens=config.compaction.max_tokens,
            summary_token_limit=config.compaction.summary_token_limit,
            auto=config.compaction.auto,
        )
        return cls(store, compactor)

    @property
    def notifier(self) -> EventNotifier:
        return self.store.notifier

    # ── sessions ────────────────────────────────────────────────

    async def get_or_create_session(
        self,
        coordinates: SessionCoordinates,
        *,
        agent_description: AgentDescription | None = None,
        context: SessionContext | None = None,
    ) -> Session:
        return await self.store.get_or_create(
            coordinates, agent_description=agent_description, context=context,
        )

    async def get_session_by_id(self, session_id: str, feature_id: str) -> Session | None:
        return await self.store.get_by_id(session_id, feature_id)

    async def archive_session(self, session_id: str, feature_id: str) -> bool:
        return await self.store.archive(session_id, feature_id)

    async def list_sessions(self, feature_id: str | None = None) -> list[Session]:
        return await self.store.list_sessions(feature_id)

    # ── messages ────────────────────────────────────────────────

    async def add_message(
        self,
        session_id: str,
        feature_id: str,
        role: MessageRole,
        content: str,
        metadata: MessageMetadata | dict[str, Any] | None = None,
    ) -> ChatMessage:
        """
        Append a message to the session's log.

        Args:
            session_id: Session ID.
            feature_id: Feature the session belongs to.
            role: user, assistant or system.
            content: Message text.
            metadata: Optional metadata (token usage, internal flag, provenance).

        Returns:
            The stored message.

        Raises:
            SessionNotFoundError: If the session does not exist.
        """
        session = await self._require(session_id, feature_id)
        if isinstance(metadata, dict):
            metadata = MessageMetadata.model_validate(metadata)
        message = ChatMessage(role=role, content=content, metadata=metadata)

        async with self.store.lock(session_id):
            chat = await self.store.load_chat(session)
            if chat is None:
                logger.warning(f"Message log missing for {session_id}, starting a new one")
                chat = ChatSession()
            chat.append(message)

            updated = session.model_copy(deep=True)
            updated.stats.total_messages += 1
            if message.recorded_tokens is not None:
                updated.stats.total_tokens += message.recorded_tokens
            updated.touch()

            await self.store.save_chat(session, chat)
            await self.store.save_session(updated)
            session.adopt(updated)

        self.notifier.notify(MessageAdded(
            session_id=session_id,
            feature_id=session.feature_id,
            task_id=session.task_id,
            message_id=message.id,
        ))

        try:
            await self.compactor.schedule(session)
        except Exception as e:
            logger.warning(f"Compaction check failed for {session_id}: {e}")

        return message

    async def get_recent_messages(
        self, session_id: str, feature_id: str, limit: int = 10
    ) -> list[ChatMessage]:
        """Last ``limit`` non-internal messages, oldest first."""
        messages = await self.get_all_messages(session_id, feature_id)
        visible = [m for m in messages if not m.is_internal]
        return visible[-limit:] if limit > 0 else []

    async def get_all_messages(self, session_id: str, feature_id: str) -> list[ChatMessage]:
        """All messages in the log, internal ones included."""
        session = await self.store.get_by_id(session_id, feature_id)
        if session is None:
            return []
        chat = await self.store.load_chat(session)
        return list(chat.messages) if chat else []

    async def clear_messages(self, session_id: str, feature_id: str) -> None:
        """Empty the log and reset the message counters. The checkpoint is kept."""
        session = await self._require(session_id, feature_id)
        async with self.store.lock(session_id):
            await self.store.save_chat(session, ChatSession())
            updated = session.model_copy(deep=True)
            updated.stats.total_messages = 0
            updated.stats.total_tokens = 0
            updated.touch()
            await self.store.save_session(updated)
            session.adopt(updated)
        logger.info(f"Cleared messages for session {session_id}")

    # ── checkpoint ──────────────────────────────────────────────

    async def get_checkpoint(self, session_id: str, feature_id: str) -> Checkpoint | None:
        session = await self.store.get_by_id(session_id, feature_id)
        if session is None:
            return None
        return await self.store.load_checkpoint(session)

    async def update_checkpoint(
        self, session_id: str, feature_id: str, checkpoint: Checkpoint
    ) -> Checkpoint:
        """
        Replace the session's checkpoint.

        Raises:
            SessionNotFoundError: If the session does not exist.
        """
        session = await self._require(session_id, feature_id)
        updated = checkpoint.model_copy(update={"updated_at": utcnow()})
        async with self.store.lock(session_id):
            await self.store.save_checkpoint(session, updated)
            await self._touch(session)
        return updated

    async def get_metrics(self, session_id: str, feature_id: str) -> CompactionMetrics | None:
        """Compaction totals for a session, or None if it does not exist."""
        session = await self.store.get_by_id(session_id, feature_id)
        if session is None:
            return None

        checkpoint = await self.store.load_checkpoint(session)
        chat = await self.store.load_chat(session)
        current = estimate_messages_tokens(chat.messages) if chat else 0

        if checkpoint is None:
            return CompactionMetrics(total_tokens=current)

        return CompactionMetrics(
            total_compactions=checkpoint.stats.total_compactions,
            total_messages_compacted=checkpoint.stats.total_messages,
            total_tokens=checkpoint.stats.total_tokens + current,
            last_compaction_at=(
                checkpoint.compaction_info.compacted_at
                if checkpoint.stats.total_compactions
                else None
            ),
        )

    async def force_compact(self, session_id: str, feature_id: str) -> CompactionResult:
        """
        Compact the session now, regardless of its size.

        Raises:
            SessionNotFoundError: If the session does not exist.
            CompactionError: If compaction failed.
        """
        session = await self._require(session_id, feature_id)
        return await self.compactor.compact(session)

    # ── context & agent description ─────────────────────────────

    async def get_context(self, session_id: str, feature_id: str) -> SessionContext | None:
        session = await self.store.get_by_id(session_id, feature_id)
        if session is None:
            return None
        return await self.store.load_context(session)

    async def update_context(
        self, session_id: str, feature_id: str, context: SessionContext
    ) -> None:
        session = await self._require(session_id, feature_id)
        async with self.store.lock(session_id):
            await self.store.save_context(session, context)
            await self._touch(session)

    async def get_agent_description(
        self, session_id: str, feature_id: str
    ) -> AgentDescription | None:
        session = await self.store.get_by_id(session_id, feature_id)
        if session is None:
            return None
        return await self.store.load_agent_description(session)

    async def set_agent_description(
        self, session_id: str, feature_id: str, description: AgentDescription
    ) -> None:
        session = await self._require(session_id, feature_id)
        async with self.store.lock(session_id):
            await self.store.save_agent_description(session, description)

    # ── requests ────────────────────────────────────────────────

    async def build_request(
        self, session_id: str, feature_id: str, user_message: str
    ) -> AgentRequest:
        """
        Assemble the next request for the session. Persists nothing.

        Raises:
            SessionNotFoundError: If the session does not exist.
            MissingComponentError: If its context or agent description is missing.
        """
        _, description, context, checkpoint, messages = await self._load_request_inputs(
            session_id, feature_id
        )
        return self.builder.build(description, context, checkpoint, messages, user_message)

    async def preview_request(
        self, session_id: str, feature_id: str, user_message: str | None = None
    ) -> RequestPreview:
        """Assemble the next request and its token breakdown. Persists nothing."""
        _, description, context, checkpoint, messages = await self._load_request_inputs(
            session_id, feature_id
        )
        return self.builder.preview(description, context, checkpoint, messages, user_message)

    # ── lifecycle ───────────────────────────────────────────────

    async def close(self) -> None:
        """Wait for background compactions and pending observers."""
        await self.compactor.wait_idle()
        await self.notifier.drain()

    # ── internal helpers ────────────────────────────────────────

    async def _require(self, session_id: str, feature_id: str) -> Session:
        session = await self.store.get_by_id(session_id, feature_id)
        if session is None:
            raise SessionNotFoundError(session_id)
        return session

    async def _touch(self, session: Session) -> None:
        """Persist a new updated_at. Caller holds the session lock."""
        touched = session.model_copy(deep=True)
        touched.touch()
        await self.store.save_session(touched)
        session.adopt(touched)

    async def _load_request_inputs(self, session_id: str, feature_id: str):
        session = await self._require(session_id, feature_id)

        description = await self.store.load_agent_description(session)
        if description is None:
            raise MissingComponentError(session_id, "Agent description")
        context = await self.store.load_context(session)
        if context is None:
            raise MissingComponentError(session_id, "Context")

        checkpoint = await self.store.load_checkpoint(session)
        chat = await self.store.load_chat(session)
        messages = chat.messages if chat else []
        return session, description, context, checkpoint, messages
