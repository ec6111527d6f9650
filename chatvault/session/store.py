"""Session store: cached session metadata plus the per-session documents."""

import asyncio
from typing import TypeVar

from loguru import logger
from pydantic import ValidationError

from chatvault.bus.events import SessionArchived, SessionCreated
from chatvault.bus.notifier import EventNotifier
from chatvault.session.errors import MalformedDocumentError
from chatvault.session.models import (
    AgentDescription,
    ChatSession,
    Checkpoint,
    Document,
    Session,
    SessionContext,
    SessionCoordinates,
    utcnow,
)
from chatvault.session.storage import DocumentStorage

DocT = TypeVar("DocT", bound=Document)


class SessionStore:
    """
    Keeps session metadata in memory and reads/writes session documents.

    Storage layout (keys relative to the storage root):
        {featureId}/sessions/
        ├── session_{id}.json            # metadata
        ├── chat_{id}.json               # message log
        ├── checkpoint_{id}.json
        ├── context_{id}.json
        └── agent-description_{id}.json

    All storage calls run in worker threads. Read-modify-write cycles on a
    session's documents must hold ``lock(session_id)``.
    """

    def __init__(self, storage: DocumentStorage, notifier: EventNotifier | None = None):
        self.storage = storage
        self.notifier = notifier or EventNotifier()
        self._cache: dict[str, Session] = {}
        self._locks: dict[str, asyncio.Lock] = {}

    # ── public API ──────────────────────────────────────────────

    def lock(self, session_id: str) -> asyncio.Lock:
        """Return the lock serializing writes to ``session_id``'s documents."""
        lock = self._locks.get(session_id)
        if lock is None:
            lock = self._locks[session_id] = asyncio.Lock()
        return lock

    async def get_or_create(
        self,
        coordinates: SessionCoordinates,
        *,
        agent_description: AgentDescription | None = None,
        context: SessionContext | None = None,
    ) -> Session:
        """
        Get the session for ``coordinates``, creating it on first use.

        Creation writes every missing document: metadata, an empty message
        log, a version-1 checkpoint, the context and the agent description.
        Documents already on disk are left as they are.
        """
        session_id = coordinates.session_id
        cached = self._cache.get(session_id)
        if cached is not None:
            return cached

        async with self.lock(session_id):
            # Another caller may have finished while we waited
            cached = self._cache.get(session_id)
            if cached is not None:
                return cached

            session = await self.load_session(session_id, coordinates.feature_id)
            if session is not None:
                self._cache[session_id] = session
                return session

            session = coordinates.new_session()
            await self._init_documents(
                session,
                agent_description or coordinates.default_agent_description(),
                context or coordinates.default_context(),
            )
            await self.save_session(session)
            self._cache[session_id] = session

        logger.info(f"Created session {session_id}")
        self.notifier.notify(SessionCreated(
            session_id=session_id,
            feature_id=session.feature_id,
            task_id=session.task_id,
        ))
        return session

    async def get_by_id(self, session_id: str, feature_id: str) -> Session | None:
        """Get a session from cache or storage. Never creates."""
        cached = self._cache.get(session_id)
        if cached is not None:
            return cached

        session = await self.load_session(session_id, feature_id)
        if session is not None:
            self._cache.setdefault(session_id, session)
            session = self._cache[session_id]
        return session

    async def archive(self, session_id: str, feature_id: str) -> bool:
        """
        Mark a session archived and evict it from the cache.

        Returns:
            True if the session was archived, False if it was absent or
            already archived.
        """
        async with self.lock(session_id):
            session = await self.get_by_id(session_id, feature_id)
            if session is None or session.status == "archived":
                return False

            updated = session.model_copy(deep=True)
            updated.status = "archived"
            updated.touch()
            await self.save_session(updated)
            session.adopt(updated)
            self.evict(session_id)

        logger.info(f"Archived session {session_id}")
        self.notifier.notify(SessionArchived(
            session_id=session_id,
            feature_id=session.feature_id,
            task_id=session.task_id,
        ))
        return True

    async def list_sessions(self, feature_id: str | None = None) -> list[Session]:
        """List stored sessions, most recently updated first."""
        pattern = f"{feature_id or '*'}/sessions/session_*.json"
        keys = await asyncio.to_thread(self.storage.list_keys, pattern)

        sessions = []
        for key in keys:
            try:
                session = await self._load(key, Session)
            except MalformedDocumentError as e:
                logger.warning(f"Skipping unreadable session metadata: {e}")
                continue
            if session is not None:
                sessions.append(self._cache.get(session.id, session))
        return sorted(sessions, key=lambda s: s.updated_at, reverse=True)

    def evict(self, session_id: str) -> None:
        """Drop a session and its write lock from memory."""
        self._cache.pop(session_id, None)
        self._locks.pop(session_id, None)

    # ── documents ───────────────────────────────────────────────

    async def load_session(self, session_id: str, feature_id: str) -> Session | None:
        return await self._load(self._key(feature_id, f"session_{session_id}.json"), Session)

    async def save_session(self, session: Session) -> None:
        await self._save(self._key(session.feature_id, f"session_{session.id}.json"), session)

    async def load_chat(self, session: Session) -> ChatSession | None:
        return await self._load(self._key(session.feature_id, session.files.chat), ChatSession)

    async def save_chat(self, session: Session, chat: ChatSession) -> None:
        await self._save(self._key(session.feature_id, session.files.chat), chat)

    async def load_checkpoint(self, session: Session) -> Checkpoint | None:
        return await self._load(
            self._key(session.feature_id, session.files.checkpoint), Checkpoint
        )

    async def save_checkpoint(self, session: Session, checkpoint: Checkpoint) -> None:
        await self._save(self._key(session.feature_id, session.files.checkpoint), checkpoint)

    async def delete_checkpoint(self, session: Session) -> None:
        key = self._key(session.feature_id, session.files.checkpoint)
        await asyncio.to_thread(self.storage.delete, key)

    async def load_context(self, session: Session) -> SessionContext | None:
        return await self._load(
            self._key(session.feature_id, session.files.context), SessionContext
        )

    async def save_context(self, session: Session, context: SessionContext) -> None:
        await self._save(self._key(session.feature_id, session.files.context), context)

    async def load_agent_description(self, session: Session) -> AgentDescription | None:
        return await self._load(
            self._key(session.feature_id, session.files.agent_description), AgentDescription
        )

    async def save_agent_description(
        self, session: Session, description: AgentDescription
    ) -> None:
        await self._save(
            self._key(session.feature_id, session.files.agent_description), description
        )

    # ── internal helpers ────────────────────────────────────────

    @staticmethod
    def _key(feature_id: str, filename: str) -> str:
        return f"{feature_id}/sessions/{filename}"

    async def _init_documents(
        self,
        session: Session,
        agent_description: AgentDescription,
        context: SessionContext,
    ) -> None:
        """Write each document that is not already stored."""
        now = utcnow()
        documents = (
            (session.files.chat, lambda: ChatSession()),
            (session.files.checkpoint, lambda: Checkpoint.initial(now)),
            (session.files.context, lambda: context),
            (session.files.agent_description, lambda: agent_description),
        )
        for filename, factory in documents:
            key = self._key(session.feature_id, filename)
            if await asyncio.to_thread(self.storage.exists, key):
                logger.debug(f"Keeping existing {key}")
                continue
            await self._save(key, factory())

    async def _load(self, key: str, model: type[DocT]) -> DocT | None:
        data = await asyncio.to_thread(self.storage.read, key)
        if data is None:
            return None
        try:
            return model.model_validate(data)
        except ValidationError as e:
            raise MalformedDocumentError(key, str(e)) from e

    async def _save(self, key: str, document: Document) -> None:
        await asyncio.to_thread(self.storage.write, key, document.to_dict())
