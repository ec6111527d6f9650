"""Checkpoint compaction for session message logs."""

import asyncio
import threading
from contextlib import contextmanager
from dataclasses import dataclass
from enum import Enum
from typing import Iterator

from loguru import logger

from chatvault.agent.tokens import (
    TokenBudget,
    TokenEstimate,
    estimate_messages_tokens,
    estimate_request,
)
from chatvault.bus.events import CompactionCompleted, CompactionFailed, CompactionStarted
from chatvault.prompts.compaction import (
    COMPACTION_SYSTEM_PROMPT,
    DEFAULT_SUMMARY_TOKEN_LIMIT,
    build_compaction_prompt,
    parse_compaction_result,
)
from chatvault.providers.base import LLMProvider
from chatvault.session.errors import CompactionError, SessionError
from chatvault.session.models import (
    ChatMessage,
    ChatSession,
    Checkpoint,
    CheckpointStats,
    CheckpointSummary,
    CompactionInfo,
    Session,
    utcnow,
)
from chatvault.session.store import SessionStore


class CompactionOutcome(str, Enum):
    COMPACTED = "compacted"
    ALREADY_RUNNING = "already_running"
    NOTHING_TO_COMPACT = "nothing_to_compact"


@dataclass
class CompactionResult:
    """What a compaction request did."""

    outcome: CompactionOutcome
    checkpoint: Checkpoint | None = None
    messages_compacted: int = 0
    tokens_reclaimed: int = 0

    @property
    def compacted(self) -> bool:
        return self.outcome == CompactionOutcome.COMPACTED


class Compactor:
    """
    Folds a session's message log into its checkpoint.

    At most one compaction runs per session. The claim is taken before the
    completion service is called and released on every exit path. Messages
    appended while the service is summarizing stay in the log.
    """

    def __init__(
        self,
        store: SessionStore,
        provider: LLMProvider,
        budget: TokenBudget | None = None,
        model: str | None = None,
        temperature: float = 0.3,
        max_tokens: int = 2048,
        summary_token_limit: int = DEFAULT_SUMMARY_TOKEN_LIMIT,
        auto: bool = True,
    ):
        self.store = store
        self.provider = provider
        self.budget = budget or TokenBudget()
        self.model = model
        self.temperature = temperature
        self.max_tokens = max_tokens
        self.summary_token_limit = summary_token_limit
        self.auto = auto

        self._active: set[str] = set()
        self._active_lock = threading.Lock()
        self._tasks: set[asyncio.Task] = set()

    @property
    def notifier(self):
        return self.store.notifier

    def is_compacting(self, session_id: str) -> bool:
        with self._active_lock:
            return session_id in self._active

    @contextmanager
    def _exclusive(self, session_id: str) -> Iterator[bool]:
        """Claim the compaction slot for a session; yields False if taken."""
        with self._active_lock:
            if session_id in self._active:
                claimed = False
            else:
                self._active.add(session_id)
                claimed = True
        try:
            yield claimed
        finally:
            if claimed:
                with self._active_lock:
                    self._active.discard(session_id)

    async def check(self, session: Session) -> TokenEstimate | None:
        """Estimate the session's next request. None when it cannot be estimated."""
        try:
            context = await self.store.load_context(session)
            description = await self.store.load_agent_description(session)
            if context is None or description is None:
                logger.warning(f"Missing session components for compaction check: {session.id}")
                return None
            checkpoint = await self.store.load_checkpoint(session)
            chat = await self.store.load_chat(session)
        except (SessionError, OSError) as e:
            logger.warning(f"Compaction check failed for {session.id}: {e}")
            return None

        messages = chat.messages if chat else []
        estimate = estimate_request(description, context, checkpoint, messages, "", self.budget)
        logger.debug(
            f"Session {session.id}: {estimate.total} tokens "
            f"(threshold {estimate.threshold:.0f})"
        )
        return estimate

    async def schedule(self, session: Session) -> asyncio.Task | None:
        """
        Start a background compaction when the session is over its threshold.

        Returns:
            The running task, or None when no compaction was started.
        """
        if not self.auto or self.is_compacting(session.id):
            return None

        estimate = await self.check(session)
        if estimate is None or not estimate.needs_compaction:
            return None

        logger.info(
            f"Compaction triggered for session {session.id}: "
            f"{estimate.total} tokens > {estimate.threshold:.0f}"
        )
        task = asyncio.create_task(self._run_background(session))
        self._tasks.add(task)
        task.add_done_callback(self._tasks.discard)
        return task

    async def wait_idle(self) -> None:
        """Wait for background compactions that are still running."""
        while self._tasks:
            await asyncio.gather(*list(self._tasks), return_exceptions=True)

    async def compact(self, session: Session) -> CompactionResult:
        """
        Compact the session's whole message log into a new checkpoint.

        Raises:
            CompactionError: If the summary could not be produced or stored.
        """
        with self._exclusive(session.id) as claimed:
            if not claimed:
                logger.warning(f"Compaction already in progress for {session.id}")
                return CompactionResult(outcome=CompactionOutcome.ALREADY_RUNNING)
            return await self._compact(session)

    # ── internal helpers ────────────────────────────────────────

    async def _run_background(self, session: Session) -> None:
        try:
            await self.compact(session)
        except CompactionError as e:
            # Already reported; the session keeps working without compaction
            logger.warning(f"Background compaction failed for {session.id}: {e}")

    async def _compact(self, session: Session) -> CompactionResult:
        try:
            chat = await self.store.load_chat(session)
            if chat is None or not chat.messages:
                logger.warning(f"No messages to compact for {session.id}")
                return CompactionResult(outcome=CompactionOutcome.NOTHING_TO_COMPACT)
            checkpoint = await self.store.load_checkpoint(session)
        except (SessionError, OSError) as e:
            self._report_failure(session, e)
            raise CompactionError(f"Compaction failed for {session.id}: {e}") from e

        snapshot = list(chat.messages)
        estimated = estimate_messages_tokens(snapshot)
        logger.info(f"Compacting {len(snapshot)} messages for {session.id}")
        self.notifier.notify(CompactionStarted(
            session_id=session.id,
            feature_id=session.feature_id,
            task_id=session.task_id,
            messages_count=len(snapshot),
            estimated_tokens=estimated,
        ))

        try:
            summary = await self._summarize(checkpoint, snapshot)
            new_checkpoint = self._next_checkpoint(checkpoint, summary, chat, snapshot, estimated)
            await self._swap(session, checkpoint, new_checkpoint, snapshot)
        except Exception as e:
            self._report_failure(session, e)
            if isinstance(e, CompactionError):
                raise
            raise CompactionError(f"Compaction failed for {session.id}: {e}") from e

        compacted_at = new_checkpoint.compaction_info.compacted_at
        logger.info(
            f"Compacted {len(snapshot)} messages for session {session.id} "
            f"(checkpoint v{new_checkpoint.version})"
        )
        self.notifier.notify(CompactionCompleted(
            session_id=session.id,
            feature_id=session.feature_id,
            task_id=session.task_id,
            messages_compacted=len(snapshot),
            tokens_reclaimed=estimated,
            new_checkpoint_version=new_checkpoint.version,
            compacted_at=compacted_at.isoformat(),
        ))
        return CompactionResult(
            outcome=CompactionOutcome.COMPACTED,
            checkpoint=new_checkpoint,
            messages_compacted=len(snapshot),
            tokens_reclaimed=estimated,
        )

    async def _summarize(
        self, checkpoint: Checkpoint | None, messages: list[ChatMessage]
    ) -> CheckpointSummary:
        prompt = build_compaction_prompt(checkpoint, messages)
        try:
            response = await self.provider.chat(
                messages=[
                    {"role": "system", "content": COMPACTION_SYSTEM_PROMPT},
                    {"role": "user", "content": prompt},
                ],
                model=self.model,
                max_tokens=self.max_tokens,
                temperature=self.temperature,
            )
        except Exception as e:
            raise CompactionError(f"Completion service error: {e}") from e

        if response.is_error:
            raise CompactionError(response.content or "Completion service returned an error")
        if not response.content or not response.content.strip():
            raise CompactionError("No response from completion service")

        return parse_compaction_result(response.content, self.summary_token_limit)

    @staticmethod
    def _next_checkpoint(
        previous: Checkpoint | None,
        summary: CheckpointSummary,
        chat: ChatSession,
        snapshot: list[ChatMessage],
        estimated: int,
    ) -> Checkpoint:
        now = utcnow()
        prev_stats = previous.stats if previous else CheckpointStats()
        return Checkpoint(
            version=(previous.version if previous else 0) + 1,
            created_at=previous.created_at if previous else now,
            updated_at=now,
            summary=summary,
            compaction_info=CompactionInfo(
                messages_compacted=len(snapshot),
                oldest_message_timestamp=chat.oldest_message_timestamp or snapshot[0].timestamp,
                newest_message_timestamp=snapshot[-1].timestamp,
                compacted_at=now,
            ),
            stats=CheckpointStats(
                total_compactions=prev_stats.total_compactions + 1,
                total_messages=prev_stats.total_messages + len(snapshot),
                total_tokens=prev_stats.total_tokens + estimated,
            ),
        )

    async def _swap(
        self,
        session: Session,
        previous: Checkpoint | None,
        checkpoint: Checkpoint,
        snapshot: list[ChatMessage],
    ) -> None:
        """
        Store the new checkpoint and drop the compacted messages from the log.

        Either every document is written or the prior checkpoint and log are
        put back. The cached session only changes once all writes succeed.
        """
        compacted_ids = {msg.id for msg in snapshot}

        async with self.store.lock(session.id):
            # Re-read: appends may have landed while the summary was generated
            current = await self.store.load_chat(session) or ChatSession()
            remaining = [msg for msg in current.messages if msg.id not in compacted_ids]
            total = max(current.total_messages, len(snapshot) + len(remaining))

            updated = session.model_copy(deep=True)
            updated.stats.total_compactions += 1
            updated.stats.last_compaction_at = checkpoint.compaction_info.compacted_at
            updated.touch()

            log_written = False
            try:
                await self.store.save_checkpoint(session, checkpoint)
                await self.store.save_chat(session, ChatSession.carry_over(remaining, total))
                log_written = True
                await self.store.save_session(updated)
            except Exception:
                await self._restore(session, previous, current if log_written else None)
                raise

            session.adopt(updated)

        if remaining:
            logger.info(f"Kept {len(remaining)} messages appended during compaction of {session.id}")

    async def _restore(
        self, session: Session, previous: Checkpoint | None, chat: ChatSession | None
    ) -> None:
        """Put back the checkpoint and, if it was replaced, the message log."""
        try:
            if previous is not None:
                await self.store.save_checkpoint(session, previous)
            else:
                await self.store.delete_checkpoint(session)
            if chat is not None:
                await self.store.save_chat(session, chat)
        except Exception as e:
            logger.error(f"Could not restore documents of {session.id} after failed compaction: {e}")

    def _report_failure(self, session: Session, error: Exception) -> None:
        logger.error(f"Compaction failed for {session.id}: {error}")
        self.notifier.notify(CompactionFailed(
            session_id=session.id,
            feature_id=session.feature_id,
            task_id=session.task_id,
            error=str(error),
        ))
