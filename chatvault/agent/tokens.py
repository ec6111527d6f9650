"""Approximate token estimation for request budgeting."""

import math
from dataclasses import dataclass

from chatvault.session.models import (
    AgentDescription,
    ChatMessage,
    Checkpoint,
    SessionContext,
)

CHARS_PER_TOKEN = 4  # Slightly overestimates real tokenizers (EN text/code/JSON)

DEFAULT_TOKEN_LIMIT = 100_000
DEFAULT_COMPACTION_THRESHOLD = 0.9  # Leaves headroom for the response and estimation slack

# Structural overhead per component (role labels, JSON punctuation, headings)
MESSAGE_OVERHEAD = 10
CHECKPOINT_OVERHEAD = 50
CONTEXT_OVERHEAD = 100
AGENT_DESCRIPTION_OVERHEAD = 20


def estimate_tokens(text: str | None) -> int:
    """Estimate token count from character count, rounding up."""
    if not text:
        return 0
    return math.ceil(len(text) / CHARS_PER_TOKEN)


def _estimate_lines(items: list[str] | None) -> int:
    return estimate_tokens("\n".join(items)) if items else 0


def estimate_messages_tokens(messages: list[ChatMessage]) -> int:
    """Estimate total tokens for a message list.

    Messages that carry recorded token usage count with the recorded
    input + output instead of the character estimate.
    """
    total = 0
    for msg in messages:
        recorded = msg.recorded_tokens
        total += recorded if recorded is not None else estimate_tokens(msg.content)
        total += MESSAGE_OVERHEAD
    return total


def estimate_checkpoint_tokens(checkpoint: Checkpoint) -> int:
    """Estimate tokens for a checkpoint's summary sections."""
    summary = checkpoint.summary
    total = sum(
        _estimate_lines(section)
        for section in (
            summary.completed,
            summary.in_progress,
            summary.pending,
            summary.blockers,
            summary.decisions,
        )
    )
    return total + CHECKPOINT_OVERHEAD


def estimate_context_tokens(context: SessionContext) -> int:
    """Estimate tokens for a session context snapshot."""
    total = 0
    for text in (
        context.feature_name,
        context.feature_goal,
        context.task_title,
        context.dag_summary,
        context.project_structure,
        context.project_notes,
        context.project_md,
    ):
        total += estimate_tokens(text)
    for items in (
        context.dependencies,
        context.dependents,
        context.recent_commits,
        context.attachments,
    ):
        total += _estimate_lines(items)
    return total + CONTEXT_OVERHEAD


def estimate_agent_description_tokens(description: AgentDescription) -> int:
    """Estimate tokens for an agent description."""
    return (
        estimate_tokens(description.role_instructions)
        + estimate_tokens(description.tool_instructions)
        + AGENT_DESCRIPTION_OVERHEAD
    )


@dataclass(frozen=True)
class TokenBudget:
    """Hard request limit and the fraction of it that triggers compaction."""

    limit: int = DEFAULT_TOKEN_LIMIT
    threshold_ratio: float = DEFAULT_COMPACTION_THRESHOLD

    def __post_init__(self):
        if self.limit <= 0:
            raise ValueError(f"Token limit must be positive, got {self.limit}")
        if not 0 < self.threshold_ratio <= 1:
            raise ValueError(f"Compaction threshold must be in (0, 1], got {self.threshold_ratio}")

    @property
    def threshold(self) -> float:
        return self.limit * self.threshold_ratio

    def needs_compaction(self, total: int) -> bool:
        return total > self.threshold


@dataclass(frozen=True)
class TokenEstimate:
    """Per-component token estimate for one outbound request."""

    agent_description: int
    context: int
    checkpoint: int
    messages: int
    user_prompt: int
    limit: int
    threshold: float
    needs_compaction: bool

    @property
    def system_prompt(self) -> int:
        return self.agent_description + self.context + self.checkpoint + self.messages

    @property
    def total(self) -> int:
        return self.system_prompt + self.user_prompt


def estimate_request(
    agent_description: AgentDescription,
    context: SessionContext,
    checkpoint: Checkpoint | None,
    messages: list[ChatMessage],
    user_prompt: str = "",
    budget: TokenBudget | None = None,
) -> TokenEstimate:
    """Estimate the full request and decide whether it needs compaction.

    The checkpoint only counts when its summary has content, since an empty
    checkpoint is left out of the assembled prompt.
    """
    budget = budget or TokenBudget()
    agent_tokens = estimate_agent_description_tokens(agent_description)
    context_tokens = estimate_context_tokens(context)
    checkpoint_tokens = (
        estimate_checkpoint_tokens(checkpoint)
        if checkpoint is not None and not checkpoint.summary.is_empty
        else 0
    )
    messages_tokens = estimate_messages_tokens(messages)
    user_tokens = estimate_tokens(user_prompt)

    total = agent_tokens + context_tokens + checkpoint_tokens + messages_tokens + user_tokens
    return TokenEstimate(
        agent_description=agent_tokens,
        context=context_tokens,
        checkpoint=checkpoint_tokens,
        messages=messages_tokens,
        user_prompt=user_tokens,
        limit=budget.limit,
        threshold=budget.threshold,
        needs_compaction=budget.needs_compaction(total),
    )
