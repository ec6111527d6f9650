"""Request builder for assembling agent prompts from session documents."""

from dataclasses import dataclass
from datetime import datetime

from chatvault.agent.tokens import TokenBudget, TokenEstimate, estimate_request
from chatvault.session.models import (
    AgentDescription,
    ChatMessage,
    Checkpoint,
    SessionContext,
)

_ROLE_LABELS = {"user": "User", "assistant": "Assistant", "system": "System"}


@dataclass(frozen=True)
class AgentRequest:
    """A request ready to send to the completion service."""

    system_prompt: str
    user_prompt: str
    total_tokens: int
    estimate: TokenEstimate


@dataclass(frozen=True)
class RequestPreview:
    """Assembled prompts plus the per-component token breakdown."""

    system_prompt: str
    user_prompt: str
    estimate: TokenEstimate

    @property
    def breakdown(self) -> dict[str, int]:
        return {
            "agent_desc_tokens": self.estimate.agent_description,
            "context_tokens": self.estimate.context,
            "checkpoint_tokens": self.estimate.checkpoint,
            "messages_tokens": self.estimate.messages,
            "user_prompt_tokens": self.estimate.user_prompt,
            "total": self.estimate.total,
        }


def _format_time(value: datetime) -> str:
    return value.strftime("%Y-%m-%d %H:%M")


def format_context(context: SessionContext) -> str:
    """Format a context snapshot as a system prompt section."""
    lines = ["## Project Context", f"**Feature:** {context.feature_name}"]
    if context.feature_goal:
        lines.append(f"**Goal:** {context.feature_goal}")

    if context.task_id and context.task_title:
        lines += [
            "",
            "## Current Task",
            f"**ID:** {context.task_id}",
            f"**Title:** {context.task_title}",
            f"**State:** {context.task_state or 'unknown'}",
        ]
        if context.dependencies:
            lines.append(f"**Blocked By:** {', '.join(context.dependencies)}")
        if context.dependents:
            lines.append(f"**Blocking:** {', '.join(context.dependents)}")

    for heading, body in (
        ("Task DAG", context.dag_summary),
        ("Project Structure", context.project_structure),
        ("Project Notes", context.project_notes),
        ("PROJECT.md", context.project_md),
    ):
        if body:
            lines += ["", f"## {heading}", body]

    for heading, items in (
        ("Recent Commits", context.recent_commits),
        ("Attachments", context.attachments),
    ):
        if items:
            lines += ["", f"## {heading}", "\n".join(items)]

    return "\n".join(lines)


def format_checkpoint(checkpoint: Checkpoint) -> str:
    """Format a checkpoint summary as a system prompt section."""
    summary = checkpoint.summary
    lines = [
        "## Session Checkpoint",
        f"*Last updated: {_format_time(checkpoint.updated_at)}*",
        "",
    ]

    for heading, items in (
        ("Completed", summary.completed),
        ("In Progress", summary.in_progress),
        ("Pending", summary.pending),
        ("Blockers", summary.blockers),
        ("Key Decisions", summary.decisions),
    ):
        if items:
            lines.append(f"### {heading}")
            lines += [f"- {item}" for item in items]
            lines.append("")

    lines.append(
        f"*{checkpoint.stats.total_messages} messages compacted "
        f"across {checkpoint.stats.total_compactions} compactions*"
    )
    return "\n".join(lines)


def format_messages(messages: list[ChatMessage]) -> str:
    """Format the message log as a system prompt section."""
    if not messages:
        return ""

    lines = ["## Recent Conversation", ""]
    for msg in messages:
        label = _ROLE_LABELS.get(msg.role, msg.role.capitalize())
        lines.append(f"**{label}** ({_format_time(msg.timestamp)}):")
        lines.append(msg.content)
        lines.append("")
    return "\n".join(lines)


class RequestBuilder:
    """
    Builds the outbound prompt for an agent session.

    Section order is fixed: role instructions, tool instructions, context,
    checkpoint (only when its summary has content), then the message log
    (only when non-empty). Building never touches persisted state.
    """

    def __init__(self, budget: TokenBudget | None = None):
        self.budget = budget or TokenBudget()

    def build_system_prompt(
        self,
        agent_description: AgentDescription,
        context: SessionContext,
        checkpoint: Checkpoint | None,
        messages: list[ChatMessage],
    ) -> str:
        parts = []

        if agent_description.role_instructions:
            parts.append(agent_description.role_instructions)
        if agent_description.tool_instructions:
            parts.append(agent_description.tool_instructions)

        parts.append(format_context(context))

        if checkpoint is not None and not checkpoint.summary.is_empty:
            parts.append(format_checkpoint(checkpoint))

        if messages:
            parts.append(format_messages(messages))

        return "\n\n".join(parts)

    def build(
        self,
        agent_description: AgentDescription,
        context: SessionContext,
        checkpoint: Checkpoint | None,
        messages: list[ChatMessage],
        user_message: str,
    ) -> AgentRequest:
        """Assemble the request for ``user_message``."""
        system_prompt = self.build_system_prompt(agent_description, context, checkpoint, messages)
        estimate = estimate_request(
            agent_description, context, checkpoint, messages, user_message, self.budget,
        )
        return AgentRequest(
            system_prompt=system_prompt,
            user_prompt=user_message,
            total_tokens=estimate.total,
            estimate=estimate,
        )

    def preview(
        self,
        agent_description: AgentDescription,
        context: SessionContext,
        checkpoint: Checkpoint | None,
        messages: list[ChatMessage],
        user_message: str | None = None,
    ) -> RequestPreview:
        """Assemble the request and expose the token breakdown."""
        user_prompt = user_message or ""
        system_prompt = self.build_system_prompt(agent_description, context, checkpoint, messages)
        estimate = estimate_request(
            agent_description, context, checkpoint, messages, user_prompt, self.budget,
        )
        return RequestPreview(
            system_prompt=system_prompt,
            user_prompt=user_prompt,
            estimate=estimate,
        )
