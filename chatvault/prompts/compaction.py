"""Prompt and result contract for checkpoint compaction."""

import json

from chatvault.agent.tokens import CHARS_PER_TOKEN
from chatvault.session.errors import CompactionParseError
from chatvault.session.models import ChatMessage, Checkpoint, CheckpointSummary

# JSON key -> CheckpointSummary field, in output order
SUMMARY_FIELDS = {
    "completed": "completed",
    "inProgress": "in_progress",
    "pending": "pending",
    "blockers": "blockers",
    "decisions": "decisions",
}

# Trimmed first to last when a summary is over its limit.
# blockers and decisions are never dropped.
DROP_ORDER = ("completed", "pending", "in_progress")

DEFAULT_SUMMARY_TOKEN_LIMIT = 1000

_ROLE_TAGS = {"user": "U", "assistant": "A", "system": "S"}

COMPACTION_SYSTEM_PROMPT = """You are a conversation compactor for a software development agent. You fold a conversation into a checkpoint: a structured summary that lets the agent continue the work as if no history had been removed.

## Handling the Existing Checkpoint

The input may start with an EXISTING CHECKPOINT produced by an earlier compaction. Treat it as the trusted baseline:

1. **Merge, don't re-summarize.** Carry every item forward, updated with what the new conversation established.
2. **New messages take precedence.** When the conversation contradicts or completes an item, record the final state (move a pending item to completed, drop a resolved blocker).
3. **Never silently drop items.** An item disappears only when the conversation made it obsolete.

## Categories

- **completed**: work that is finished, with the identifiers needed to find it again (file paths, task ids, commands).
- **inProgress**: work that was started and not finished, with its current state.
- **pending**: work that was requested or committed to and not started.
- **blockers**: open problems, failing checks, missing information, unanswered questions.
- **decisions**: choices made and constraints established, with the reason when it was given.

## Rules

- Write short, factual statements. No narration, no "the user said".
- Reproduce file paths, names, ids, and error messages character for character.
- Merge duplicates. Include only facts present in the input.
- Keep the whole summary under ~1000 tokens; drop completed detail before anything else.

Output ONLY a JSON object with exactly these keys, each a list of strings:
{"completed": [], "inProgress": [], "pending": [], "blockers": [], "decisions": []}"""


def build_compaction_prompt(checkpoint: Checkpoint | None, messages: list[ChatMessage]) -> str:
    """Build the user prompt asking for a new checkpoint summary.

    Raises:
        ValueError: If ``messages`` is empty.
    """
    if not messages:
        raise ValueError("Cannot build compaction prompt with empty messages list")

    parts = []

    if checkpoint is not None and not checkpoint.summary.is_empty:
        parts.append(
            f"=== EXISTING CHECKPOINT (v{checkpoint.version}) ===\n"
            + json.dumps(_summary_to_json(checkpoint.summary), indent=2, ensure_ascii=False)
            + "\n"
        )

    parts.append("=== CONVERSATION ===\n")
    for msg in messages:
        tag = _ROLE_TAGS.get(msg.role, msg.role)
        parts.append(f"[{tag}] {msg.content}\n")

    parts.append(
        "\n=== OUTPUT ===\n"
        "Return the updated checkpoint as a JSON object with the keys "
        + ", ".join(SUMMARY_FIELDS)
        + ".\n"
    )
    return "".join(parts)


def parse_compaction_result(
    response: str | None,
    summary_token_limit: int = DEFAULT_SUMMARY_TOKEN_LIMIT,
) -> CheckpointSummary:
    """Parse the completion service's response into a checkpoint summary.

    Raises:
        CompactionParseError: If the response is empty, is not JSON, or does
            not hold all five categories as lists of strings.
    """
    if not response or not response.strip():
        raise CompactionParseError("Compaction response is empty")

    text = _strip_code_fence(response.strip())

    try:
        parsed = json.loads(text)
    except json.JSONDecodeError as e:
        raise CompactionParseError(
            f"Failed to parse compaction response as JSON: {e}. "
            f"Response: {response[:500]}"
        ) from e

    if not isinstance(parsed, dict):
        raise CompactionParseError("Compaction response is not a JSON object")

    missing = [key for key in SUMMARY_FIELDS if key not in parsed]
    if missing:
        raise CompactionParseError(
            f"Compaction response missing required fields: {', '.join(missing)}"
        )

    values: dict[str, list[str]] = {}
    for key, attr in SUMMARY_FIELDS.items():
        items = parsed[key]
        if not isinstance(items, list):
            raise CompactionParseError(f"Compaction response field '{key}' must be a list")
        for i, item in enumerate(items):
            if not isinstance(item, str):
                raise CompactionParseError(
                    f"Compaction response field '{key}[{i}]' must be a string"
                )
        values[attr] = list(items)

    return enforce_summary_limit(CheckpointSummary(**values), summary_token_limit)


def enforce_summary_limit(summary: CheckpointSummary, token_limit: int) -> CheckpointSummary:
    """Drop trailing items, lowest priority first, until the summary fits."""
    max_chars = token_limit * CHARS_PER_TOKEN

    def total_chars() -> int:
        # +10 per item for list markers and separators
        return sum(
            len(item) + 10
            for attr in SUMMARY_FIELDS.values()
            for item in getattr(summary, attr)
        )

    for attr in DROP_ORDER:
        items = getattr(summary, attr)
        while items and total_chars() > max_chars:
            items.pop()

    return summary


def _summary_to_json(summary: CheckpointSummary) -> dict[str, list[str]]:
    return {key: list(getattr(summary, attr)) for key, attr in SUMMARY_FIELDS.items()}


def _strip_code_fence(text: str) -> str:
    """Remove a surrounding Markdown code fence, if any."""
    if not text.startswith("```"):
        return text
    lines = text.split("\n")
    lines.pop(0)
    if lines and lines[-1].strip() == "```":
        lines.pop()
    return "\n".join(lines).strip()
