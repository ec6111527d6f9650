"""Tests for token estimation module."""

import pytest

from chatvault.agent.tokens import (
    AGENT_DESCRIPTION_OVERHEAD,
    CHECKPOINT_OVERHEAD,
    CONTEXT_OVERHEAD,
    MESSAGE_OVERHEAD,
    TokenBudget,
    estimate_agent_description_tokens,
    estimate_checkpoint_tokens,
    estimate_context_tokens,
    estimate_messages_tokens,
    estimate_request,
    estimate_tokens,
)
from chatvault.session.models import (
    AgentDescription,
    ChatMessage,
    Checkpoint,
    CheckpointSummary,
    MessageMetadata,
    SessionContext,
    TokenUsage,
)


def _context(**kwargs):
    return SessionContext(feature_id="feat-1", feature_name="abcd", **kwargs)


def _description(role="abcdefgh", tool=None):
    return AgentDescription(agent_type="dev", role_instructions=role, tool_instructions=tool)


class TestEstimateTokens:
    def test_empty_string(self):
        assert estimate_tokens("") == 0

    def test_none(self):
        assert estimate_tokens(None) == 0

    def test_rounds_up(self):
        assert estimate_tokens("abcde") == 2

    def test_longer_text(self):
        assert estimate_tokens("a" * 400) == 100


class TestEstimateMessagesTokens:
    def test_empty_messages(self):
        assert estimate_messages_tokens([]) == 0

    def test_single_message(self):
        msg = ChatMessage(role="user", content="Hello")
        assert estimate_messages_tokens([msg]) == 2 + MESSAGE_OVERHEAD

    def test_recorded_usage_replaces_estimate(self):
        msg = ChatMessage(
            role="assistant",
            content="x" * 4000,
            metadata=MessageMetadata(tokens=TokenUsage(input=150, output=250)),
        )
        assert estimate_messages_tokens([msg]) == 400 + MESSAGE_OVERHEAD

    def test_sums_messages(self):
        msgs = [ChatMessage(role="user", content="a" * 40) for _ in range(3)]
        assert estimate_messages_tokens(msgs) == 3 * (10 + MESSAGE_OVERHEAD)


class TestComponentEstimates:
    def test_empty_checkpoint_is_overhead_only(self):
        assert estimate_checkpoint_tokens(Checkpoint.initial()) == CHECKPOINT_OVERHEAD

    def test_checkpoint_lists_joined(self):
        checkpoint = Checkpoint.initial()
        checkpoint.summary = CheckpointSummary(completed=["abcd", "efgh"])
        # "abcd\nefgh" -> 9 chars -> 3 tokens
        assert estimate_checkpoint_tokens(checkpoint) == 3 + CHECKPOINT_OVERHEAD

    def test_context(self):
        assert estimate_context_tokens(_context()) == 1 + CONTEXT_OVERHEAD

    def test_context_counts_lists(self):
        base = estimate_context_tokens(_context())
        richer = estimate_context_tokens(_context(recent_commits=["a" * 40]))
        assert richer == base + 10

    def test_agent_description(self):
        assert estimate_agent_description_tokens(_description()) == 2 + AGENT_DESCRIPTION_OVERHEAD

    def test_agent_description_with_tools(self):
        desc = _description(tool="abcd")
        assert estimate_agent_description_tokens(desc) == 3 + AGENT_DESCRIPTION_OVERHEAD


class TestTokenBudget:
    def test_defaults(self):
        budget = TokenBudget()
        assert budget.limit == 100_000
        assert budget.threshold == pytest.approx(90_000)

    def test_threshold_is_strict(self):
        budget = TokenBudget()
        assert budget.needs_compaction(90_000) is False
        assert budget.needs_compaction(90_001) is True

    @pytest.mark.parametrize("limit, ratio", [(0, 0.9), (-5, 0.9), (1000, 0), (1000, 1.5)])
    def test_rejects_invalid(self, limit, ratio):
        with pytest.raises(ValueError):
            TokenBudget(limit, ratio)


class TestEstimateRequest:
    def test_components_and_total(self):
        estimate = estimate_request(
            _description(), _context(), None, [ChatMessage(role="user", content="Hello")], "abcd",
        )
        assert estimate.agent_description == 22
        assert estimate.context == 101
        assert estimate.checkpoint == 0
        assert estimate.messages == 12
        assert estimate.user_prompt == 1
        assert estimate.system_prompt == 22 + 101 + 12
        assert estimate.total == 22 + 101 + 12 + 1

    def test_empty_checkpoint_not_counted(self):
        estimate = estimate_request(_description(), _context(), Checkpoint.initial(), [])
        assert estimate.checkpoint == 0

    def test_filled_checkpoint_counted(self):
        checkpoint = Checkpoint.initial()
        checkpoint.summary = CheckpointSummary(blockers=["abcd"])
        estimate = estimate_request(_description(), _context(), checkpoint, [])
        assert estimate.checkpoint == 1 + CHECKPOINT_OVERHEAD

    def test_monotone_in_messages(self):
        msgs = []
        previous = estimate_request(_description(), _context(), None, msgs).total
        for i in range(5):
            msgs.append(ChatMessage(role="user", content=f"message {i}"))
            current = estimate_request(_description(), _context(), None, msgs).total
            assert current > previous
            previous = current

    def test_needs_compaction_matches_threshold(self):
        budget = TokenBudget(limit=200, threshold_ratio=0.9)
        small = estimate_request(_description(), _context(), None, [], budget=budget)
        assert small.total <= 180
        assert small.needs_compaction is False

        big = estimate_request(
            _description(), _context(), None,
            [ChatMessage(role="user", content="x" * 400)], budget=budget,
        )
        assert big.total > 180
        assert big.needs_compaction is True
        assert big.limit == 200
        assert big.threshold == pytest.approx(180)
