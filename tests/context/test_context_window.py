"""Tests for token estimation and context window fitting.

Covers:
- TokenEstimator: 4-chars-per-token rounding, message sums, inverse
- ContextWindowManager.optimize: no-op when fitting, truncation,
  sliding window, selective retention, hard truncation, system pinning
- Analysis helpers: stats, should_compress, summarize_conversation
"""

from __future__ import annotations

import pytest

from dlx_orchestrator.context import ContextWindowManager, OptimizationStrategy, TokenEstimator
from dlx_orchestrator.models.conversation import Message, Role


def _turn(i: int, chars: int = 40) -> Message:
    role = Role.USER if i % 2 == 0 else Role.ASSISTANT
    label = f"turn {i} "
    return Message(role=role, content=(label + "x" * chars)[:chars])


# ---------------------------------------------------------------------------
# TokenEstimator
# ---------------------------------------------------------------------------


class TestTokenEstimator:
    def test_empty_text_is_zero(self):
        assert TokenEstimator().estimate("") == 0

    def test_rounds_up(self):
        estimator = TokenEstimator()
        assert estimator.estimate("abcd") == 1
        assert estimator.estimate("abcde") == 2

    def test_estimate_messages_sums_content(self):
        estimator = TokenEstimator()
        messages = [Message.user("a" * 8), Message.assistant("b" * 12)]
        assert estimator.estimate_messages(messages) == 5

    def test_chars_for_tokens_is_inverse(self):
        estimator = TokenEstimator()
        assert estimator.chars_for_tokens(10) == 40
        assert estimator.estimate("x" * estimator.chars_for_tokens(10)) == 10
        assert estimator.chars_for_tokens(0) == 0

    def test_rejects_non_positive_ratio(self):
        with pytest.raises(ValueError):
            TokenEstimator(tokens_per_char=0)


# ---------------------------------------------------------------------------
# ContextWindowManager.optimize
# ---------------------------------------------------------------------------


class TestOptimize:
    @pytest.fixture
    def manager(self):
        return ContextWindowManager()

    def test_fitting_history_is_untouched(self, manager):
        history = [_turn(i) for i in range(4)]
        result = manager.optimize(history, max_tokens=1000)

        assert result.strategy == OptimizationStrategy.NONE
        assert result.tokens_removed == 0
        assert result.messages == history
        assert result.compression_ratio == 1.0

    def test_optimizing_twice_is_a_no_op(self, manager):
        history = [_turn(i) for i in range(25)]
        first = manager.optimize(history, max_tokens=60)
        second = manager.optimize(first.messages, max_tokens=60)

        assert second.strategy == OptimizationStrategy.NONE
        assert second.tokens_removed == 0
        assert second.messages == first.messages

    def test_short_history_truncates_oldest(self, manager):
        history = [_turn(i) for i in range(5)]  # 10 tokens each
        result = manager.optimize(history, max_tokens=25)

        assert result.strategy == OptimizationStrategy.TRUNCATION
        assert result.messages == history[-2:]
        assert result.original_tokens == 50
        assert result.final_tokens == 20
        assert result.tokens_removed == 30

    def test_long_history_uses_sliding_window(self, manager):
        history = [_turn(i, chars=4) for i in range(25)]  # 1 token each
        result = manager.optimize(history, max_tokens=20)

        assert result.strategy == OptimizationStrategy.SLIDING_WINDOW
        assert result.messages == history[-10:]

    def test_selective_retention_keeps_important_earlier_turns(self, manager):
        history = [Message.user("x" * 40) for _ in range(12)]
        history[2] = Message.user("there is an error in the parser")
        result = manager.optimize(history, max_tokens=60)

        assert result.strategy == OptimizationStrategy.SELECTIVE_RETENTION
        assert result.messages == [history[2], *history[8:]]

    def test_retained_messages_keep_original_order(self, manager):
        history = [Message.system("s" * 20)] + [_turn(i) for i in range(1, 5)]
        result = manager.optimize(history, max_tokens=25)

        assert result.messages == [history[0], history[3], history[4]]
        positions = [history.index(m) for m in result.messages]
        assert positions == sorted(positions)

    def test_system_messages_pinned_outside_budget(self, manager):
        system = Message.system("You are a helpful assistant. " * 3)
        history = [system] + [_turn(i) for i in range(1, 6)]
        result = manager.optimize(history, max_tokens=40)

        assert result.messages[0] == system
        assert all(m.role != Role.SYSTEM for m in result.messages[1:])

    def test_system_messages_trimmed_when_not_preserved(self, manager):
        history = [Message.system("s" * 40), Message.user("u" * 40), Message.user("v" * 40)]
        result = manager.optimize(history, max_tokens=20, preserve_system=False)

        assert result.messages == history[1:]

    def test_oversized_newest_message_is_hard_truncated(self, manager):
        content = "".join(str(i % 10) for i in range(400))  # 100 tokens
        result = manager.optimize([Message.user(content)], max_tokens=10)

        assert len(result.messages) == 1
        truncated = result.messages[0].content
        assert truncated.endswith("...")
        assert content.endswith(truncated[:-3])
        assert manager.calculate_context_usage(result.messages) <= 10

    def test_zero_budget_after_pinning_drops_conversation(self, manager):
        history = [Message.system("s" * 40), Message.user("u" * 40)]
        result = manager.optimize(history, max_tokens=10)

        assert result.messages == [history[0]]


# ---------------------------------------------------------------------------
# Analysis helpers
# ---------------------------------------------------------------------------


class TestAnalysis:
    @pytest.fixture
    def manager(self):
        return ContextWindowManager()

    def test_should_compress_at_threshold(self):
        assert ContextWindowManager.should_compress(80, 100) is True
        assert ContextWindowManager.should_compress(79, 100) is False

    def test_context_stats_counts_roles(self, manager):
        history = [Message.system("s" * 4), Message.user("u" * 40), Message.assistant("a" * 36)]
        stats = manager.get_context_stats(history, max_tokens=100)

        assert stats.total_messages == 3
        assert stats.user_messages == 1
        assert stats.assistant_messages == 1
        assert stats.system_messages == 1
        assert stats.estimated_tokens == 20
        assert stats.utilization_pct == 20.0
        assert stats.needs_optimization is False

    def test_summarize_extracts_topics_and_key_points(self, manager):
        history = [
            Message.user("We need to redesign the database schema. It is slow."),
            Message.assistant("Let's look at the API layer first."),
            Message.user("ok"),
        ]
        summary = manager.summarize_conversation(history)

        assert summary.topics == ["api", "database", "schema"]
        assert summary.key_points == ["We need to redesign the database schema"]
        assert summary.message_count == 3
