"""Context window management.

Fits a conversation history into a model's token budget. Strategy is
chosen by the number of non-system messages:

    > 20 messages  -> sliding window (most recent N, trimmed from the front)
    10-20 messages -> selective retention (recent fraction + important turns)
    < 10 messages  -> truncation (drop oldest; hard-truncate the newest)

System messages are pinned outside the budget when preserve_system is set.
Every strategy keeps retained messages in their original relative order.
"""

from __future__ import annotations

import math
import re
from collections.abc import Sequence
from dataclasses import dataclass, field
from enum import StrEnum
from typing import Any

import structlog

from dlx_orchestrator.context.tokens import TokenEstimator
from dlx_orchestrator.models.conversation import Message, Role

log = structlog.get_logger(__name__)

SLIDING_WINDOW_THRESHOLD = 20
SELECTIVE_RETENTION_THRESHOLD = 10
DEFAULT_WINDOW_SIZE = 10
DEFAULT_RETENTION_FRACTION = 0.3
DEFAULT_COMPRESS_THRESHOLD = 0.8
ELLIPSIS = "..."

_IMPORTANT_TERMS = (
    "error", "bug", "fix", "problem", "issue", "important", "critical",
    "urgent", "requirement", "must", "need", "architecture", "design",
    "structure", "api", "endpoint", "database", "schema",
)
_TOPIC_TERMS = (
    "api", "database", "frontend", "backend", "authentication", "deployment",
    "testing", "optimization", "refactoring", "bug", "feature", "component",
    "service", "model", "schema",
)
# Prefix match on a word boundary so plurals ("errors", "apis") count
_IMPORTANT_RE = re.compile(r"\b(?:" + "|".join(_IMPORTANT_TERMS) + r")", re.IGNORECASE)
_SENTENCE_END_RE = re.compile(r"[.!?]")
MAX_TOPICS = 5
KEY_POINT_MESSAGES = 3

# (original index, message) pairs, so order survives filtering
_Indexed = tuple[int, Message]


class OptimizationStrategy(StrEnum):
    NONE = "no-optimization"
    SLIDING_WINDOW = "sliding-window"
    SELECTIVE_RETENTION = "selective-retention"
    TRUNCATION = "truncation"


@dataclass(frozen=True)
class ContextOptimizationResult:
    """Outcome of ContextWindowManager.optimize()."""

    messages: list[Message]
    tokens_removed: int
    strategy: OptimizationStrategy
    original_tokens: int
    final_tokens: int

    @property
    def compression_ratio(self) -> float:
        if self.original_tokens == 0:
            return 1.0
        return self.final_tokens / self.original_tokens

    def to_dict(self) -> dict[str, Any]:
        return {
            "messages": [m.to_dict() for m in self.messages],
            "tokens_removed": self.tokens_removed,
            "strategy": self.strategy.value,
            "original_tokens": self.original_tokens,
            "final_tokens": self.final_tokens,
            "compression_ratio": round(self.compression_ratio, 4),
        }


@dataclass(frozen=True)
class ContextStats:
    total_messages: int
    user_messages: int
    assistant_messages: int
    system_messages: int
    estimated_tokens: int
    max_tokens: int
    utilization_pct: float
    needs_optimization: bool

    def to_dict(self) -> dict[str, Any]:
        return {
            "total_messages": self.total_messages,
            "user_messages": self.user_messages,
            "assistant_messages": self.assistant_messages,
            "system_messages": self.system_messages,
            "estimated_tokens": self.estimated_tokens,
            "max_tokens": self.max_tokens,
            "utilization_pct": self.utilization_pct,
            "needs_optimization": self.needs_optimization,
        }


@dataclass(frozen=True)
class ConversationSummary:
    topics: list[str] = field(default_factory=list)
    key_points: list[str] = field(default_factory=list)
    message_count: int = 0

    def to_dict(self) -> dict[str, Any]:
        return {
            "topics": list(self.topics),
            "key_points": list(self.key_points),
            "message_count": self.message_count,
        }


class ContextWindowManager:
    """Compresses message histories to fit a token budget.

    Stateless apart from configuration, so one instance is safely shared
    across concurrent requests.

    Args:
        estimator: Token estimator (defaults to the 4-chars-per-token ratio)
        window_size: Messages kept by the sliding-window strategy
        retention_fraction: Share of most recent messages kept by
            selective retention before important earlier turns are added
    """

    def __init__(
        self,
        estimator: TokenEstimator | None = None,
        *,
        window_size: int = DEFAULT_WINDOW_SIZE,
        retention_fraction: float = DEFAULT_RETENTION_FRACTION,
    ) -> None:
        if window_size < 1:
            raise ValueError("window_size must be at least 1")
        if not 0 < retention_fraction <= 1:
            raise ValueError("retention_fraction must be within (0, 1]")
        self._estimator = estimator or TokenEstimator()
        self._window_size = window_size
        self._retention_fraction = retention_fraction

    # ------------------------------------------------------------------ #
    # Estimation helpers
    # ------------------------------------------------------------------ #

    def estimate_tokens(self, text: str) -> int:
        return self._estimator.estimate(text)

    def calculate_context_usage(self, messages: Sequence[Message]) -> int:
        return self._estimator.estimate_messages(messages)

    @staticmethod
    def should_compress(
        current_tokens: int,
        max_tokens: int,
        threshold: float = DEFAULT_COMPRESS_THRESHOLD,
    ) -> bool:
        """True once usage reaches `threshold` of the window."""
        if max_tokens <= 0:
            return current_tokens > 0
        return current_tokens >= max_tokens * threshold

    # ------------------------------------------------------------------ #
    # Optimization
    # ------------------------------------------------------------------ #

    def optimize(
        self,
        messages: Sequence[Message],
        max_tokens: int,
        preserve_system: bool = True,
    ) -> ContextOptimizationResult:
        """Fit `messages` into `max_tokens`.

        Args:
            messages: Conversation history, oldest first
            max_tokens: Token budget for the whole history
            preserve_system: Keep every system message and exclude them
                from the budget available to the other messages. When
                False, system messages are trimmed like any other turn.

        Returns:
            ContextOptimizationResult. When the history already fits it is
            returned unchanged with strategy NONE and tokens_removed 0.
        """
        messages = list(messages)
        original_tokens = self.calculate_context_usage(messages)

        if original_tokens <= max_tokens:
            return ContextOptimizationResult(
                messages=messages,
                tokens_removed=0,
                strategy=OptimizationStrategy.NONE,
                original_tokens=original_tokens,
                final_tokens=original_tokens,
            )

        indexed: list[_Indexed] = list(enumerate(messages))
        if preserve_system:
            pinned = [item for item in indexed if item[1].role == Role.SYSTEM]
            pool = [item for item in indexed if item[1].role != Role.SYSTEM]
        else:
            pinned = []
            pool = indexed

        budget = max_tokens - self._estimator.estimate_messages(m for _, m in pinned)
        conversational = sum(1 for m in messages if m.role != Role.SYSTEM)
        strategy = self._select_strategy(conversational)

        if strategy == OptimizationStrategy.SLIDING_WINDOW:
            kept = self._sliding_window(pool, budget)
        elif strategy == OptimizationStrategy.SELECTIVE_RETENTION:
            kept = self._selective_retention(pool, budget)
        else:
            kept = self._fit_from_newest(pool, budget)

        retained = sorted(pinned + kept, key=lambda item: item[0])
        optimized = [message for _, message in retained]
        final_tokens = self.calculate_context_usage(optimized)

        log.info(
            "context.optimized",
            strategy=strategy.value,
            original_tokens=original_tokens,
            final_tokens=final_tokens,
            max_tokens=max_tokens,
            messages_before=len(messages),
            messages_after=len(optimized),
        )

        return ContextOptimizationResult(
            messages=optimized,
            tokens_removed=original_tokens - final_tokens,
            strategy=strategy,
            original_tokens=original_tokens,
            final_tokens=final_tokens,
        )

    @staticmethod
    def _select_strategy(conversational_count: int) -> OptimizationStrategy:
        if conversational_count > SLIDING_WINDOW_THRESHOLD:
            return OptimizationStrategy.SLIDING_WINDOW
        if conversational_count >= SELECTIVE_RETENTION_THRESHOLD:
            return OptimizationStrategy.SELECTIVE_RETENTION
        return OptimizationStrategy.TRUNCATION

    def _sliding_window(self, pool: list[_Indexed], budget: int) -> list[_Indexed]:
        return self._fit_from_newest(pool[-self._window_size:], budget)

    def _selective_retention(self, pool: list[_Indexed], budget: int) -> list[_Indexed]:
        recent_count = math.ceil(len(pool) * self._retention_fraction)
        split = len(pool) - recent_count
        important = [item for item in pool[:split] if self._is_important(item[1])]
        combined = important + pool[split:]

        if self._estimator.estimate_messages(m for _, m in combined) <= budget:
            return combined
        return self._sliding_window(combined, budget)

    def _fit_from_newest(self, pool: list[_Indexed], budget: int) -> list[_Indexed]:
        """Longest suffix of `pool` that fits, newest message hard-truncated if needed."""
        if budget <= 0 or not pool:
            return []

        kept: list[_Indexed] = []
        used = 0
        for item in reversed(pool):
            tokens = self._estimator.estimate(item[1].content)
            if used + tokens > budget:
                break
            kept.append(item)
            used += tokens

        if not kept:
            index, newest = pool[-1]
            return [(index, self._truncate_message(newest, budget))]

        kept.reverse()
        return kept

    def _truncate_message(self, message: Message, budget: int) -> Message:
        # Keep the tail of the text: the most recent part of the turn
        available = max(self._estimator.chars_for_tokens(budget) - len(ELLIPSIS), 0)
        tail = message.content[-available:] if available else ""
        log.debug(
            "context.message_truncated",
            role=message.role.value,
            original_chars=len(message.content),
            kept_chars=len(tail),
        )
        return Message(role=message.role, content=tail + ELLIPSIS)

    @staticmethod
    def _is_important(message: Message) -> bool:
        return bool(_IMPORTANT_RE.search(message.content))

    # ------------------------------------------------------------------ #
    # Analysis
    # ------------------------------------------------------------------ #

    def get_context_stats(self, messages: Sequence[Message], max_tokens: int) -> ContextStats:
        tokens = self.calculate_context_usage(messages)
        by_role = {role: 0 for role in Role}
        for message in messages:
            by_role[message.role] += 1
        utilization = (tokens / max_tokens * 100.0) if max_tokens > 0 else 0.0
        return ContextStats(
            total_messages=len(messages),
            user_messages=by_role[Role.USER],
            assistant_messages=by_role[Role.ASSISTANT],
            system_messages=by_role[Role.SYSTEM],
            estimated_tokens=tokens,
            max_tokens=max_tokens,
            utilization_pct=round(utilization, 1),
            needs_optimization=self.should_compress(tokens, max_tokens),
        )

    def summarize_conversation(self, messages: Sequence[Message]) -> ConversationSummary:
        """Extract topics and key points from a history.

        Topics are terms from a fixed technical vocabulary found anywhere
        in the conversation (at most five, vocabulary order). Key points
        are the first sentence of each of the first three user messages,
        kept only when between 10 and 100 characters long.
        """
        corpus = " ".join(m.content for m in messages).lower()
        topics = [
            term for term in _TOPIC_TERMS
            if re.search(rf"\b{term}", corpus)
        ][:MAX_TOPICS]

        key_points: list[str] = []
        user_messages = [m for m in messages if m.role == Role.USER]
        for message in user_messages[:KEY_POINT_MESSAGES]:
            sentence = _SENTENCE_END_RE.split(message.content, maxsplit=1)[0].strip()
            if 10 < len(sentence) < 100:
                key_points.append(sentence)

        return ConversationSummary(
            topics=topics,
            key_points=key_points,
            message_count=len(messages),
        )
