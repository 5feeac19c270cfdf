"""Character-ratio token estimation.

A fixed characters-per-token ratio is applied to message text. This is an
approximation good enough for budgeting and context fitting, not a
replacement for provider-side tokenizer limits.
"""

from __future__ import annotations

import math
from collections.abc import Iterable

from dlx_orchestrator.models.conversation import Message

# 1 token ~= 4 characters of English text
TOKENS_PER_CHAR = 0.25


class TokenEstimator:
    """Estimates token counts from text."""

    def __init__(self, tokens_per_char: float = TOKENS_PER_CHAR) -> None:
        if tokens_per_char <= 0:
            raise ValueError("tokens_per_char must be positive")
        self.tokens_per_char = tokens_per_char

    def estimate(self, text: str) -> int:
        """Return the estimated token count for a string (rounded up)."""
        if not text:
            return 0
        return math.ceil(len(text) * self.tokens_per_char)

    def estimate_messages(self, messages: Iterable[Message]) -> int:
        """Sum of per-message estimates over message content."""
        return sum(self.estimate(message.content) for message in messages)

    def chars_for_tokens(self, tokens: int) -> int:
        """Largest character count whose estimate does not exceed `tokens`."""
        if tokens <= 0:
            return 0
        return math.floor(tokens / self.tokens_per_char)
