"""Token estimation and context window fitting."""

from __future__ import annotations

from dlx_orchestrator.context.tokens import TOKENS_PER_CHAR, TokenEstimator
from dlx_orchestrator.context.window import (
    ContextOptimizationResult,
    ContextStats,
    ContextWindowManager,
    ConversationSummary,
    OptimizationStrategy,
)

__all__ = [
    "TOKENS_PER_CHAR",
    "ContextOptimizationResult",
    "ContextStats",
    "ContextWindowManager",
    "ConversationSummary",
    "OptimizationStrategy",
    "TokenEstimator",
]
