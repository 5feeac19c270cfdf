"""Usage ledger, cost estimation and budget accounting."""

from __future__ import annotations

from dlx_orchestrator.usage.tracker import (
    DEFAULT_RATE,
    MODEL_RATES,
    AlertLevel,
    BudgetAlert,
    ProviderUsage,
    TokenMetrics,
    TrendPeriod,
    UsageTracker,
    UsageTrend,
    rate_for_model,
)

__all__ = [
    "DEFAULT_RATE",
    "MODEL_RATES",
    "AlertLevel",
    "BudgetAlert",
    "ProviderUsage",
    "TokenMetrics",
    "TrendPeriod",
    "UsageTracker",
    "UsageTrend",
    "rate_for_model",
]
