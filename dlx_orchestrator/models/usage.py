"""Usage ledger and budget records.

UsageRecord rows form an append-only ledger: once written they are never
modified. Budgets are the only mutable accounting state and are changed
additively by UsageTracker.record() for successful requests, or reset by
a scheduled rollover that lives outside this package.
"""

from __future__ import annotations

import uuid
from dataclasses import dataclass, field
from datetime import UTC, datetime
from enum import StrEnum
from typing import Any


class UsageStatus(StrEnum):
    SUCCESS = "success"
    FAILED = "failed"
    CACHED = "cached"
    RATE_LIMITED = "rate_limited"


class BudgetScope(StrEnum):
    DAILY = "daily"
    MONTHLY = "monthly"
    PROJECT = "project"
    TOTAL = "total"


def budget_key(scope: BudgetScope | str, project_id: str | None = None) -> str:
    """Storage key for a budget: "daily", "monthly", "total" or "project:<id>"."""
    scope = BudgetScope(scope)
    if scope == BudgetScope.PROJECT:
        if not project_id:
            raise ValueError("project budgets require a project_id")
        return f"{scope.value}:{project_id}"
    return scope.value


@dataclass(frozen=True)
class UsageRecord:
    """Immutable record of one request attempt.

    Each attempt (including failed ones followed by a successful fallback)
    is its own record, attributed to the provider/model actually called.
    """

    provider_id: str
    model_id: str
    prompt_tokens: int
    completion_tokens: int
    estimated_cost: float
    latency_ms: float
    status: UsageStatus
    error_message: str | None = None
    conversation_id: str | None = None
    project_id: str | None = None
    id: str = field(default_factory=lambda: uuid.uuid4().hex)
    timestamp: datetime = field(default_factory=lambda: datetime.now(UTC))
    metadata: dict[str, Any] = field(default_factory=dict)

    @property
    def total_tokens(self) -> int:
        return self.prompt_tokens + self.completion_tokens

    def to_record(self) -> dict[str, Any]:
        return {
            "id": self.id,
            "timestamp": self.timestamp.isoformat(),
            "provider_id": self.provider_id,
            "model_id": self.model_id,
            "prompt_tokens": self.prompt_tokens,
            "completion_tokens": self.completion_tokens,
            "total_tokens": self.total_tokens,
            "estimated_cost": self.estimated_cost,
            "latency_ms": self.latency_ms,
            "status": self.status.value,
            "error_message": self.error_message,
            "conversation_id": self.conversation_id,
            "project_id": self.project_id,
            "metadata": dict(self.metadata),
        }

    @classmethod
    def from_record(cls, data: dict[str, Any]) -> UsageRecord:
        return cls(
            id=data["id"],
            timestamp=datetime.fromisoformat(data["timestamp"]),
            provider_id=data["provider_id"],
            model_id=data["model_id"],
            prompt_tokens=data["prompt_tokens"],
            completion_tokens=data["completion_tokens"],
            estimated_cost=data["estimated_cost"],
            latency_ms=data["latency_ms"],
            status=UsageStatus(data["status"]),
            error_message=data.get("error_message"),
            conversation_id=data.get("conversation_id"),
            project_id=data.get("project_id"),
            metadata=data.get("metadata") or {},
        )


@dataclass
class Budget:
    """Token and cost limits for one scope.

    A limit of None means the metric is not limited.
    """

    scope: BudgetScope
    token_limit: int | None = None
    cost_limit: float | None = None
    tokens_used: int = 0
    cost_used: float = 0.0
    alert_threshold_pct: float = 80.0
    project_id: str | None = None
    reset_at: datetime | None = None

    def __post_init__(self) -> None:
        if self.token_limit is not None and self.token_limit <= 0:
            raise ValueError("token_limit must be positive")
        if self.cost_limit is not None and self.cost_limit <= 0:
            raise ValueError("cost_limit must be positive")
        if not 0 < self.alert_threshold_pct <= 100:
            raise ValueError("alert_threshold_pct must be within (0, 100]")

    @property
    def key(self) -> str:
        return budget_key(self.scope, self.project_id)

    @property
    def token_pct(self) -> float:
        if not self.token_limit:
            return 0.0
        return self.tokens_used / self.token_limit * 100.0

    @property
    def cost_pct(self) -> float:
        if not self.cost_limit:
            return 0.0
        return self.cost_used / self.cost_limit * 100.0

    @property
    def within_budget(self) -> bool:
        tokens_ok = self.token_limit is None or self.tokens_used <= self.token_limit
        cost_ok = self.cost_limit is None or self.cost_used <= self.cost_limit
        return tokens_ok and cost_ok

    def to_record(self) -> dict[str, Any]:
        return {
            "id": self.key,
            "scope": self.scope.value,
            "project_id": self.project_id,
            "token_limit": self.token_limit,
            "cost_limit": self.cost_limit,
            "tokens_used": self.tokens_used,
            "cost_used": self.cost_used,
            "alert_threshold_pct": self.alert_threshold_pct,
            "reset_at": self.reset_at.isoformat() if self.reset_at else None,
        }

    @classmethod
    def from_record(cls, data: dict[str, Any]) -> Budget:
        reset_at = data.get("reset_at")
        return cls(
            scope=BudgetScope(data["scope"]),
            project_id=data.get("project_id"),
            token_limit=data.get("token_limit"),
            cost_limit=data.get("cost_limit"),
            tokens_used=data.get("tokens_used", 0),
            cost_used=data.get("cost_used", 0.0),
            alert_threshold_pct=data.get("alert_threshold_pct", 80.0),
            reset_at=datetime.fromisoformat(reset_at) if reset_at else None,
        )


@dataclass(frozen=True)
class BudgetStatus:
    """Snapshot returned by check_budget().

    `used`/`limit` are token counts; cost figures are reported alongside.
    A scope with no configured budget is always within budget with a
    limit of 0.
    """

    scope: str
    within_budget: bool
    used: int
    limit: int
    cost_used: float = 0.0
    cost_limit: float = 0.0
    token_pct: float = 0.0
    cost_pct: float = 0.0
    configured: bool = True

    @classmethod
    def unconfigured(cls, scope: str) -> BudgetStatus:
        return cls(scope=scope, within_budget=True, used=0, limit=0, configured=False)

    @classmethod
    def from_budget(cls, budget: Budget) -> BudgetStatus:
        return cls(
            scope=budget.key,
            within_budget=budget.within_budget,
            used=budget.tokens_used,
            limit=budget.token_limit or 0,
            cost_used=round(budget.cost_used, 6),
            cost_limit=budget.cost_limit or 0.0,
            token_pct=round(budget.token_pct, 2),
            cost_pct=round(budget.cost_pct, 2),
        )

    def to_dict(self) -> dict[str, Any]:
        return {
            "scope": self.scope,
            "within_budget": self.within_budget,
            "used": self.used,
            "usage": self.used,
            "limit": self.limit,
            "cost_used": self.cost_used,
            "cost_limit": self.cost_limit,
            "token_pct": self.token_pct,
            "cost_pct": self.cost_pct,
            "configured": self.configured,
        }
