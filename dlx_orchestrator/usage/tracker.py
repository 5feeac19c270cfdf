"""Token usage ledger and budget accounting.

The UsageTracker records every request attempt as an immutable
UsageRecord and keeps budgets current. It provides:
- Cost estimation from provider pricing (or a built-in per-model table)
- Additive budget updates under a per-scope lock (no lost updates)
- Alerting when a budget crosses its threshold or is exhausted
- Aggregate metrics, per-provider usage and period-over-period trends

Budgets are advisory: nothing here blocks a request. Callers that want a
hard stop consult check_budget() / ensure_within_budget() before sending.
"""

from __future__ import annotations

import asyncio
import inspect
from collections import defaultdict
from collections.abc import Awaitable, Callable
from dataclasses import dataclass, field, replace
from datetime import UTC, datetime, timedelta
from enum import StrEnum
from typing import Any

import structlog

from dlx_orchestrator.errors import BudgetExceededError
from dlx_orchestrator.models.provider import ProviderPricing
from dlx_orchestrator.models.usage import (
    Budget,
    BudgetScope,
    BudgetStatus,
    UsageRecord,
    UsageStatus,
    budget_key,
)
from dlx_orchestrator.storage.base import BUDGETS, PROVIDER_PRICING, USAGE_LOGS, RecordStore

log = structlog.get_logger(__name__)

# USD per 1k tokens (input, output) when a provider has no pricing row
MODEL_RATES: dict[str, tuple[float, float]] = {
    "gpt-4": (0.03, 0.06),
    "gpt-4-turbo": (0.01, 0.03),
    "gpt-3.5-turbo": (0.001, 0.002),
    "claude-3-opus": (0.015, 0.075),
    "claude-3-sonnet": (0.003, 0.015),
    "claude-3-haiku": (0.00025, 0.00125),
}
DEFAULT_RATE = (0.001, 0.002)

DEFAULT_ALERT_THRESHOLD_PCT = 80.0
EXHAUSTED_PCT = 100.0
TOP_PROVIDERS_LIMIT = 10


class AlertLevel(StrEnum):
    WARNING = "warning"
    CRITICAL = "critical"


class TrendPeriod(StrEnum):
    DAY = "day"
    WEEK = "week"
    MONTH = "month"

    @property
    def span(self) -> timedelta:
        return {
            TrendPeriod.DAY: timedelta(days=1),
            TrendPeriod.WEEK: timedelta(days=7),
            TrendPeriod.MONTH: timedelta(days=30),
        }[self]


@dataclass(frozen=True)
class BudgetAlert:
    """Emitted when a budget metric crosses its alert threshold or its limit."""

    scope: str
    metric: str
    level: AlertLevel
    usage_pct: float
    used: float
    limit: float
    threshold_pct: float
    timestamp: datetime = field(default_factory=lambda: datetime.now(UTC))

    def to_dict(self) -> dict[str, Any]:
        return {
            "scope": self.scope,
            "metric": self.metric,
            "level": self.level.value,
            "usage_pct": round(self.usage_pct, 2),
            "used": self.used,
            "limit": self.limit,
            "threshold_pct": self.threshold_pct,
            "timestamp": self.timestamp.isoformat(),
        }


AlertListener = Callable[[BudgetAlert], Awaitable[None] | None]


@dataclass(frozen=True)
class TokenMetrics:
    total_requests: int = 0
    successful_requests: int = 0
    failed_requests: int = 0
    cached_requests: int = 0
    prompt_tokens: int = 0
    completion_tokens: int = 0
    total_tokens: int = 0
    total_cost: float = 0.0
    average_latency_ms: float = 0.0
    average_tokens_per_request: float = 0.0
    success_rate: float = 0.0

    def to_dict(self) -> dict[str, Any]:
        return {
            "total_requests": self.total_requests,
            "successful_requests": self.successful_requests,
            "failed_requests": self.failed_requests,
            "cached_requests": self.cached_requests,
            "prompt_tokens": self.prompt_tokens,
            "completion_tokens": self.completion_tokens,
            "total_tokens": self.total_tokens,
            "total_cost": round(self.total_cost, 6),
            "average_latency_ms": round(self.average_latency_ms, 1),
            "average_tokens_per_request": round(self.average_tokens_per_request, 1),
            "success_rate": round(self.success_rate, 2),
        }


@dataclass(frozen=True)
class ProviderUsage:
    provider_id: str
    requests: int
    tokens: int
    cost: float
    average_latency_ms: float
    error_rate: float

    def to_dict(self) -> dict[str, Any]:
        return {
            "provider_id": self.provider_id,
            "requests": self.requests,
            "tokens": self.tokens,
            "cost": round(self.cost, 6),
            "average_latency_ms": round(self.average_latency_ms, 1),
            "error_rate": round(self.error_rate, 2),
        }


@dataclass(frozen=True)
class UsageTrend:
    """Current period compared with the one before it.

    Change percentages are None when the previous period holds no records;
    insufficient_history is then True. No figure is ever extrapolated.
    """

    period: TrendPeriod
    current_tokens: int
    previous_tokens: int
    current_cost: float
    previous_cost: float
    token_change_pct: float | None
    cost_change_pct: float | None
    insufficient_history: bool

    def to_dict(self) -> dict[str, Any]:
        return {
            "period": self.period.value,
            "current_tokens": self.current_tokens,
            "previous_tokens": self.previous_tokens,
            "current_cost": round(self.current_cost, 6),
            "previous_cost": round(self.previous_cost, 6),
            "token_change_pct": self.token_change_pct,
            "cost_change_pct": self.cost_change_pct,
            "insufficient_history": self.insufficient_history,
        }


def rate_for_model(model_name: str) -> tuple[float, float]:
    """Built-in (input, output) USD per 1k tokens for a wire model name."""
    return MODEL_RATES.get(model_name, DEFAULT_RATE)


class UsageTracker:
    """Records usage and maintains budgets over a RecordStore.

    Args:
        store: Persistence boundary holding usage_logs, budgets and
            provider_pricing collections
        alert_threshold_pct: Threshold applied to budgets created without
            an explicit one
        clock: Returns the current UTC time; injectable for tests
    """

    def __init__(
        self,
        store: RecordStore,
        *,
        alert_threshold_pct: float = DEFAULT_ALERT_THRESHOLD_PCT,
        clock: Callable[[], datetime] = lambda: datetime.now(UTC),
    ) -> None:
        self._store = store
        self._default_threshold = alert_threshold_pct
        self._clock = clock
        # One lock per budget key; budgets are read-modify-written under it
        self._locks: defaultdict[str, asyncio.Lock] = defaultdict(asyncio.Lock)
        self._listeners: list[AlertListener] = []

    def add_alert_listener(self, listener: AlertListener) -> None:
        """Register a callable (sync or async) invoked for every BudgetAlert."""
        self._listeners.append(listener)

    # ------------------------------------------------------------------
    # Cost
    # ------------------------------------------------------------------

    async def get_pricing(self, provider_id: str) -> ProviderPricing | None:
        rows = await self._store.select(PROVIDER_PRICING, {"provider_id": provider_id}, limit=1)
        return ProviderPricing.from_record(rows[0]) if rows else None

    async def pricing_table(self) -> dict[str, ProviderPricing]:
        """Every configured pricing row keyed by provider id."""
        rows = await self._store.select(PROVIDER_PRICING)
        return {row["provider_id"]: ProviderPricing.from_record(row) for row in rows}

    async def estimate_cost(
        self,
        provider_id: str,
        model_name: str,
        prompt_tokens: int,
        completion_tokens: int,
        *,
        is_free: bool = False,
    ) -> float:
        """USD cost of a call: 0 for free/local models, else provider or table rates."""
        if is_free:
            return 0.0
        pricing = await self.get_pricing(provider_id)
        if pricing is not None:
            return pricing.cost(prompt_tokens, completion_tokens)
        input_rate, output_rate = rate_for_model(model_name)
        return (prompt_tokens / 1000.0) * input_rate + (completion_tokens / 1000.0) * output_rate

    # ------------------------------------------------------------------
    # Recording
    # ------------------------------------------------------------------

    async def record(
        self,
        usage: UsageRecord,
        *,
        model_name: str | None = None,
        is_free: bool = False,
    ) -> UsageRecord:
        """Price, persist and account for one request attempt.

        Cached records cost nothing. Only SUCCESS records are added to
        budgets; failed attempts are kept in the ledger with their cost.

        Args:
            usage: Attempt outcome; estimated_cost is recomputed here
            model_name: Wire model name used for table pricing
                (defaults to usage.model_id)
            is_free: Model is free tier or served locally

        Returns:
            The stored UsageRecord with its final cost.
        """
        if usage.status == UsageStatus.CACHED:
            cost = 0.0
        else:
            cost = await self.estimate_cost(
                usage.provider_id,
                model_name or usage.model_id,
                usage.prompt_tokens,
                usage.completion_tokens,
                is_free=is_free,
            )
        record = replace(usage, estimated_cost=cost)
        await self._store.insert(USAGE_LOGS, record.to_record())

        log.info(
            "usage.recorded",
            usage_id=record.id,
            provider_id=record.provider_id,
            model_id=record.model_id,
            status=record.status.value,
            total_tokens=record.total_tokens,
            cost=round(cost, 6),
            latency_ms=round(record.latency_ms, 1),
        )

        if record.status == UsageStatus.SUCCESS:
            await self._apply_to_budgets(record)
        return record

    async def _apply_to_budgets(self, record: UsageRecord) -> None:
        keys = [BudgetScope.DAILY.value, BudgetScope.MONTHLY.value, BudgetScope.TOTAL.value]
        if record.project_id:
            keys.append(budget_key(BudgetScope.PROJECT, record.project_id))

        alerts: list[BudgetAlert] = []
        for key in keys:
            async with self._locks[key]:
                row = await self._store.get(BUDGETS, key)
                if row is None:
                    continue
                budget = Budget.from_record(row)
                before_tokens, before_cost = budget.token_pct, budget.cost_pct
                budget.tokens_used += record.total_tokens
                budget.cost_used += record.estimated_cost
                await self._store.update(
                    BUDGETS,
                    key,
                    {"tokens_used": budget.tokens_used, "cost_used": budget.cost_used},
                )
            alerts.extend(self._crossings(budget, "tokens", before_tokens, budget.token_pct))
            alerts.extend(self._crossings(budget, "cost", before_cost, budget.cost_pct))

        for alert in alerts:
            await self._emit(alert)

    def _crossings(
        self,
        budget: Budget,
        metric: str,
        before_pct: float,
        after_pct: float,
    ) -> list[BudgetAlert]:
        if metric == "tokens":
            used, limit = float(budget.tokens_used), float(budget.token_limit or 0)
        else:
            used, limit = budget.cost_used, float(budget.cost_limit or 0)
        if not limit:
            return []

        alerts = []
        for level, threshold in (
            (AlertLevel.WARNING, budget.alert_threshold_pct),
            (AlertLevel.CRITICAL, EXHAUSTED_PCT),
        ):
            if before_pct < threshold <= after_pct:
                alerts.append(
                    BudgetAlert(
                        scope=budget.key,
                        metric=metric,
                        level=level,
                        usage_pct=after_pct,
                        used=used,
                        limit=limit,
                        threshold_pct=threshold,
                        timestamp=self._clock(),
                    )
                )
        return alerts

    async def _emit(self, alert: BudgetAlert) -> None:
        log_fn = log.critical if alert.level == AlertLevel.CRITICAL else log.warning
        log_fn("usage.budget_alert", **alert.to_dict())
        for listener in self._listeners:
            try:
                result = listener(alert)
                if inspect.isawaitable(result):
                    await result
            except Exception:
                log.exception("usage.alert_listener_failed", scope=alert.scope)

    # ------------------------------------------------------------------
    # Budgets
    # ------------------------------------------------------------------

    async def set_budget(
        self,
        scope: BudgetScope | str,
        *,
        token_limit: int | None = None,
        cost_limit: float | None = None,
        project_id: str | None = None,
        alert_threshold_pct: float | None = None,
        reset_at: datetime | None = None,
    ) -> Budget:
        """Create or reconfigure a budget. Consumption counters are preserved."""
        key = budget_key(scope, project_id)
        async with self._locks[key]:
            row = await self._store.get(BUDGETS, key)
            budget = Budget(
                scope=BudgetScope(scope),
                project_id=project_id,
                token_limit=token_limit,
                cost_limit=cost_limit,
                tokens_used=row["tokens_used"] if row else 0,
                cost_used=row["cost_used"] if row else 0.0,
                alert_threshold_pct=(
                    alert_threshold_pct
                    if alert_threshold_pct is not None
                    else self._default_threshold
                ),
                reset_at=reset_at,
            )
            if row is None:
                await self._store.insert(BUDGETS, budget.to_record())
            else:
                await self._store.update(BUDGETS, key, budget.to_record())

        log.info(
            "usage.budget_configured",
            scope=key,
            token_limit=token_limit,
            cost_limit=cost_limit,
            alert_threshold_pct=budget.alert_threshold_pct,
        )
        return budget

    async def get_budget(
        self,
        scope: BudgetScope | str,
        project_id: str | None = None,
    ) -> Budget | None:
        row = await self._store.get(BUDGETS, budget_key(scope, project_id))
        return Budget.from_record(row) if row else None

    async def check_budget(
        self,
        scope: BudgetScope | str,
        project_id: str | None = None,
    ) -> BudgetStatus:
        """Current standing of a scope. Unconfigured scopes report limit 0."""
        budget = await self.get_budget(scope, project_id)
        if budget is None:
            return BudgetStatus.unconfigured(budget_key(scope, project_id))
        return BudgetStatus.from_budget(budget)

    async def ensure_within_budget(
        self,
        scope: BudgetScope | str,
        project_id: str | None = None,
    ) -> BudgetStatus:
        """Like check_budget() but raises when the scope is over its limit.

        Raises:
            BudgetExceededError: The budget's token or cost limit is exceeded
        """
        status = await self.check_budget(scope, project_id)
        if not status.within_budget:
            over_tokens = status.limit and status.used > status.limit
            raise BudgetExceededError(
                f"Budget {status.scope} exceeded",
                scope=status.scope,
                used=status.used if over_tokens else status.cost_used,
                limit=status.limit if over_tokens else status.cost_limit,
            )
        return status

    async def get_budget_status(self) -> list[BudgetStatus]:
        rows = await self._store.select(BUDGETS, order_by="id")
        return [BudgetStatus.from_budget(Budget.from_record(row)) for row in rows]

    # ------------------------------------------------------------------
    # Analytics
    # ------------------------------------------------------------------

    async def get_metrics(
        self,
        start: datetime | None = None,
        end: datetime | None = None,
        project_id: str | None = None,
    ) -> TokenMetrics:
        records = await self._load_records(start, end, project_id)
        if not records:
            return TokenMetrics()

        successful = sum(1 for r in records if r.status == UsageStatus.SUCCESS)
        cached = sum(1 for r in records if r.status == UsageStatus.CACHED)
        failed = len(records) - successful - cached
        prompt = sum(r.prompt_tokens for r in records)
        completion = sum(r.completion_tokens for r in records)
        called = [r for r in records if r.status != UsageStatus.CACHED]

        return TokenMetrics(
            total_requests=len(records),
            successful_requests=successful,
            failed_requests=failed,
            cached_requests=cached,
            prompt_tokens=prompt,
            completion_tokens=completion,
            total_tokens=prompt + completion,
            total_cost=sum(r.estimated_cost for r in records),
            average_latency_ms=(
                sum(r.latency_ms for r in called) / len(called) if called else 0.0
            ),
            average_tokens_per_request=(prompt + completion) / len(records),
            success_rate=(successful + cached) / len(records) * 100.0,
        )

    async def get_provider_usage(
        self,
        start: datetime | None = None,
        end: datetime | None = None,
        limit: int = TOP_PROVIDERS_LIMIT,
    ) -> list[ProviderUsage]:
        """Per-provider usage sorted by request count (provider id breaks ties)."""
        by_provider: dict[str, list[UsageRecord]] = defaultdict(list)
        for record in await self._load_records(start, end):
            by_provider[record.provider_id].append(record)

        usage = []
        for provider_id, records in by_provider.items():
            failed = sum(
                1 for r in records
                if r.status in (UsageStatus.FAILED, UsageStatus.RATE_LIMITED)
            )
            usage.append(
                ProviderUsage(
                    provider_id=provider_id,
                    requests=len(records),
                    tokens=sum(r.total_tokens for r in records),
                    cost=sum(r.estimated_cost for r in records),
                    average_latency_ms=sum(r.latency_ms for r in records) / len(records),
                    error_rate=failed / len(records) * 100.0,
                )
            )
        usage.sort(key=lambda u: (-u.requests, u.provider_id))
        return usage[:limit]

    async def get_top_providers(self, limit: int = 5) -> list[ProviderUsage]:
        return await self.get_provider_usage(limit=limit)

    async def get_usage(self, conversation_id: str) -> list[UsageRecord]:
        rows = await self._store.select(
            USAGE_LOGS,
            {"conversation_id": conversation_id},
            order_by="timestamp",
        )
        return [UsageRecord.from_record(row) for row in rows]

    async def get_usage_trend(
        self,
        period: TrendPeriod | str = TrendPeriod.DAY,
        project_id: str | None = None,
    ) -> UsageTrend:
        period = TrendPeriod(period)
        now = self._clock()
        current = await self._load_records(now - period.span, now, project_id)
        previous = await self._load_records(
            now - 2 * period.span, now - period.span, project_id
        )

        current_tokens = sum(r.total_tokens for r in current)
        current_cost = sum(r.estimated_cost for r in current)
        previous_tokens = sum(r.total_tokens for r in previous)
        previous_cost = sum(r.estimated_cost for r in previous)

        insufficient = not previous
        return UsageTrend(
            period=period,
            current_tokens=current_tokens,
            previous_tokens=previous_tokens,
            current_cost=current_cost,
            previous_cost=previous_cost,
            token_change_pct=None if insufficient else _change_pct(previous_tokens, current_tokens),
            cost_change_pct=None if insufficient else _change_pct(previous_cost, current_cost),
            insufficient_history=insufficient,
        )

    async def _load_records(
        self,
        start: datetime | None,
        end: datetime | None,
        project_id: str | None = None,
    ) -> list[UsageRecord]:
        where = {"project_id": project_id} if project_id else None
        rows = await self._store.select(USAGE_LOGS, where, order_by="timestamp")
        records = [UsageRecord.from_record(row) for row in rows]
        # Half-open window [start, end)
        return [
            r for r in records
            if (start is None or r.timestamp >= start) and (end is None or r.timestamp < end)
        ]


def _change_pct(previous: float, current: float) -> float | None:
    if previous == 0:
        return None
    return round((current - previous) / previous * 100.0, 2)
