"""Tests for the usage ledger and budget accounting.

Covers:
- Cost estimation: provider pricing, built-in model table, free models
- record(): ledger writes, cached/failed records never touch budgets
- Budgets: concurrent accumulation without lost updates, threshold and
  exhaustion alerts, unconfigured scopes, project scopes
- Analytics: metrics, per-provider usage, conversation history, trends
"""

from __future__ import annotations

import asyncio
from datetime import UTC, datetime, timedelta

import pytest

from dlx_orchestrator.errors import BudgetExceededError
from dlx_orchestrator.models.usage import BudgetScope, UsageRecord, UsageStatus
from dlx_orchestrator.storage import USAGE_LOGS, InMemoryRecordStore
from dlx_orchestrator.usage import AlertLevel, TrendPeriod, UsageTracker, rate_for_model


def _usage(
    provider_id: str = "openai",
    model_id: str = "gpt-4o",
    prompt: int = 60,
    completion: int = 40,
    status: UsageStatus = UsageStatus.SUCCESS,
    **kwargs,
) -> UsageRecord:
    return UsageRecord(
        provider_id=provider_id,
        model_id=model_id,
        prompt_tokens=prompt,
        completion_tokens=completion,
        estimated_cost=0.0,
        latency_ms=kwargs.pop("latency_ms", 100.0),
        status=status,
        **kwargs,
    )


@pytest.fixture
def tracker(store):
    return UsageTracker(store)


# ---------------------------------------------------------------------------
# Cost
# ---------------------------------------------------------------------------


class TestCostEstimation:
    @pytest.mark.asyncio
    async def test_provider_pricing_row_used(self, tracker):
        cost = await tracker.estimate_cost("openai", "gpt-4o", 1000, 1000)
        assert cost == pytest.approx(0.02)

    @pytest.mark.asyncio
    async def test_model_table_used_without_pricing_row(self, tracker):
        cost = await tracker.estimate_cost("anthropic", "claude-3-haiku", 2000, 1000)
        assert cost == pytest.approx(2 * 0.00025 + 0.00125)

    @pytest.mark.asyncio
    async def test_unknown_model_uses_default_rate(self, tracker):
        assert rate_for_model("mystery-model") == (0.001, 0.002)
        cost = await tracker.estimate_cost("anthropic", "mystery-model", 1000, 1000)
        assert cost == pytest.approx(0.003)

    @pytest.mark.asyncio
    async def test_free_model_costs_nothing(self, tracker):
        assert await tracker.estimate_cost("openai", "gpt-4o", 1000, 1000, is_free=True) == 0.0

    @pytest.mark.asyncio
    async def test_pricing_table_keyed_by_provider(self, tracker):
        table = await tracker.pricing_table()
        assert set(table) == {"openai"}
        assert table["openai"].output_cost_per_1k == 0.015


# ---------------------------------------------------------------------------
# record()
# ---------------------------------------------------------------------------


class TestRecord:
    @pytest.mark.asyncio
    async def test_record_prices_and_persists(self, tracker, store):
        stored = await tracker.record(_usage(prompt=1000, completion=1000))

        assert stored.estimated_cost == pytest.approx(0.02)
        rows = await store.select(USAGE_LOGS)
        assert len(rows) == 1
        assert rows[0]["total_tokens"] == 2000
        assert rows[0]["status"] == "success"

    @pytest.mark.asyncio
    async def test_cached_record_is_free(self, tracker):
        stored = await tracker.record(_usage(status=UsageStatus.CACHED))
        assert stored.estimated_cost == 0.0

    @pytest.mark.asyncio
    async def test_only_successful_records_feed_budgets(self, tracker):
        await tracker.set_budget(BudgetScope.DAILY, token_limit=10_000)

        await tracker.record(_usage(status=UsageStatus.FAILED, error_message="boom"))
        await tracker.record(_usage(status=UsageStatus.CACHED))
        await tracker.record(_usage())

        status = await tracker.check_budget(BudgetScope.DAILY)
        assert status.used == 100

    @pytest.mark.asyncio
    async def test_concurrent_records_accumulate_exactly(self, tracker):
        await tracker.set_budget(BudgetScope.DAILY, token_limit=1_000_000, cost_limit=100.0)
        await tracker.set_budget(BudgetScope.PROJECT, project_id="alpha", token_limit=1_000_000)

        await asyncio.gather(
            *(tracker.record(_usage(project_id="alpha")) for _ in range(50))
        )

        daily = await tracker.check_budget(BudgetScope.DAILY)
        project = await tracker.check_budget(BudgetScope.PROJECT, "alpha")
        assert daily.used == 50 * 100
        assert project.used == 50 * 100
        assert daily.cost_used == pytest.approx(50 * 0.0009)

    @pytest.mark.asyncio
    async def test_project_budget_ignores_other_projects(self, tracker):
        await tracker.set_budget(BudgetScope.PROJECT, project_id="alpha", token_limit=1000)

        await tracker.record(_usage(project_id="beta"))

        assert (await tracker.check_budget(BudgetScope.PROJECT, "alpha")).used == 0


# ---------------------------------------------------------------------------
# Budgets
# ---------------------------------------------------------------------------


class TestBudgets:
    @pytest.mark.asyncio
    async def test_unconfigured_scope_reports_zero_limit(self, tracker):
        status = await tracker.check_budget(BudgetScope.MONTHLY)

        assert status.within_budget is True
        assert status.limit == 0
        assert status.configured is False
        assert status.to_dict()["usage"] == 0

    @pytest.mark.asyncio
    async def test_project_scope_requires_project_id(self, tracker):
        with pytest.raises(ValueError):
            await tracker.check_budget(BudgetScope.PROJECT)

    @pytest.mark.asyncio
    async def test_reconfiguring_preserves_consumption(self, tracker):
        await tracker.set_budget(BudgetScope.TOTAL, token_limit=1000)
        await tracker.record(_usage())

        budget = await tracker.set_budget(BudgetScope.TOTAL, token_limit=5000)

        assert budget.tokens_used == 100
        assert budget.token_limit == 5000

    @pytest.mark.asyncio
    async def test_threshold_and_exhaustion_alerts(self, tracker):
        alerts = []
        tracker.add_alert_listener(alerts.append)
        await tracker.set_budget(BudgetScope.DAILY, token_limit=1000, alert_threshold_pct=80)

        await tracker.record(_usage(prompt=700, completion=0))
        assert alerts == []

        await tracker.record(_usage(prompt=150, completion=0))
        assert [a.level for a in alerts] == [AlertLevel.WARNING]
        assert alerts[0].scope == "daily"
        assert alerts[0].metric == "tokens"

        await tracker.record(_usage(prompt=200, completion=0))
        assert [a.level for a in alerts] == [AlertLevel.WARNING, AlertLevel.CRITICAL]

        status = await tracker.check_budget(BudgetScope.DAILY)
        assert status.within_budget is False
        assert status.token_pct == 105.0

    @pytest.mark.asyncio
    async def test_async_listener_awaited_and_failures_contained(self, tracker):
        received = []

        async def async_listener(alert):
            received.append(alert)

        def broken_listener(alert):
            raise RuntimeError("listener bug")

        tracker.add_alert_listener(broken_listener)
        tracker.add_alert_listener(async_listener)
        await tracker.set_budget(BudgetScope.TOTAL, token_limit=100)

        await tracker.record(_usage())

        assert [a.level for a in received] == [AlertLevel.WARNING, AlertLevel.CRITICAL]

    @pytest.mark.asyncio
    async def test_ensure_within_budget_raises_when_exceeded(self, tracker):
        await tracker.set_budget(BudgetScope.TOTAL, token_limit=50)
        await tracker.record(_usage())

        with pytest.raises(BudgetExceededError) as exc_info:
            await tracker.ensure_within_budget(BudgetScope.TOTAL)

        assert exc_info.value.used == 100
        assert exc_info.value.limit == 50

    @pytest.mark.asyncio
    async def test_budget_status_lists_every_scope(self, tracker):
        await tracker.set_budget(BudgetScope.DAILY, token_limit=10)
        await tracker.set_budget(BudgetScope.PROJECT, project_id="alpha", cost_limit=1.0)

        statuses = await tracker.get_budget_status()

        assert [s.scope for s in statuses] == ["daily", "project:alpha"]


# ---------------------------------------------------------------------------
# Analytics
# ---------------------------------------------------------------------------


class TestAnalytics:
    @pytest.mark.asyncio
    async def test_metrics_aggregate_statuses(self, tracker):
        await tracker.record(_usage(latency_ms=100.0))
        await tracker.record(_usage(latency_ms=300.0, status=UsageStatus.FAILED))
        await tracker.record(_usage(latency_ms=0.0, status=UsageStatus.CACHED))
        await tracker.record(_usage(latency_ms=200.0))

        metrics = await tracker.get_metrics()

        assert metrics.total_requests == 4
        assert metrics.successful_requests == 2
        assert metrics.failed_requests == 1
        assert metrics.cached_requests == 1
        assert metrics.total_tokens == 400
        assert metrics.average_latency_ms == pytest.approx(200.0)
        assert metrics.success_rate == pytest.approx(75.0)

    @pytest.mark.asyncio
    async def test_empty_metrics(self, tracker):
        assert (await tracker.get_metrics()).total_requests == 0

    @pytest.mark.asyncio
    async def test_provider_usage_sorted_by_requests(self, tracker):
        await tracker.record(_usage(provider_id="ollama", model_id="llama3-8b"))
        await tracker.record(_usage())
        await tracker.record(_usage(status=UsageStatus.FAILED))

        usage = await tracker.get_top_providers()

        assert [u.provider_id for u in usage] == ["openai", "ollama"]
        assert usage[0].requests == 2
        assert usage[0].error_rate == pytest.approx(50.0)

    @pytest.mark.asyncio
    async def test_usage_by_conversation(self, tracker):
        await tracker.record(_usage(conversation_id="c1"))
        await tracker.record(_usage(conversation_id="c2"))
        await tracker.record(_usage(conversation_id="c1", status=UsageStatus.FAILED))

        records = await tracker.get_usage("c1")

        assert len(records) == 2
        assert {r.status for r in records} == {UsageStatus.SUCCESS, UsageStatus.FAILED}

    @pytest.mark.asyncio
    async def test_trend_without_history_is_flagged(self, tracker):
        await tracker.record(_usage())

        trend = await tracker.get_usage_trend(TrendPeriod.DAY)

        assert trend.insufficient_history is True
        assert trend.token_change_pct is None
        assert trend.current_tokens == 100

    @pytest.mark.asyncio
    async def test_trend_compares_periods(self):
        now = datetime(2026, 3, 10, 12, 0, tzinfo=UTC)
        tracker = UsageTracker(InMemoryRecordStore(), clock=lambda: now)

        await tracker.record(_usage(timestamp=now - timedelta(days=1, hours=6)))
        await tracker.record(_usage(prompt=100, completion=50, timestamp=now - timedelta(hours=1)))

        trend = await tracker.get_usage_trend("day")

        assert trend.insufficient_history is False
        assert trend.previous_tokens == 100
        assert trend.current_tokens == 150
        assert trend.token_change_pct == 50.0
