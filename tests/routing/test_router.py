"""Tests for scored provider/model selection."""

from __future__ import annotations

import pytest
from conftest import make_model, make_provider

from dlx_orchestrator.errors import NoProvidersAvailableError
from dlx_orchestrator.models.provider import (
    CostTier,
    HealthStatus,
    ProviderPricing,
    ProviderType,
    UseCase,
)
from dlx_orchestrator.models.routing import Candidate, RoutingConstraints
from dlx_orchestrator.routing import ProviderRouter, RoutingMetrics

PRICING = {"openai": ProviderPricing("openai", 0.005, 0.015)}


def _candidate(provider, model_id="model", **model_kwargs) -> Candidate:
    return Candidate(provider=provider, model=make_model(model_id, provider, **model_kwargs))


@pytest.fixture
def local():
    provider = make_provider("ollama", provider_type=ProviderType.LOCAL, priority=1)
    return _candidate(provider, "llama3-8b", cost_tier=CostTier.FREE)


@pytest.fixture
def cloud():
    provider = make_provider("openai", priority=10)
    return _candidate(provider, "gpt-4o", context_window=128_000, cost_tier=CostTier.HIGH)


class TestSelection:
    def test_selection_is_deterministic(self, local, cloud):
        router = ProviderRouter()
        constraints = RoutingConstraints(prefer_capability=True)

        first = router.select([local, cloud], constraints, pricing=PRICING)
        second = router.select([cloud, local], constraints, pricing=PRICING)

        assert first.to_dict() == second.to_dict()

    def test_capability_preference_picks_large_context(self, local, cloud):
        plan = ProviderRouter().select([local, cloud], RoutingConstraints(prefer_capability=True))

        assert plan.primary.model.id == "gpt-4o"
        assert plan.fallback.model.id == "llama3-8b"

    def test_prefer_local_backfills_fallback(self, local, cloud):
        plan = ProviderRouter().select([local, cloud], RoutingConstraints(prefer_local=True))

        assert plan.primary.provider.id == "ollama"
        assert plan.fallback is not None
        assert plan.fallback.provider.id == "openai"
        assert plan.alternative is None
        assert plan.constraints_relaxed is False

    def test_unsatisfiable_constraints_are_relaxed(self, local, cloud):
        constraints = RoutingConstraints(min_context_window=1_000_000)
        plan = ProviderRouter().select([local, cloud], constraints)

        assert plan.constraints_relaxed is True
        assert {e.model.id for e in plan.entries()} == {"llama3-8b", "gpt-4o"}

    def test_no_usable_candidate_raises(self, cloud):
        inactive = make_provider("dead", is_active=False)
        down = make_provider("down", health_status=HealthStatus.DOWN)
        candidates = [_candidate(inactive), _candidate(down)]

        with pytest.raises(NoProvidersAvailableError):
            ProviderRouter().select(candidates, RoutingConstraints())

    def test_at_most_three_distinct_entries(self):
        provider = make_provider("openai")
        candidates = [_candidate(provider, f"model-{i}") for i in range(5)]

        plan = ProviderRouter().select(candidates, RoutingConstraints())

        ids = [e.model.id for e in plan.entries()]
        assert len(ids) == 3
        assert len(set(ids)) == 3

    def test_ties_broken_by_model_id(self):
        provider = make_provider("openai")
        candidates = [_candidate(provider, "b-model"), _candidate(provider, "a-model")]

        plan = ProviderRouter().select(candidates, RoutingConstraints())

        assert plan.primary.model.id == "a-model"

    def test_use_case_match_ranks_first(self):
        provider = make_provider("openai")
        candidates = [
            _candidate(provider, "general", use_case=UseCase.GENERAL),
            _candidate(provider, "coder", use_case=UseCase.CODING),
            _candidate(provider, "writer", use_case=UseCase.CREATIVE),
        ]

        plan = ProviderRouter().select(candidates, RoutingConstraints(use_case=UseCase.CODING))

        assert [e.model.id for e in plan.entries()] == ["coder", "general", "writer"]
        assert "optimized for coding" in plan.primary.reason

    def test_failure_history_demotes_candidate(self):
        alpha = _candidate(make_provider("alpha"), "shared")
        beta = _candidate(make_provider("beta"), "shared")
        metrics = RoutingMetrics()
        for _ in range(10):
            metrics.record_outcome("alpha", "shared", success=False, latency_ms=0.0)

        plan = ProviderRouter(metrics).select([alpha, beta], RoutingConstraints())

        assert plan.primary.provider.id == "beta"

    def test_degraded_provider_demoted(self):
        alpha = _candidate(make_provider("alpha", health_status=HealthStatus.DEGRADED))
        beta = _candidate(make_provider("beta"))

        plan = ProviderRouter().select([alpha, beta], RoutingConstraints())

        assert plan.primary.provider.id == "beta"
        assert plan.fallback.provider.id == "alpha"

    def test_max_cost_filters_expensive_models(self, local, cloud):
        plan = ProviderRouter().select(
            [local, cloud],
            RoutingConstraints(max_cost=0.005, prefer_capability=True),
            pricing=PRICING,
        )

        assert plan.primary.model.id == "llama3-8b"
        assert plan.primary.estimated_cost == 0.0

    def test_require_free(self, local, cloud):
        plan = ProviderRouter().select([local, cloud], RoutingConstraints(require_free=True))

        assert plan.primary.provider.id == "ollama"
        assert "free model required" in plan.primary.reason
        assert "no API costs" in plan.primary.reason


class TestEstimates:
    def test_local_models_cost_nothing(self, local):
        assert ProviderRouter().estimate_cost(local, 1000) == 0.0

    def test_pricing_row_splits_input_and_output(self, cloud):
        cost = ProviderRouter().estimate_cost(cloud, 1000, PRICING)
        assert cost == pytest.approx(0.4 * 0.005 + 0.6 * 0.015)

    def test_model_table_used_without_pricing(self, cloud):
        cost = ProviderRouter().estimate_cost(cloud, 1000)
        assert cost == pytest.approx(0.4 * 0.001 + 0.6 * 0.002)

    def test_latency_default_scales_with_context(self, local, cloud):
        router = ProviderRouter()
        assert router.estimate_latency(local) < router.estimate_latency(cloud)

    def test_latency_uses_observed_average(self, cloud):
        metrics = RoutingMetrics()
        metrics.record_outcome("openai", "gpt-4o", success=True, latency_ms=120.0)

        assert ProviderRouter(metrics).estimate_latency(cloud) == 120.0
