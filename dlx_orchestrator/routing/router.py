"""Provider router - scored (provider, model) selection.

The router turns a candidate set and soft RoutingConstraints into a
RoutingPlan (primary / fallback / alternative):

1. Filter by use case (exact or "general"), minimum context window,
   locality, free tier and max cost. If nothing survives, the unfiltered
   set is used instead: preferences never cause "no provider available".
2. Score each survivor as a weighted sum of signals: use-case match,
   locality match, trailing success rate and latency, context window size,
   provider priority and health.
3. Rank by score, then provider priority, then model id, and take the top
   three as primary, fallback and alternative. When fewer than three
   candidates survive the filter, the remaining slots are backfilled with
   the best-ranked filtered-out candidates so a fallback still exists.

Selection is a pure function of its inputs and the metrics snapshot, so
identical inputs always produce an identical plan.
"""

from __future__ import annotations

from collections.abc import Mapping, Sequence
from dataclasses import dataclass

import structlog

from dlx_orchestrator.errors import NoProvidersAvailableError
from dlx_orchestrator.models.provider import HealthStatus, ProviderPricing, UseCase
from dlx_orchestrator.models.routing import (
    Candidate,
    PlanEntry,
    RoutingConstraints,
    RoutingPlan,
)
from dlx_orchestrator.routing.metrics import RoutingMetrics
from dlx_orchestrator.usage.tracker import rate_for_model

log = structlog.get_logger(__name__)

# Request size assumed for cost estimates and the max_cost filter
AVERAGE_REQUEST_TOKENS = 1000
INPUT_SHARE = 0.4

DEFAULT_SUCCESS_RATE = 0.9
BASE_LATENCY_MS = 500.0
LATENCY_MS_PER_1K_CONTEXT = 10.0
REFERENCE_CONTEXT_WINDOW = 128_000


@dataclass(frozen=True)
class ScoringWeights:
    use_case: float = 30.0
    locality: float = 15.0
    success_rate: float = 25.0
    latency: float = 15.0
    context_window: float = 10.0
    priority: float = 5.0
    free: float = 10.0
    degraded_penalty: float = 10.0
    # Multiplier on the context weight when capability is preferred
    capability_boost: float = 4.0


@dataclass(frozen=True)
class _Scored:
    candidate: Candidate
    score: float
    estimated_cost: float
    estimated_latency_ms: float


class ProviderRouter:
    """Scores candidates and builds RoutingPlans.

    Args:
        metrics: Trailing-window outcomes; without it every candidate gets
            the default success rate and a context-proportional latency
        weights: Signal weights
    """

    def __init__(
        self,
        metrics: RoutingMetrics | None = None,
        weights: ScoringWeights | None = None,
    ) -> None:
        self._metrics = metrics or RoutingMetrics()
        self._weights = weights or ScoringWeights()

    def select(
        self,
        candidates: Sequence[Candidate],
        constraints: RoutingConstraints,
        *,
        estimated_tokens: int = AVERAGE_REQUEST_TOKENS,
        pricing: Mapping[str, ProviderPricing] | None = None,
    ) -> RoutingPlan:
        """Build a RoutingPlan.

        Args:
            candidates: Routable (provider, model) pairs
            constraints: Soft preferences
            estimated_tokens: Expected request size for the cost estimate
            pricing: Provider pricing by provider id; models of providers
                without a row are priced from the built-in rate table

        Returns:
            RoutingPlan with up to three distinct entries.

        Raises:
            NoProvidersAvailableError: No routable candidate exists at all
        """
        usable = [
            c for c in candidates
            if c.provider.is_routable and c.model.is_available
        ]
        if not usable:
            raise NoProvidersAvailableError("No active provider with an available model")

        pricing = pricing or {}
        filtered = self._filter(usable, constraints, pricing)
        relaxed = not filtered
        if relaxed:
            log.info(
                "router.constraints_relaxed",
                constraints=constraints.to_dict(),
                candidates=len(usable),
            )
            filtered = usable

        ranked = self._rank(filtered, constraints, estimated_tokens, pricing)
        if len(ranked) < 3 and not relaxed:
            kept = {(c.provider.id, c.model.id) for c in filtered}
            rest = [c for c in usable if (c.provider.id, c.model.id) not in kept]
            ranked += self._rank(rest, constraints, estimated_tokens, pricing)

        top_priority = min(c.provider.priority for c in filtered)
        entries = [self._entry(s, constraints, top_priority) for s in ranked[:3]]
        plan = RoutingPlan(
            primary=entries[0],
            fallback=entries[1] if len(entries) > 1 else None,
            alternative=entries[2] if len(entries) > 2 else None,
            constraints_relaxed=relaxed,
        )

        log.info(
            "router.plan_selected",
            primary=f"{plan.primary.provider.id}/{plan.primary.model.id}",
            fallback=(
                f"{plan.fallback.provider.id}/{plan.fallback.model.id}"
                if plan.fallback else None
            ),
            score=round(plan.primary.score, 3),
            candidates=len(filtered),
            relaxed=relaxed,
        )
        return plan

    # ------------------------------------------------------------------
    # Filtering
    # ------------------------------------------------------------------

    def _filter(
        self,
        candidates: list[Candidate],
        constraints: RoutingConstraints,
        pricing: Mapping[str, ProviderPricing],
    ) -> list[Candidate]:
        result = []
        for c in candidates:
            if constraints.use_case is not None and c.model.use_case not in (
                constraints.use_case,
                UseCase.GENERAL,
            ):
                continue
            if (
                constraints.min_context_window is not None
                and c.model.context_window < constraints.min_context_window
            ):
                continue
            if constraints.prefer_local and not c.provider.is_local:
                continue
            if constraints.require_free and not self._is_free(c, pricing):
                continue
            if (
                constraints.max_cost is not None
                and self.estimate_cost(c, AVERAGE_REQUEST_TOKENS, pricing) > constraints.max_cost
            ):
                continue
            result.append(c)
        return result

    # ------------------------------------------------------------------
    # Estimates
    # ------------------------------------------------------------------

    @staticmethod
    def _is_free(candidate: Candidate, pricing: Mapping[str, ProviderPricing]) -> bool:
        row = pricing.get(candidate.provider.id)
        return candidate.model.is_free or candidate.provider.is_local or bool(row and row.is_free)

    def estimate_cost(
        self,
        candidate: Candidate,
        tokens: int,
        pricing: Mapping[str, ProviderPricing] | None = None,
    ) -> float:
        """USD estimate for `tokens` split 40% input / 60% output; 0 when free."""
        pricing = pricing or {}
        if self._is_free(candidate, pricing):
            return 0.0
        prompt = tokens * INPUT_SHARE
        completion = tokens - prompt
        row = pricing.get(candidate.provider.id)
        if row is not None:
            return row.cost(int(prompt), int(completion))
        input_rate, output_rate = rate_for_model(candidate.model.model_name)
        return prompt / 1000.0 * input_rate + completion / 1000.0 * output_rate

    def estimate_latency(self, candidate: Candidate) -> float:
        """Historical average, or a default proportional to the context window."""
        observed = self._metrics.average_latency(candidate.provider.id, candidate.model.id)
        if observed is not None:
            return observed
        return BASE_LATENCY_MS + candidate.model.context_window / 1000.0 * LATENCY_MS_PER_1K_CONTEXT

    # ------------------------------------------------------------------
    # Scoring
    # ------------------------------------------------------------------

    def _rank(
        self,
        candidates: list[Candidate],
        constraints: RoutingConstraints,
        estimated_tokens: int,
        pricing: Mapping[str, ProviderPricing],
    ) -> list[_Scored]:
        scored = [self._score(c, constraints, estimated_tokens, pricing) for c in candidates]
        scored.sort(
            key=lambda s: (-s.score, s.candidate.provider.priority, s.candidate.model.id)
        )
        return scored

    def _score(
        self,
        candidate: Candidate,
        constraints: RoutingConstraints,
        estimated_tokens: int,
        pricing: Mapping[str, ProviderPricing],
    ) -> _Scored:
        w = self._weights
        provider, model = candidate.provider, candidate.model

        score = 0.0
        if constraints.use_case is not None:
            if model.use_case == constraints.use_case:
                score += w.use_case
            elif model.use_case == UseCase.GENERAL:
                score += w.use_case / 2
        if constraints.prefer_local and provider.is_local:
            score += w.locality
        if constraints.require_free and self._is_free(candidate, pricing):
            score += w.free

        success_rate = self._metrics.success_rate(provider.id, model.id)
        score += w.success_rate * (DEFAULT_SUCCESS_RATE if success_rate is None else success_rate)

        latency = self.estimate_latency(candidate)
        score += w.latency / (1.0 + latency / 1000.0)

        context_weight = w.context_window * (
            w.capability_boost if constraints.prefer_capability else 1.0
        )
        score += context_weight * min(model.context_window / REFERENCE_CONTEXT_WINDOW, 1.0)

        score += w.priority / (1.0 + max(provider.priority, 0) / 100.0)

        if provider.health_status == HealthStatus.DEGRADED:
            score -= w.degraded_penalty

        return _Scored(
            candidate=candidate,
            score=score,
            estimated_cost=self.estimate_cost(candidate, estimated_tokens, pricing),
            estimated_latency_ms=latency,
        )

    def _entry(
        self,
        scored: _Scored,
        constraints: RoutingConstraints,
        top_priority: int,
    ) -> PlanEntry:
        provider, model = scored.candidate.provider, scored.candidate.model
        reasons = []
        if constraints.prefer_local and provider.is_local:
            reasons.append("local model preferred")
        if constraints.require_free and scored.estimated_cost == 0:
            reasons.append("free model required")
        if constraints.use_case is not None and model.use_case == constraints.use_case:
            reasons.append(f"optimized for {constraints.use_case.value}")
        if provider.priority == top_priority:
            reasons.append("highest priority")
        if scored.estimated_cost == 0:
            reasons.append("no API costs")

        reason = f"Selected {model.display_name} on {provider.name}"
        if reasons:
            reason = f"{reason}: {', '.join(reasons)}"

        return PlanEntry(
            provider=provider,
            model=model,
            reason=reason,
            score=scored.score,
            estimated_cost=scored.estimated_cost,
            estimated_latency_ms=scored.estimated_latency_ms,
        )
