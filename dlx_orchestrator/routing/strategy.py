"""Orchestration strategy: classify, plan, execute with one failover hop.

plan() scores the newest user message, turns the complexity band into
routing constraints and asks the router for a RoutingPlan. execute() sends
the request to the primary entry and, when that attempt fails with a
retryable error, once to the fallback entry. The alternative entry is
never tried automatically.

Every attempt is reported to the UsageTracker and RoutingMetrics under the
provider/model that was actually called, so a failover produces one
failed and one successful record.

No failover happens once streamed text has reached the consumer: the
fallback would repeat output that cannot be retracted.
"""

from __future__ import annotations

import asyncio
import time
from collections.abc import Sequence

import structlog

from dlx_orchestrator.context.window import ContextWindowManager
from dlx_orchestrator.errors import OrchestrationError
from dlx_orchestrator.llm.executor import (
    CancelSignal,
    FragmentSink,
    RequestExecutor,
    as_cancel_events,
)
from dlx_orchestrator.models.conversation import Message, Response
from dlx_orchestrator.models.provider import Model, UseCase
from dlx_orchestrator.models.routing import PlanEntry, RoutingConstraints, RoutingPlan
from dlx_orchestrator.models.usage import UsageRecord, UsageStatus
from dlx_orchestrator.routing.complexity import ComplexityEstimator
from dlx_orchestrator.routing.metrics import RoutingMetrics
from dlx_orchestrator.routing.registry import ProviderRegistry
from dlx_orchestrator.routing.router import ProviderRouter
from dlx_orchestrator.usage.tracker import UsageTracker

log = structlog.get_logger(__name__)

DEFAULT_RESERVE_TOKENS = 1024
CANCELLED_MESSAGE = "cancelled by caller"
ABORTED_MESSAGE = "stream ended before completion"


class OrchestrationStrategy:
    """Plans and executes a single orchestrated request.

    Args:
        registry: Source of routable candidates
        router: Builds the RoutingPlan
        executor: Performs provider calls
        tracker: Receives one UsageRecord per attempt
        metrics: Trailing outcomes shared with the router
        complexity: Task complexity estimator
        context: Fits history into each model's context window
        reserve_tokens: Held back from the window for the completion
    """

    def __init__(
        self,
        registry: ProviderRegistry,
        router: ProviderRouter,
        executor: RequestExecutor,
        tracker: UsageTracker,
        metrics: RoutingMetrics,
        *,
        complexity: ComplexityEstimator | None = None,
        context: ContextWindowManager | None = None,
        reserve_tokens: int = DEFAULT_RESERVE_TOKENS,
    ) -> None:
        self._registry = registry
        self._router = router
        self._executor = executor
        self._tracker = tracker
        self._metrics = metrics
        self._complexity = complexity or ComplexityEstimator()
        self._context = context or ContextWindowManager()
        self._reserve = reserve_tokens

    # ------------------------------------------------------------------
    # Planning
    # ------------------------------------------------------------------

    async def plan(
        self,
        history: Sequence[Message],
        use_case: UseCase | str = UseCase.GENERAL,
        *,
        constraints: RoutingConstraints | None = None,
    ) -> RoutingPlan:
        """Build a RoutingPlan for a conversation.

        Args:
            history: Conversation, oldest first
            use_case: Requested use case; "general" expresses no preference
            constraints: Explicit constraints overriding the
                complexity-derived ones

        Raises:
            NoProvidersAvailableError: Registry has no routable candidate
        """
        use_case = UseCase(use_case)
        complexity = self._complexity.estimate_history(history)
        if constraints is None:
            constraints = self._complexity.constraints_for(
                complexity,
                None if use_case == UseCase.GENERAL else use_case,
            )

        candidates = await self._registry.candidates()
        pricing = await self._tracker.pricing_table()
        plan = self._router.select(
            candidates,
            constraints,
            estimated_tokens=complexity.estimated_tokens,
            pricing=pricing,
        )
        log.info(
            "strategy.planned",
            complexity=complexity.level.value,
            score=round(complexity.score, 2),
            use_case=use_case.value,
            primary=plan.primary.model.id,
            reason=plan.primary.reason,
        )
        return plan

    def fit_context(self, history: Sequence[Message], model: Model) -> list[Message]:
        """Trim history to the model window minus the completion reserve."""
        window = model.context_window
        budget = window - self._reserve if window > self._reserve else window
        return self._context.optimize(history, budget).messages

    # ------------------------------------------------------------------
    # Execution
    # ------------------------------------------------------------------

    async def execute(
        self,
        plan: RoutingPlan,
        history: Sequence[Message],
        *,
        stream: bool = False,
        sink: FragmentSink | None = None,
        cancel: CancelSignal = None,
        project_id: str | None = None,
        conversation_id: str | None = None,
    ) -> Response:
        """Run the plan: primary, then the fallback once on a retryable failure.

        Raises:
            OrchestrationError: The last attempt failed; propagated unchanged
        """
        options = dict(
            stream=stream,
            sink=sink,
            events=as_cancel_events(cancel),
            project_id=project_id,
            conversation_id=conversation_id,
        )
        if plan.fallback is None:
            return await self._attempt(plan.primary, history, **options)

        try:
            return await self._attempt(plan.primary, history, **options)
        except OrchestrationError as exc:
            delivered = exc.partial is not None and bool(exc.partial.content)
            if not exc.retryable or delivered:
                raise
            log.warning(
                "strategy.failover",
                failed_provider=plan.primary.provider.id,
                failed_model=plan.primary.model.id,
                fallback_provider=plan.fallback.provider.id,
                fallback_model=plan.fallback.model.id,
                error_kind=exc.kind.value,
            )
        return await self._attempt(plan.fallback, history, **options)

    async def _attempt(
        self,
        entry: PlanEntry,
        history: Sequence[Message],
        *,
        stream: bool,
        sink: FragmentSink | None,
        events: list[asyncio.Event],
        project_id: str | None,
        conversation_id: str | None,
    ) -> Response:
        provider, model = entry.provider, entry.model
        messages = self.fit_context(history, model)
        start = time.perf_counter()

        try:
            response = await self._executor.send(
                provider,
                model,
                messages,
                stream=stream,
                sink=sink,
                cancel=events,
            )
        except OrchestrationError as exc:
            latency_ms = (time.perf_counter() - start) * 1000
            self._metrics.record_outcome(provider.id, model.id, success=False, latency_ms=latency_ms)
            await self._record(
                entry,
                UsageStatus.FAILED,
                partial=exc.partial,
                latency_ms=latency_ms,
                error_message=f"{exc.kind.value}: {exc.message}",
                project_id=project_id,
                conversation_id=conversation_id,
            )
            raise
        except asyncio.CancelledError as exc:
            await self._record(
                entry,
                UsageStatus.FAILED,
                partial=getattr(exc, "partial", None),
                latency_ms=(time.perf_counter() - start) * 1000,
                error_message=CANCELLED_MESSAGE,
                project_id=project_id,
                conversation_id=conversation_id,
            )
            raise

        if response.complete:
            self._metrics.record_outcome(
                provider.id, model.id, success=True, latency_ms=response.latency_ms
            )
            await self._record(
                entry,
                UsageStatus.SUCCESS,
                partial=response,
                latency_ms=response.latency_ms,
                project_id=project_id,
                conversation_id=conversation_id,
            )
            return response

        cancelled = any(event.is_set() for event in events)
        if not cancelled:
            self._metrics.record_outcome(
                provider.id, model.id, success=False, latency_ms=response.latency_ms
            )
        await self._record(
            entry,
            UsageStatus.FAILED,
            partial=response,
            latency_ms=response.latency_ms,
            error_message=CANCELLED_MESSAGE if cancelled else ABORTED_MESSAGE,
            project_id=project_id,
            conversation_id=conversation_id,
        )
        return response

    async def _record(
        self,
        entry: PlanEntry,
        status: UsageStatus,
        *,
        partial: Response | None,
        latency_ms: float,
        project_id: str | None,
        conversation_id: str | None,
        error_message: str | None = None,
    ) -> None:
        await self._tracker.record(
            UsageRecord(
                provider_id=entry.provider.id,
                model_id=entry.model.id,
                prompt_tokens=partial.prompt_tokens if partial else 0,
                completion_tokens=partial.completion_tokens if partial else 0,
                estimated_cost=0.0,
                latency_ms=latency_ms,
                status=status,
                error_message=error_message,
                conversation_id=conversation_id,
                project_id=project_id,
            ),
            model_name=entry.model.model_name,
            is_free=entry.model.is_free,
        )
