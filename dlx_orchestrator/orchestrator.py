"""Composition root and caller-facing API.

Orchestrator owns one instance of every component and wires them
together; there are no module-level singletons. Build it with
Orchestrator.from_settings() and bracket its lifetime with start() and
shutdown():

    orchestrator = Orchestrator.from_settings(settings, store=store)
    await orchestrator.start()
    try:
        response = await orchestrator.orchestrate([Message.user("hi")])
    finally:
        await orchestrator.shutdown()

Request flow for orchestrate():
1. Plan: complexity -> constraints -> RoutingPlan
2. Non-streaming requests are answered from the ResponseCache when the
   primary model has a live entry (recorded as a cached UsageRecord)
3. Execute primary, failing over once to the fallback; each attempt's
   history is fitted to that model's context window
4. Complete responses are cached under the model that produced them
"""

from __future__ import annotations

import asyncio
import inspect
from collections.abc import Awaitable, Callable, Sequence

import httpx
import structlog

from dlx_orchestrator.cache.backend import get_cache_backend
from dlx_orchestrator.cache.persistence import CacheWriteBehind
from dlx_orchestrator.cache.response_cache import CacheStats, ResponseCache
from dlx_orchestrator.config import Settings, get_settings
from dlx_orchestrator.context.tokens import TokenEstimator
from dlx_orchestrator.context.window import ContextWindowManager
from dlx_orchestrator.errors import OrchestrationError
from dlx_orchestrator.llm.channel import ChannelClosedError, FragmentChannel
from dlx_orchestrator.llm.executor import RequestExecutor
from dlx_orchestrator.llm.stream_optimizer import BufferConfig, StreamOptimizer
from dlx_orchestrator.models.conversation import Message, Response
from dlx_orchestrator.models.provider import UseCase
from dlx_orchestrator.models.usage import BudgetScope, BudgetStatus, UsageRecord, UsageStatus
from dlx_orchestrator.routing.metrics import RoutingMetrics
from dlx_orchestrator.routing.registry import ProviderRegistry, ProviderStats
from dlx_orchestrator.routing.router import ProviderRouter
from dlx_orchestrator.routing.strategy import OrchestrationStrategy
from dlx_orchestrator.storage.base import RecordStore
from dlx_orchestrator.storage.memory import InMemoryRecordStore
from dlx_orchestrator.telemetry.logging import bind_request_context, clear_context
from dlx_orchestrator.usage.tracker import UsageTracker

log = structlog.get_logger(__name__)

StreamCallback = Callable[[str], Awaitable[None] | None]


class Orchestrator:
    """Routes, executes and accounts for LLM requests."""

    def __init__(
        self,
        *,
        registry: ProviderRegistry,
        executor: RequestExecutor,
        tracker: UsageTracker,
        metrics: RoutingMetrics,
        cache: ResponseCache,
        strategy: OrchestrationStrategy,
        stream_config: BufferConfig | None = None,
        write_behind: CacheWriteBehind | None = None,
        cache_sweep_interval_seconds: float = 300.0,
        http_client: httpx.AsyncClient | None = None,
    ) -> None:
        self.registry = registry
        self.executor = executor
        self.tracker = tracker
        self.metrics = metrics
        self.cache = cache
        self.strategy = strategy
        self._stream_config = stream_config or BufferConfig()
        self._write_behind = write_behind
        self._sweep_interval = cache_sweep_interval_seconds
        # Closed by shutdown() when the orchestrator created it
        self._http_client = http_client
        self._started = False

    @classmethod
    def from_settings(
        cls,
        settings: Settings | None = None,
        *,
        store: RecordStore | None = None,
        http_client: httpx.AsyncClient | None = None,
    ) -> Orchestrator:
        """Build every component from Settings.

        Args:
            settings: Defaults to get_settings()
            store: Persistence boundary; an empty in-memory store if omitted
            http_client: Shared by the executor and health probes; created
                (and owned) when omitted
        """
        settings = settings or get_settings()
        store = store if store is not None else InMemoryRecordStore()
        owned_client = None
        if http_client is None:
            http_client = owned_client = httpx.AsyncClient()

        estimator = TokenEstimator()
        metrics = RoutingMetrics(settings.metrics_window_size)
        registry = ProviderRegistry.from_settings(store, settings, http_client=http_client)
        router = ProviderRouter(metrics)
        executor = RequestExecutor.from_settings(
            settings, http_client=http_client, estimator=estimator
        )
        tracker = UsageTracker(store, alert_threshold_pct=settings.budget_alert_threshold_pct)

        write_behind = None
        if settings.cache_persistence_enabled:
            write_behind = CacheWriteBehind(get_cache_backend(settings))
        cache = ResponseCache(
            settings.cache_max_entries,
            settings.cache_ttl_seconds,
            write_behind=write_behind,
        )

        strategy = OrchestrationStrategy(
            registry,
            router,
            executor,
            tracker,
            metrics,
            context=ContextWindowManager(estimator),
            reserve_tokens=settings.context_reserve_tokens,
        )
        return cls(
            registry=registry,
            executor=executor,
            tracker=tracker,
            metrics=metrics,
            cache=cache,
            strategy=strategy,
            stream_config=BufferConfig.from_settings(settings),
            write_behind=write_behind,
            cache_sweep_interval_seconds=settings.cache_sweep_interval_seconds,
            http_client=owned_client,
        )

    # ------------------------------------------------------------------
    # Lifecycle
    # ------------------------------------------------------------------

    async def start(self) -> None:
        """Warm the cache and start health probing, sweeping and write-behind."""
        if self._started:
            return
        if self._write_behind is not None:
            warmed = await self.cache.import_entries(await self._write_behind.load_entries())
            await self._write_behind.start()
            log.info("orchestrator.cache_warmed", entries=warmed)
        self.registry.start()
        self.cache.start_sweeper(self._sweep_interval)
        self._started = True
        log.info("orchestrator.started")

    async def shutdown(self) -> None:
        await self.registry.stop()
        await self.cache.stop_sweeper()
        if self._write_behind is not None:
            await self._write_behind.stop()
        await self.executor.aclose()
        await self.registry.aclose()
        if self._http_client is not None:
            await self._http_client.aclose()
        self._started = False
        log.info("orchestrator.stopped")

    # ------------------------------------------------------------------
    # Caller API
    # ------------------------------------------------------------------

    async def orchestrate(
        self,
        history: Sequence[Message],
        use_case: UseCase | str = UseCase.GENERAL,
        *,
        stream: bool = False,
        on_stream_chunk: StreamCallback | None = None,
        channel: FragmentChannel | None = None,
        project_id: str | None = None,
        conversation_id: str | None = None,
        cancel: asyncio.Event | None = None,
    ) -> Response:
        """Answer a conversation through the best available model.

        Args:
            history: Conversation, oldest first; must not be empty
            use_case: coding, analysis, creative or general
            stream: Stream the reply. Implied by on_stream_chunk or channel
            on_stream_chunk: Receives smoothed text chunks as they arrive
            channel: Receives the same chunks and is closed at the end
            project_id: Attributes usage to the project budget
            conversation_id: Stored on every UsageRecord
            cancel: Aborts the request when set; the Response comes back
                with complete=False

        Returns:
            The Response of the attempt that completed (or was cancelled).

        Raises:
            NoProvidersAvailableError: Nothing is routable
            OrchestrationError: Primary and fallback both failed; the
                fallback's error is raised unchanged
        """
        history = list(history)
        if not history:
            raise ValueError("history must contain at least one message")

        streaming = stream or on_stream_chunk is not None or channel is not None
        request_id = bind_request_context(conversation_id=conversation_id, project_id=project_id)
        error: OrchestrationError | None = None
        try:
            plan = await self.strategy.plan(history, use_case)

            if not streaming:
                cached = await self.cache.get(history, plan.primary.model.id)
                if cached is not None:
                    await self._record_cache_hit(cached, project_id, conversation_id)
                    return cached

            cancel_events = [e for e in (cancel,) if e is not None]
            optimizer = None
            if streaming:
                optimizer = StreamOptimizer(
                    self._stream_delivery(on_stream_chunk, channel), self._stream_config
                )
                if channel is not None:
                    cancel_events.append(channel.cancel_event)

            try:
                response = await self.strategy.execute(
                    plan,
                    history,
                    stream=streaming,
                    sink=optimizer.push if optimizer is not None else None,
                    cancel=cancel_events,
                    project_id=project_id,
                    conversation_id=conversation_id,
                )
            finally:
                if optimizer is not None:
                    await optimizer.aclose()

            if response.complete:
                await self.cache.set(history, response.model_id, response)
            return response
        except OrchestrationError as exc:
            error = exc
            log.warning("orchestrator.request_failed", request_id=request_id, **exc.to_dict())
            raise
        finally:
            if channel is not None:
                await channel.close(error)
            clear_context()

    async def get_cache_stats(self) -> CacheStats:
        return await self.cache.get_stats()

    async def get_provider_stats(self) -> ProviderStats:
        return await self.registry.get_provider_stats()

    async def check_budget(
        self,
        scope: BudgetScope | str,
        project_id: str | None = None,
    ) -> BudgetStatus:
        """Advisory budget standing; never blocks a request."""
        return await self.tracker.check_budget(scope, project_id)

    async def is_ready(self) -> bool:
        """At least one active provider is not down."""
        return any(p.is_routable for p in await self.registry.list_active())

    # ------------------------------------------------------------------
    # Internals
    # ------------------------------------------------------------------

    async def _record_cache_hit(
        self,
        response: Response,
        project_id: str | None,
        conversation_id: str | None,
    ) -> None:
        await self.tracker.record(
            UsageRecord(
                provider_id=response.provider_id,
                model_id=response.model_id,
                prompt_tokens=response.prompt_tokens,
                completion_tokens=response.completion_tokens,
                estimated_cost=0.0,
                latency_ms=0.0,
                status=UsageStatus.CACHED,
                conversation_id=conversation_id,
                project_id=project_id,
            )
        )

    @staticmethod
    def _stream_delivery(
        on_stream_chunk: StreamCallback | None,
        channel: FragmentChannel | None,
    ) -> Callable[[str], Awaitable[None]]:
        async def deliver(chunk: str) -> None:
            if channel is not None:
                try:
                    await channel.send(chunk)
                except ChannelClosedError:
                    log.debug("orchestrator.channel_closed_early", chars=len(chunk))
            if on_stream_chunk is not None:
                result = on_stream_chunk(chunk)
                if inspect.isawaitable(result):
                    await result

        return deliver
