"""Provider registry and health probing.

Holds the active providers and their models, read from the RecordStore
and served from a short-lived in-memory snapshot so routing decisions do
not hit the store on every request. Configuration changes call
invalidate() to force a reload.

Health state:
- healthy:  last probe answered 2xx within half the probe timeout
- degraded: last probe answered 2xx, but slowly (still routable)
- down:     last probe failed, timed out or answered non-2xx
- unknown:  never probed

Probes (GET {endpoint}/v1/models) run on an independent periodic task,
each bounded by its own timeout. Routing always uses the last known
status; it never waits on a probe. A down provider becomes routable again
after its next successful probe.
"""

from __future__ import annotations

import asyncio
import time
from collections.abc import Callable
from dataclasses import dataclass
from datetime import UTC, datetime
from typing import Any

import httpx
import structlog

from dlx_orchestrator.config import Settings
from dlx_orchestrator.errors import ModelNotFoundError
from dlx_orchestrator.models.provider import HealthStatus, Model, Provider, UseCase
from dlx_orchestrator.models.routing import Candidate
from dlx_orchestrator.storage.base import MODELS, PROVIDERS, RecordStore

log = structlog.get_logger(__name__)

DEFAULT_PROBE_TIMEOUT_SECONDS = 5.0
DEFAULT_CACHE_TTL_SECONDS = 30.0
DEFAULT_CHECK_INTERVAL_SECONDS = 30.0


@dataclass(frozen=True)
class ProviderStats:
    total: int = 0
    healthy: int = 0
    degraded: int = 0
    down: int = 0
    unknown: int = 0
    local: int = 0
    cloud: int = 0

    def to_dict(self) -> dict[str, Any]:
        return {
            "total": self.total,
            "healthy": self.healthy,
            "degraded": self.degraded,
            "down": self.down,
            "unknown": self.unknown,
            "local": self.local,
            "cloud": self.cloud,
        }


@dataclass(frozen=True)
class ProbeResult:
    provider_id: str
    status: HealthStatus
    latency_ms: float | None = None
    error: str | None = None


class ProviderRegistry:
    """Active providers/models plus their live health map.

    Args:
        store: Persistence boundary holding providers and models
        http_client: Client used for probes; one is created (and closed
            by aclose()) when omitted
        probe_timeout_seconds: Upper bound on a single probe
        cache_ttl_seconds: Lifetime of the provider/model snapshot
        check_interval_seconds: Delay between periodic probe sweeps
        clock: Monotonic clock used for snapshot expiry
    """

    def __init__(
        self,
        store: RecordStore,
        *,
        http_client: httpx.AsyncClient | None = None,
        probe_timeout_seconds: float = DEFAULT_PROBE_TIMEOUT_SECONDS,
        cache_ttl_seconds: float = DEFAULT_CACHE_TTL_SECONDS,
        check_interval_seconds: float = DEFAULT_CHECK_INTERVAL_SECONDS,
        clock: Callable[[], float] = time.monotonic,
    ) -> None:
        self._store = store
        self._owns_client = http_client is None
        self._http = http_client or httpx.AsyncClient()
        self._probe_timeout = probe_timeout_seconds
        self._cache_ttl = cache_ttl_seconds
        self._interval = check_interval_seconds
        self._clock = clock

        self._providers: dict[str, Provider] = {}
        self._models: list[Model] = []
        self._loaded_at: float | None = None
        self._refresh_lock = asyncio.Lock()
        # Last known health per provider; overrides the stored value
        self._health: dict[str, tuple[HealthStatus, datetime]] = {}
        self._task: asyncio.Task[None] | None = None

    @classmethod
    def from_settings(
        cls,
        store: RecordStore,
        settings: Settings,
        *,
        http_client: httpx.AsyncClient | None = None,
    ) -> ProviderRegistry:
        return cls(
            store,
            http_client=http_client,
            probe_timeout_seconds=settings.health_probe_timeout_seconds,
            cache_ttl_seconds=settings.registry_cache_ttl_seconds,
            check_interval_seconds=settings.health_check_interval_seconds,
        )

    # ------------------------------------------------------------------
    # Snapshot
    # ------------------------------------------------------------------

    def invalidate(self) -> None:
        """Drop the cached snapshot; the next read reloads from the store."""
        self._loaded_at = None
        log.debug("registry.invalidated")

    def _is_fresh(self) -> bool:
        return self._loaded_at is not None and self._clock() - self._loaded_at < self._cache_ttl

    async def _snapshot(self) -> tuple[dict[str, Provider], list[Model]]:
        if self._is_fresh():
            return self._providers, self._models

        async with self._refresh_lock:
            if self._is_fresh():
                return self._providers, self._models

            provider_rows = await self._store.select(PROVIDERS)
            providers = {row["id"]: Provider.from_record(row) for row in provider_rows}

            models: list[Model] = []
            for row in await self._store.select(MODELS, order_by="id"):
                provider = providers.get(row["provider_id"])
                if provider is None:
                    log.warning(
                        "registry.orphan_model",
                        model_id=row["id"],
                        provider_id=row["provider_id"],
                    )
                    continue
                models.append(Model.from_record(row, provider.provider_type))

            self._providers, self._models = providers, models
            self._loaded_at = self._clock()
            log.debug("registry.refreshed", providers=len(providers), models=len(models))

        return self._providers, self._models

    def _with_health(self, provider: Provider) -> Provider:
        known = self._health.get(provider.id)
        if known is None:
            return provider
        status, checked_at = known
        return provider.with_health(status, checked_at)

    # ------------------------------------------------------------------
    # Queries
    # ------------------------------------------------------------------

    async def list_providers(self) -> list[Provider]:
        """Every configured provider, preferred (lowest priority value) first."""
        providers, _ = await self._snapshot()
        ordered = sorted(providers.values(), key=lambda p: (p.priority, p.id))
        return [self._with_health(p) for p in ordered]

    async def list_active(self) -> list[Provider]:
        return [p for p in await self.list_providers() if p.is_active]

    async def get_provider(self, provider_id: str) -> Provider | None:
        providers, _ = await self._snapshot()
        provider = providers.get(provider_id)
        return self._with_health(provider) if provider is not None else None

    async def list_models(
        self,
        *,
        provider_id: str | None = None,
        use_case: UseCase | None = None,
        available_only: bool = True,
        routable_only: bool = False,
    ) -> list[Model]:
        """Models matching the filter.

        Args:
            provider_id: Only models served by this provider
            use_case: Only models tagged with this use case
            available_only: Skip models whose availability flag is off
            routable_only: Skip models whose provider is inactive or down
        """
        providers, models = await self._snapshot()
        result = []
        for model in models:
            if provider_id is not None and model.provider_id != provider_id:
                continue
            if use_case is not None and model.use_case != use_case:
                continue
            if available_only and not model.is_available:
                continue
            if routable_only and not self._with_health(providers[model.provider_id]).is_routable:
                continue
            result.append(model)
        return result

    async def get_model(self, model_id: str) -> Model:
        """Look up a model by record id.

        Raises:
            ModelNotFoundError: No model with that id is configured
        """
        _, models = await self._snapshot()
        for model in models:
            if model.id == model_id:
                return model
        raise ModelNotFoundError(f"Unknown model {model_id!r}", model_id=model_id)

    async def candidates(self) -> list[Candidate]:
        """Available models paired with their routable providers."""
        providers, models = await self._snapshot()
        result = []
        for model in models:
            if not model.is_available:
                continue
            provider = self._with_health(providers[model.provider_id])
            if provider.is_routable:
                result.append(Candidate(provider=provider, model=model))
        return result

    async def get_provider_stats(self) -> ProviderStats:
        providers = await self.list_providers()
        by_status = {status: 0 for status in HealthStatus}
        for provider in providers:
            by_status[provider.health_status] += 1
        local = sum(1 for p in providers if p.is_local)
        return ProviderStats(
            total=len(providers),
            healthy=by_status[HealthStatus.HEALTHY],
            degraded=by_status[HealthStatus.DEGRADED],
            down=by_status[HealthStatus.DOWN],
            unknown=by_status[HealthStatus.UNKNOWN],
            local=local,
            cloud=len(providers) - local,
        )

    # ------------------------------------------------------------------
    # Health
    # ------------------------------------------------------------------

    async def mark_health(
        self,
        provider_id: str,
        status: HealthStatus,
        checked_at: datetime | None = None,
    ) -> None:
        """Record a provider's health in the live map and the store."""
        checked_at = checked_at or datetime.now(UTC)
        previous = self._health.get(provider_id)
        self._health[provider_id] = (status, checked_at)

        if previous is None or previous[0] != status:
            log.info(
                "registry.health_changed",
                provider_id=provider_id,
                previous=previous[0].value if previous else None,
                status=status.value,
            )

        await self._store.update(
            PROVIDERS,
            provider_id,
            {"health_status": status.value, "last_health_check": checked_at.isoformat()},
        )

    async def probe_provider(self, provider: Provider) -> ProbeResult:
        """GET {endpoint}/v1/models and record the resulting health."""
        url = f"{provider.endpoint_url}/v1/models"
        headers = {"Authorization": f"Bearer {provider.api_key}"} if provider.api_key else {}
        start = time.perf_counter()
        error: str | None = None
        latency_ms: float | None = None

        try:
            async with asyncio.timeout(self._probe_timeout):
                response = await self._http.get(url, headers=headers, timeout=self._probe_timeout)
        except (TimeoutError, httpx.TimeoutException):
            status, error = HealthStatus.DOWN, "probe timed out"
        except httpx.HTTPError as exc:
            status, error = HealthStatus.DOWN, str(exc) or type(exc).__name__
        else:
            latency_ms = (time.perf_counter() - start) * 1000
            if not response.is_success:
                status, error = HealthStatus.DOWN, f"HTTP {response.status_code}"
            elif latency_ms > self._probe_timeout * 1000 / 2:
                status = HealthStatus.DEGRADED
            else:
                status = HealthStatus.HEALTHY

        await self.mark_health(provider.id, status)
        log.debug(
            "registry.probe_completed",
            provider_id=provider.id,
            status=status.value,
            latency_ms=round(latency_ms, 2) if latency_ms is not None else None,
            error=error,
        )
        return ProbeResult(
            provider_id=provider.id,
            status=status,
            latency_ms=latency_ms,
            error=error,
        )

    async def probe_all(self) -> dict[str, HealthStatus]:
        """Probe every active provider concurrently."""
        providers = await self.list_active()
        results = await asyncio.gather(*(self.probe_provider(p) for p in providers))
        statuses = {r.provider_id: r.status for r in results}
        log.info(
            "registry.probe_sweep_completed",
            providers=len(statuses),
            down=sum(1 for s in statuses.values() if s == HealthStatus.DOWN),
        )
        return statuses

    # ------------------------------------------------------------------
    # Lifecycle
    # ------------------------------------------------------------------

    def start(self) -> None:
        """Start the periodic probe task (first sweep runs immediately)."""
        if self._task is not None and not self._task.done():
            log.warning("registry.health_loop_already_running")
            return
        self._task = asyncio.create_task(self._health_loop())
        log.info("registry.health_loop_started", interval_seconds=self._interval)

    async def stop(self) -> None:
        if self._task is None:
            return
        self._task.cancel()
        await asyncio.gather(self._task, return_exceptions=True)
        self._task = None
        log.info("registry.health_loop_stopped")

    async def aclose(self) -> None:
        await self.stop()
        if self._owns_client:
            await self._http.aclose()

    async def _health_loop(self) -> None:
        while True:
            try:
                await self.probe_all()
            except Exception:
                # Keep probing; routing falls back to last known health
                log.exception("registry.probe_sweep_failed")
            await asyncio.sleep(self._interval)
