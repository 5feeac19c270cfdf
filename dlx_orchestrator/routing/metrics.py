"""Trailing-window outcome metrics used by the router.

Each (provider, model) pair keeps its last N attempt outcomes. The router
reads success rate and average latency from these windows; pairs with no
history report None so the router can substitute its defaults.
"""

from __future__ import annotations

from collections import deque
from dataclasses import dataclass
from typing import Any

import structlog

log = structlog.get_logger(__name__)

DEFAULT_WINDOW_SIZE = 50


@dataclass(frozen=True)
class Outcome:
    success: bool
    latency_ms: float


@dataclass(frozen=True)
class ModelPerformance:
    provider_id: str
    model_id: str
    samples: int
    success_rate: float
    average_latency_ms: float

    def to_dict(self) -> dict[str, Any]:
        return {
            "provider_id": self.provider_id,
            "model_id": self.model_id,
            "samples": self.samples,
            "success_rate": round(self.success_rate, 4),
            "average_latency_ms": round(self.average_latency_ms, 1),
        }


class RoutingMetrics:
    """In-memory trailing windows keyed by (provider_id, model_id).

    Mutations are plain deque appends with no awaits, so concurrent
    requests on one event loop never interleave inside an update.
    """

    def __init__(self, window_size: int = DEFAULT_WINDOW_SIZE) -> None:
        if window_size < 1:
            raise ValueError("window_size must be at least 1")
        self._window_size = window_size
        self._windows: dict[tuple[str, str], deque[Outcome]] = {}

    def record_outcome(
        self,
        provider_id: str,
        model_id: str,
        *,
        success: bool,
        latency_ms: float,
    ) -> None:
        window = self._windows.setdefault(
            (provider_id, model_id), deque(maxlen=self._window_size)
        )
        window.append(Outcome(success=success, latency_ms=latency_ms))
        log.debug(
            "routing_metrics.outcome_recorded",
            provider_id=provider_id,
            model_id=model_id,
            success=success,
            latency_ms=round(latency_ms, 1),
            samples=len(window),
        )

    def success_rate(self, provider_id: str, model_id: str) -> float | None:
        window = self._windows.get((provider_id, model_id))
        if not window:
            return None
        return sum(1 for o in window if o.success) / len(window)

    def average_latency(self, provider_id: str, model_id: str) -> float | None:
        """Mean latency of successful attempts in the window."""
        window = self._windows.get((provider_id, model_id))
        if not window:
            return None
        latencies = [o.latency_ms for o in window if o.success]
        if not latencies:
            return None
        return sum(latencies) / len(latencies)

    def performance(self, provider_id: str, model_id: str) -> ModelPerformance | None:
        window = self._windows.get((provider_id, model_id))
        if not window:
            return None
        return ModelPerformance(
            provider_id=provider_id,
            model_id=model_id,
            samples=len(window),
            success_rate=self.success_rate(provider_id, model_id) or 0.0,
            average_latency_ms=self.average_latency(provider_id, model_id) or 0.0,
        )

    def snapshot(self) -> list[ModelPerformance]:
        return [
            perf
            for provider_id, model_id in sorted(self._windows)
            if (perf := self.performance(provider_id, model_id)) is not None
        ]

    def reset(self) -> None:
        self._windows.clear()
