"""Routing constraints and plans.

A RoutingPlan is built fresh for every request and never persisted.
"""

from __future__ import annotations

from dataclasses import dataclass, field
from enum import StrEnum
from typing import Any

from dlx_orchestrator.models.provider import Model, Provider, UseCase


@dataclass(frozen=True)
class RoutingConstraints:
    """Soft preferences for model selection.

    None of these are hard requirements: when no candidate satisfies
    them the router falls back to the unfiltered candidate set.
    """

    use_case: UseCase | None = None
    min_context_window: int | None = None
    prefer_local: bool = False
    require_free: bool = False
    max_cost: float | None = None
    # Rank larger context windows above everything except use-case match
    prefer_capability: bool = False

    def to_dict(self) -> dict[str, Any]:
        return {
            "use_case": self.use_case.value if self.use_case else None,
            "min_context_window": self.min_context_window,
            "prefer_local": self.prefer_local,
            "require_free": self.require_free,
            "max_cost": self.max_cost,
            "prefer_capability": self.prefer_capability,
        }


@dataclass(frozen=True)
class Candidate:
    """A (provider, model) pair eligible for routing."""

    provider: Provider
    model: Model


@dataclass(frozen=True)
class PlanEntry:
    """One ranked choice in a RoutingPlan."""

    provider: Provider
    model: Model
    reason: str
    score: float
    estimated_cost: float
    estimated_latency_ms: float

    def to_dict(self) -> dict[str, Any]:
        return {
            "provider_id": self.provider.id,
            "model_id": self.model.id,
            "reason": self.reason,
            "score": round(self.score, 4),
            "estimated_cost": round(self.estimated_cost, 6),
            "estimated_latency_ms": round(self.estimated_latency_ms, 1),
        }


@dataclass(frozen=True)
class RoutingPlan:
    """Primary / fallback / alternative selection for one request."""

    primary: PlanEntry
    fallback: PlanEntry | None = None
    alternative: PlanEntry | None = None
    constraints_relaxed: bool = False

    def entries(self) -> list[PlanEntry]:
        return [e for e in (self.primary, self.fallback, self.alternative) if e is not None]

    def to_dict(self) -> dict[str, Any]:
        return {
            "primary": self.primary.to_dict(),
            "fallback": self.fallback.to_dict() if self.fallback else None,
            "alternative": self.alternative.to_dict() if self.alternative else None,
            "constraints_relaxed": self.constraints_relaxed,
        }


class ComplexityLevel(StrEnum):
    SIMPLE = "simple"
    MODERATE = "moderate"
    COMPLEX = "complex"
    EXPERT = "expert"


@dataclass(frozen=True)
class TaskComplexity:
    """Result of task complexity analysis.

    Attributes:
        score: Clamped complexity score (0-100)
        level: Band derived from the score
        factors: Signed contribution of each signal for observability
        estimated_tokens: Expected request size, floored per band
    """

    score: float
    level: ComplexityLevel
    factors: dict[str, float] = field(default_factory=dict)
    estimated_tokens: int = 0

    def __post_init__(self) -> None:
        if not 0.0 <= self.score <= 100.0:
            raise ValueError(f"Complexity score must be 0-100, got {self.score}")

    def to_dict(self) -> dict[str, Any]:
        return {
            "score": round(self.score, 2),
            "level": self.level.value,
            "factors": dict(self.factors),
            "estimated_tokens": self.estimated_tokens,
        }
