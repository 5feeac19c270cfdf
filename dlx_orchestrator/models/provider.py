"""Provider, Model and pricing records.

Providers and models are created by configuration (outside this package)
and read through the RecordStore. Only health probes and admin actions
mutate a Provider; the orchestration core never deletes one.
"""

from __future__ import annotations

from dataclasses import dataclass, field, replace
from datetime import datetime
from enum import StrEnum
from typing import Any


class ProviderType(StrEnum):
    LOCAL = "local"
    CLOUD = "cloud"


class ProviderFamily(StrEnum):
    """Wire dialect spoken by a provider endpoint."""

    OPENAI_COMPATIBLE = "openai_compatible"


class HealthStatus(StrEnum):
    HEALTHY = "healthy"
    DEGRADED = "degraded"
    DOWN = "down"
    UNKNOWN = "unknown"


class UseCase(StrEnum):
    CODING = "coding"
    ANALYSIS = "analysis"
    CREATIVE = "creative"
    GENERAL = "general"


class CostTier(StrEnum):
    FREE = "free"
    LOW = "low"
    MEDIUM = "medium"
    HIGH = "high"
    PREMIUM = "premium"


def _parse_datetime(value: Any) -> datetime | None:
    if value is None or isinstance(value, datetime):
        return value
    return datetime.fromisoformat(value)


@dataclass
class Provider:
    """An LLM endpoint that serves one or more models.

    Attributes:
        id: Stable provider identifier
        name: Display name
        endpoint_url: Base URL; requests go to {endpoint_url}/v1/...
        api_key: Optional bearer credential (never logged)
        is_active: Activation flag set by configuration
        priority: Lower value = preferred
        provider_type: local or cloud
        health_status: Last known health from probes
        last_health_check: When the last probe completed
    """

    id: str
    name: str
    endpoint_url: str
    api_key: str | None = None
    is_active: bool = True
    priority: int = 100
    provider_type: ProviderType = ProviderType.CLOUD
    family: ProviderFamily = ProviderFamily.OPENAI_COMPATIBLE
    health_status: HealthStatus = HealthStatus.UNKNOWN
    last_health_check: datetime | None = None

    @property
    def is_local(self) -> bool:
        return self.provider_type == ProviderType.LOCAL

    @property
    def is_routable(self) -> bool:
        """Active and not marked down by the last probe."""
        return self.is_active and self.health_status != HealthStatus.DOWN

    def with_health(self, status: HealthStatus, checked_at: datetime) -> Provider:
        return replace(self, health_status=status, last_health_check=checked_at)

    def to_record(self) -> dict[str, Any]:
        return {
            "id": self.id,
            "name": self.name,
            "endpoint_url": self.endpoint_url,
            "api_key": self.api_key,
            "is_active": self.is_active,
            "priority": self.priority,
            "provider_type": self.provider_type.value,
            "family": self.family.value,
            "health_status": self.health_status.value,
            "last_health_check": (
                self.last_health_check.isoformat() if self.last_health_check else None
            ),
        }

    @classmethod
    def from_record(cls, data: dict[str, Any]) -> Provider:
        return cls(
            id=data["id"],
            name=data.get("name", data["id"]),
            endpoint_url=data["endpoint_url"].rstrip("/"),
            api_key=data.get("api_key"),
            is_active=data.get("is_active", True),
            priority=data.get("priority", 100),
            provider_type=ProviderType(data.get("provider_type", "cloud")),
            family=ProviderFamily(data.get("family", "openai_compatible")),
            health_status=HealthStatus(data.get("health_status", "unknown")),
            last_health_check=_parse_datetime(data.get("last_health_check")),
        )


@dataclass
class Model:
    """A model served by exactly one provider.

    A model is unusable when its provider is inactive or down, regardless
    of its own availability flag.
    """

    id: str
    provider_id: str
    model_name: str
    display_name: str
    context_window: int
    use_case: UseCase = UseCase.GENERAL
    cost_tier: CostTier = CostTier.MEDIUM
    is_available: bool = True
    # Copied from the owning provider when the registry loads the model
    provider_type: ProviderType = field(default=ProviderType.CLOUD, compare=False)

    def __post_init__(self) -> None:
        if self.context_window <= 0:
            raise ValueError(f"context_window must be positive, got {self.context_window}")

    @property
    def is_local(self) -> bool:
        return self.provider_type == ProviderType.LOCAL

    @property
    def is_free(self) -> bool:
        return self.cost_tier == CostTier.FREE or self.is_local

    def to_record(self) -> dict[str, Any]:
        return {
            "id": self.id,
            "provider_id": self.provider_id,
            "model_name": self.model_name,
            "display_name": self.display_name,
            "context_window": self.context_window,
            "use_case": self.use_case.value,
            "cost_tier": self.cost_tier.value,
            "is_available": self.is_available,
        }

    @classmethod
    def from_record(
        cls,
        data: dict[str, Any],
        provider_type: ProviderType = ProviderType.CLOUD,
    ) -> Model:
        return cls(
            id=data["id"],
            provider_id=data["provider_id"],
            model_name=data.get("model_name", data["id"]),
            display_name=data.get("display_name", data["id"]),
            context_window=int(data["context_window"]),
            use_case=UseCase(data.get("use_case", "general")),
            cost_tier=CostTier(data.get("cost_tier", "medium")),
            is_available=data.get("is_available", True),
            provider_type=provider_type,
        )


@dataclass(frozen=True)
class ProviderPricing:
    """Per-1k-token USD rates configured for a provider."""

    provider_id: str
    input_cost_per_1k: float
    output_cost_per_1k: float
    is_free: bool = False

    def cost(self, prompt_tokens: int, completion_tokens: int) -> float:
        if self.is_free:
            return 0.0
        return (prompt_tokens / 1000.0) * self.input_cost_per_1k + (
            completion_tokens / 1000.0
        ) * self.output_cost_per_1k

    @classmethod
    def from_record(cls, data: dict[str, Any]) -> ProviderPricing:
        return cls(
            provider_id=data["provider_id"],
            input_cost_per_1k=float(data.get("input_cost_per_1k", 0.0)),
            output_cost_per_1k=float(data.get("output_cost_per_1k", 0.0)),
            is_free=bool(data.get("is_free", False)),
        )
