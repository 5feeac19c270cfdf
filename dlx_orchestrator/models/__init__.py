"""Domain records consumed and produced by the orchestration core."""

from __future__ import annotations

from dlx_orchestrator.models.conversation import Message, Response, Role
from dlx_orchestrator.models.provider import (
    CostTier,
    HealthStatus,
    Model,
    Provider,
    ProviderFamily,
    ProviderPricing,
    ProviderType,
    UseCase,
)
from dlx_orchestrator.models.routing import (
    Candidate,
    ComplexityLevel,
    PlanEntry,
    RoutingConstraints,
    RoutingPlan,
    TaskComplexity,
)
from dlx_orchestrator.models.usage import (
    Budget,
    BudgetScope,
    BudgetStatus,
    UsageRecord,
    UsageStatus,
    budget_key,
)

__all__ = [
    "Budget",
    "BudgetScope",
    "BudgetStatus",
    "Candidate",
    "ComplexityLevel",
    "CostTier",
    "HealthStatus",
    "Message",
    "Model",
    "PlanEntry",
    "Provider",
    "ProviderFamily",
    "ProviderPricing",
    "ProviderType",
    "Response",
    "Role",
    "RoutingConstraints",
    "RoutingPlan",
    "TaskComplexity",
    "UsageRecord",
    "UsageStatus",
    "UseCase",
    "budget_key",
]
