"""Provider registry, scoring router and orchestration strategy."""

from dlx_orchestrator.routing.complexity import ComplexityEstimator
from dlx_orchestrator.routing.metrics import ModelPerformance, RoutingMetrics
from dlx_orchestrator.routing.registry import ProbeResult, ProviderRegistry, ProviderStats
from dlx_orchestrator.routing.router import ProviderRouter, ScoringWeights
from dlx_orchestrator.routing.strategy import OrchestrationStrategy

__all__ = [
    "ComplexityEstimator",
    "ModelPerformance",
    "OrchestrationStrategy",
    "ProbeResult",
    "ProviderRegistry",
    "ProviderRouter",
    "ProviderStats",
    "RoutingMetrics",
    "ScoringWeights",
]
