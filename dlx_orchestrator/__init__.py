"""LLM request orchestration layer."""

from dlx_orchestrator.orchestrator import Orchestrator

__version__ = "0.1.0"

__all__ = ["Orchestrator", "__version__"]
