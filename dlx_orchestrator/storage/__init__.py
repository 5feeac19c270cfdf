"""Persistence boundary: abstract record store plus an in-memory implementation."""

from __future__ import annotations

from dlx_orchestrator.storage.base import (
    BUDGETS,
    MODELS,
    PROVIDER_PRICING,
    PROVIDERS,
    USAGE_LOGS,
    RecordStore,
)
from dlx_orchestrator.storage.memory import InMemoryRecordStore

__all__ = [
    "BUDGETS",
    "MODELS",
    "PROVIDER_PRICING",
    "PROVIDERS",
    "USAGE_LOGS",
    "InMemoryRecordStore",
    "RecordStore",
]
