"""Persistence boundary.

The orchestration core treats persistence as a generic record store: named
collections of dict rows keyed by "id", with equality filters and
ordered/limited selects. It never assumes SQL. Concrete stores live
outside this package except for the in-memory implementation used in
development and tests.
"""

from __future__ import annotations

from abc import ABC, abstractmethod
from typing import Any

PROVIDERS = "providers"
MODELS = "models"
PROVIDER_PRICING = "provider_pricing"
USAGE_LOGS = "usage_logs"
BUDGETS = "budgets"


class RecordStore(ABC):
    """Abstract CRUD interface over named collections."""

    @abstractmethod
    async def insert(self, collection: str, record: dict[str, Any]) -> dict[str, Any]:
        """Insert a record, assigning an "id" when missing. Returns the stored row."""

    @abstractmethod
    async def select(
        self,
        collection: str,
        where: dict[str, Any] | None = None,
        *,
        order_by: str | None = None,
        descending: bool = False,
        limit: int | None = None,
    ) -> list[dict[str, Any]]:
        """Return rows whose fields equal every value in `where`."""

    @abstractmethod
    async def get(self, collection: str, record_id: str) -> dict[str, Any] | None:
        """Return a single row by id, or None."""

    @abstractmethod
    async def update(
        self,
        collection: str,
        record_id: str,
        changes: dict[str, Any],
    ) -> dict[str, Any] | None:
        """Merge `changes` into the row. Returns the updated row or None if absent."""

    @abstractmethod
    async def delete(self, collection: str, record_id: str) -> bool:
        """Delete a row by id. Returns True if a row was removed."""
