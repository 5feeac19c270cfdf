"""Dict-backed RecordStore for development and testing.

Guarded by an asyncio.Lock. Rows are copied on the way in and out so
callers can never mutate stored state by holding on to a returned dict.
Does NOT persist across process restarts.
"""

from __future__ import annotations

import asyncio
import copy
import json
import uuid
from pathlib import Path
from typing import Any

import structlog

from dlx_orchestrator.storage.base import RecordStore

log = structlog.get_logger(__name__)


class InMemoryRecordStore(RecordStore):
    """In-process record store."""

    def __init__(self, seed: dict[str, list[dict[str, Any]]] | None = None) -> None:
        self._collections: dict[str, dict[str, dict[str, Any]]] = {}
        self._lock = asyncio.Lock()
        for collection, rows in (seed or {}).items():
            table = self._collections.setdefault(collection, {})
            for row in rows:
                row = copy.deepcopy(row)
                row.setdefault("id", uuid.uuid4().hex)
                table[str(row["id"])] = row

    @classmethod
    def from_json_file(cls, path: str | Path) -> InMemoryRecordStore:
        """Seed from a JSON object mapping collection names to row lists."""
        with open(path, encoding="utf-8") as fh:
            seed = json.load(fh)
        if not isinstance(seed, dict):
            raise ValueError(f"{path}: expected a JSON object of collections")
        log.info(
            "store.memory.seeded",
            path=str(path),
            collections={name: len(rows) for name, rows in seed.items()},
        )
        return cls(seed)

    async def insert(self, collection: str, record: dict[str, Any]) -> dict[str, Any]:
        row = copy.deepcopy(record)
        row.setdefault("id", uuid.uuid4().hex)
        async with self._lock:
            self._collections.setdefault(collection, {})[str(row["id"])] = row
        log.debug("store.memory.inserted", collection=collection, id=row["id"])
        return copy.deepcopy(row)

    async def select(
        self,
        collection: str,
        where: dict[str, Any] | None = None,
        *,
        order_by: str | None = None,
        descending: bool = False,
        limit: int | None = None,
    ) -> list[dict[str, Any]]:
        async with self._lock:
            rows = list(self._collections.get(collection, {}).values())
            if where:
                rows = [
                    row for row in rows
                    if all(row.get(field) == value for field, value in where.items())
                ]
            rows = copy.deepcopy(rows)

        if order_by is not None:
            # Rows missing the field sort last regardless of direction
            present = [r for r in rows if r.get(order_by) is not None]
            missing = [r for r in rows if r.get(order_by) is None]
            present.sort(key=lambda r: r[order_by], reverse=descending)
            rows = present + missing

        if limit is not None:
            rows = rows[:limit]
        return rows

    async def get(self, collection: str, record_id: str) -> dict[str, Any] | None:
        async with self._lock:
            row = self._collections.get(collection, {}).get(str(record_id))
            return copy.deepcopy(row) if row is not None else None

    async def update(
        self,
        collection: str,
        record_id: str,
        changes: dict[str, Any],
    ) -> dict[str, Any] | None:
        async with self._lock:
            row = self._collections.get(collection, {}).get(str(record_id))
            if row is None:
                return None
            # Primary key is immutable
            row.update({k: copy.deepcopy(v) for k, v in changes.items() if k != "id"})
            return copy.deepcopy(row)

    async def delete(self, collection: str, record_id: str) -> bool:
        async with self._lock:
            removed = self._collections.get(collection, {}).pop(str(record_id), None)
        return removed is not None
