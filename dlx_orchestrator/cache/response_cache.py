"""Response cache - content-addressed LLM response caching.

Caches complete responses keyed on (conversation history, model id) so
that identical conversations sent to the same model never hit the
provider twice. Keys are SHA-256 digests of the normalised history:
each message's role and trimmed, lowercased content, in order. Changing
a role, the content or the message order produces a different key.

Eviction:
- TTL: an entry is invalid once now > created_at + ttl. An expired entry
  is deleted when read and counted as a miss; a background sweep removes
  abandoned entries independently of access.
- Capacity: when full, the entry with the oldest last_accessed timestamp
  is evicted regardless of its hit count.

The hot path is purely in-memory. Optional persistence is a write-behind
queue (see cache.persistence) that never blocks get/set.
"""

from __future__ import annotations

import asyncio
import hashlib
import json
import time
from collections.abc import Callable, Iterable, Sequence
from dataclasses import dataclass, replace
from datetime import UTC, datetime
from typing import TYPE_CHECKING, Any

import structlog

from dlx_orchestrator.models.conversation import Message, Response

if TYPE_CHECKING:
    from dlx_orchestrator.cache.persistence import CacheWriteBehind

log = structlog.get_logger(__name__)

# Namespace prefix to avoid collisions with other cache users
_RESPONSE_NS = "resp"

DEFAULT_MAX_ENTRIES = 100
DEFAULT_TTL_SECONDS = 60 * 60
DEFAULT_SWEEP_INTERVAL_SECONDS = 5 * 60


@dataclass
class CacheEntry:
    """A cached response plus its bookkeeping timestamps (epoch seconds)."""

    key: str
    model_id: str
    response: Response
    created_at: float
    last_accessed: float
    hits: int = 0

    def is_expired(self, now: float, ttl_seconds: float) -> bool:
        return now > self.created_at + ttl_seconds

    def to_dict(self) -> dict[str, Any]:
        return {
            "key": self.key,
            "model_id": self.model_id,
            "response": self.response.to_dict(),
            "created_at": self.created_at,
            "last_accessed": self.last_accessed,
            "hits": self.hits,
        }

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> CacheEntry:
        return cls(
            key=data["key"],
            model_id=data["model_id"],
            response=Response.from_dict(data["response"]),
            created_at=float(data["created_at"]),
            last_accessed=float(data.get("last_accessed", data["created_at"])),
            hits=int(data.get("hits", 0)),
        )


@dataclass(frozen=True)
class CacheStats:
    hits: int
    misses: int
    size: int
    max_size: int
    ttl_seconds: float
    oldest_entry: datetime | None = None
    newest_entry: datetime | None = None
    evictions: int = 0

    @property
    def hit_rate(self) -> float:
        total = self.hits + self.misses
        return self.hits / total if total else 0.0

    def to_dict(self) -> dict[str, Any]:
        return {
            "hits": self.hits,
            "misses": self.misses,
            "size": self.size,
            "max_size": self.max_size,
            "hit_rate": round(self.hit_rate, 4),
            "ttl_seconds": self.ttl_seconds,
            "evictions": self.evictions,
            "oldest_entry": self.oldest_entry.isoformat() if self.oldest_entry else None,
            "newest_entry": self.newest_entry.isoformat() if self.newest_entry else None,
        }


@dataclass(frozen=True)
class WarmupItem:
    """A (history, model, response) triple preloaded by warmup()."""

    history: Sequence[Message]
    model_id: str
    response: Response


def cache_key(history: Sequence[Message], model_id: str) -> str:
    """Build a deterministic, order-sensitive cache key.

    Returns:
        String of the form "resp:<hex_digest>"
    """
    normalised = [[m.role.value, m.content.strip().lower()] for m in history]
    raw = json.dumps([model_id, normalised], separators=(",", ":"), ensure_ascii=False)
    digest = hashlib.sha256(raw.encode()).hexdigest()
    return f"{_RESPONSE_NS}:{digest}"


class ResponseCache:
    """In-memory TTL + LRU response cache.

    All public methods are async and serialise mutations through one
    asyncio.Lock; no critical section awaits I/O, so a request never
    waits longer than a dict mutation.

    Args:
        max_size: Capacity in entries
        ttl_seconds: Lifetime of an entry from creation
        clock: Returns epoch seconds; injectable for tests
        write_behind: Optional persistence queue fed after each mutation
    """

    def __init__(
        self,
        max_size: int = DEFAULT_MAX_ENTRIES,
        ttl_seconds: float = DEFAULT_TTL_SECONDS,
        *,
        clock: Callable[[], float] = time.time,
        write_behind: CacheWriteBehind | None = None,
    ) -> None:
        if max_size < 1:
            raise ValueError("max_size must be at least 1")
        if ttl_seconds <= 0:
            raise ValueError("ttl_seconds must be positive")
        self._max_size = max_size
        self._ttl = float(ttl_seconds)
        self._clock = clock
        self._write_behind = write_behind
        self._entries: dict[str, CacheEntry] = {}
        self._lock = asyncio.Lock()
        self._hits = 0
        self._misses = 0
        self._evictions = 0
        self._sweeper: asyncio.Task[None] | None = None

    @property
    def max_size(self) -> int:
        return self._max_size

    @property
    def ttl_seconds(self) -> float:
        return self._ttl

    # ------------------------------------------------------------------
    # Core operations
    # ------------------------------------------------------------------

    async def get(self, history: Sequence[Message], model_id: str) -> Response | None:
        """Return the cached response (marked cached) or None on a miss."""
        key = cache_key(history, model_id)
        now = self._clock()
        async with self._lock:
            entry = self._entries.get(key)
            if entry is None:
                self._misses += 1
                log.debug("cache.response.miss", key=key, model_id=model_id)
                return None
            if not entry.is_expired(now, self._ttl):
                entry.hits += 1
                entry.last_accessed = now
                self._hits += 1
                log.debug("cache.response.hit", key=key, model_id=model_id, hits=entry.hits)
                return entry.response.as_cached()
            del self._entries[key]
            self._misses += 1

        log.debug("cache.response.expired", key=key, model_id=model_id)
        if self._write_behind is not None:
            self._write_behind.enqueue_delete(key)
        return None

    async def set(
        self,
        history: Sequence[Message],
        model_id: str,
        response: Response,
    ) -> str | None:
        """Store a complete response. Returns the key, or None if not cacheable."""
        if not response.complete:
            log.debug("cache.response.skip_incomplete", model_id=model_id)
            return None

        key = cache_key(history, model_id)
        now = self._clock()
        entry = CacheEntry(
            key=key,
            model_id=model_id,
            response=replace(response, cached=False),
            created_at=now,
            last_accessed=now,
        )
        async with self._lock:
            evicted = self._store(entry)

        log.debug("cache.response.stored", key=key, model_id=model_id, ttl=self._ttl)
        self._persist(entry, evicted)
        return key

    async def has(self, history: Sequence[Message], model_id: str) -> bool:
        """True when a live entry exists. Does not touch stats or recency."""
        key = cache_key(history, model_id)
        async with self._lock:
            entry = self._entries.get(key)
            return entry is not None and not entry.is_expired(self._clock(), self._ttl)

    async def invalidate(self, history: Sequence[Message], model_id: str) -> bool:
        key = cache_key(history, model_id)
        async with self._lock:
            removed = self._entries.pop(key, None) is not None
        if removed and self._write_behind is not None:
            self._write_behind.enqueue_delete(key)
        return removed

    async def invalidate_by_model(self, model_id: str) -> int:
        async with self._lock:
            keys = [k for k, e in self._entries.items() if e.model_id == model_id]
            for key in keys:
                del self._entries[key]
        if self._write_behind is not None:
            for key in keys:
                self._write_behind.enqueue_delete(key)
        log.info("cache.response.model_invalidated", model_id=model_id, removed=len(keys))
        return len(keys)

    async def clear(self) -> None:
        """Drop every entry and reset statistics."""
        async with self._lock:
            self._entries.clear()
            self._hits = 0
            self._misses = 0
            self._evictions = 0
        if self._write_behind is not None:
            self._write_behind.enqueue_clear()
        log.info("cache.response.cleared")

    # ------------------------------------------------------------------
    # Configuration
    # ------------------------------------------------------------------

    async def set_max_size(self, max_size: int) -> None:
        """Change capacity, evicting least recently used entries down to it."""
        if max_size < 1:
            raise ValueError("max_size must be at least 1")
        async with self._lock:
            self._max_size = max_size
            evicted = []
            while len(self._entries) > self._max_size:
                evicted.append(self._evict_lru())
        if self._write_behind is not None:
            for key in evicted:
                self._write_behind.enqueue_delete(key)

    def set_ttl(self, minutes: float) -> None:
        if minutes <= 0:
            raise ValueError("ttl must be positive")
        self._ttl = minutes * 60.0

    # ------------------------------------------------------------------
    # Introspection
    # ------------------------------------------------------------------

    async def get_stats(self) -> CacheStats:
        async with self._lock:
            created = [e.created_at for e in self._entries.values()]
            return CacheStats(
                hits=self._hits,
                misses=self._misses,
                size=len(self._entries),
                max_size=self._max_size,
                ttl_seconds=self._ttl,
                oldest_entry=_to_datetime(min(created)) if created else None,
                newest_entry=_to_datetime(max(created)) if created else None,
                evictions=self._evictions,
            )

    async def most_popular(self, limit: int = 10) -> list[CacheEntry]:
        async with self._lock:
            entries = sorted(self._entries.values(), key=lambda e: (-e.hits, e.key))
        return entries[:limit]

    async def recently_used(self, limit: int = 10) -> list[CacheEntry]:
        async with self._lock:
            entries = sorted(
                self._entries.values(),
                key=lambda e: (-e.last_accessed, e.key),
            )
        return entries[:limit]

    # ------------------------------------------------------------------
    # Bulk load / export
    # ------------------------------------------------------------------

    async def warmup(self, items: Iterable[WarmupItem]) -> int:
        count = 0
        for item in items:
            if await self.set(item.history, item.model_id, item.response) is not None:
                count += 1
        log.info("cache.response.warmed", entries=count)
        return count

    async def export_entries(self) -> list[dict[str, Any]]:
        now = self._clock()
        async with self._lock:
            return [
                e.to_dict() for e in self._entries.values()
                if not e.is_expired(now, self._ttl)
            ]

    async def import_entries(self, entries: Iterable[dict[str, Any]]) -> int:
        """Load exported entries, skipping expired ones and respecting capacity.

        Entries already present are left untouched. Imported entries are
        not written back to the persistence queue.
        """
        now = self._clock()
        imported = 0
        async with self._lock:
            for data in entries:
                entry = CacheEntry.from_dict(data)
                if entry.is_expired(now, self._ttl) or entry.key in self._entries:
                    continue
                if len(self._entries) >= self._max_size:
                    break
                self._entries[entry.key] = entry
                imported += 1
        log.info("cache.response.imported", entries=imported)
        return imported

    # ------------------------------------------------------------------
    # Expiry sweep
    # ------------------------------------------------------------------

    async def sweep_expired(self) -> int:
        now = self._clock()
        async with self._lock:
            expired = [k for k, e in self._entries.items() if e.is_expired(now, self._ttl)]
            for key in expired:
                del self._entries[key]
        if expired:
            log.debug("cache.response.swept", removed=len(expired))
            if self._write_behind is not None:
                for key in expired:
                    self._write_behind.enqueue_delete(key)
        return len(expired)

    def start_sweeper(self, interval_seconds: float = DEFAULT_SWEEP_INTERVAL_SECONDS) -> None:
        if self._sweeper is not None and not self._sweeper.done():
            return
        self._sweeper = asyncio.create_task(self._sweep_loop(interval_seconds))
        log.info("cache.sweeper.started", interval_seconds=interval_seconds)

    async def stop_sweeper(self) -> None:
        if self._sweeper is None:
            return
        self._sweeper.cancel()
        await asyncio.gather(self._sweeper, return_exceptions=True)
        self._sweeper = None
        log.info("cache.sweeper.stopped")

    async def _sweep_loop(self, interval_seconds: float) -> None:
        while True:
            await asyncio.sleep(interval_seconds)
            await self.sweep_expired()

    # ------------------------------------------------------------------
    # Internals (caller holds the lock)
    # ------------------------------------------------------------------

    def _store(self, entry: CacheEntry) -> str | None:
        evicted = None
        if entry.key not in self._entries and len(self._entries) >= self._max_size:
            evicted = self._evict_lru()
        self._entries[entry.key] = entry
        return evicted

    def _evict_lru(self) -> str:
        key = min(self._entries.values(), key=lambda e: (e.last_accessed, e.key)).key
        del self._entries[key]
        self._evictions += 1
        log.debug("cache.response.evicted", key=key)
        return key

    def _persist(self, entry: CacheEntry, evicted: str | None) -> None:
        if self._write_behind is None:
            return
        if evicted is not None:
            self._write_behind.enqueue_delete(evicted)
        self._write_behind.enqueue_set(entry, ttl_seconds=self._ttl)


def _to_datetime(epoch: float) -> datetime:
    return datetime.fromtimestamp(epoch, UTC)
