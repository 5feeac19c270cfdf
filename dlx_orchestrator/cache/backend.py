"""Cache backend implementations for response-cache persistence.

Defines the CacheBackend ABC and two concrete implementations:
- RedisCacheBackend: Production backend using Redis with JSON serialization
- InMemoryCacheBackend: Dict-based backend with TTL, for testing/dev

Backends sit behind CacheWriteBehind and are never touched on the hot
get/set path of ResponseCache. Unlike a best-effort read cache, a backend
raises CacheBackendError on failure so the write-behind queue can retry.
"""

from __future__ import annotations

import asyncio
import fnmatch
import json
import time
from abc import ABC, abstractmethod
from typing import Any

import redis.asyncio as aioredis
import structlog
from redis.exceptions import RedisError

from dlx_orchestrator.config import Settings

log = structlog.get_logger(__name__)


class CacheBackendError(Exception):
    """A backend operation failed (connection lost, serialization, ...)."""


class CacheBackend(ABC):
    """Abstract interface all cache backends must implement."""

    name: str = "abstract"

    @abstractmethod
    async def get(self, key: str) -> Any | None:
        """Return cached value for key, or None if not found / expired."""

    @abstractmethod
    async def set(self, key: str, value: Any, ttl: int) -> None:
        """Store value under key with TTL in seconds."""

    @abstractmethod
    async def delete(self, key: str) -> None:
        """Delete key from cache (no-op if key does not exist)."""

    @abstractmethod
    async def keys(self, pattern: str) -> list[str]:
        """Return all live keys matching a glob pattern."""

    @abstractmethod
    async def delete_pattern(self, pattern: str) -> int:
        """Delete all keys matching a glob pattern. Returns deleted count."""

    @abstractmethod
    async def info(self) -> dict[str, Any]:
        """Return backend-specific info/stats dict."""

    async def close(self) -> None:
        """Release connections. Default is a no-op."""


# ---------------------------------------------------------------------------
# Redis backend
# ---------------------------------------------------------------------------


class RedisCacheBackend(CacheBackend):
    """Production cache backend backed by Redis.

    Values are JSON-serialised so they round-trip cleanly without pickle
    security risks. The client is created lazily on first call so
    construction never touches the network.
    """

    name = "redis"

    def __init__(self, redis_url: str) -> None:
        self._redis_url = redis_url
        self._client: aioredis.Redis | None = None

    def _get_client(self) -> aioredis.Redis:
        if self._client is None:
            try:
                self._client = aioredis.from_url(
                    self._redis_url,
                    encoding="utf-8",
                    decode_responses=True,
                )
            except ValueError as exc:
                raise CacheBackendError(f"invalid redis url: {exc}") from exc
        return self._client

    async def get(self, key: str) -> Any | None:
        try:
            raw = await self._get_client().get(key)
        except RedisError as exc:
            raise CacheBackendError(f"redis get failed for {key}: {exc}") from exc
        if raw is None:
            return None
        try:
            return json.loads(raw)
        except json.JSONDecodeError as exc:
            raise CacheBackendError(f"corrupt cache value under {key}") from exc

    async def set(self, key: str, value: Any, ttl: int) -> None:
        try:
            serialised = json.dumps(value, default=str)
            await self._get_client().setex(key, max(int(ttl), 1), serialised)
        except (RedisError, TypeError) as exc:
            raise CacheBackendError(f"redis set failed for {key}: {exc}") from exc

    async def delete(self, key: str) -> None:
        try:
            await self._get_client().delete(key)
        except RedisError as exc:
            raise CacheBackendError(f"redis delete failed for {key}: {exc}") from exc

    async def keys(self, pattern: str) -> list[str]:
        """SCAN rather than KEYS so large keyspaces never block the server."""
        try:
            return [key async for key in self._get_client().scan_iter(match=pattern, count=100)]
        except RedisError as exc:
            raise CacheBackendError(f"redis scan failed for {pattern}: {exc}") from exc

    async def delete_pattern(self, pattern: str) -> int:
        deleted = 0
        for key in await self.keys(pattern):
            await self.delete(key)
            deleted += 1
        log.debug("cache.redis.pattern_deleted", pattern=pattern, deleted=deleted)
        return deleted

    async def info(self) -> dict[str, Any]:
        try:
            client = self._get_client()
            redis_info = await client.info()
            dbsize = await client.dbsize()
        except RedisError as exc:
            return {
                "backend": self.name,
                "connected": False,
                "error": str(exc),
            }
        return {
            "backend": self.name,
            "connected": True,
            "used_memory_human": redis_info.get("used_memory_human", "unknown"),
            "connected_clients": redis_info.get("connected_clients", 0),
            "db_size": dbsize,
        }

    async def close(self) -> None:
        """Close the Redis connection pool."""
        if self._client is not None:
            try:
                await self._client.aclose()
            except RedisError as exc:
                log.warning("cache.redis.close_failed", error=str(exc))
            self._client = None


# ---------------------------------------------------------------------------
# In-memory backend (testing / dev fallback)
# ---------------------------------------------------------------------------


class _BackendEntry:
    """Single entry stored by InMemoryCacheBackend."""

    __slots__ = ("value", "expires_at")

    def __init__(self, value: Any, ttl: int) -> None:
        self.value = value
        self.expires_at: float = time.monotonic() + ttl

    @property
    def is_expired(self) -> bool:
        return time.monotonic() >= self.expires_at


class InMemoryCacheBackend(CacheBackend):
    """Dict-backed cache with TTL support.

    Guarded by asyncio.Lock. Suitable for testing and single-process
    dev environments. Does NOT persist across process restarts.
    """

    name = "memory"

    def __init__(self) -> None:
        self._store: dict[str, _BackendEntry] = {}
        self._lock = asyncio.Lock()

    async def get(self, key: str) -> Any | None:
        async with self._lock:
            entry = self._store.get(key)
            if entry is None:
                return None
            if entry.is_expired:
                del self._store[key]
                return None
            return entry.value

    async def set(self, key: str, value: Any, ttl: int) -> None:
        async with self._lock:
            self._store[key] = _BackendEntry(value, ttl)

    async def delete(self, key: str) -> None:
        async with self._lock:
            self._store.pop(key, None)

    async def keys(self, pattern: str) -> list[str]:
        async with self._lock:
            self._prune()
            return [k for k in self._store if fnmatch.fnmatch(k, pattern)]

    async def delete_pattern(self, pattern: str) -> int:
        """Delete all keys matching a glob pattern (fnmatch semantics)."""
        async with self._lock:
            to_delete = [k for k in self._store if fnmatch.fnmatch(k, pattern)]
            for k in to_delete:
                del self._store[k]
            return len(to_delete)

    async def info(self) -> dict[str, Any]:
        async with self._lock:
            self._prune()
            return {
                "backend": self.name,
                "connected": True,
                "total_keys": len(self._store),
            }

    def _prune(self) -> None:
        expired = [k for k, v in self._store.items() if v.is_expired]
        for k in expired:
            del self._store[k]


# ---------------------------------------------------------------------------
# Factory
# ---------------------------------------------------------------------------


def get_cache_backend(settings: Settings) -> CacheBackend:
    """Return the CacheBackend for the given settings.

    Redis when a redis_url is configured, otherwise the in-memory backend
    so the application works without a Redis server.
    """
    if settings.redis_url:
        log.info("cache.backend_selected", backend="redis")
        return RedisCacheBackend(settings.redis_url)

    log.info("cache.backend_selected", backend="memory")
    return InMemoryCacheBackend()
