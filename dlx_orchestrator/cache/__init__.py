"""Response Caching Layer.

Public API:
    ResponseCache         - In-memory TTL + LRU cache of provider responses
    CacheEntry / CacheStats
    cache_key             - Order-sensitive key derivation

    CacheWriteBehind      - Optional asynchronous persistence queue
    CacheBackend          - Abstract base for persistence backends
    RedisCacheBackend     - Redis-backed production backend
    InMemoryCacheBackend  - Dict-backed backend for dev/testing
    get_cache_backend     - Factory: selects backend from settings
"""

from dlx_orchestrator.cache.backend import (
    CacheBackend,
    CacheBackendError,
    InMemoryCacheBackend,
    RedisCacheBackend,
    get_cache_backend,
)
from dlx_orchestrator.cache.persistence import CacheWriteBehind
from dlx_orchestrator.cache.response_cache import (
    CacheEntry,
    CacheStats,
    ResponseCache,
    WarmupItem,
    cache_key,
)

__all__ = [
    "CacheBackend",
    "CacheBackendError",
    "CacheEntry",
    "CacheStats",
    "CacheWriteBehind",
    "InMemoryCacheBackend",
    "RedisCacheBackend",
    "ResponseCache",
    "WarmupItem",
    "cache_key",
    "get_cache_backend",
]
