"""Write-behind persistence for the response cache.

ResponseCache mutations are queued here and flushed to a CacheBackend by a
single background task. The queue is bounded; when it is full, operations
are dropped with a warning rather than blocking the request path. Backend
failures are retried with exponential backoff (tenacity) and then logged
and dropped. Nothing in this module ever raises into ResponseCache.get/set.

On startup the cache can be warmed from whatever the backend still holds.
"""

from __future__ import annotations

import asyncio
from dataclasses import dataclass
from enum import StrEnum
from typing import TYPE_CHECKING, Any

import structlog
from tenacity import (
    AsyncRetrying,
    RetryError,
    retry_if_exception_type,
    stop_after_attempt,
    wait_exponential,
)

from dlx_orchestrator.cache.backend import CacheBackend, CacheBackendError

if TYPE_CHECKING:
    from dlx_orchestrator.cache.response_cache import CacheEntry

log = structlog.get_logger(__name__)

DEFAULT_NAMESPACE = "dlx:cache"
DEFAULT_MAX_QUEUE = 1000


class _OpKind(StrEnum):
    SET = "set"
    DELETE = "delete"
    CLEAR = "clear"


@dataclass(frozen=True)
class _Op:
    kind: _OpKind
    key: str = ""
    payload: dict[str, Any] | None = None
    ttl: int = 0


class CacheWriteBehind:
    """Asynchronous persistence queue in front of a CacheBackend.

    Example usage:
        write_behind = CacheWriteBehind(get_cache_backend(settings))
        cache = ResponseCache(write_behind=write_behind)
        await cache.import_entries(await write_behind.load_entries())
        await write_behind.start()
        ...
        await write_behind.stop()
    """

    def __init__(
        self,
        backend: CacheBackend,
        *,
        namespace: str = DEFAULT_NAMESPACE,
        max_queue: int = DEFAULT_MAX_QUEUE,
        max_attempts: int = 3,
        backoff_max_seconds: float = 2.0,
    ) -> None:
        self._backend = backend
        self._namespace = namespace
        self._queue: asyncio.Queue[_Op] = asyncio.Queue(maxsize=max_queue)
        self._max_attempts = max_attempts
        self._backoff_max = backoff_max_seconds
        self._worker: asyncio.Task[None] | None = None
        self.written = 0
        self.failed = 0
        self.dropped = 0

    @property
    def backend(self) -> CacheBackend:
        return self._backend

    @property
    def pending(self) -> int:
        return self._queue.qsize()

    # ------------------------------------------------------------------
    # Enqueue (called synchronously from ResponseCache)
    # ------------------------------------------------------------------

    def enqueue_set(self, entry: CacheEntry, *, ttl_seconds: float) -> None:
        remaining = int(entry.created_at + ttl_seconds - entry.last_accessed)
        self._enqueue(
            _Op(
                kind=_OpKind.SET,
                key=self._backend_key(entry.key),
                payload=entry.to_dict(),
                ttl=max(remaining, 1),
            )
        )

    def enqueue_delete(self, key: str) -> None:
        self._enqueue(_Op(kind=_OpKind.DELETE, key=self._backend_key(key)))

    def enqueue_clear(self) -> None:
        self._enqueue(_Op(kind=_OpKind.CLEAR))

    def _enqueue(self, op: _Op) -> None:
        try:
            self._queue.put_nowait(op)
        except asyncio.QueueFull:
            self.dropped += 1
            log.warning("cache.write_behind.queue_full", op=op.kind.value, dropped=self.dropped)

    # ------------------------------------------------------------------
    # Lifecycle
    # ------------------------------------------------------------------

    async def start(self) -> None:
        if self._worker is not None and not self._worker.done():
            log.warning("cache.write_behind.already_running")
            return
        self._worker = asyncio.create_task(self._flush_loop())
        log.info("cache.write_behind.started", backend=self._backend.name)

    async def stop(self, *, drain: bool = True) -> None:
        """Stop the flusher, by default after writing everything queued."""
        if self._worker is None:
            return
        if drain:
            await self._queue.join()
        self._worker.cancel()
        await asyncio.gather(self._worker, return_exceptions=True)
        self._worker = None
        await self._backend.close()
        log.info(
            "cache.write_behind.stopped",
            written=self.written,
            failed=self.failed,
            dropped=self.dropped,
        )

    async def flush(self) -> None:
        """Apply every queued operation inline. Used when no worker is running."""
        while not self._queue.empty():
            op = self._queue.get_nowait()
            try:
                await self._apply_with_retry(op)
            finally:
                self._queue.task_done()

    async def load_entries(self) -> list[dict[str, Any]]:
        """Read persisted entries for cache warm-up. Failures yield an empty list."""
        try:
            keys = await self._backend.keys(f"{self._namespace}:*")
            entries = []
            for key in keys:
                data = await self._backend.get(key)
                if data is not None:
                    entries.append(data)
        except CacheBackendError as exc:
            log.warning("cache.write_behind.load_failed", error=str(exc))
            return []
        log.info("cache.write_behind.loaded", entries=len(entries))
        return entries

    # ------------------------------------------------------------------
    # Internals
    # ------------------------------------------------------------------

    def _backend_key(self, key: str) -> str:
        return f"{self._namespace}:{key}"

    async def _flush_loop(self) -> None:
        while True:
            op = await self._queue.get()
            try:
                await self._apply_with_retry(op)
            finally:
                self._queue.task_done()

    async def _apply_with_retry(self, op: _Op) -> None:
        retrying = AsyncRetrying(
            retry=retry_if_exception_type(CacheBackendError),
            stop=stop_after_attempt(self._max_attempts),
            wait=wait_exponential(multiplier=0.1, max=self._backoff_max),
        )
        try:
            async for attempt in retrying:
                with attempt:
                    await self._apply(op)
        except RetryError as exc:
            self.failed += 1
            log.warning(
                "cache.write_behind.op_failed",
                op=op.kind.value,
                key=op.key,
                attempts=self._max_attempts,
                error=str(exc.last_attempt.exception()),
            )
            return
        except Exception:
            # The flusher outlives any single operation, or stop() would wait forever
            self.failed += 1
            log.exception("cache.write_behind.op_crashed", op=op.kind.value, key=op.key)
            return
        self.written += 1

    async def _apply(self, op: _Op) -> None:
        if op.kind == _OpKind.SET:
            await self._backend.set(op.key, op.payload, op.ttl)
        elif op.kind == _OpKind.DELETE:
            await self._backend.delete(op.key)
        else:
            await self._backend.delete_pattern(f"{self._namespace}:*")
