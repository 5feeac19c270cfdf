"""Stream smoothing for token-by-token provider output.

Fragments are buffered and released to a sink when the first of these
holds:
- the buffer reaches max_size characters
- the buffer ends on a sentence/clause boundary (. ! ? newline , ; : ))
  and holds at least min_chunk_size characters
- max_delay_ms has elapsed since the first fragment entered an empty
  buffer (one UI frame by default)

force_flush() drains the remainder when the upstream stream completes.
All flushes are serialised, so the sink sees fragments in push order.
"""

from __future__ import annotations

import asyncio
import inspect
import time
from collections.abc import AsyncIterable, AsyncIterator, Awaitable, Callable
from dataclasses import asdict, dataclass, replace
from typing import Any

import structlog

from dlx_orchestrator.config import Settings

log = structlog.get_logger(__name__)

BOUNDARY_CHARS = frozenset(".!?\n,;:)")
DEFAULT_MAX_SIZE = 50
DEFAULT_MAX_DELAY_MS = 16.0
DEFAULT_MIN_CHUNK_SIZE = 10

FragmentSink = Callable[[str], Awaitable[None] | None]


@dataclass(frozen=True)
class BufferConfig:
    max_size: int = DEFAULT_MAX_SIZE
    max_delay_ms: float = DEFAULT_MAX_DELAY_MS
    min_chunk_size: int = DEFAULT_MIN_CHUNK_SIZE

    def __post_init__(self) -> None:
        if self.max_size < 1:
            raise ValueError("max_size must be at least 1")
        if self.max_delay_ms <= 0:
            raise ValueError("max_delay_ms must be positive")
        if not 0 <= self.min_chunk_size <= self.max_size:
            raise ValueError("min_chunk_size must be within [0, max_size]")

    @classmethod
    def from_settings(cls, settings: Settings) -> BufferConfig:
        return cls(
            max_size=settings.stream_max_buffer,
            max_delay_ms=settings.stream_max_delay_ms,
            min_chunk_size=settings.stream_min_chunk,
        )


@dataclass
class StreamMetrics:
    chunks_received: int = 0
    chunks_sent: int = 0
    bytes_received: int = 0
    bytes_sent: int = 0
    # Mean interval between consecutive flushes
    average_latency_ms: float = 0.0
    # Fill level of the buffer at the last flush (0-1)
    buffer_utilization: float = 0.0

    def to_dict(self) -> dict[str, Any]:
        return asdict(self)


class StreamOptimizer:
    """Buffers fragments and flushes them to `sink` in larger pieces.

    Args:
        sink: Sync or async callable receiving each flushed chunk
        config: Buffer thresholds
    """

    def __init__(self, sink: FragmentSink, config: BufferConfig | None = None) -> None:
        self._sink = sink
        self._config = config or BufferConfig()
        self._buffer: list[str] = []
        self._buffer_len = 0
        self._lock = asyncio.Lock()
        self._timer: asyncio.TimerHandle | None = None
        self._timer_tasks: set[asyncio.Task[None]] = set()
        self._last_flush: float | None = None
        self._metrics = StreamMetrics()

    @property
    def config(self) -> BufferConfig:
        return self._config

    @property
    def buffer_size(self) -> int:
        return self._buffer_len

    @property
    def compression_ratio(self) -> float:
        """Chunks sent per chunk received (1.0 before any input)."""
        if self._metrics.chunks_received == 0:
            return 1.0
        return self._metrics.chunks_sent / self._metrics.chunks_received

    def get_metrics(self) -> StreamMetrics:
        return replace(self._metrics)

    def reset_metrics(self) -> None:
        self._metrics = StreamMetrics()

    def update_config(
        self,
        *,
        max_size: int | None = None,
        max_delay_ms: float | None = None,
        min_chunk_size: int | None = None,
    ) -> None:
        changes = {
            k: v for k, v in (
                ("max_size", max_size),
                ("max_delay_ms", max_delay_ms),
                ("min_chunk_size", min_chunk_size),
            )
            if v is not None
        }
        self._config = replace(self._config, **changes)

    # ------------------------------------------------------------------
    # Input
    # ------------------------------------------------------------------

    async def push(self, fragment: str) -> None:
        if not fragment:
            return
        async with self._lock:
            self._metrics.chunks_received += 1
            self._metrics.bytes_received += len(fragment)

            was_empty = self._buffer_len == 0
            self._buffer.append(fragment)
            self._buffer_len += len(fragment)

            if self._buffer_len >= self._config.max_size or self._at_boundary(fragment):
                await self._flush_locked()
            elif was_empty:
                self._arm_timer()

    async def force_flush(self) -> None:
        """Drain whatever is buffered. Called when the upstream stream ends."""
        async with self._lock:
            await self._flush_locked()

    async def reset(self) -> None:
        """Discard buffered text and pending timers without flushing."""
        async with self._lock:
            self._cancel_timer()
            if self._buffer_len:
                log.debug("stream_optimizer.buffer_discarded", chars=self._buffer_len)
            self._buffer.clear()
            self._buffer_len = 0
            self._last_flush = None

    async def aclose(self) -> None:
        """Flush the remainder and stop the delay timer."""
        await self.force_flush()
        if self._timer_tasks:
            await asyncio.gather(*self._timer_tasks, return_exceptions=True)

    # ------------------------------------------------------------------
    # Internals (caller holds the lock)
    # ------------------------------------------------------------------

    def _at_boundary(self, fragment: str) -> bool:
        return self._buffer_len >= self._config.min_chunk_size and fragment[-1] in BOUNDARY_CHARS

    def _arm_timer(self) -> None:
        loop = asyncio.get_running_loop()
        self._timer = loop.call_later(self._config.max_delay_ms / 1000.0, self._on_timer)

    def _on_timer(self) -> None:
        self._timer = None
        task = asyncio.ensure_future(self._timed_flush())
        self._timer_tasks.add(task)
        task.add_done_callback(self._timer_tasks.discard)

    async def _timed_flush(self) -> None:
        # No caller is waiting on a timer flush, so sink errors end here
        try:
            await self.force_flush()
        except Exception:
            log.exception("stream_optimizer.timed_flush_failed")

    def _cancel_timer(self) -> None:
        if self._timer is not None:
            self._timer.cancel()
            self._timer = None

    async def _flush_locked(self) -> None:
        self._cancel_timer()
        if not self._buffer_len:
            return

        chunk = "".join(self._buffer)
        size = self._buffer_len
        self._buffer.clear()
        self._buffer_len = 0

        now = time.monotonic()
        interval_ms = (now - self._last_flush) * 1000 if self._last_flush is not None else 0.0
        self._last_flush = now

        m = self._metrics
        m.chunks_sent += 1
        m.bytes_sent += size
        m.average_latency_ms = (m.average_latency_ms * (m.chunks_sent - 1) + interval_ms) / m.chunks_sent
        m.buffer_utilization = min(size / self._config.max_size, 1.0)

        result = self._sink(chunk)
        if inspect.isawaitable(result):
            await result


async def optimize_stream(
    fragments: AsyncIterable[str],
    config: BufferConfig | None = None,
) -> AsyncIterator[str]:
    """Yield optimized chunks from an async iterable of raw fragments.

    Exceptions raised by `fragments` propagate to the consumer after any
    already-buffered text has been yielded.
    """
    out: asyncio.Queue[str | None] = asyncio.Queue()
    optimizer = StreamOptimizer(out.put, config)

    async def pump() -> None:
        try:
            async for fragment in fragments:
                await optimizer.push(fragment)
        finally:
            await optimizer.aclose()
            await out.put(None)

    task = asyncio.create_task(pump())
    try:
        while (chunk := await out.get()) is not None:
            yield chunk
        await task
    finally:
        if not task.done():
            task.cancel()
            await asyncio.gather(task, return_exceptions=True)
