"""Fragment channel for streamed provider output.

The producer (RequestExecutor, usually through a StreamOptimizer) pushes
text fragments with send() and finishes with close(); the consumer pulls
them with `async for`. The queue is bounded, so a slow consumer applies
backpressure to the producer. Either side can stop the exchange: the
consumer calls cancel(), the producer sees `cancelled` and stops reading
upstream.

Example:
    channel = FragmentChannel()

    async def consume():
        async for fragment in channel:
            print(fragment, end="")

    consumer = asyncio.create_task(consume())
    response = await orchestrator.orchestrate(history, stream=True, channel=channel)
    await consumer
"""

from __future__ import annotations

import asyncio
from collections.abc import AsyncIterator
from typing import TYPE_CHECKING

import structlog

if TYPE_CHECKING:
    from dlx_orchestrator.errors import OrchestrationError

log = structlog.get_logger(__name__)

DEFAULT_BUFFER_SIZE = 1000

_CLOSED = object()


class ChannelClosedError(RuntimeError):
    """send() called after close()."""


class FragmentChannel:
    """Single-producer, single-consumer async channel of text fragments."""

    def __init__(self, buffer_size: int = DEFAULT_BUFFER_SIZE) -> None:
        self._queue: asyncio.Queue[object] = asyncio.Queue(maxsize=buffer_size)
        self._parts: list[str] = []
        self._closed = False
        self._cancelled = asyncio.Event()
        self.error: OrchestrationError | None = None

    @property
    def closed(self) -> bool:
        return self._closed

    @property
    def cancelled(self) -> bool:
        return self._cancelled.is_set()

    @property
    def cancel_event(self) -> asyncio.Event:
        """Set once the consumer cancels; producers may wait on it."""
        return self._cancelled

    @property
    def text(self) -> str:
        """Everything sent so far."""
        return "".join(self._parts)

    async def send(self, fragment: str) -> None:
        if self._closed:
            raise ChannelClosedError("channel is closed")
        if not fragment or self.cancelled:
            return
        self._parts.append(fragment)
        await self._queue.put(fragment)

    async def close(self, error: OrchestrationError | None = None) -> None:
        """Signal end of stream. `error` is kept for the consumer to inspect."""
        if self._closed:
            return
        self._closed = True
        self.error = error
        if self.cancelled:
            return
        await self._queue.put(_CLOSED)

    def cancel(self) -> None:
        """Consumer-side stop. Pending fragments are discarded."""
        if self.cancelled:
            return
        self._cancelled.set()
        while not self._queue.empty():
            self._queue.get_nowait()
        # Wake a consumer blocked in __anext__
        self._queue.put_nowait(_CLOSED)
        log.info("channel.cancelled", delivered_chars=len(self.text))

    async def wait_cancelled(self) -> None:
        await self._cancelled.wait()

    def __aiter__(self) -> AsyncIterator[str]:
        return self

    async def __anext__(self) -> str:
        item = await self._queue.get()
        if item is _CLOSED:
            # Keep yielding the sentinel to any later reader
            self._queue.put_nowait(_CLOSED)
            raise StopAsyncIteration
        return item  # type: ignore[return-value]
