"""
Server-Sent Events for streamed orchestration output.

Event types:
- token: a smoothed chunk of model output ({"content": "..."})
- done:  the final Response (complete may be False after a cancel)
- error: the OrchestrationError that ended the request

The orchestration runs as a task that feeds a FragmentChannel; the SSE
generator drains the channel. A client disconnect cancels the channel,
which aborts the upstream call; the request is then recorded as failed.
"""

from __future__ import annotations

import asyncio
import json
from collections.abc import AsyncGenerator
from enum import StrEnum
from typing import Any

import structlog
from fastapi.responses import StreamingResponse

from dlx_orchestrator.errors import OrchestrationError
from dlx_orchestrator.llm.channel import FragmentChannel
from dlx_orchestrator.models.conversation import Message
from dlx_orchestrator.models.provider import UseCase
from dlx_orchestrator.orchestrator import Orchestrator

log = structlog.get_logger(__name__)


class EventType(StrEnum):
    TOKEN = "token"
    DONE = "done"
    ERROR = "error"


def format_event(event_type: EventType, data: Any) -> str:
    """Format one SSE message: `event: <type>\\ndata: <json>\\n\\n`."""
    return f"event: {event_type.value}\ndata: {json.dumps(data, ensure_ascii=False)}\n\n"


async def orchestration_events(
    orchestrator: Orchestrator,
    history: list[Message],
    use_case: UseCase,
    *,
    project_id: str | None = None,
    conversation_id: str | None = None,
) -> AsyncGenerator[str, None]:
    """Run orchestrate() with a channel and yield its output as SSE."""
    channel = FragmentChannel()
    task = asyncio.create_task(
        orchestrator.orchestrate(
            history,
            use_case,
            channel=channel,
            project_id=project_id,
            conversation_id=conversation_id,
        )
    )
    try:
        async for chunk in channel:
            yield format_event(EventType.TOKEN, {"content": chunk})
        try:
            response = await task
        except OrchestrationError as exc:
            yield format_event(EventType.ERROR, exc.to_dict())
            return
        yield format_event(EventType.DONE, response.to_dict())
    except asyncio.CancelledError:
        log.info("api.stream_disconnected", delivered_chars=len(channel.text))
        raise
    finally:
        if not task.done():
            channel.cancel()
            await asyncio.gather(task, return_exceptions=True)


def event_stream_response(generator: AsyncGenerator[str, None]) -> StreamingResponse:
    """StreamingResponse with SSE headers (no proxy buffering)."""
    return StreamingResponse(
        generator,
        media_type="text/event-stream",
        headers={
            "Cache-Control": "no-cache",
            "Connection": "keep-alive",
            "X-Accel-Buffering": "no",
        },
    )
