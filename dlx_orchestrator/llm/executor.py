"""Request executor for OpenAI-compatible chat completion endpoints.

One call, one provider: send() POSTs {endpoint}/v1/chat/completions and
returns a Response. Retrying and failover are the caller's business
(OrchestrationStrategy); this module only translates transport failures
into the orchestration error taxonomy:

- inactive or down provider      -> ProviderUnavailableError
- no response within the deadline -> RequestTimeoutError
- non-2xx / error envelope / connection failure -> UpstreamError
- undecodable streamed frame     -> StreamParseError (carries the partial)

Streaming: every `data: {...}` line carries choices[0].delta.content and
the stream ends with `data: [DONE]`. Fragments are forwarded to the sink
as they arrive. If the stream breaks after text has been delivered, the
text cannot be retracted, so the partial Response is returned with
complete=False instead of raising. A stream that ends without text or
`[DONE]` raises UpstreamError so the caller can fail over.
"""

from __future__ import annotations

import asyncio
import inspect
import time
from collections.abc import Awaitable, Callable, Iterable, Sequence
from dataclasses import dataclass, field

import httpx
import structlog
from pydantic import ValidationError

from dlx_orchestrator.config import Settings
from dlx_orchestrator.context.tokens import TokenEstimator
from dlx_orchestrator.errors import (
    OrchestrationError,
    ProviderUnavailableError,
    RequestTimeoutError,
    StreamParseError,
    UpstreamError,
)
from dlx_orchestrator.llm.schemas import (
    ChatCompletionRequest,
    ErrorEnvelope,
    Usage,
    parse_completion,
    parse_stream_chunk,
)
from dlx_orchestrator.models.conversation import Message, Response
from dlx_orchestrator.models.provider import Model, Provider

log = structlog.get_logger(__name__)

DEFAULT_TIMEOUT_SECONDS = 60.0
DEFAULT_TEMPERATURE = 0.7
DONE_MARKER = "[DONE]"
_ERROR_BODY_PREVIEW = 200

FragmentSink = Callable[[str], Awaitable[None] | None]
CancelSignal = asyncio.Event | Iterable[asyncio.Event] | None


@dataclass
class _CallState:
    """What has been received so far for one call."""

    parts: list[str] = field(default_factory=list)
    usage: Usage | None = None
    finish_reason: str | None = None
    done: bool = False

    @property
    def content(self) -> str:
        return "".join(self.parts)


class RequestExecutor:
    """Sends chat requests to a single provider.

    Args:
        http_client: Shared client; one is created (and closed by aclose())
            when omitted
        timeout_seconds: Deadline for a response (per read when streaming)
        temperature: Sampling temperature sent with every request
        estimator: Token estimator used when the provider reports no usage
    """

    def __init__(
        self,
        http_client: httpx.AsyncClient | None = None,
        *,
        timeout_seconds: float = DEFAULT_TIMEOUT_SECONDS,
        temperature: float = DEFAULT_TEMPERATURE,
        estimator: TokenEstimator | None = None,
    ) -> None:
        self._owns_client = http_client is None
        self._http = http_client or httpx.AsyncClient()
        self._timeout = timeout_seconds
        self._temperature = temperature
        self._estimator = estimator or TokenEstimator()

    @classmethod
    def from_settings(
        cls,
        settings: Settings,
        *,
        http_client: httpx.AsyncClient | None = None,
        estimator: TokenEstimator | None = None,
    ) -> RequestExecutor:
        return cls(
            http_client,
            timeout_seconds=settings.request_timeout_seconds,
            temperature=settings.temperature,
            estimator=estimator,
        )

    async def aclose(self) -> None:
        if self._owns_client:
            await self._http.aclose()

    async def send(
        self,
        provider: Provider,
        model: Model,
        messages: Sequence[Message],
        *,
        stream: bool = False,
        sink: FragmentSink | None = None,
        cancel: CancelSignal = None,
        timeout: float | None = None,
    ) -> Response:
        """Execute one chat completion.

        Args:
            provider: Provider to call
            model: Model served by that provider
            messages: Conversation to send, in order
            stream: Request a streamed reply
            sink: Receives each streamed fragment as it arrives
            cancel: Event(s) that abort the call when set; the Response
                is then returned with complete=False
            timeout: Override the default deadline

        Returns:
            Response; complete is False when cancelled or when a stream
            ended abnormally after text was delivered.

        Raises:
            ProviderUnavailableError: Provider is inactive or down
            RequestTimeoutError: No response within the deadline
            UpstreamError: Non-2xx, error envelope or connection failure
            StreamParseError: A streamed frame could not be decoded
        """
        if not provider.is_routable:
            raise ProviderUnavailableError(
                f"Provider {provider.id!r} is {'down' if provider.is_active else 'inactive'}",
                provider_id=provider.id,
                model_id=model.id,
            )

        messages = list(messages)
        body = ChatCompletionRequest.build(
            model.model_name,
            messages,
            stream=stream,
            temperature=self._temperature,
        ).model_dump()
        headers = {"Authorization": f"Bearer {provider.api_key}"} if provider.api_key else {}
        url = f"{provider.endpoint_url}/v1/chat/completions"
        deadline = httpx.Timeout(timeout or self._timeout)

        state = _CallState()
        start = time.perf_counter()

        log.debug(
            "executor.request_started",
            provider_id=provider.id,
            model_id=model.id,
            stream=stream,
            message_count=len(messages),
        )

        if stream:
            work = self._stream(url, body, headers, deadline, state, sink, provider, model)
        else:
            work = self._complete(url, body, headers, deadline, state, provider, model)

        try:
            cancelled = await _run_until_cancelled(work, as_cancel_events(cancel))
        except OrchestrationError as exc:
            latency_ms = (time.perf_counter() - start) * 1000
            if state.parts and exc.partial is None:
                exc.partial = self._build_response(
                    state, messages, provider, model, latency_ms, complete=False
                )
            log.warning(
                "executor.request_failed",
                provider_id=provider.id,
                model_id=model.id,
                error_kind=exc.kind.value,
                error=exc.message,
                partial_chars=len(state.content),
            )
            raise
        except asyncio.CancelledError as exc:
            # Same `partial` attribute as OrchestrationError, for usage accounting
            exc.partial = self._build_response(
                state,
                messages,
                provider,
                model,
                (time.perf_counter() - start) * 1000,
                complete=False,
            )
            log.info(
                "executor.request_task_cancelled",
                provider_id=provider.id,
                model_id=model.id,
                partial_chars=len(state.content),
            )
            raise

        latency_ms = (time.perf_counter() - start) * 1000
        complete = state.done and not cancelled
        response = self._build_response(
            state, messages, provider, model, latency_ms, complete=complete
        )

        if cancelled:
            log.info(
                "executor.request_cancelled",
                provider_id=provider.id,
                model_id=model.id,
                partial_chars=len(response.content),
            )
        elif not complete:
            log.warning(
                "executor.stream_aborted",
                provider_id=provider.id,
                model_id=model.id,
                partial_chars=len(response.content),
            )
        else:
            log.info(
                "executor.request_completed",
                provider_id=provider.id,
                model_id=model.id,
                prompt_tokens=response.prompt_tokens,
                completion_tokens=response.completion_tokens,
                latency_ms=round(latency_ms, 1),
            )
        return response

    # ------------------------------------------------------------------
    # Wire calls
    # ------------------------------------------------------------------

    async def _complete(
        self,
        url: str,
        body: dict,
        headers: dict[str, str],
        deadline: httpx.Timeout,
        state: _CallState,
        provider: Provider,
        model: Model,
    ) -> None:
        try:
            response = await self._http.post(url, json=body, headers=headers, timeout=deadline)
        except httpx.TimeoutException as exc:
            raise RequestTimeoutError(
                f"No response from {provider.id!r} within {deadline.read}s",
                provider_id=provider.id,
                model_id=model.id,
            ) from exc
        except httpx.HTTPError as exc:
            raise UpstreamError(
                f"Request to {provider.id!r} failed: {exc}",
                provider_id=provider.id,
                model_id=model.id,
            ) from exc

        if not response.is_success:
            raise _status_error(response.status_code, response.text, provider, model)

        try:
            reply = parse_completion(response.content)
        except ValidationError as exc:
            raise UpstreamError(
                f"Malformed completion from {provider.id!r}",
                status_code=response.status_code,
                provider_id=provider.id,
                model_id=model.id,
            ) from exc

        if isinstance(reply, ErrorEnvelope):
            raise UpstreamError(
                reply.error.message,
                status_code=response.status_code,
                provider_id=provider.id,
                model_id=model.id,
            )

        state.parts.append(reply.text)
        state.usage = reply.usage
        state.finish_reason = reply.finish_reason
        state.done = True

    async def _stream(
        self,
        url: str,
        body: dict,
        headers: dict[str, str],
        deadline: httpx.Timeout,
        state: _CallState,
        sink: FragmentSink | None,
        provider: Provider,
        model: Model,
    ) -> None:
        try:
            async with self._http.stream(
                "POST", url, json=body, headers=headers, timeout=deadline
            ) as response:
                if not response.is_success:
                    await response.aread()
                    raise _status_error(response.status_code, response.text, provider, model)

                async for line in response.aiter_lines():
                    payload = _data_payload(line)
                    if payload is None:
                        continue
                    if payload == DONE_MARKER:
                        state.done = True
                        break
                    await self._handle_frame(payload, state, sink, provider, model)
        except httpx.TimeoutException as exc:
            if state.parts:
                return
            raise RequestTimeoutError(
                f"No response from {provider.id!r} within {deadline.read}s",
                provider_id=provider.id,
                model_id=model.id,
            ) from exc
        except httpx.HTTPError as exc:
            if state.parts:
                return
            raise UpstreamError(
                f"Stream from {provider.id!r} failed: {exc}",
                provider_id=provider.id,
                model_id=model.id,
            ) from exc

        # Nothing reached the caller, so this is a failure rather than a partial
        if not state.done and not state.parts:
            raise UpstreamError(
                f"Stream from {provider.id!r} ended before any content",
                provider_id=provider.id,
                model_id=model.id,
            )

    async def _handle_frame(
        self,
        payload: str,
        state: _CallState,
        sink: FragmentSink | None,
        provider: Provider,
        model: Model,
    ) -> None:
        try:
            frame = parse_stream_chunk(payload)
        except ValidationError as exc:
            raise StreamParseError(
                f"Undecodable stream frame from {provider.id!r}",
                provider_id=provider.id,
                model_id=model.id,
            ) from exc

        if isinstance(frame, ErrorEnvelope):
            raise UpstreamError(
                frame.error.message,
                provider_id=provider.id,
                model_id=model.id,
            )

        if frame.usage is not None:
            state.usage = frame.usage
        if frame.finish_reason is not None:
            state.finish_reason = frame.finish_reason

        fragment = frame.text
        if not fragment:
            return
        state.parts.append(fragment)
        if sink is not None:
            result = sink(fragment)
            if inspect.isawaitable(result):
                await result

    # ------------------------------------------------------------------
    # Helpers
    # ------------------------------------------------------------------

    def _build_response(
        self,
        state: _CallState,
        messages: list[Message],
        provider: Provider,
        model: Model,
        latency_ms: float,
        *,
        complete: bool,
    ) -> Response:
        content = state.content
        if state.usage is not None:
            prompt_tokens = state.usage.prompt_tokens
            completion_tokens = state.usage.completion_tokens
        else:
            prompt_tokens = self._estimator.estimate_messages(messages)
            completion_tokens = self._estimator.estimate(content)
        return Response(
            content=content,
            model_id=model.id,
            provider_id=provider.id,
            prompt_tokens=prompt_tokens,
            completion_tokens=completion_tokens,
            latency_ms=latency_ms,
            complete=complete,
            finish_reason=state.finish_reason,
        )


def _data_payload(line: str) -> str | None:
    """Payload of an SSE `data:` line; None for blanks, comments and other fields."""
    line = line.strip()
    if not line.startswith("data:"):
        return None
    return line[len("data:"):].strip() or None


def _status_error(status_code: int, text: str, provider: Provider, model: Model) -> UpstreamError:
    return UpstreamError(
        f"{provider.id!r} answered HTTP {status_code}: {text[:_ERROR_BODY_PREVIEW]}",
        status_code=status_code,
        provider_id=provider.id,
        model_id=model.id,
    )


def as_cancel_events(cancel: CancelSignal) -> list[asyncio.Event]:
    if cancel is None:
        return []
    if isinstance(cancel, asyncio.Event):
        return [cancel]
    return list(cancel)


async def _run_until_cancelled(work: Awaitable[None], events: list[asyncio.Event]) -> bool:
    """Await `work` unless one of `events` fires first.

    Returns:
        True when an event fired and `work` was abandoned.
    """
    if not events:
        await work
        return False

    task = asyncio.ensure_future(work)
    waiters = [asyncio.ensure_future(event.wait()) for event in events]
    try:
        await asyncio.wait([task, *waiters], return_when=asyncio.FIRST_COMPLETED)
    finally:
        for waiter in waiters:
            waiter.cancel()
        await asyncio.gather(*waiters, return_exceptions=True)
        if not task.done():
            task.cancel()
            await asyncio.gather(task, return_exceptions=True)

    if task.cancelled():
        return True
    # Surfaces errors raised by the call itself
    task.result()
    return False
