"""End-to-end tests for the Orchestrator composition root.

Every component is real; only provider HTTP traffic is mocked.
"""

from __future__ import annotations

import asyncio
from collections import Counter

import httpx
import pytest
from conftest import CLOUD_HOST, LOCAL_HOST, completion_json, route_transport, sse_body

from dlx_orchestrator import Orchestrator
from dlx_orchestrator.errors import NoProvidersAvailableError, UpstreamError
from dlx_orchestrator.llm import FragmentChannel
from dlx_orchestrator.models.conversation import Message
from dlx_orchestrator.models.usage import BudgetScope
from dlx_orchestrator.storage import USAGE_LOGS, InMemoryRecordStore

HISTORY = [Message.system("Be brief."), Message.user("Say hi")]


class _Upstream:
    """Per-host canned replies plus a call counter."""

    def __init__(self, **routes):
        self.calls: Counter[str] = Counter()
        self._routes = routes

    def transport(self) -> httpx.MockTransport:
        def wrap(host, reply):
            async def handler(request: httpx.Request):
                self.calls[host] += 1
                result = reply(request)
                if isinstance(result, httpx.Response):
                    return result
                return await result

            return handler

        return route_transport({host: wrap(host, r) for host, r in self._routes.items()})


def _ok(content: str):
    return lambda request: httpx.Response(200, json=completion_json(content))


def _stream(fragments: list[str]):
    return lambda request: httpx.Response(200, content=sse_body(fragments))


def _orchestrator(settings, store, upstream: _Upstream) -> Orchestrator:
    client = httpx.AsyncClient(transport=upstream.transport())
    return Orchestrator.from_settings(settings, store=store, http_client=client)


async def _statuses(store) -> list[tuple[str, str]]:
    rows = await store.select(USAGE_LOGS, order_by="timestamp")
    return [(r["provider_id"], r["status"]) for r in rows]


class TestOrchestrate:
    @pytest.mark.asyncio
    async def test_failover_to_cloud(self, settings, store):
        upstream = _Upstream(
            **{LOCAL_HOST: lambda r: httpx.Response(500), CLOUD_HOST: _ok("ok")}
        )
        orchestrator = _orchestrator(settings, store, upstream)

        response = await orchestrator.orchestrate(HISTORY)

        assert response.content == "ok"
        assert response.provider_id == "openai"
        assert response.complete is True
        assert await _statuses(store) == [("ollama", "failed"), ("openai", "success")]

    @pytest.mark.asyncio
    async def test_second_identical_request_served_from_cache(self, settings, store):
        upstream = _Upstream(**{LOCAL_HOST: _ok("local answer"), CLOUD_HOST: _ok("cloud")})
        orchestrator = _orchestrator(settings, store, upstream)

        first = await orchestrator.orchestrate(HISTORY)
        second = await orchestrator.orchestrate(HISTORY, conversation_id="c1")

        assert first.cached is False
        assert second.cached is True
        assert second.content == "local answer"
        assert upstream.calls[LOCAL_HOST] == 1
        assert await _statuses(store) == [("ollama", "success"), ("ollama", "cached")]
        stats = await orchestrator.get_cache_stats()
        assert stats.hits == 1
        assert stats.size == 1

    @pytest.mark.asyncio
    async def test_failover_response_cached_under_serving_model(self, settings, store):
        upstream = _Upstream(
            **{LOCAL_HOST: lambda r: httpx.Response(500), CLOUD_HOST: _ok("ok")}
        )
        orchestrator = _orchestrator(settings, store, upstream)

        await orchestrator.orchestrate(HISTORY)

        assert await orchestrator.cache.has(HISTORY, "gpt-4o")
        assert not await orchestrator.cache.has(HISTORY, "llama3-8b")

    @pytest.mark.asyncio
    async def test_streaming_into_channel(self, settings, store):
        upstream = _Upstream(**{LOCAL_HOST: _stream(["Hel", "lo", " world", "!"])})
        orchestrator = _orchestrator(settings, store, upstream)
        channel = FragmentChannel()

        consumer = asyncio.create_task(_collect(channel))
        response = await orchestrator.orchestrate(HISTORY, channel=channel)

        assert await consumer == ["Hello world!"]
        assert response.content == "Hello world!"
        assert response.complete is True
        assert channel.closed
        assert channel.error is None

    @pytest.mark.asyncio
    async def test_stream_callback_receives_smoothed_chunks(self, settings, store):
        upstream = _Upstream(**{LOCAL_HOST: _stream(["One, ", "two", " three"])})
        orchestrator = _orchestrator(settings, store, upstream)
        chunks: list[str] = []

        response = await orchestrator.orchestrate(HISTORY, on_stream_chunk=chunks.append)

        assert "".join(chunks) == response.content == "One, two three"

    @pytest.mark.asyncio
    async def test_streaming_skips_cache_lookup(self, settings, store):
        upstream = _Upstream(**{LOCAL_HOST: _stream(["cached? no."])})
        orchestrator = _orchestrator(settings, store, upstream)

        await orchestrator.orchestrate(HISTORY, stream=True)
        await orchestrator.orchestrate(HISTORY, stream=True)

        assert upstream.calls[LOCAL_HOST] == 2

    @pytest.mark.asyncio
    async def test_consumer_cancel_returns_incomplete(self, settings, store):
        async def slow_stream(request: httpx.Request) -> httpx.Response:
            async def body():
                yield b'data: {"choices": [{"delta": {"content": "Hello there."}}]}\n\n'
                await asyncio.sleep(10)
                yield b"data: [DONE]\n\n"

            return httpx.Response(200, content=body())

        upstream = _Upstream(**{LOCAL_HOST: slow_stream})
        orchestrator = _orchestrator(settings, store, upstream)
        channel = FragmentChannel()

        async def cancel_after_first():
            async for _ in channel:
                channel.cancel()
                break

        consumer = asyncio.create_task(cancel_after_first())
        response = await asyncio.wait_for(
            orchestrator.orchestrate(HISTORY, channel=channel), timeout=5
        )
        await consumer

        assert response.complete is False
        assert response.content == "Hello there."
        rows = await store.select(USAGE_LOGS)
        assert rows[0]["error_message"] == "cancelled by caller"
        assert not await orchestrator.cache.has(HISTORY, "llama3-8b")

    @pytest.mark.asyncio
    async def test_empty_stream_fails_over(self, settings, store):
        upstream = _Upstream(
            **{
                LOCAL_HOST: lambda r: httpx.Response(200, content=b""),
                CLOUD_HOST: _stream(["ok"]),
            }
        )
        orchestrator = _orchestrator(settings, store, upstream)
        chunks: list[str] = []

        response = await orchestrator.orchestrate(HISTORY, on_stream_chunk=chunks.append)

        assert response.content == "ok"
        assert response.provider_id == "openai"
        assert response.complete is True
        assert chunks == ["ok"]
        assert upstream.calls[CLOUD_HOST] == 1
        assert await _statuses(store) == [("ollama", "failed"), ("openai", "success")]

    @pytest.mark.asyncio
    async def test_task_cancel_records_partial_usage(self, settings, store):
        async def slow_stream(request: httpx.Request) -> httpx.Response:
            async def body():
                yield b'data: {"choices": [{"delta": {"content": "Hello there."}}]}\n\n'
                await asyncio.sleep(10)
                yield b"data: [DONE]\n\n"

            return httpx.Response(200, content=body())

        orchestrator = _orchestrator(settings, store, _Upstream(**{LOCAL_HOST: slow_stream}))
        first_chunk = asyncio.Event()

        task = asyncio.create_task(
            orchestrator.orchestrate(HISTORY, on_stream_chunk=lambda chunk: first_chunk.set())
        )
        await asyncio.wait_for(first_chunk.wait(), timeout=5)
        task.cancel()

        with pytest.raises(asyncio.CancelledError):
            await task

        rows = await store.select(USAGE_LOGS)
        assert len(rows) == 1
        assert rows[0]["status"] == "failed"
        assert rows[0]["error_message"] == "cancelled by caller"
        assert rows[0]["completion_tokens"] > 0

    @pytest.mark.asyncio
    async def test_failure_closes_channel_with_error(self, settings, store):
        upstream = _Upstream(
            **{LOCAL_HOST: lambda r: httpx.Response(500), CLOUD_HOST: lambda r: httpx.Response(502)}
        )
        orchestrator = _orchestrator(settings, store, upstream)
        channel = FragmentChannel()

        with pytest.raises(UpstreamError):
            await orchestrator.orchestrate(HISTORY, channel=channel)

        assert channel.closed
        assert isinstance(channel.error, UpstreamError)
        assert [f async for f in channel] == []

    @pytest.mark.asyncio
    async def test_empty_history_rejected(self, settings, store):
        orchestrator = _orchestrator(settings, store, _Upstream())

        with pytest.raises(ValueError):
            await orchestrator.orchestrate([])

    @pytest.mark.asyncio
    async def test_no_providers(self, settings):
        orchestrator = _orchestrator(settings, InMemoryRecordStore(), _Upstream())

        with pytest.raises(NoProvidersAvailableError):
            await orchestrator.orchestrate(HISTORY)


class TestIntrospection:
    @pytest.mark.asyncio
    async def test_budget_advisory_after_usage(self, settings, store):
        upstream = _Upstream(**{LOCAL_HOST: lambda r: httpx.Response(500), CLOUD_HOST: _ok("ok")})
        orchestrator = _orchestrator(settings, store, upstream)
        await orchestrator.tracker.set_budget(BudgetScope.PROJECT, project_id="alpha", token_limit=10)

        response = await orchestrator.orchestrate(HISTORY, project_id="alpha")
        status = await orchestrator.check_budget(BudgetScope.PROJECT, "alpha")

        # Over budget, yet the request was still served
        assert response.content == "ok"
        assert status.used == 15
        assert status.within_budget is False

    @pytest.mark.asyncio
    async def test_readiness_and_provider_stats(self, settings, store):
        orchestrator = _orchestrator(settings, store, _Upstream())

        assert await orchestrator.is_ready() is True
        stats = await orchestrator.get_provider_stats()
        assert (stats.total, stats.healthy) == (2, 2)

    @pytest.mark.asyncio
    async def test_start_and_shutdown(self, settings, store):
        models = lambda r: httpx.Response(200, json={"data": []})  # noqa: E731
        upstream = _Upstream(**{LOCAL_HOST: models, CLOUD_HOST: models})
        orchestrator = _orchestrator(settings, store, upstream)

        await orchestrator.start()
        await orchestrator.start()
        await asyncio.sleep(0.05)
        await orchestrator.shutdown()

        assert upstream.calls[LOCAL_HOST] >= 1


async def _collect(channel: FragmentChannel) -> list[str]:
    return [fragment async for fragment in channel]
