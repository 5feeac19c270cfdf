"""
Shared test fixtures for pytest.

Provides common test data and helpers for all test modules:
- settings: Test environment configuration
- seed / store: InMemoryRecordStore seeded with one local and one cloud provider
- make_provider / make_model: Domain record factories
- completion_json / sse_body: OpenAI-compatible provider reply bodies
- route_transport: httpx.MockTransport dispatching on request host
"""

from __future__ import annotations

import json
from collections.abc import Awaitable, Callable
from typing import Any

import httpx
import pytest

from dlx_orchestrator.config import Environment, Settings, get_settings
from dlx_orchestrator.models.provider import Model, Provider, ProviderType, UseCase
from dlx_orchestrator.storage.base import MODELS, PROVIDER_PRICING, PROVIDERS
from dlx_orchestrator.storage.memory import InMemoryRecordStore

LOCAL_HOST = "ollama.test"
CLOUD_HOST = "openai.test"

Handler = Callable[[httpx.Request], httpx.Response | Awaitable[httpx.Response]]


# ------------------------------------------------------------------ #
# Settings
# ------------------------------------------------------------------ #


@pytest.fixture(autouse=True, scope="session")
def _clear_settings_cache():
    """Clear the lru_cache on get_settings so test overrides take effect."""
    get_settings.cache_clear()
    yield
    get_settings.cache_clear()


@pytest.fixture
def settings() -> Settings:
    return Settings(
        environment=Environment.TEST,
        request_timeout_seconds=5,
        health_probe_timeout_seconds=1,
        registry_cache_ttl_seconds=0,
        stream_max_delay_ms=1000,
    )


# ------------------------------------------------------------------ #
# Seed data
# ------------------------------------------------------------------ #


def provider_rows() -> list[dict[str, Any]]:
    return [
        {
            "id": "ollama",
            "name": "Ollama",
            "endpoint_url": f"http://{LOCAL_HOST}",
            "provider_type": "local",
            "priority": 1,
            "health_status": "healthy",
        },
        {
            "id": "openai",
            "name": "OpenAI",
            "endpoint_url": f"https://{CLOUD_HOST}/",
            "api_key": "sk-test",
            "provider_type": "cloud",
            "priority": 10,
            "health_status": "healthy",
        },
    ]


def model_rows() -> list[dict[str, Any]]:
    return [
        {
            "id": "llama3-8b",
            "provider_id": "ollama",
            "model_name": "llama3:8b",
            "display_name": "Llama 3 8B",
            "context_window": 8192,
            "use_case": "general",
            "cost_tier": "free",
        },
        {
            "id": "gpt-4o",
            "provider_id": "openai",
            "model_name": "gpt-4o",
            "display_name": "GPT-4o",
            "context_window": 128000,
            "use_case": "general",
            "cost_tier": "high",
        },
    ]


def pricing_rows() -> list[dict[str, Any]]:
    return [
        {
            "id": "openai-pricing",
            "provider_id": "openai",
            "input_cost_per_1k": 0.005,
            "output_cost_per_1k": 0.015,
        },
    ]


@pytest.fixture
def seed() -> dict[str, list[dict[str, Any]]]:
    return {
        PROVIDERS: provider_rows(),
        MODELS: model_rows(),
        PROVIDER_PRICING: pricing_rows(),
    }


@pytest.fixture
def store(seed) -> InMemoryRecordStore:
    return InMemoryRecordStore(seed)


# ------------------------------------------------------------------ #
# Factories
# ------------------------------------------------------------------ #


def make_provider(
    provider_id: str = "prov",
    *,
    host: str | None = None,
    provider_type: ProviderType = ProviderType.CLOUD,
    priority: int = 100,
    **overrides: Any,
) -> Provider:
    return Provider(
        id=provider_id,
        name=overrides.pop("name", provider_id.title()),
        endpoint_url=f"http://{host or provider_id + '.test'}",
        provider_type=provider_type,
        priority=priority,
        **overrides,
    )


def make_model(
    model_id: str = "model",
    provider: Provider | None = None,
    *,
    context_window: int = 8192,
    use_case: UseCase = UseCase.GENERAL,
    **overrides: Any,
) -> Model:
    provider = provider or make_provider()
    return Model(
        id=model_id,
        provider_id=provider.id,
        model_name=overrides.pop("model_name", model_id),
        display_name=overrides.pop("display_name", model_id),
        context_window=context_window,
        use_case=use_case,
        provider_type=provider.provider_type,
        **overrides,
    )


# ------------------------------------------------------------------ #
# Provider replies
# ------------------------------------------------------------------ #


def completion_json(
    content: str,
    *,
    prompt_tokens: int = 12,
    completion_tokens: int = 3,
    finish_reason: str = "stop",
) -> dict[str, Any]:
    return {
        "id": "chatcmpl-test",
        "model": "test-model",
        "choices": [
            {
                "index": 0,
                "message": {"role": "assistant", "content": content},
                "finish_reason": finish_reason,
            }
        ],
        "usage": {
            "prompt_tokens": prompt_tokens,
            "completion_tokens": completion_tokens,
            "total_tokens": prompt_tokens + completion_tokens,
        },
    }


def sse_body(fragments: list[str], *, done: bool = True) -> bytes:
    lines = [
        "data: " + json.dumps({"choices": [{"index": 0, "delta": {"content": f}}]})
        for f in fragments
    ]
    if done:
        lines.append("data: [DONE]")
    return ("\n\n".join(lines) + "\n\n").encode()


def route_transport(routes: dict[str, Handler]) -> httpx.MockTransport:
    """MockTransport dispatching each request to the handler for its host."""

    async def handler(request: httpx.Request) -> httpx.Response:
        route = routes.get(request.url.host)
        if route is None:
            return httpx.Response(404, json={"error": {"message": "unknown host"}})
        result = route(request)
        if isinstance(result, httpx.Response):
            return result
        return await result

    return httpx.MockTransport(handler)
