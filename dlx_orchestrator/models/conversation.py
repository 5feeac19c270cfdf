"""Conversation messages and provider responses."""

from __future__ import annotations

from dataclasses import dataclass, replace
from enum import StrEnum
from typing import Any


class Role(StrEnum):
    USER = "user"
    ASSISTANT = "assistant"
    SYSTEM = "system"


@dataclass(frozen=True)
class Message:
    """A single chat message. Order within a history is significant."""

    role: Role
    content: str

    def to_dict(self) -> dict[str, str]:
        return {"role": self.role.value, "content": self.content}

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> Message:
        return cls(role=Role(data["role"]), content=data["content"])

    @classmethod
    def user(cls, content: str) -> Message:
        return cls(role=Role.USER, content=content)

    @classmethod
    def assistant(cls, content: str) -> Message:
        return cls(role=Role.ASSISTANT, content=content)

    @classmethod
    def system(cls, content: str) -> Message:
        return cls(role=Role.SYSTEM, content=content)


@dataclass(frozen=True)
class Response:
    """Result of one provider call (or a cache hit).

    Attributes:
        content: Full response text (partial when complete is False)
        model_id: Model record id that produced the text
        provider_id: Provider that served the call
        prompt_tokens: Reported or estimated input tokens
        completion_tokens: Reported or estimated output tokens
        latency_ms: Wall time of the call
        cached: Served from the ResponseCache
        complete: False when a stream ended abnormally or was cancelled
        finish_reason: Provider-reported finish reason, if any
    """

    content: str
    model_id: str
    provider_id: str
    prompt_tokens: int = 0
    completion_tokens: int = 0
    latency_ms: float = 0.0
    cached: bool = False
    complete: bool = True
    finish_reason: str | None = None

    @property
    def total_tokens(self) -> int:
        return self.prompt_tokens + self.completion_tokens

    def as_cached(self) -> Response:
        return replace(self, cached=True, latency_ms=0.0)

    def to_dict(self) -> dict[str, Any]:
        return {
            "content": self.content,
            "model_id": self.model_id,
            "provider_id": self.provider_id,
            "prompt_tokens": self.prompt_tokens,
            "completion_tokens": self.completion_tokens,
            "total_tokens": self.total_tokens,
            "latency_ms": self.latency_ms,
            "cached": self.cached,
            "complete": self.complete,
            "finish_reason": self.finish_reason,
        }

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> Response:
        return cls(
            content=data["content"],
            model_id=data["model_id"],
            provider_id=data["provider_id"],
            prompt_tokens=data.get("prompt_tokens", 0),
            completion_tokens=data.get("completion_tokens", 0),
            latency_ms=data.get("latency_ms", 0.0),
            cached=data.get("cached", False),
            complete=data.get("complete", True),
            finish_reason=data.get("finish_reason"),
        )
