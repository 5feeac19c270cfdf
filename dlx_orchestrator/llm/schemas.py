"""Wire schemas for OpenAI-compatible chat completion endpoints.

Provider replies are validated here, at the boundary, into one of two
shapes: a completion (or stream chunk) or an error envelope. Nothing past
the executor sees raw JSON.
"""

from __future__ import annotations

from typing import Annotated, Any

from pydantic import BaseModel, ConfigDict, Discriminator, Field, Tag, TypeAdapter

from dlx_orchestrator.models.conversation import Message


class _WireModel(BaseModel):
    model_config = ConfigDict(extra="ignore")


# ---------------------------------------------------------------------------
# Request
# ---------------------------------------------------------------------------


class WireMessage(_WireModel):
    role: str
    content: str


class ChatCompletionRequest(_WireModel):
    model: str
    messages: list[WireMessage]
    stream: bool = False
    temperature: float = 0.7

    @classmethod
    def build(
        cls,
        model_name: str,
        messages: list[Message],
        *,
        stream: bool,
        temperature: float,
    ) -> ChatCompletionRequest:
        return cls(
            model=model_name,
            messages=[WireMessage(role=m.role.value, content=m.content) for m in messages],
            stream=stream,
            temperature=temperature,
        )


# ---------------------------------------------------------------------------
# Replies
# ---------------------------------------------------------------------------


class Usage(_WireModel):
    prompt_tokens: int = 0
    completion_tokens: int = 0
    total_tokens: int | None = None


class ChoiceMessage(_WireModel):
    role: str | None = None
    content: str | None = None


class Choice(_WireModel):
    index: int = 0
    message: ChoiceMessage
    finish_reason: str | None = None


class ChatCompletion(_WireModel):
    id: str | None = None
    model: str | None = None
    choices: list[Choice] = Field(min_length=1)
    usage: Usage | None = None

    @property
    def text(self) -> str:
        return self.choices[0].message.content or ""

    @property
    def finish_reason(self) -> str | None:
        return self.choices[0].finish_reason


class Delta(_WireModel):
    role: str | None = None
    content: str | None = None


class StreamChoice(_WireModel):
    index: int = 0
    delta: Delta = Field(default_factory=Delta)
    finish_reason: str | None = None


class StreamChunk(_WireModel):
    """One `data: {...}` frame of a streamed completion."""

    choices: list[StreamChoice] = Field(default_factory=list)
    # Some servers report usage on the final frame
    usage: Usage | None = None

    @property
    def text(self) -> str:
        if not self.choices:
            return ""
        return self.choices[0].delta.content or ""

    @property
    def finish_reason(self) -> str | None:
        if not self.choices:
            return None
        return self.choices[0].finish_reason


class ErrorDetail(_WireModel):
    message: str
    type: str | None = None
    code: str | int | None = None


class ErrorEnvelope(_WireModel):
    error: ErrorDetail


def _reply_tag(value: Any) -> str:
    if isinstance(value, dict):
        return "error" if "error" in value else "ok"
    return "error" if isinstance(value, ErrorEnvelope) else "ok"


CompletionReply = Annotated[
    Annotated[ChatCompletion, Tag("ok")] | Annotated[ErrorEnvelope, Tag("error")],
    Discriminator(_reply_tag),
]
StreamReply = Annotated[
    Annotated[StreamChunk, Tag("ok")] | Annotated[ErrorEnvelope, Tag("error")],
    Discriminator(_reply_tag),
]

_completion_adapter: TypeAdapter[ChatCompletion | ErrorEnvelope] = TypeAdapter(CompletionReply)
_stream_adapter: TypeAdapter[StreamChunk | ErrorEnvelope] = TypeAdapter(StreamReply)


def parse_completion(raw: str | bytes) -> ChatCompletion | ErrorEnvelope:
    """Validate a non-streaming reply body.

    Raises:
        pydantic.ValidationError: Body is not JSON or matches neither shape
    """
    return _completion_adapter.validate_json(raw)


def parse_stream_chunk(raw: str | bytes) -> StreamChunk | ErrorEnvelope:
    """Validate the payload of a single `data:` line."""
    return _stream_adapter.validate_json(raw)
