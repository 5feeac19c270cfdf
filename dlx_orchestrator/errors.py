"""Error taxonomy for request orchestration.

Every failure the orchestration layer can surface to a caller is an
OrchestrationError subclass tagged with an ErrorKind. Transport-level
exceptions (httpx, JSON, validation) are translated into these at the
executor boundary so callers never need to know about the HTTP client.

Propagation:
- RequestTimeoutError / UpstreamError / ProviderUnavailableError trigger a
  single hop to the fallback plan entry.
- ModelNotFoundError is fatal.
- BudgetExceededError is advisory; the orchestrator never raises it.
"""

from __future__ import annotations

from enum import StrEnum
from typing import TYPE_CHECKING, Any

if TYPE_CHECKING:
    from dlx_orchestrator.models.conversation import Response


class ErrorKind(StrEnum):
    PROVIDER_UNAVAILABLE = "provider_unavailable"
    NO_PROVIDERS = "no_providers_available"
    MODEL_NOT_FOUND = "model_not_found"
    REQUEST_TIMEOUT = "request_timeout"
    UPSTREAM_ERROR = "upstream_error"
    STREAM_PARSE_ERROR = "stream_parse_error"
    BUDGET_EXCEEDED = "budget_exceeded"


class OrchestrationError(Exception):
    """Base exception for all orchestration failures."""

    kind: ErrorKind = ErrorKind.UPSTREAM_ERROR
    retryable: bool = False

    def __init__(
        self,
        message: str,
        *,
        provider_id: str | None = None,
        model_id: str | None = None,
        partial: Response | None = None,
    ) -> None:
        super().__init__(message)
        self.message = message
        self.provider_id = provider_id
        self.model_id = model_id
        # Text already delivered to a stream consumer before the failure
        self.partial = partial

    def to_dict(self) -> dict[str, Any]:
        data: dict[str, Any] = {
            "kind": self.kind.value,
            "message": self.message,
            "provider_id": self.provider_id,
            "model_id": self.model_id,
        }
        if self.partial is not None:
            data["partial_content"] = self.partial.content
        return data


class ProviderUnavailableError(OrchestrationError):
    """Provider is inactive or marked down."""

    kind = ErrorKind.PROVIDER_UNAVAILABLE
    retryable = True


class NoProvidersAvailableError(OrchestrationError):
    """The registry holds no active provider with an available model."""

    kind = ErrorKind.NO_PROVIDERS


class ModelNotFoundError(OrchestrationError):
    """Unknown model id."""

    kind = ErrorKind.MODEL_NOT_FOUND


class RequestTimeoutError(OrchestrationError):
    """Upstream did not respond within the deadline."""

    kind = ErrorKind.REQUEST_TIMEOUT
    retryable = True


class UpstreamError(OrchestrationError):
    """Provider answered with a non-2xx status or the connection failed."""

    kind = ErrorKind.UPSTREAM_ERROR
    retryable = True

    def __init__(
        self,
        message: str,
        *,
        status_code: int | None = None,
        provider_id: str | None = None,
        model_id: str | None = None,
        partial: Response | None = None,
    ) -> None:
        super().__init__(
            message,
            provider_id=provider_id,
            model_id=model_id,
            partial=partial,
        )
        self.status_code = status_code

    def to_dict(self) -> dict[str, Any]:
        data = super().to_dict()
        data["status_code"] = self.status_code
        return data


class StreamParseError(OrchestrationError):
    """A streamed SSE frame could not be decoded."""

    kind = ErrorKind.STREAM_PARSE_ERROR
    retryable = True


class BudgetExceededError(OrchestrationError):
    """Budget scope is over its token or cost limit (advisory)."""

    kind = ErrorKind.BUDGET_EXCEEDED

    def __init__(self, message: str, *, scope: str, used: float, limit: float) -> None:
        super().__init__(message)
        self.scope = scope
        self.used = used
        self.limit = limit

    def to_dict(self) -> dict[str, Any]:
        data = super().to_dict()
        data.update(scope=self.scope, used=self.used, limit=self.limit)
        return data
