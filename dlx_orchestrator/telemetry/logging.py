"""Structured logging configuration.

Configures structlog with JSON output in production and a console renderer
in development. Request-scoped identifiers (request_id, conversation_id,
project_id) are bound through contextvars so every log entry emitted while
serving an orchestration call carries them.

Log format (production):
    {
        "timestamp": "2026-02-17T10:30:45.123456Z",
        "level": "info",
        "logger": "dlx_orchestrator.routing.strategy",
        "event": "strategy.attempt_succeeded",
        "request_id": "req_789...",
        "conversation_id": "conv_123...",
        "provider_id": "lmstudio",
        "model_id": "qwen2.5-coder"
    }
"""

from __future__ import annotations

import logging
import sys
import uuid

import structlog
from structlog.types import Processor


def configure_logging(
    *,
    json_logs: bool = False,
    log_level: str = "INFO",
) -> None:
    """Configure structured logging for the application.

    Args:
        json_logs: Use JSON format (True for production, False for dev)
        log_level: Minimum log level (DEBUG, INFO, WARNING, ERROR, CRITICAL)
    """
    logging.basicConfig(
        format="%(message)s",
        stream=sys.stdout,
        level=getattr(logging, log_level.upper()),
    )

    shared_processors: list[Processor] = [
        structlog.contextvars.merge_contextvars,
        structlog.stdlib.add_log_level,
        structlog.stdlib.add_logger_name,
        structlog.processors.TimeStamper(fmt="iso", utc=True),
        structlog.processors.StackInfoRenderer(),
    ]

    if json_logs:
        processors = shared_processors + [
            structlog.processors.format_exc_info,
            structlog.processors.JSONRenderer(),
        ]
    else:
        processors = shared_processors + [
            structlog.dev.ConsoleRenderer(colors=True),
        ]

    structlog.configure(
        processors=processors,
        wrapper_class=structlog.stdlib.BoundLogger,
        context_class=dict,
        logger_factory=structlog.stdlib.LoggerFactory(),
        cache_logger_on_first_use=True,
    )


def bind_request_context(
    *,
    request_id: str | None = None,
    conversation_id: str | None = None,
    project_id: str | None = None,
) -> str:
    """Bind request-scoped identifiers to all subsequent log entries.

    Returns:
        The request id that was bound (generated when not supplied)
    """
    request_id = request_id or f"req_{uuid.uuid4().hex[:16]}"
    context: dict[str, str] = {"request_id": request_id}
    if conversation_id:
        context["conversation_id"] = conversation_id
    if project_id:
        context["project_id"] = project_id
    structlog.contextvars.bind_contextvars(**context)
    return request_id


def clear_context() -> None:
    """Clear all context variables (call at request end)."""
    structlog.contextvars.clear_contextvars()
