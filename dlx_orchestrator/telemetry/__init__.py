"""Telemetry package: structured logging with request correlation."""

from __future__ import annotations

from dlx_orchestrator.telemetry.logging import (
    bind_request_context,
    clear_context,
    configure_logging,
)

__all__ = [
    "bind_request_context",
    "clear_context",
    "configure_logging",
]
