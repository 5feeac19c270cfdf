"""FastAPI dependencies."""

from __future__ import annotations

from fastapi import Request

from dlx_orchestrator.orchestrator import Orchestrator


def get_orchestrator(request: Request) -> Orchestrator:
    """The Orchestrator built by the application lifespan."""
    return request.app.state.orchestrator
