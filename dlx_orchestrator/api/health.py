"""Health check endpoints.

/healthz - Liveness probe: is the process up?
/readyz  - Readiness probe: is at least one active provider not down?

Readiness reads the registry's last known health; it never waits on a
fresh probe.
"""

from __future__ import annotations

from datetime import UTC, datetime

from fastapi import APIRouter, Depends, status
from fastapi.responses import JSONResponse

from dlx_orchestrator.api.dependencies import get_orchestrator
from dlx_orchestrator.orchestrator import Orchestrator

router = APIRouter(tags=["health"])


@router.get("/healthz")
async def liveness() -> dict:
    """Liveness probe - always returns 200 if the process is running."""
    return {"status": "ok", "timestamp": datetime.now(UTC).isoformat()}


@router.get("/readyz")
async def readiness(orchestrator: Orchestrator = Depends(get_orchestrator)) -> JSONResponse:
    stats = await orchestrator.get_provider_stats()
    is_ready = await orchestrator.is_ready()
    return JSONResponse(
        status_code=status.HTTP_200_OK if is_ready else status.HTTP_503_SERVICE_UNAVAILABLE,
        content={
            "status": "ready" if is_ready else "not_ready",
            "providers": stats.to_dict(),
            "timestamp": datetime.now(UTC).isoformat(),
        },
    )
