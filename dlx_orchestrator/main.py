"""FastAPI application entrypoint.

Application startup order:
1. Load settings (from environment)
2. Configure logging
3. Build the record store (seeded from PROVIDERS_FILE when set)
4. Build and start the Orchestrator (health probes, cache sweeper,
   write-behind)

Shutdown order:
1. Stop the Orchestrator and close its HTTP client
"""

from __future__ import annotations

from collections.abc import AsyncGenerator
from contextlib import asynccontextmanager

import structlog
from fastapi import FastAPI, Request, status
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse

from dlx_orchestrator.api import health, orchestrate
from dlx_orchestrator.config import get_settings
from dlx_orchestrator.errors import ErrorKind, OrchestrationError
from dlx_orchestrator.orchestrator import Orchestrator
from dlx_orchestrator.storage.memory import InMemoryRecordStore
from dlx_orchestrator.telemetry.logging import configure_logging

log = structlog.get_logger(__name__)

ERROR_STATUS: dict[ErrorKind, int] = {
    ErrorKind.MODEL_NOT_FOUND: status.HTTP_404_NOT_FOUND,
    ErrorKind.PROVIDER_UNAVAILABLE: status.HTTP_503_SERVICE_UNAVAILABLE,
    ErrorKind.NO_PROVIDERS: status.HTTP_503_SERVICE_UNAVAILABLE,
    ErrorKind.REQUEST_TIMEOUT: status.HTTP_504_GATEWAY_TIMEOUT,
    ErrorKind.UPSTREAM_ERROR: status.HTTP_502_BAD_GATEWAY,
    ErrorKind.STREAM_PARSE_ERROR: status.HTTP_502_BAD_GATEWAY,
    ErrorKind.BUDGET_EXCEEDED: status.HTTP_402_PAYMENT_REQUIRED,
}


@asynccontextmanager
async def lifespan(app: FastAPI) -> AsyncGenerator[None, None]:
    """Application lifespan: startup and shutdown."""
    settings = get_settings()

    # Configure structured logging first (before any log calls)
    configure_logging(
        json_logs=settings.log_json,
        log_level="DEBUG" if settings.debug else "INFO",
    )
    log.info("app.starting", environment=settings.environment)

    if settings.providers_file:
        store = InMemoryRecordStore.from_json_file(settings.providers_file)
    else:
        log.warning("app.no_providers_file")
        store = InMemoryRecordStore()

    orchestrator = Orchestrator.from_settings(settings, store=store)
    await orchestrator.start()
    app.state.orchestrator = orchestrator

    log.info("app.ready")
    yield

    await orchestrator.shutdown()
    log.info("app.shutdown")


def create_app() -> FastAPI:
    """Application factory."""
    settings = get_settings()

    app = FastAPI(
        title="DLX Orchestrator",
        description="Routes chat requests across local and cloud LLM providers.",
        version="0.1.0",
        docs_url="/docs" if settings.is_dev else None,
        redoc_url="/redoc" if settings.is_dev else None,
        openapi_url="/openapi.json" if settings.is_dev else None,
        lifespan=lifespan,
    )

    # In dev mode, allow all origins for easier development
    cors_origins = ["*"] if settings.is_dev else settings.cors_allowed_origins
    app.add_middleware(
        CORSMiddleware,
        allow_origins=cors_origins,
        allow_credentials=settings.is_prod,
        allow_methods=["*"],
        allow_headers=["Authorization", "Content-Type"],
    )

    app.include_router(health.router)
    app.include_router(orchestrate.router)

    # ------------------------------------------------------------------ #
    # Exception handlers
    # ------------------------------------------------------------------ #

    @app.exception_handler(OrchestrationError)
    async def orchestration_error_handler(
        request: Request, exc: OrchestrationError
    ) -> JSONResponse:
        status_code = ERROR_STATUS.get(exc.kind, status.HTTP_502_BAD_GATEWAY)
        log.warning(
            "app.orchestration_error",
            path=request.url.path,
            kind=exc.kind.value,
            status_code=status_code,
        )
        return JSONResponse(status_code=status_code, content={"error": exc.to_dict()})

    @app.exception_handler(Exception)
    async def unhandled_exception_handler(request: Request, exc: Exception) -> JSONResponse:
        log.error(
            "app.unhandled_exception",
            path=request.url.path,
            method=request.method,
            error=str(exc),
            exc_info=True,
        )
        return JSONResponse(
            status_code=status.HTTP_500_INTERNAL_SERVER_ERROR,
            content={"detail": "Internal server error"},
        )

    return app


# Module-level app instance for uvicorn
app = create_app()


# ---------------------------------------------------------------------------
# Entrypoint for running directly: python -m dlx_orchestrator.main
# ---------------------------------------------------------------------------
if __name__ == "__main__":
    import uvicorn

    uvicorn.run("dlx_orchestrator.main:app", host="0.0.0.0", port=8000)
