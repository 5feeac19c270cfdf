"""Orchestration endpoints.

POST /v1/orchestrate           - Answer a conversation (JSON, or SSE when stream=true)
GET  /v1/cache/stats           - Response cache statistics
GET  /v1/providers/stats       - Provider health counts
GET  /v1/budgets/{scope}       - Budget standing (project scope needs ?project_id=)
"""

from __future__ import annotations

from datetime import datetime
from typing import Any

import structlog
from fastapi import APIRouter, Depends, HTTPException, Query, status
from pydantic import BaseModel, Field

from dlx_orchestrator.api.dependencies import get_orchestrator
from dlx_orchestrator.api.streaming import event_stream_response, orchestration_events
from dlx_orchestrator.models.conversation import Message, Role
from dlx_orchestrator.models.provider import UseCase
from dlx_orchestrator.models.usage import BudgetScope
from dlx_orchestrator.orchestrator import Orchestrator

log = structlog.get_logger(__name__)

router = APIRouter(prefix="/v1", tags=["orchestration"])


# ------------------------------------------------------------------ #
# Schemas
# ------------------------------------------------------------------ #


class MessageIn(BaseModel):
    role: Role
    content: str


class OrchestrateRequest(BaseModel):
    messages: list[MessageIn] = Field(..., min_length=1)
    use_case: UseCase = UseCase.GENERAL
    stream: bool = False
    project_id: str | None = Field(default=None, max_length=128)
    conversation_id: str | None = Field(default=None, max_length=128)

    def history(self) -> list[Message]:
        return [Message(role=m.role, content=m.content) for m in self.messages]


class OrchestrateResponse(BaseModel):
    content: str
    model_id: str
    provider_id: str
    prompt_tokens: int
    completion_tokens: int
    total_tokens: int
    latency_ms: float
    cached: bool
    complete: bool
    finish_reason: str | None = None


class CacheStatsResponse(BaseModel):
    hits: int
    misses: int
    size: int
    max_size: int
    hit_rate: float
    ttl_seconds: float
    evictions: int
    oldest_entry: datetime | None = None
    newest_entry: datetime | None = None


class ProviderStatsResponse(BaseModel):
    total: int
    healthy: int
    degraded: int
    down: int
    unknown: int
    local: int
    cloud: int


class BudgetResponse(BaseModel):
    scope: str
    within_budget: bool
    used: int
    usage: int
    limit: int
    cost_used: float
    cost_limit: float
    token_pct: float
    cost_pct: float
    configured: bool


# ------------------------------------------------------------------ #
# Routes
# ------------------------------------------------------------------ #


@router.post(
    "/orchestrate",
    response_model=OrchestrateResponse,
    summary="Route a conversation to the best available model",
)
async def orchestrate(
    body: OrchestrateRequest,
    orchestrator: Orchestrator = Depends(get_orchestrator),
) -> Any:
    """Errors map to 404/502/503/504 through the application exception handler."""
    log.info(
        "api.orchestrate_requested",
        use_case=body.use_case.value,
        stream=body.stream,
        message_count=len(body.messages),
    )
    if body.stream:
        return event_stream_response(
            orchestration_events(
                orchestrator,
                body.history(),
                body.use_case,
                project_id=body.project_id,
                conversation_id=body.conversation_id,
            )
        )

    response = await orchestrator.orchestrate(
        body.history(),
        body.use_case,
        project_id=body.project_id,
        conversation_id=body.conversation_id,
    )
    return OrchestrateResponse(**response.to_dict())


@router.get("/cache/stats", response_model=CacheStatsResponse)
async def cache_stats(orchestrator: Orchestrator = Depends(get_orchestrator)) -> Any:
    stats = await orchestrator.get_cache_stats()
    return CacheStatsResponse(**stats.to_dict())


@router.get("/providers/stats", response_model=ProviderStatsResponse)
async def provider_stats(orchestrator: Orchestrator = Depends(get_orchestrator)) -> Any:
    stats = await orchestrator.get_provider_stats()
    return ProviderStatsResponse(**stats.to_dict())


@router.get("/budgets/{scope}", response_model=BudgetResponse)
async def budget(
    scope: BudgetScope,
    project_id: str | None = Query(default=None, max_length=128),
    orchestrator: Orchestrator = Depends(get_orchestrator),
) -> Any:
    if scope == BudgetScope.PROJECT and not project_id:
        raise HTTPException(
            status_code=status.HTTP_422_UNPROCESSABLE_ENTITY,
            detail="project budgets require a project_id query parameter",
        )
    result = await orchestrator.check_budget(scope, project_id)
    return BudgetResponse(**result.to_dict())
