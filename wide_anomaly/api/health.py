"""
Health API endpoints.

Provides:
    GET /healthz - Liveness (the process answers)
    GET /readyz - Readiness (registry loaded and scheduler running), 503 otherwise
    GET /api/health - Per-series evaluation health
"""

from fastapi import APIRouter, Request
from fastapi.responses import JSONResponse
from pydantic import BaseModel

import structlog

from wide_anomaly.models.health import EngineHealth

logger = structlog.get_logger(__name__)

status_router = APIRouter()
router = APIRouter()


class StatusResponse(BaseModel):
    """Response model for liveness and readiness checks."""

    status: str
    registry_version: int = 0
    running: bool = False


@status_router.get("/healthz", response_model=StatusResponse, summary="Liveness check")
async def healthz() -> StatusResponse:
    return StatusResponse(status="ok")


@status_router.get(
    "/readyz",
    response_model=StatusResponse,
    summary="Readiness check",
    responses={503: {"model": StatusResponse}},
)
async def readyz(request: Request):
    """
    Report readiness.

    Ready once a registry snapshot is loaded and the scheduler loop runs.
    """
    engine = request.app.state.engine
    snapshot = engine.registry.snapshot()
    response = StatusResponse(
        status="ready" if engine.is_ready else "not_ready",
        registry_version=snapshot.version,
        running=engine.scheduler.running,
    )
    if not engine.is_ready:
        return JSONResponse(status_code=503, content=response.model_dump())
    return response


@router.get(
    "/health",
    response_model=EngineHealth,
    summary="Get engine health",
    description="Per-series evaluation status, failures and warm-up progress.",
)
async def get_health(request: Request) -> EngineHealth:
    """
    Get engine health.

    Returns:
        EngineHealth: Engine-wide counters and per-series health.
    """
    return request.app.state.engine.scheduler.health()
