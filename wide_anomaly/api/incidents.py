"""
Incidents API endpoints.

Provides:
    GET /api/incidents - Open incidents
    GET /api/incidents/archive - Resolved incidents within retention
"""

from typing import List, Optional

from fastapi import APIRouter, HTTPException, Query, Request
from pydantic import BaseModel

import structlog

from wide_anomaly.models.incidents import Incident

logger = structlog.get_logger(__name__)

router = APIRouter()


class IncidentsResponse(BaseModel):
    """Response model for incident listings."""

    incidents: List[Incident]
    count: int


@router.get(
    "/incidents",
    response_model=IncidentsResponse,
    summary="List open incidents",
)
async def get_incidents(
    request: Request,
    series_key: Optional[str] = Query(None, description="Restrict to one series"),
) -> IncidentsResponse:
    """
    List open incidents, oldest first.

    Args:
        series_key: Optional series filter.
    """
    incidents = request.app.state.engine.scheduler.open_incidents()
    if series_key is not None:
        incidents = [i for i in incidents if i.series_key == series_key]
    return IncidentsResponse(incidents=incidents, count=len(incidents))


@router.get(
    "/incidents/archive",
    response_model=IncidentsResponse,
    summary="List archived incidents",
)
async def get_archived_incidents(
    request: Request,
    series_key: Optional[str] = Query(None, description="Restrict to one series"),
    limit: int = Query(100, ge=1, le=1000, description="Maximum incidents returned"),
) -> IncidentsResponse:
    """
    List resolved incidents, newest first.

    Args:
        series_key: Optional series filter.
        limit: Maximum incidents returned.
    """
    store = request.app.state.engine.store
    try:
        incidents = await store.list_archive(series_key=series_key, limit=limit)
    except Exception as e:
        logger.error("get_archive_error", error=str(e))
        raise HTTPException(status_code=503, detail="incident archive unavailable") from e
    return IncidentsResponse(incidents=incidents, count=len(incidents))
