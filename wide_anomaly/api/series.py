"""
Series registry API endpoints.

Provides:
    GET /api/series - Current registry snapshot
    POST /api/registry/reload - Out-of-cycle registry reload
"""

from datetime import datetime
from typing import Dict, List, Optional

from fastapi import APIRouter, HTTPException, Request
from pydantic import BaseModel

import structlog

from wide_anomaly.config.loader import ConfigError
from wide_anomaly.detection.registry import RegistrySnapshot, RejectedSeries

logger = structlog.get_logger(__name__)

router = APIRouter()


class SeriesItem(BaseModel):
    """Model for a single registered series."""

    key: str
    name: str
    metric: str
    labels: Dict[str, str]
    interval_seconds: int
    window_seconds: int
    step_seconds: int
    dedup_key: str
    sensitivity: float
    seasonality: str
    channels: Optional[List[str]] = None

    class Config:
        json_schema_extra = {
            "example": {
                "key": 'http_requests_total{service="api"}',
                "name": "API request rate",
                "metric": "http_requests_total",
                "labels": {"service": "api"},
                "interval_seconds": 60,
                "window_seconds": 3600,
                "step_seconds": 15,
                "dedup_key": "3f1c0a9b7d2e4f60",
                "sensitivity": 3.0,
                "seasonality": "hour_of_day",
                "channels": None,
            }
        }


class SeriesListResponse(BaseModel):
    """Response model for the series listing."""

    version: int
    loaded_at: Optional[datetime] = None
    source: Optional[str] = None
    series: List[SeriesItem]
    rejected: List[RejectedSeries]


class ReloadResponse(BaseModel):
    """Response model for a successful reload."""

    version: int
    series_count: int
    rejected: List[RejectedSeries]


def _series_response(snapshot: RegistrySnapshot) -> SeriesListResponse:
    return SeriesListResponse(
        version=snapshot.version,
        loaded_at=snapshot.loaded_at,
        source=snapshot.source,
        series=[
            SeriesItem(
                key=series.key,
                name=series.display_name,
                metric=series.id.metric,
                labels=dict(series.id.labels),
                interval_seconds=series.interval_seconds,
                window_seconds=series.window_seconds,
                step_seconds=series.step_seconds,
                dedup_key=series.dedup_key,
                sensitivity=series.detector.sensitivity,
                seasonality=series.detector.seasonality.value,
                channels=series.channels,
            )
            for series in snapshot.series
        ],
        rejected=list(snapshot.rejected),
    )


@router.get(
    "/series",
    response_model=SeriesListResponse,
    summary="List registered series",
)
async def get_series(request: Request) -> SeriesListResponse:
    return _series_response(request.app.state.engine.registry.snapshot())


@router.post(
    "/registry/reload",
    response_model=ReloadResponse,
    summary="Reload the series registry",
    description="Reloads series.yaml. On failure the previous snapshot stays active.",
    responses={422: {"description": "The source was unreadable or had no valid series"}},
)
async def reload_registry(request: Request) -> ReloadResponse:
    """
    Reload the registry out of cycle.

    Raises:
        HTTPException: 422 with the ConfigError message on failure.
    """
    engine = request.app.state.engine
    try:
        snapshot = engine.reload_registry()
    except ConfigError as e:
        raise HTTPException(status_code=422, detail=e.message) from e

    return ReloadResponse(
        version=snapshot.version,
        series_count=len(snapshot.series),
        rejected=list(snapshot.rejected),
    )
