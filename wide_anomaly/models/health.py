"""
Health data models for the anomaly engine.

Models:
    SeriesStatus: Outcome of the last evaluation of a series
    SeriesHealth: Per-series evaluation health
    EngineHealth: Engine-wide health summary
"""

from datetime import datetime
from enum import Enum
from typing import Dict, Optional

from pydantic import BaseModel, Field


class SeriesStatus(str, Enum):
    """
    Outcome of the last evaluation of a series.

    Attributes:
        PENDING: Never evaluated yet.
        OK: Last unit committed.
        WARMING_UP: Last unit committed, baseline still in cold start.
        FAILED: Last unit failed and committed nothing.
    """

    PENDING = "pending"
    OK = "ok"
    WARMING_UP = "warming_up"
    FAILED = "failed"

    @property
    def is_healthy(self) -> bool:
        """
        Check if this status represents a healthy series.

        Returns:
            bool: True unless the last unit failed.
        """
        return self != SeriesStatus.FAILED


class SeriesHealth(BaseModel):
    """
    Evaluation health of one series.

    Updated by the scheduler after every unit, successful or not.

    Attributes:
        series_key: Canonical series key.
        status: Outcome of the last unit.
        last_started_at: When the last unit started.
        last_success_at: When a unit last committed.
        last_error: Message of the last failure.
        last_error_kind: Kind of the last failure (timeout, unavailable, ...).
        consecutive_failures: Failed units since the last success.
        skipped_in_flight: Ticks skipped because a unit was still running.
        samples_processed: Samples folded since startup.
        sample_count: Samples absorbed by the baseline.
        min_history: Samples required before verdicts are trusted.

    Example:
        >>> health = SeriesHealth(series_key="checkout_p95", status=SeriesStatus.OK)
        >>> health.is_healthy
        True
    """

    model_config = {"frozen": True, "extra": "forbid"}

    series_key: str = Field(
        ...,
        description="Canonical series key",
        min_length=1,
    )
    status: SeriesStatus = Field(
        default=SeriesStatus.PENDING,
        description="Outcome of the last unit",
    )
    last_started_at: Optional[datetime] = Field(
        default=None,
        description="When the last unit started (UTC)",
    )
    last_success_at: Optional[datetime] = Field(
        default=None,
        description="When a unit last committed (UTC)",
    )
    last_error: Optional[str] = Field(
        default=None,
        description="Message of the last failure",
    )
    last_error_kind: Optional[str] = Field(
        default=None,
        description="Kind of the last failure",
    )
    consecutive_failures: int = Field(
        default=0,
        description="Failed units since the last success",
        ge=0,
    )
    skipped_in_flight: int = Field(
        default=0,
        description="Ticks skipped because a unit was still running",
        ge=0,
    )
    samples_processed: int = Field(
        default=0,
        description="Samples folded since startup",
        ge=0,
    )
    sample_count: int = Field(
        default=0,
        description="Samples absorbed by the baseline",
        ge=0,
    )
    min_history: int = Field(
        default=0,
        description="Samples required before verdicts are trusted",
        ge=0,
    )

    @property
    def is_healthy(self) -> bool:
        return self.status.is_healthy

    @property
    def display_text(self) -> str:
        """
        Generate a short status text.

        Returns:
            str: Human-readable status.
        """
        if self.status == SeriesStatus.WARMING_UP:
            return f"warming up ({self.sample_count}/{self.min_history})"
        if self.status == SeriesStatus.FAILED:
            return f"failed ({self.last_error_kind}, {self.consecutive_failures}x)"
        return self.status.value


class EngineHealth(BaseModel):
    """
    Engine-wide health summary.

    Attributes:
        timestamp: When this summary was generated.
        running: Whether the scheduler loop is running.
        registry_version: Version of the active registry snapshot.
        series: Health per series key.
        open_incidents: Number of open incidents.
        dispatch_queue_depth: Events waiting for delivery.
    """

    model_config = {"extra": "forbid"}

    timestamp: datetime = Field(
        ...,
        description="When this summary was generated",
    )
    running: bool = Field(
        default=False,
        description="Whether the scheduler loop is running",
    )
    registry_version: int = Field(
        default=0,
        description="Version of the active registry snapshot",
        ge=0,
    )
    series: Dict[str, SeriesHealth] = Field(
        default_factory=dict,
        description="Health per series key",
    )
    open_incidents: int = Field(
        default=0,
        description="Number of open incidents",
        ge=0,
    )
    dispatch_queue_depth: int = Field(
        default=0,
        description="Events waiting for delivery",
        ge=0,
    )

    @property
    def all_series_healthy(self) -> bool:
        """Check if every series is healthy."""
        return all(h.is_healthy for h in self.series.values())

    @property
    def failing_series(self) -> int:
        """Count series whose last unit failed."""
        return sum(1 for h in self.series.values() if not h.is_healthy)
