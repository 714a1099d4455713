"""
Series data models for the anomaly engine.

This module defines the structures describing what the engine watches and
what it gets back from the query service.

Models:
    SeriesId: Metric name plus label set
    QueryDefinition: Query passed through to the query service
    Seasonality: Seasonal bucketing granularity
    DetectorParams: Baseline detector tuning
    HysteresisParams: Incident open/close streak requirements
    SeriesConfig: A fully resolved series definition
    TimeRange: A closed time interval
    Sample: One (timestamp, value) observation
"""

import hashlib
import math
from datetime import datetime
from enum import Enum
from typing import Dict, List, Optional

from pydantic import BaseModel, Field, field_validator, model_validator


COUNTER_SUFFIXES = ("_total", "_count", "_sum", "_bucket", "_created")


class SeriesId(BaseModel):
    """
    Identity of a watched series.

    Attributes:
        metric: Metric name.
        labels: Label set narrowing the metric.

    Example:
        >>> sid = SeriesId(metric="http_requests_total", labels={"service": "api"})
        >>> sid.key
        'http_requests_total{service="api"}'
    """

    model_config = {"frozen": True, "extra": "forbid"}

    metric: str = Field(
        ...,
        description="Metric name",
        min_length=1,
        max_length=200,
    )
    labels: Dict[str, str] = Field(
        default_factory=dict,
        description="Label set narrowing the metric",
    )

    @property
    def key(self) -> str:
        """Canonical string key, labels sorted by name."""
        if not self.labels:
            return self.metric
        parts = ",".join(f'{k}="{v}"' for k, v in sorted(self.labels.items()))
        return f"{self.metric}{{{parts}}}"

    def __str__(self) -> str:
        return self.key


class QueryDefinition(BaseModel):
    """
    Query definition passed through to the query service.

    Either ``expr`` is given verbatim, or the query client builds an
    expression from ``pattern`` and the series labels.

    Attributes:
        expr: Query expression text.
        pattern: Metric pattern used when expr is empty.
        step_seconds: Query resolution; derived from the window when None.
    """

    model_config = {"frozen": True, "extra": "forbid"}

    expr: str = Field(
        default="",
        description="Query expression text",
    )
    pattern: str = Field(
        default="",
        description="Metric pattern used when expr is empty",
    )
    step_seconds: Optional[int] = Field(
        default=None,
        description="Query resolution in seconds",
        gt=0,
    )

    @property
    def is_counter(self) -> bool:
        """Check if the pattern names a monotonically increasing counter."""
        return any(self.pattern.endswith(suffix) for suffix in COUNTER_SUFFIXES)


class Seasonality(str, Enum):
    """
    Seasonal bucketing granularity.

    Attributes:
        NONE: No seasonal adjustment.
        HOUR_OF_DAY: 24 buckets keyed by UTC hour.
        HOUR_OF_WEEK: 168 buckets keyed by weekday and UTC hour.
    """

    NONE = "none"
    HOUR_OF_DAY = "hour_of_day"
    HOUR_OF_WEEK = "hour_of_week"

    def bucket(self, timestamp: datetime) -> Optional[str]:
        """
        Return the bucket key for a timestamp.

        Args:
            timestamp: Sample timestamp (UTC).

        Returns:
            Optional[str]: Bucket key, or None when seasonality is disabled.
        """
        if self == Seasonality.HOUR_OF_DAY:
            return f"h{timestamp.hour:02d}"
        elif self == Seasonality.HOUR_OF_WEEK:
            return f"d{timestamp.weekday()}h{timestamp.hour:02d}"
        return None


class DetectorParams(BaseModel):
    """
    Baseline detector tuning for one series.

    Attributes:
        sensitivity: |deviation| above which a sample is anomalous.
        min_history: Samples to absorb before verdicts are trusted.
        alpha: Explicit EWMA decay; derived from the window when None.
        min_std: Floor for the standard deviation used in scoring.
        seasonality: Seasonal bucketing granularity.
        seasonal_alpha: Decay of the per-bucket seasonal offset.
        critical_deviation: |peak deviation| at which severity is critical.
        exclude_anomalies: Keep anomalous samples out of mean/variance.
    """

    model_config = {"frozen": True, "extra": "forbid"}

    sensitivity: float = Field(
        default=3.0,
        description="|deviation| above which a sample is anomalous",
        gt=0,
    )
    min_history: int = Field(
        default=12,
        description="Samples to absorb before verdicts are trusted",
        ge=0,
    )
    alpha: Optional[float] = Field(
        default=None,
        description="Explicit EWMA decay factor",
        gt=0,
        le=1,
    )
    min_std: float = Field(
        default=1e-4,
        description="Floor for the standard deviation used in scoring",
        gt=0,
    )
    seasonality: Seasonality = Field(
        default=Seasonality.NONE,
        description="Seasonal bucketing granularity",
    )
    seasonal_alpha: float = Field(
        default=0.1,
        description="Decay of the per-bucket seasonal offset",
        gt=0,
        le=1,
    )
    critical_deviation: float = Field(
        default=6.0,
        description="|peak deviation| at which severity becomes critical",
        gt=0,
    )
    exclude_anomalies: bool = Field(
        default=False,
        description="Keep anomalous samples out of mean/variance",
    )

    @model_validator(mode="after")
    def validate_severity_bands(self) -> "DetectorParams":
        """Validate that the critical band sits above the sensitivity."""
        if self.critical_deviation < self.sensitivity:
            raise ValueError(
                f"critical_deviation ({self.critical_deviation}) must be >= "
                f"sensitivity ({self.sensitivity})"
            )
        return self


class HysteresisParams(BaseModel):
    """
    Consecutive-observation requirements for opening and closing incidents.

    Attributes:
        open_threshold: Consecutive breaches required to open.
        close_threshold: Consecutive normal samples required to resolve.
    """

    model_config = {"frozen": True, "extra": "forbid"}

    open_threshold: int = Field(
        default=3,
        description="Consecutive breaches required to open an incident",
        ge=1,
    )
    close_threshold: int = Field(
        default=2,
        description="Consecutive normal samples required to resolve",
        ge=1,
    )


class SeriesConfig(BaseModel):
    """
    Fully resolved definition of a watched series.

    Produced by the registry after merging an entry over the global
    defaults. Immutable once loaded.

    Attributes:
        id: Series identity.
        name: Human-readable name.
        query: Query definition passed to the query service.
        interval_seconds: Evaluation interval.
        window_seconds: Length of the fetched window.
        detector: Detector parameters.
        hysteresis: Hysteresis parameters.
        enabled: Whether the series is evaluated.
        channels: Channels notified for this series, or None for
            severity routing.

    Example:
        >>> series = SeriesConfig(
        ...     id=SeriesId(metric="checkout_p95", labels={"service": "checkout"}),
        ...     query=QueryDefinition(expr="histogram_quantile(0.95, ...)"),
        ...     interval_seconds=60,
        ...     window_seconds=3600,
        ... )
    """

    model_config = {"frozen": True, "extra": "forbid"}

    id: SeriesId = Field(
        ...,
        description="Series identity",
    )
    name: str = Field(
        default="",
        description="Human-readable name",
        max_length=200,
    )
    query: QueryDefinition = Field(
        default_factory=QueryDefinition,
        description="Query definition passed to the query service",
    )
    interval_seconds: int = Field(
        ...,
        description="Evaluation interval in seconds",
        gt=0,
    )
    window_seconds: int = Field(
        ...,
        description="Length of the fetched window in seconds",
        gt=0,
    )
    detector: DetectorParams = Field(
        default_factory=DetectorParams,
        description="Detector parameters",
    )
    hysteresis: HysteresisParams = Field(
        default_factory=HysteresisParams,
        description="Hysteresis parameters",
    )
    enabled: bool = Field(
        default=True,
        description="Whether this series is evaluated",
    )
    channels: Optional[List[str]] = Field(
        default=None,
        description="Channels notified for this series; severity routing when None",
    )

    @model_validator(mode="after")
    def validate_query(self) -> "SeriesConfig":
        """Validate that the series has something to query."""
        if not self.query.expr and not self.query.pattern:
            raise ValueError("query requires either expr or pattern")
        return self

    @property
    def key(self) -> str:
        """Canonical series key."""
        return self.id.key

    @property
    def display_name(self) -> str:
        """Name for humans, falling back to the series key."""
        return self.name or self.key

    @property
    def step_seconds(self) -> int:
        """Query resolution, derived from the window when not configured."""
        if self.query.step_seconds is not None:
            return self.query.step_seconds
        if self.window_seconds <= 3600:
            return 15
        elif self.window_seconds <= 21600:
            return 60
        return 300

    @property
    def alpha(self) -> float:
        """EWMA decay: explicit, or 2 / (N + 1) for N points per window."""
        if self.detector.alpha is not None:
            return self.detector.alpha
        points = max(1, self.window_seconds // self.step_seconds)
        return 2.0 / (points + 1)

    @property
    def dedup_key(self) -> str:
        """Stable incident identity derived from the definition, not from time."""
        material = "|".join(
            [self.key, self.query.expr, self.query.pattern, str(self.step_seconds)]
        )
        return hashlib.sha1(material.encode("utf-8")).hexdigest()[:16]


class TimeRange(BaseModel):
    """A closed time interval [start, end]."""

    model_config = {"frozen": True, "extra": "forbid"}

    start: datetime
    end: datetime

    @model_validator(mode="after")
    def validate_order(self) -> "TimeRange":
        if self.end < self.start:
            raise ValueError(f"end ({self.end}) must be >= start ({self.start})")
        return self

    @property
    def duration_seconds(self) -> float:
        return (self.end - self.start).total_seconds()


class Sample(BaseModel):
    """
    One observation of a series.

    Attributes:
        timestamp: Observation time (UTC).
        value: Observed value (finite).
    """

    model_config = {"frozen": True, "extra": "forbid"}

    timestamp: datetime
    value: float

    @field_validator("value")
    @classmethod
    def validate_finite(cls, v: float) -> float:
        if not math.isfinite(v):
            raise ValueError(f"sample value must be finite, got {v}")
        return v
