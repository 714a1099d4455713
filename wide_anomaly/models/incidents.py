"""
Incident data models for the anomaly engine.

This module defines the incident lifecycle structures: the per-series
tracker driven by the state machine, the incident instances it opens and
resolves, and the notification events emitted on each transition.

Models:
    Severity: Incident severity levels (warning, critical)
    IncidentState: Tracker states (idle, pending, firing, resolving)
    TransitionKind: Notified transitions (opened, escalated, resolved)
    Incident: One open-to-resolved lifecycle of a series condition
    IncidentTracker: Per-series state machine record
    SeriesState: Baseline plus tracker, the unit of commit and persistence
    NotificationEvent: Immutable record of one incident transition
"""

from datetime import datetime
from enum import Enum
from typing import Dict, List, Optional
from uuid import uuid4

from pydantic import BaseModel, Field

from wide_anomaly.models.anomaly import BaselineModel


class Severity(str, Enum):
    """
    Incident severity levels.

    Attributes:
        WARNING: Deviation beyond the series sensitivity.
        CRITICAL: Deviation beyond the series critical band.
    """

    WARNING = "warning"
    CRITICAL = "critical"

    @property
    def rank(self) -> int:
        """Ordering used to decide escalation."""
        return 2 if self == Severity.CRITICAL else 1

    @classmethod
    def from_deviation(cls, deviation: float, critical_deviation: float) -> "Severity":
        """
        Derive severity from a (peak) deviation.

        Args:
            deviation: Signed deviation.
            critical_deviation: |deviation| at which severity is critical.

        Returns:
            Severity: The derived severity.
        """
        if abs(deviation) >= critical_deviation:
            return cls.CRITICAL
        return cls.WARNING


class IncidentState(str, Enum):
    """
    Per-series incident tracker states.

    Attributes:
        IDLE: No breach in progress.
        PENDING: Breaching, open threshold not yet reached.
        FIRING: Incident open and still breaching.
        RESOLVING: Incident open, normal streak building towards close.
    """

    IDLE = "idle"
    PENDING = "pending"
    FIRING = "firing"
    RESOLVING = "resolving"

    @property
    def has_open_incident(self) -> bool:
        """Check if an incident instance is open in this state."""
        return self in (IncidentState.FIRING, IncidentState.RESOLVING)


class TransitionKind(str, Enum):
    """Incident transitions that produce a notification."""

    OPENED = "opened"
    ESCALATED = "escalated"
    RESOLVED = "resolved"


class Incident(BaseModel):
    """
    One open-to-resolved lifecycle of a series condition.

    Identity for deduplication is (series_key, dedup_key); every
    re-opening of the same condition gets a fresh incident_id.

    Attributes:
        incident_id: Unique identifier of this lifecycle instance.
        series_key: Canonical key of the series.
        dedup_key: Stable key derived from the series definition.
        state: Tracker state this incident was last seen in.
        opened_at: Timestamp of the sample that opened the incident.
        last_seen_at: Timestamp of the latest breaching sample.
        breach_streak: Consecutive breaching samples.
        normal_streak: Consecutive normal samples while resolving.
        peak_deviation: Signed deviation with the largest magnitude.
        peak_value: Observed value at the peak deviation.
        severity: Severity derived from the peak deviation.
        resolved_at: Timestamp of the sample that resolved the incident.
        archived_at: Wall-clock time the incident was archived.
    """

    model_config = {"frozen": True, "extra": "forbid"}

    incident_id: str = Field(
        default_factory=lambda: str(uuid4()),
        description="Unique identifier of this lifecycle instance",
    )
    series_key: str = Field(
        ...,
        description="Canonical key of the series",
        min_length=1,
    )
    dedup_key: str = Field(
        ...,
        description="Stable key derived from the series definition",
        min_length=1,
    )
    state: IncidentState = Field(
        default=IncidentState.FIRING,
        description="Tracker state this incident was last seen in",
    )
    opened_at: datetime
    last_seen_at: datetime
    breach_streak: int = Field(default=0, ge=0)
    normal_streak: int = Field(default=0, ge=0)
    peak_deviation: float = 0.0
    peak_value: float = 0.0
    severity: Severity = Severity.WARNING
    resolved_at: Optional[datetime] = None
    archived_at: Optional[datetime] = None

    @property
    def is_open(self) -> bool:
        """Check if the incident has not been resolved yet."""
        return self.resolved_at is None

    @property
    def duration_seconds(self) -> Optional[float]:
        """Open-to-resolve duration, None while open."""
        if self.resolved_at is None:
            return None
        return (self.resolved_at - self.opened_at).total_seconds()


class IncidentTracker(BaseModel):
    """
    Per-series incident state machine record.

    Holds the streak counters and, while firing or resolving, the open
    incident. Replaced wholesale on every transition.

    Attributes:
        state: Current state.
        breach_streak: Consecutive breaching samples.
        normal_streak: Consecutive normal samples while resolving.
        pending_since: Timestamp of the first breach of the current streak.
        pending_peak_deviation: Peak deviation seen while pending.
        pending_peak_value: Observed value at the pending peak.
        incident: The open incident, if any.
    """

    model_config = {"frozen": True, "extra": "forbid"}

    state: IncidentState = IncidentState.IDLE
    breach_streak: int = Field(default=0, ge=0)
    normal_streak: int = Field(default=0, ge=0)
    pending_since: Optional[datetime] = None
    pending_peak_deviation: float = 0.0
    pending_peak_value: float = 0.0
    incident: Optional[Incident] = None


class SeriesState(BaseModel):
    """
    Everything the engine owns for one series.

    Committed atomically at the end of an evaluation unit and persisted
    for restarts.

    Attributes:
        series_key: Canonical key of the series.
        dedup_key: Dedup key of the definition the state was built for.
        baseline: Baseline model.
        tracker: Incident tracker.
    """

    model_config = {"frozen": True, "extra": "forbid"}

    series_key: str
    dedup_key: str
    baseline: BaselineModel = Field(default_factory=BaselineModel)
    tracker: IncidentTracker = Field(default_factory=IncidentTracker)


class NotificationEvent(BaseModel):
    """
    Immutable record of one incident transition.

    Handed exactly once to the dispatcher per transition.

    Attributes:
        event_id: Unique event identifier.
        kind: opened, escalated or resolved.
        series_key: Canonical key of the series.
        series_name: Human-readable series name.
        labels: Label set of the series.
        incident_id: Incident lifecycle identifier.
        dedup_key: Stable dedup key of the condition.
        timestamp: Timestamp of the sample that caused the transition.
        severity: Severity at the time of the transition.
        peak_deviation: Peak deviation of the incident so far.
        value: Observed value that caused the transition.
        expected: Baseline expectation for that value.
        message: Human-readable summary.
        channels: Channels of the series, or None for severity routing.
    """

    model_config = {"frozen": True, "extra": "forbid"}

    event_id: str = Field(
        default_factory=lambda: str(uuid4()),
        description="Unique event identifier",
    )
    kind: TransitionKind
    series_key: str
    series_name: str
    labels: Dict[str, str] = Field(default_factory=dict)
    incident_id: str
    dedup_key: str
    timestamp: datetime
    severity: Severity
    peak_deviation: float
    value: float
    expected: float
    message: str = ""
    channels: Optional[List[str]] = None
