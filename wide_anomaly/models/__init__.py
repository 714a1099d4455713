"""
Shared Pydantic data models for the anomaly engine.

This module exports all data models used throughout the engine.

Modules:
    series: Series identity, query definitions, parameters, samples
    anomaly: Baseline model, verdicts, and anomaly scores
    incidents: Incidents, trackers, series state, notification events
    health: Per-series and engine health

Example:
    >>> from wide_anomaly.models import SeriesConfig, SeriesId, Sample
    >>> from wide_anomaly.models import Incident, IncidentState, Severity
"""

# Series models
from wide_anomaly.models.series import (
    COUNTER_SUFFIXES,
    DetectorParams,
    HysteresisParams,
    QueryDefinition,
    Sample,
    Seasonality,
    SeriesConfig,
    SeriesId,
    TimeRange,
)

# Anomaly models
from wide_anomaly.models.anomaly import (
    AnomalyScore,
    BaselineModel,
    Verdict,
)

# Incident models
from wide_anomaly.models.incidents import (
    Incident,
    IncidentState,
    IncidentTracker,
    NotificationEvent,
    SeriesState,
    Severity,
    TransitionKind,
)

# Health models
from wide_anomaly.models.health import (
    EngineHealth,
    SeriesHealth,
    SeriesStatus,
)

__all__ = [
    # Series
    "COUNTER_SUFFIXES",
    "SeriesId",
    "QueryDefinition",
    "Seasonality",
    "DetectorParams",
    "HysteresisParams",
    "SeriesConfig",
    "TimeRange",
    "Sample",
    # Anomaly
    "Verdict",
    "BaselineModel",
    "AnomalyScore",
    # Incidents
    "Severity",
    "IncidentState",
    "TransitionKind",
    "Incident",
    "IncidentTracker",
    "SeriesState",
    "NotificationEvent",
    # Health
    "SeriesStatus",
    "SeriesHealth",
    "EngineHealth",
]
