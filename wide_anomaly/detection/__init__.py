"""
Series evaluation and incident management for the anomaly engine.

This module contains the series registry, the incident state machine, the
scheduler that drives evaluation units, and notification dispatch.

Components:
    registry: SeriesRegistry with immutable, atomically swapped snapshots
    manager: IncidentManager, the hysteresis state machine
    scheduler: EvaluationScheduler for bounded concurrent evaluation
    dispatcher: NotificationDispatcher with its handoff queue
    channels/: Notification channels (log, webhook)

Example:
    >>> from wide_anomaly.detection import (
    ...     SeriesRegistry,
    ...     EvaluationScheduler,
    ...     create_dispatcher,
    ... )
    >>>
    >>> registry = SeriesRegistry(defaults=config.defaults, source="config/series.yaml")
    >>> registry.reload()
    >>> scheduler = EvaluationScheduler(
    ...     registry=registry,
    ...     fetcher=fetcher,
    ...     dispatcher=create_dispatcher(config.channels, config.retry),
    ... )
"""

from wide_anomaly.detection.dispatcher import (
    DEFAULT_SEVERITY_CHANNELS,
    DispatchError,
    NotificationChannel,
    NotificationDispatcher,
    create_dispatcher,
)
from wide_anomaly.detection.manager import IncidentManager, IncidentUpdate
from wide_anomaly.detection.registry import (
    RegistrySnapshot,
    RejectedSeries,
    SeriesRegistry,
)
from wide_anomaly.detection.scheduler import EvaluationScheduler

__all__ = [
    # Registry
    "SeriesRegistry",
    "RegistrySnapshot",
    "RejectedSeries",
    # Manager
    "IncidentManager",
    "IncidentUpdate",
    # Scheduler
    "EvaluationScheduler",
    # Dispatcher
    "NotificationDispatcher",
    "NotificationChannel",
    "DispatchError",
    "create_dispatcher",
    "DEFAULT_SEVERITY_CHANNELS",
]
