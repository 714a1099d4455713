"""
Log notification channel.

Emits one structured log line per incident event. Warning-level events log
at warning, critical events at error, resolutions at info.
"""

from typing import Any, Dict

import structlog

from wide_anomaly.models.incidents import NotificationEvent, Severity, TransitionKind

logger = structlog.get_logger(__name__)


def event_payload(event: NotificationEvent) -> Dict[str, Any]:
    """
    Flatten an event into the JSON payload shared by all channels.

    Args:
        event: Event to render.

    Returns:
        Dict[str, Any]: JSON-serializable payload.
    """
    return {
        "event_id": event.event_id,
        "kind": event.kind.value,
        "incident": event.incident_id,
        "dedup_key": event.dedup_key,
        "series": event.series_key,
        "series_name": event.series_name,
        "labels": dict(event.labels),
        "severity": event.severity.value,
        "deviation": event.peak_deviation,
        "value": event.value,
        "expected": event.expected,
        "timestamp": event.timestamp.isoformat(),
        "message": event.message,
    }


class LogChannel:
    """
    Notification channel writing incident events to the log.

    Example:
        >>> channel = LogChannel()
        >>> await channel.send(event)
    """

    name = "log"

    async def send(self, event: NotificationEvent) -> None:
        payload = event_payload(event)
        if event.kind == TransitionKind.RESOLVED:
            logger.info("incident_notification", **payload)
        elif event.severity == Severity.CRITICAL:
            logger.error("incident_notification", **payload)
        else:
            logger.warning("incident_notification", **payload)

    def __repr__(self) -> str:
        return "LogChannel()"
