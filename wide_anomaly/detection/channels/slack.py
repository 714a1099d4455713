"""
Slack notification channel.

Posts each incident event to a Slack incoming webhook as a single text
message. Delivery and error classification are the webhook channel's.

Payload:
    {"text": "[CRITICAL] Checkout p95: opened critical incident ..."}
"""

from typing import Any, Dict

from wide_anomaly.detection.channels.webhook import WebhookChannel
from wide_anomaly.models.incidents import NotificationEvent, TransitionKind


def slack_text(event: NotificationEvent) -> str:
    """
    Render an event as one line of Slack text.

    Args:
        event: Event to render.

    Returns:
        str: Message prefixed with the severity, or RESOLVED.
    """
    if event.kind == TransitionKind.RESOLVED:
        tag = "RESOLVED"
    else:
        tag = event.severity.value.upper()
    message = event.message or f"{event.series_name}: {event.kind.value}"
    return f"[{tag}] {message}"


class SlackChannel(WebhookChannel):
    """
    Notification channel posting to a Slack incoming webhook.

    Example:
        >>> channel = SlackChannel(url="https://hooks.slack.com/services/T000/B000/XXX")
        >>> await channel.send(event)
    """

    name = "slack"

    def payload(self, event: NotificationEvent) -> Dict[str, Any]:
        return {"text": slack_text(event)}
