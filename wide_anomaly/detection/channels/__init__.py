"""
Incident notification channels.

This module contains implementations for the incident delivery
mechanisms: structured log output, a JSON webhook and Slack.

Components:
    log: Structured log line per incident event
    webhook: JSON POST per incident event
    slack: Slack incoming-webhook message per incident event

Example:
    >>> from wide_anomaly.detection.channels import LogChannel, WebhookChannel
    >>>
    >>> log = LogChannel()
    >>> webhook = WebhookChannel(url="https://hooks.example.com/incidents")
    >>>
    >>> await log.send(event)
    >>> await webhook.send(event)
"""

from wide_anomaly.detection.channels.log import LogChannel, event_payload
from wide_anomaly.detection.channels.slack import SlackChannel, slack_text
from wide_anomaly.detection.channels.webhook import WebhookChannel

__all__ = [
    "LogChannel",
    "SlackChannel",
    "WebhookChannel",
    "event_payload",
    "slack_text",
]
