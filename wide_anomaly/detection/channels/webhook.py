"""
Webhook notification channel.

POSTs each incident event as JSON to a configured URL. Any non-2xx answer,
timeout, or connection error raises DispatchError so the dispatcher can
retry the delivery.

Payload:
    {
        "incident": "6f1c...",
        "series": "checkout_latency_p95",
        "kind": "opened",
        "severity": "critical",
        "deviation": 7.4,
        "message": "...",
        ...
    }
"""

import asyncio
from typing import Any, Dict, Optional

import aiohttp
import structlog

from wide_anomaly.detection.channels.log import event_payload
from wide_anomaly.detection.dispatcher import DispatchError
from wide_anomaly.models.incidents import NotificationEvent

logger = structlog.get_logger(__name__)


class WebhookChannel:
    """
    Notification channel posting JSON to a webhook.

    Attributes:
        url: Webhook URL.
        timeout_seconds: Timeout for a single POST.

    Example:
        >>> channel = WebhookChannel(url="https://hooks.example.com/incidents")
        >>> await channel.send(event)
        >>> await channel.close()
    """

    name = "webhook"

    def __init__(self, url: str, timeout_seconds: float = 5.0):
        self.url = url
        self.timeout_seconds = timeout_seconds
        self._session: Optional[aiohttp.ClientSession] = None

    async def _ensure_session(self) -> aiohttp.ClientSession:
        """Ensure aiohttp session is created."""
        if self._session is None or self._session.closed:
            timeout = aiohttp.ClientTimeout(total=self.timeout_seconds)
            self._session = aiohttp.ClientSession(
                timeout=timeout,
                headers={"User-Agent": "wide-anomaly-engine/0.1"},
            )
        return self._session

    async def close(self) -> None:
        """Close the HTTP session."""
        if self._session and not self._session.closed:
            await self._session.close()

    def payload(self, event: NotificationEvent) -> Dict[str, Any]:
        """JSON body posted for an event."""
        return event_payload(event)

    async def send(self, event: NotificationEvent) -> None:
        """
        POST one event.

        Args:
            event: Event to deliver.

        Raises:
            DispatchError: On timeout, connection error, or non-2xx status.
        """
        session = await self._ensure_session()
        try:
            async with session.post(self.url, json=self.payload(event)) as response:
                if response.status >= 300:
                    error_text = await response.text()
                    raise DispatchError(
                        f"{self.name} returned {response.status}: {error_text[:200]}",
                        channel=self.name,
                        retryable=response.status == 429 or response.status >= 500,
                    )
        except asyncio.TimeoutError as e:
            raise DispatchError(
                f"{self.name} timed out after {self.timeout_seconds}s",
                channel=self.name,
            ) from e
        except aiohttp.ClientError as e:
            raise DispatchError(f"{self.name} request failed: {e}", channel=self.name) from e

        logger.debug(
            "notification_posted",
            channel=self.name,
            event_id=event.event_id,
            incident_id=event.incident_id,
            status=response.status,
        )

    def __repr__(self) -> str:
        return f"{type(self).__name__}(url={self.url!r})"
