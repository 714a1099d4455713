"""
Notification dispatcher for routing incident events to channels.

The scheduler hands events over through ``dispatch()``, a non-blocking put
on an unbounded asyncio queue, so evaluation never waits on delivery. A
single consumer task (``run()``) takes events off the queue and fans each
one out to the channels configured for its severity, retrying a channel
when it raises DispatchError.

Key Features:
    - Explicit handoff queue between incident management and delivery
    - Severity-based channel selection, overridden by a series' own channels
    - Per-channel retry with exponential backoff
    - Bounded drain at shutdown

Example:
    >>> dispatcher = NotificationDispatcher(
    ...     channels={"log": LogChannel(), "webhook": WebhookChannel(url)},
    ...     severity_channels={
    ...         Severity.WARNING: ["log"],
    ...         Severity.CRITICAL: ["log", "webhook"],
    ...     },
    ... )
    >>> dispatcher.dispatch(event)
"""

import asyncio
from typing import Dict, List, Optional, Protocol

import structlog

from wide_anomaly.adapters.retry import RetryPolicy
from wide_anomaly.config.models import ChannelsConfig, RetrySettings
from wide_anomaly.models.incidents import NotificationEvent, Severity

logger = structlog.get_logger(__name__)


class DispatchError(Exception):
    """
    Raised by a channel when an event could not be handed off.

    Attributes:
        message: Error message.
        channel: Channel name.
        retryable: Whether the dispatcher should try the channel again.
    """

    def __init__(self, message: str, channel: str = "unknown", retryable: bool = True):
        self.message = message
        self.channel = channel
        self.retryable = retryable
        super().__init__(message)


def is_retryable_dispatch(exc: BaseException) -> bool:
    return isinstance(exc, DispatchError) and exc.retryable


class NotificationChannel(Protocol):
    """
    Protocol for notification channels.

    Any channel implementation must support this async method.
    """

    async def send(self, event: NotificationEvent) -> None:
        """Deliver one event, raising DispatchError on failure."""
        ...


# Default severity to channels mapping
DEFAULT_SEVERITY_CHANNELS: Dict[Severity, List[str]] = {
    Severity.WARNING: ["log"],
    Severity.CRITICAL: ["log", "webhook"],
}


class NotificationDispatcher:
    """
    Routes incident events to notification channels.

    Attributes:
        channels: Dict mapping channel name to channel instance.
        severity_channels: Dict mapping severity to list of channel names.
        retry_policy: Policy applied to each channel delivery.
        delivered_count: Channel deliveries that succeeded.
        failed_count: Channel deliveries that failed after retries.
    """

    def __init__(
        self,
        channels: Dict[str, NotificationChannel],
        severity_channels: Optional[Dict[Severity, List[str]]] = None,
        retry_policy: Optional[RetryPolicy] = None,
    ) -> None:
        """
        Initialize the dispatcher.

        Args:
            channels: Dict mapping channel name to channel instance.
            severity_channels: Dict mapping severity to channel names.
                Defaults to DEFAULT_SEVERITY_CHANNELS.
            retry_policy: Retry policy for channel deliveries.
        """
        self.channels = channels
        self.severity_channels = severity_channels or DEFAULT_SEVERITY_CHANNELS
        self.retry_policy = retry_policy or RetryPolicy(
            name="dispatch", should_retry=is_retryable_dispatch
        )
        self.delivered_count = 0
        self.failed_count = 0
        self._queue: asyncio.Queue[NotificationEvent] = asyncio.Queue()
        # Events whose delivery was cancelled; delivered first by drain()
        self._interrupted: List[NotificationEvent] = []

        logger.info(
            "notification_dispatcher_initialized",
            available_channels=list(channels.keys()),
            severity_config={s.value: ch for s, ch in self.severity_channels.items()},
        )

    @property
    def pending(self) -> int:
        """Events waiting for delivery, including interrupted ones."""
        return len(self._interrupted) + self._queue.qsize()

    def dispatch(self, event: NotificationEvent) -> None:
        """
        Hand an event over for delivery without waiting.

        Args:
            event: Event to deliver.
        """
        self._queue.put_nowait(event)
        logger.debug(
            "notification_enqueued",
            event_id=event.event_id,
            incident_id=event.incident_id,
            kind=event.kind.value,
            queue_depth=self._queue.qsize(),
        )

    async def deliver(self, event: NotificationEvent) -> int:
        """
        Deliver an event to its channels.

        Events of a series with its own channel list go to exactly those
        channels; all others go to the channels configured for their
        severity.

        Args:
            event: Event to deliver.

        Returns:
            int: Number of channels the event was delivered to.
        """
        channel_names = self.channels_for(event)
        delivered = 0

        for channel_name in channel_names:
            channel = self.channels.get(channel_name)
            if channel is None:
                logger.warning(
                    "channel_not_configured",
                    channel=channel_name,
                    event_id=event.event_id,
                    series_key=event.series_key,
                )
                continue

            try:
                await self.retry_policy.execute(channel.send, event)
                delivered += 1
                self.delivered_count += 1
            except DispatchError as e:
                self.failed_count += 1
                logger.error(
                    "channel_dispatch_failed",
                    channel=channel_name,
                    event_id=event.event_id,
                    incident_id=event.incident_id,
                    error=e.message,
                )
            except Exception as e:
                self.failed_count += 1
                logger.exception(
                    "channel_dispatch_crashed",
                    channel=channel_name,
                    event_id=event.event_id,
                    error=str(e),
                )

        logger.info(
            "notification_dispatch_complete",
            event_id=event.event_id,
            incident_id=event.incident_id,
            kind=event.kind.value,
            severity=event.severity.value,
            dispatched_to=delivered,
            total_channels=len(channel_names),
        )
        return delivered

    def channels_for(self, event: NotificationEvent) -> List[str]:
        """Channel names an event is routed to."""
        if event.channels is not None:
            return list(event.channels)
        return self.severity_channels.get(event.severity, ["log"])

    async def _deliver_tracked(self, event: NotificationEvent) -> None:
        """Deliver an event, keeping it for drain() if delivery is cancelled."""
        try:
            await self.deliver(event)
        except asyncio.CancelledError:
            self._interrupted.insert(0, event)
            logger.warning(
                "notification_delivery_interrupted",
                event_id=event.event_id,
                incident_id=event.incident_id,
                kind=event.kind.value,
            )
            raise

    async def run(self) -> None:
        """
        Consume the handoff queue until cancelled.

        An event whose delivery is cut short by cancellation is kept and
        delivered first by drain().
        """
        logger.info("notification_dispatcher_started")
        while True:
            event = await self._queue.get()
            try:
                await self._deliver_tracked(event)
            finally:
                self._queue.task_done()

    async def _drain_all(self) -> int:
        drained = 0
        while self._interrupted:
            await self._deliver_tracked(self._interrupted.pop(0))
            drained += 1
        while not self._queue.empty():
            event = self._queue.get_nowait()
            try:
                await self._deliver_tracked(event)
                drained += 1
            finally:
                self._queue.task_done()
        return drained

    async def drain(self, timeout: float) -> int:
        """
        Deliver what is left, giving up after ``timeout`` seconds.

        Args:
            timeout: Upper bound in seconds.

        Returns:
            int: Events still undelivered, counting one whose delivery
                was cut off by the timeout.
        """
        try:
            drained = await asyncio.wait_for(self._drain_all(), timeout=timeout)
            logger.info("notification_queue_drained", delivered=drained)
        except asyncio.TimeoutError:
            logger.warning(
                "notification_drain_timeout",
                timeout_seconds=timeout,
                undelivered=self.pending,
            )
        return self.pending

    async def close(self) -> None:
        """Close channels that hold transport resources."""
        for name, channel in self.channels.items():
            close = getattr(channel, "close", None)
            if close is None:
                continue
            try:
                await close()
            except Exception as e:
                logger.warning("channel_close_error", channel=name, error=str(e))


def create_dispatcher(
    config: ChannelsConfig,
    retry: Optional[RetrySettings] = None,
) -> NotificationDispatcher:
    """
    Factory function to create a NotificationDispatcher from configuration.

    Creates the log channel and, when enabled, the webhook and Slack
    channels, and routes severities to them.

    Args:
        config: Channels configuration.
        retry: Retry settings; defaults when None.

    Returns:
        NotificationDispatcher: Configured dispatcher instance.

    Example:
        >>> dispatcher = create_dispatcher(app_config.channels, app_config.retry)
    """
    from wide_anomaly.detection.channels.log import LogChannel
    from wide_anomaly.detection.channels.slack import SlackChannel
    from wide_anomaly.detection.channels.webhook import WebhookChannel

    channels: Dict[str, NotificationChannel] = {}
    severity_channels: Dict[Severity, List[str]] = {s: [] for s in Severity}

    if config.log.enabled:
        channels["log"] = LogChannel()
        for severity in Severity:
            severity_channels[severity].append("log")

    if config.webhook.enabled and config.webhook.url:
        channels["webhook"] = WebhookChannel(
            url=config.webhook.url,
            timeout_seconds=config.webhook.timeout_seconds,
        )
        for severity in config.webhook.severities:
            severity_channels[severity].append("webhook")

    if config.slack.enabled and config.slack.url:
        channels["slack"] = SlackChannel(
            url=config.slack.url,
            timeout_seconds=config.slack.timeout_seconds,
        )
        for severity in config.slack.severities:
            severity_channels[severity].append("slack")

    return NotificationDispatcher(
        channels=channels,
        severity_channels=severity_channels,
        retry_policy=RetryPolicy.from_settings(
            retry or RetrySettings(),
            name="dispatch",
            should_retry=is_retryable_dispatch,
        ),
    )
