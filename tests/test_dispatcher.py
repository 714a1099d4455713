"""Test notification dispatch: handoff, routing, retries and channels."""

import asyncio
from datetime import timedelta

import pytest
import pytest_asyncio
from aiohttp import test_utils, web
from structlog.testing import capture_logs

from wide_anomaly.adapters.retry import RetryPolicy
from wide_anomaly.config.models import (
    ChannelsConfig,
    RetrySettings,
    SlackChannelConfig,
    WebhookChannelConfig,
)
from wide_anomaly.detection.channels.log import LogChannel, event_payload
from wide_anomaly.detection.channels.slack import SlackChannel, slack_text
from wide_anomaly.detection.channels.webhook import WebhookChannel
from wide_anomaly.detection.dispatcher import (
    DispatchError,
    NotificationDispatcher,
    create_dispatcher,
    is_retryable_dispatch,
)
from wide_anomaly.models.incidents import NotificationEvent, Severity, TransitionKind


@pytest.fixture
def make_event(base_time):
    def _make(severity=Severity.WARNING, kind=TransitionKind.OPENED, minutes=0):
        return NotificationEvent(
            kind=kind,
            series_key='checkout_latency_p95{service="checkout"}',
            series_name="Checkout p95",
            labels={"service": "checkout"},
            incident_id="inc-1",
            dedup_key="abc123",
            timestamp=base_time + timedelta(minutes=minutes),
            severity=severity,
            peak_deviation=4.2,
            value=812.0,
            expected=420.0,
            message="Checkout p95: opened warning incident",
        )

    return _make


@pytest.fixture
def fast_retry() -> RetryPolicy:
    return RetryPolicy(
        max_attempts=3,
        base_delay=0.0,
        jitter=False,
        name="dispatch",
        should_retry=is_retryable_dispatch,
    )


class SlowChannel:
    def __init__(self, delay: float) -> None:
        self.delay = delay
        self.events = []

    async def send(self, event):
        await asyncio.sleep(self.delay)
        self.events.append(event)


class ClosingChannel:
    def __init__(self, fail: bool = False) -> None:
        self.fail = fail
        self.closed = False

    async def send(self, event):
        pass

    async def close(self):
        if self.fail:
            raise RuntimeError("socket already gone")
        self.closed = True


# ===================================================================
# Handoff and routing
# ===================================================================

class TestDispatcher:
    """Queue handoff and severity routing."""

    @pytest.mark.asyncio
    async def test_dispatch_only_enqueues(self, recording_channel, make_event):
        dispatcher = NotificationDispatcher({"log": recording_channel})

        dispatcher.dispatch(make_event())
        dispatcher.dispatch(make_event(minutes=1))

        assert dispatcher.pending == 2
        assert recording_channel.attempts == 0

    @pytest.mark.asyncio
    async def test_severity_routing(self, make_channel, make_event, fast_retry):
        log = make_channel()
        pager = make_channel()
        dispatcher = NotificationDispatcher(
            {"log": log, "pager": pager},
            severity_channels={
                Severity.WARNING: ["log"],
                Severity.CRITICAL: ["log", "pager", "missing"],
            },
            retry_policy=fast_retry,
        )

        assert await dispatcher.deliver(make_event(Severity.WARNING)) == 1
        assert await dispatcher.deliver(make_event(Severity.CRITICAL)) == 2

        assert len(log.events) == 2
        assert [e.severity for e in pager.events] == [Severity.CRITICAL]
        assert dispatcher.channels_for(make_event(Severity.WARNING)) == ["log"]

    @pytest.mark.asyncio
    async def test_series_channels_override_severity_routing(
        self, make_channel, make_event, fast_retry
    ):
        log = make_channel()
        slack = make_channel()
        dispatcher = NotificationDispatcher(
            {"log": log, "slack": slack},
            severity_channels={severity: ["log"] for severity in Severity},
            retry_policy=fast_retry,
        )
        event = make_event().model_copy(update={"channels": ["slack", "pager"]})

        with capture_logs() as logs:
            assert await dispatcher.deliver(event) == 1

        assert dispatcher.channels_for(event) == ["slack", "pager"]
        assert slack.events == [event]
        assert log.events == []
        assert any(
            entry["event"] == "channel_not_configured" and entry["channel"] == "pager"
            for entry in logs
        )

    @pytest.mark.asyncio
    async def test_retryable_failure_retried(self, make_channel, make_event, fast_retry):
        channel = make_channel(failures=2)
        dispatcher = NotificationDispatcher({"log": channel}, retry_policy=fast_retry)

        assert await dispatcher.deliver(make_event()) == 1
        assert channel.attempts == 3
        assert dispatcher.delivered_count == 1

    @pytest.mark.asyncio
    async def test_non_retryable_failure_not_retried(self, make_channel, make_event, fast_retry):
        failing = make_channel(failures=1, retryable=False)
        healthy = make_channel()
        dispatcher = NotificationDispatcher(
            {"log": failing, "other": healthy},
            severity_channels={Severity.WARNING: ["log", "other"]},
            retry_policy=fast_retry,
        )

        assert await dispatcher.deliver(make_event()) == 1
        assert failing.attempts == 1
        assert dispatcher.failed_count == 1
        assert len(healthy.events) == 1

    @pytest.mark.asyncio
    async def test_exhausted_retries_counted_as_failed(self, make_channel, make_event, fast_retry):
        channel = make_channel(failures=5)
        dispatcher = NotificationDispatcher({"log": channel}, retry_policy=fast_retry)

        assert await dispatcher.deliver(make_event()) == 0
        assert channel.attempts == 3
        assert dispatcher.failed_count == 1

    @pytest.mark.asyncio
    async def test_run_consumes_queue_in_order(self, recording_channel, make_event):
        dispatcher = NotificationDispatcher({"log": recording_channel})
        consumer = asyncio.create_task(dispatcher.run())
        try:
            for minute in range(3):
                dispatcher.dispatch(make_event(minutes=minute))
            for _ in range(50):
                if len(recording_channel.events) == 3:
                    break
                await asyncio.sleep(0.01)
        finally:
            consumer.cancel()
            await asyncio.gather(consumer, return_exceptions=True)

        assert [e.timestamp.minute for e in recording_channel.events] == [0, 1, 2]
        assert dispatcher.pending == 0


# ===================================================================
# Drain and close
# ===================================================================

class TestDrain:
    """Bounded delivery of what is left at shutdown."""

    @pytest.mark.asyncio
    async def test_drain_delivers_everything(self, recording_channel, make_event):
        dispatcher = NotificationDispatcher({"log": recording_channel})
        dispatcher.dispatch(make_event())
        dispatcher.dispatch(make_event(minutes=1))

        assert await dispatcher.drain(1.0) == 0
        assert len(recording_channel.events) == 2

    @pytest.mark.asyncio
    async def test_drain_gives_up_after_timeout(self, make_event):
        dispatcher = NotificationDispatcher({"log": SlowChannel(delay=1.0)})
        dispatcher.dispatch(make_event())
        dispatcher.dispatch(make_event(minutes=1))

        # The event cut off mid-delivery is still counted
        assert await dispatcher.drain(0.05) == 2
        assert dispatcher.pending == 2

    @pytest.mark.asyncio
    async def test_cancelled_delivery_kept_for_drain(self, make_channel, make_event):
        channel = make_channel(failures=1)
        dispatcher = NotificationDispatcher(
            {"log": channel},
            retry_policy=RetryPolicy(
                max_attempts=3,
                base_delay=0.5,
                jitter=False,
                name="dispatch",
                should_retry=is_retryable_dispatch,
            ),
        )
        event = make_event()
        dispatcher.dispatch(event)

        consumer = asyncio.create_task(dispatcher.run())
        await asyncio.sleep(0.05)
        # First attempt failed, the retry is waiting on its backoff
        assert channel.attempts == 1
        with capture_logs() as logs:
            consumer.cancel()
            await asyncio.gather(consumer, return_exceptions=True)

        assert logs[0]["event"] == "notification_delivery_interrupted"
        assert dispatcher.pending == 1
        assert await dispatcher.drain(1.0) == 0
        assert [e.event_id for e in channel.events] == [event.event_id]
        assert dispatcher.pending == 0

    @pytest.mark.asyncio
    async def test_close_channels(self):
        closing = ClosingChannel()
        broken = ClosingChannel(fail=True)
        dispatcher = NotificationDispatcher(
            {"log": LogChannel(), "a": closing, "b": broken}
        )

        await dispatcher.close()

        assert closing.closed


# ===================================================================
# Factory
# ===================================================================

class TestCreateDispatcher:
    def test_log_only_by_default(self):
        dispatcher = create_dispatcher(ChannelsConfig())

        assert list(dispatcher.channels) == ["log"]
        assert dispatcher.severity_channels[Severity.WARNING] == ["log"]
        assert dispatcher.severity_channels[Severity.CRITICAL] == ["log"]

    def test_webhook_routes_configured_severities(self):
        config = ChannelsConfig(
            webhook=WebhookChannelConfig(enabled=True, url="http://hooks.local/incidents")
        )

        dispatcher = create_dispatcher(config, RetrySettings(max_attempts=5))

        assert isinstance(dispatcher.channels["webhook"], WebhookChannel)
        assert dispatcher.severity_channels[Severity.WARNING] == ["log"]
        assert dispatcher.severity_channels[Severity.CRITICAL] == ["log", "webhook"]
        assert dispatcher.retry_policy.max_attempts == 5

    def test_slack_routes_configured_severities(self):
        config = ChannelsConfig(
            slack=SlackChannelConfig(
                enabled=True,
                url="https://hooks.slack.test/T1",
                severities=[Severity.WARNING, Severity.CRITICAL],
            )
        )

        dispatcher = create_dispatcher(config)

        assert isinstance(dispatcher.channels["slack"], SlackChannel)
        assert dispatcher.severity_channels[Severity.WARNING] == ["log", "slack"]
        assert dispatcher.severity_channels[Severity.CRITICAL] == ["log", "slack"]


# ===================================================================
# Channels
# ===================================================================

class TestLogChannel:
    @pytest.mark.asyncio
    @pytest.mark.parametrize(
        "severity,kind,level",
        [
            (Severity.WARNING, TransitionKind.OPENED, "warning"),
            (Severity.CRITICAL, TransitionKind.ESCALATED, "error"),
            (Severity.CRITICAL, TransitionKind.RESOLVED, "info"),
        ],
    )
    async def test_log_level_follows_event(self, make_event, severity, kind, level):
        with capture_logs() as logs:
            await LogChannel().send(make_event(severity, kind))

        assert logs[0]["event"] == "incident_notification"
        assert logs[0]["log_level"] == level
        assert logs[0]["incident"] == "inc-1"

    def test_payload_fields(self, make_event):
        payload = event_payload(make_event())
        assert payload["series"] == 'checkout_latency_p95{service="checkout"}'
        assert payload["kind"] == "opened"
        assert payload["severity"] == "warning"
        assert payload["deviation"] == 4.2
        assert payload["timestamp"] == "2024-01-01T00:00:00+00:00"


@pytest_asyncio.fixture
async def webhook_server():
    """aiohttp receiver recording posted payloads."""
    state = {"status": 200, "payloads": []}

    async def handler(request: web.Request) -> web.Response:
        state["payloads"].append(await request.json())
        return web.Response(status=state["status"], text="nope" if state["status"] >= 300 else "ok")

    app = web.Application()
    app.router.add_post("/incidents", handler)
    server = test_utils.TestServer(app)
    await server.start_server()
    try:
        yield server, state
    finally:
        await server.close()


class TestWebhookChannel:
    """POST delivery and error classification."""

    @pytest.mark.asyncio
    async def test_posts_payload(self, webhook_server, make_event):
        server, state = webhook_server
        event = make_event()
        channel = WebhookChannel(str(server.make_url("/incidents")))
        try:
            await channel.send(event)
        finally:
            await channel.close()

        assert state["payloads"] == [event_payload(event)]

    @pytest.mark.asyncio
    @pytest.mark.parametrize("status,retryable", [(500, True), (429, True), (400, False)])
    async def test_error_status(self, webhook_server, make_event, status, retryable):
        server, state = webhook_server
        state["status"] = status
        channel = WebhookChannel(str(server.make_url("/incidents")))
        try:
            with pytest.raises(DispatchError) as exc_info:
                await channel.send(make_event())
        finally:
            await channel.close()

        assert exc_info.value.retryable is retryable
        assert exc_info.value.channel == "webhook"
        assert str(status) in exc_info.value.message

    @pytest.mark.asyncio
    async def test_unreachable_is_retryable(self, make_event):
        channel = WebhookChannel("http://127.0.0.1:1/incidents", timeout_seconds=1.0)
        try:
            with pytest.raises(DispatchError) as exc_info:
                await channel.send(make_event())
        finally:
            await channel.close()

        assert exc_info.value.retryable


class TestSlackChannel:
    """Text payload over the webhook transport."""

    def test_text(self, make_event):
        assert slack_text(make_event()) == "[WARNING] Checkout p95: opened warning incident"
        resolved = make_event(Severity.CRITICAL, TransitionKind.RESOLVED)
        assert slack_text(resolved).startswith("[RESOLVED] ")
        untitled = make_event().model_copy(update={"message": ""})
        assert slack_text(untitled) == "[WARNING] Checkout p95: opened"

    @pytest.mark.asyncio
    async def test_posts_text(self, webhook_server, make_event):
        server, state = webhook_server
        event = make_event(Severity.CRITICAL, TransitionKind.ESCALATED)
        channel = SlackChannel(str(server.make_url("/incidents")))
        try:
            await channel.send(event)
        finally:
            await channel.close()

        assert state["payloads"] == [{"text": f"[CRITICAL] {event.message}"}]

    @pytest.mark.asyncio
    async def test_error_names_channel(self, webhook_server, make_event):
        server, state = webhook_server
        state["status"] = 503
        channel = SlackChannel(str(server.make_url("/incidents")))
        try:
            with pytest.raises(DispatchError) as exc_info:
                await channel.send(make_event())
        finally:
            await channel.close()

        assert exc_info.value.channel == "slack"
        assert exc_info.value.retryable
        assert exc_info.value.message.startswith("slack returned 503")
