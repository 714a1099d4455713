"""
Shared fixtures for the anomaly engine test suite.

Provides series factories, sample builders, an in-memory query source and
a recording notification channel so that all tests run WITHOUT a query
service, Redis or a webhook receiver.
"""

import asyncio
from datetime import datetime, timedelta, timezone
from typing import Callable, Dict, List, Optional

import pytest

from wide_anomaly.adapters.query.rest import FetchError
from wide_anomaly.detection.dispatcher import DispatchError
from wide_anomaly.interfaces.query_source import QuerySource
from wide_anomaly.models.incidents import NotificationEvent
from wide_anomaly.models.series import (
    DetectorParams,
    HysteresisParams,
    QueryDefinition,
    Sample,
    SeriesConfig,
    SeriesId,
    TimeRange,
)


BASE_TIME = datetime(2024, 1, 1, tzinfo=timezone.utc)


# ---------------------------------------------------------------------------
# Series fixtures
# ---------------------------------------------------------------------------

@pytest.fixture
def base_time() -> datetime:
    return BASE_TIME


@pytest.fixture
def make_series() -> Callable[..., SeriesConfig]:
    """Return a factory for SeriesConfig with test-friendly defaults."""

    def _make(
        metric: str = "checkout_latency_p95",
        labels: Optional[Dict[str, str]] = None,
        interval_seconds: int = 60,
        window_seconds: int = 3600,
        expr: str = "",
        pattern: str = "checkout_latency_p95",
        step_seconds: Optional[int] = 60,
        **detector_and_hysteresis,
    ) -> SeriesConfig:
        hysteresis = {
            key: detector_and_hysteresis.pop(key)
            for key in ("open_threshold", "close_threshold")
            if key in detector_and_hysteresis
        }
        return SeriesConfig(
            id=SeriesId(metric=metric, labels=labels if labels is not None else {"service": "checkout"}),
            query=QueryDefinition(expr=expr, pattern=pattern, step_seconds=step_seconds),
            interval_seconds=interval_seconds,
            window_seconds=window_seconds,
            detector=DetectorParams(**detector_and_hysteresis),
            hysteresis=HysteresisParams(**hysteresis),
        )

    return _make


@pytest.fixture
def series(make_series) -> SeriesConfig:
    """Series with a short warm-up and open=3 / close=2 hysteresis."""
    return make_series(min_history=5, alpha=0.2)


# ---------------------------------------------------------------------------
# Sample fixtures
# ---------------------------------------------------------------------------

@pytest.fixture
def make_samples() -> Callable[..., List[Sample]]:
    """Return a builder turning values into samples spaced by ``step`` seconds."""

    def _make(values, start: datetime = BASE_TIME, step: int = 60) -> List[Sample]:
        return [
            Sample(timestamp=start + timedelta(seconds=i * step), value=float(v))
            for i, v in enumerate(values)
        ]

    return _make


# ---------------------------------------------------------------------------
# Query source fixtures
# ---------------------------------------------------------------------------

class StaticSource(QuerySource):
    """
    In-memory QuerySource.

    Serves configured samples per series key, filtered to the requested
    range, or raises the configured error. Records every call.
    """

    def __init__(self) -> None:
        self.samples: Dict[str, List[Sample]] = {}
        self.errors: Dict[str, FetchError] = {}
        self.delays: Dict[str, float] = {}
        self.calls: List[Dict] = []
        self.closed = False

    async def query_range(
        self, query, labels, time_range: TimeRange, step_seconds, timeout, series_key=None
    ) -> List[Sample]:
        self.calls.append(
            {"series_key": series_key, "time_range": time_range, "timeout": timeout}
        )
        delay = self.delays.get(series_key)
        if delay:
            await asyncio.sleep(delay)
        if series_key in self.errors:
            raise self.errors[series_key]
        return [
            s
            for s in self.samples.get(series_key, [])
            if time_range.start <= s.timestamp <= time_range.end
        ]

    async def close(self) -> None:
        self.closed = True


@pytest.fixture
def static_source() -> StaticSource:
    return StaticSource()


# ---------------------------------------------------------------------------
# Channel fixtures
# ---------------------------------------------------------------------------

class RecordingChannel:
    """Channel that records events and can fail a number of times first."""

    def __init__(self, failures: int = 0, retryable: bool = True) -> None:
        self.events: List[NotificationEvent] = []
        self.failures = failures
        self.retryable = retryable
        self.attempts = 0

    async def send(self, event: NotificationEvent) -> None:
        self.attempts += 1
        if self.failures > 0:
            self.failures -= 1
            raise DispatchError("receiver down", channel="recording", retryable=self.retryable)
        self.events.append(event)


@pytest.fixture
def recording_channel() -> RecordingChannel:
    return RecordingChannel()


@pytest.fixture
def make_channel() -> Callable[..., RecordingChannel]:
    return RecordingChannel
