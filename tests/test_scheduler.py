"""Test the evaluation scheduler: units, isolation, commit and shutdown."""

import asyncio
from datetime import datetime, timedelta, timezone
from unittest.mock import MagicMock

import pytest

from wide_anomaly.adapters.query.fetcher import SeriesFetcher
from wide_anomaly.adapters.query.rest import FetchUnavailable
from wide_anomaly.adapters.retry import RetryPolicy
from wide_anomaly.detection.dispatcher import NotificationDispatcher
from wide_anomaly.detection.registry import SeriesRegistry
from wide_anomaly.detection.scheduler import EvaluationScheduler
from wide_anomaly.models.anomaly import BaselineModel
from wide_anomaly.models.health import SeriesStatus
from wide_anomaly.models.incidents import (
    Incident,
    IncidentState,
    IncidentTracker,
    SeriesState,
    Severity,
    TransitionKind,
)
from wide_anomaly.storage.memory import InMemoryStateStore

BASE_TIME = datetime(2024, 1, 1, tzinfo=timezone.utc)
NOW = BASE_TIME + timedelta(hours=2)


def entry(metric: str, **overrides) -> dict:
    data = {
        "metric": metric,
        "pattern": metric,
        "interval_seconds": 60,
        "window_seconds": 3600,
        "step_seconds": 60,
        "detector": {"min_history": 3, "alpha": 0.5},
        "hysteresis": {"open_threshold": 1, "close_threshold": 1},
    }
    data.update(overrides)
    return data


@pytest.fixture
def registry() -> SeriesRegistry:
    registry = SeriesRegistry()
    registry.reload([entry("a"), entry("b")])
    return registry


@pytest.fixture
def dispatcher(recording_channel) -> NotificationDispatcher:
    return NotificationDispatcher(
        channels={"recording": recording_channel},
        severity_channels={severity: ["recording"] for severity in Severity},
    )


@pytest.fixture
def store() -> InMemoryStateStore:
    return InMemoryStateStore()


@pytest.fixture
def scheduler(registry, static_source, dispatcher, store) -> EvaluationScheduler:
    fetcher = SeriesFetcher(
        static_source,
        retry_policy=RetryPolicy(max_attempts=1, jitter=False, name="fetch"),
        fetch_timeout_seconds=5.0,
    )
    return EvaluationScheduler(
        registry=registry,
        fetcher=fetcher,
        dispatcher=dispatcher,
        store=store,
        max_workers=4,
    )


@pytest.fixture
def feed(static_source, make_samples):
    """Serve values for a series, the last one at NOW - 1 minute."""

    def _feed(series_key: str, values, end=NOW):
        start = end - timedelta(minutes=len(values))
        static_source.samples[series_key] = make_samples(values, start=start)
        return static_source.samples[series_key]

    return _feed


# ===================================================================
# Single unit
# ===================================================================

class TestEvaluate:
    """One unit: fetch range, commit and persistence."""

    @pytest.mark.asyncio
    async def test_first_unit_fetches_whole_window(self, scheduler, registry, static_source, feed):
        feed("a", [10, 11, 12, 11])

        committed = await scheduler.evaluate(registry.get("a"), NOW)

        assert committed
        time_range = static_source.calls[0]["time_range"]
        assert time_range.start == NOW - timedelta(seconds=3600)
        assert time_range.end == NOW
        state = scheduler.get_state("a")
        assert state.baseline.count == 4
        assert state.dedup_key == registry.get("a").dedup_key

    @pytest.mark.asyncio
    async def test_next_unit_starts_at_last_timestamp(self, scheduler, registry, static_source, feed):
        samples = feed("a", [10, 11, 12, 11])
        await scheduler.evaluate(registry.get("a"), NOW)

        later = NOW + timedelta(minutes=1)
        feed("a", [10, 11, 12, 11, 13], end=later)
        await scheduler.evaluate(registry.get("a"), later)

        assert static_source.calls[1]["time_range"].start == samples[-1].timestamp
        # Only the sample newer than the baseline is folded
        assert scheduler.get_state("a").baseline.count == 5

    @pytest.mark.asyncio
    async def test_health_after_success(self, scheduler, registry, feed):
        feed("a", [10, 11])
        await scheduler.evaluate(registry.get("a"), NOW)

        health = scheduler.health().series["a"]
        assert health.status == SeriesStatus.WARMING_UP
        assert health.sample_count == 2
        assert health.samples_processed == 2
        assert health.last_success_at == NOW
        assert health.display_text == "warming up (2/3)"

    @pytest.mark.asyncio
    async def test_state_persisted(self, scheduler, registry, store, feed):
        feed("a", [10, 11, 12])
        await scheduler.evaluate(registry.get("a"), NOW)

        states = await store.load_states()
        assert states["a"] == scheduler.get_state("a")

    @pytest.mark.asyncio
    async def test_empty_fetch_is_valid(self, scheduler, registry):
        assert await scheduler.evaluate(registry.get("a"), NOW)
        assert scheduler.get_state("a").baseline.count == 0


# ===================================================================
# Failure handling
# ===================================================================

class TestFailures:
    """A failed unit commits nothing and touches no other series."""

    @pytest.mark.asyncio
    async def test_fetch_failure_leaves_state_unchanged(self, scheduler, registry, static_source, feed):
        feed("a", [10, 11, 12])
        await scheduler.evaluate(registry.get("a"), NOW)
        before = scheduler.get_state("a")

        static_source.errors["a"] = FetchUnavailable("503 from query service", series_key="a")
        committed = await scheduler.evaluate(registry.get("a"), NOW + timedelta(minutes=1))

        assert not committed
        assert scheduler.get_state("a") is before
        health = scheduler.health().series["a"]
        assert health.status == SeriesStatus.FAILED
        assert health.last_error_kind == "unavailable"
        assert health.consecutive_failures == 1
        assert not scheduler.health().all_series_healthy

    @pytest.mark.asyncio
    async def test_failure_isolated_to_one_series(self, scheduler, static_source, feed):
        static_source.errors["a"] = FetchUnavailable("down", series_key="a")
        feed("b", [1, 2, 3])

        tasks = await scheduler.tick(NOW)
        await asyncio.gather(*tasks)

        assert scheduler.get_state("a") is None
        assert scheduler.get_state("b").baseline.count == 3
        health = scheduler.health()
        assert health.failing_series == 1
        assert health.series["b"].is_healthy

    @pytest.mark.asyncio
    async def test_timeout_isolated_to_one_series(
        self, registry, static_source, dispatcher, store, feed
    ):
        fetcher = SeriesFetcher(
            static_source,
            retry_policy=RetryPolicy(max_attempts=1, jitter=False, name="fetch"),
            fetch_timeout_seconds=0.05,
        )
        scheduler = EvaluationScheduler(
            registry=registry, fetcher=fetcher, dispatcher=dispatcher, store=store
        )
        feed("a", [1, 2, 3])
        feed("b", [1, 2, 3])
        static_source.delays["a"] = 1.0

        started = asyncio.get_running_loop().time()
        await asyncio.gather(*await scheduler.tick(NOW))
        elapsed = asyncio.get_running_loop().time() - started

        assert elapsed < 0.5
        assert scheduler.get_state("a") is None
        assert scheduler.get_state("b").baseline.count == 3
        health = scheduler.health().series
        assert health["a"].last_error_kind == "timeout"
        assert health["b"].is_healthy

    @pytest.mark.asyncio
    async def test_out_of_order_batch_leaves_baseline_unchanged(
        self, scheduler, registry, static_source, feed, make_samples
    ):
        feed("a", [10, 11, 12])
        await scheduler.evaluate(registry.get("a"), NOW)
        before = scheduler.get_state("a")

        later = NOW + timedelta(minutes=5)
        samples = make_samples([13, 14, 15], start=NOW)
        static_source.samples["a"] = [samples[0], samples[2], samples[1]]

        assert not await scheduler.evaluate(registry.get("a"), later)

        assert scheduler.health().series["a"].last_error_kind == "bad_data"
        after = scheduler.get_state("a")
        assert after is before
        assert after.baseline.model_dump() == before.baseline.model_dump()

    @pytest.mark.asyncio
    async def test_unexpected_error_recorded_as_internal(self, scheduler, registry, feed):
        feed("a", [1, 2])
        scheduler.detector = MagicMock()
        scheduler.detector.fold.side_effect = RuntimeError("boom")

        assert not await scheduler.evaluate(registry.get("a"), NOW)

        assert scheduler.get_state("a") is None
        assert scheduler.health().series["a"].last_error_kind == "internal"

    @pytest.mark.asyncio
    async def test_success_clears_failure(self, scheduler, registry, static_source, feed):
        static_source.errors["a"] = FetchUnavailable("down", series_key="a")
        await scheduler.evaluate(registry.get("a"), NOW)

        del static_source.errors["a"]
        feed("a", [1, 2, 3, 4])
        await scheduler.evaluate(registry.get("a"), NOW + timedelta(minutes=1))

        health = scheduler.health().series["a"]
        assert health.status == SeriesStatus.OK
        assert health.consecutive_failures == 0
        assert health.last_error is None


# ===================================================================
# Ticks
# ===================================================================

class TestTick:
    """Due series start units; in-flight series are skipped, not queued."""

    @pytest.mark.asyncio
    async def test_tick_starts_due_series(self, scheduler):
        tasks = await scheduler.tick(NOW)
        assert [t.get_name() for t in tasks] == ["unit:a", "unit:b"]
        await asyncio.gather(*tasks)

        assert await scheduler.tick(NOW + timedelta(seconds=30)) == []
        later = await scheduler.tick(NOW + timedelta(seconds=60))
        assert len(later) == 2
        await asyncio.gather(*later)

    @pytest.mark.asyncio
    async def test_in_flight_series_skipped(self, scheduler, static_source):
        static_source.delays["a"] = 0.3

        first = await scheduler.tick(NOW)
        await first[1]
        assert scheduler.in_flight() == ["a"]

        second = await scheduler.tick(NOW + timedelta(seconds=60))

        assert [t.get_name() for t in second] == ["unit:b"]
        assert scheduler.health().series["a"].skipped_in_flight == 1
        await asyncio.gather(first[0], *second)
        assert scheduler.in_flight() == []

    @pytest.mark.asyncio
    async def test_tick_interval(self, scheduler, registry):
        assert scheduler.tick_interval() == 60.0
        registry.reload([entry("a"), entry("b", interval_seconds=15)])
        assert scheduler.tick_interval() == 15.0
        registry.reload([entry("a"), entry("b", interval_seconds=90)])
        assert scheduler.tick_interval() == 30.0
        scheduler.tick_seconds = 0.2
        assert scheduler.tick_interval() == 1.0

    @pytest.mark.asyncio
    async def test_mixed_intervals_start_on_their_own_interval(self, scheduler, registry):
        registry.reload([entry("fast"), entry("slow", interval_seconds=90)])
        step = scheduler.tick_interval()
        starts = {"fast": [], "slow": []}

        elapsed = 0.0
        while elapsed <= 360.0:
            for task in await scheduler.tick(NOW + timedelta(seconds=elapsed)):
                starts[task.get_name().split(":", 1)[1]].append(elapsed)
                await task
            elapsed += step

        assert starts["slow"] == [0.0, 90.0, 180.0, 270.0, 360.0]
        assert starts["fast"] == [0.0, 60.0, 120.0, 180.0, 240.0, 300.0, 360.0]

    @pytest.mark.asyncio
    async def test_run_until_shutdown(self, scheduler, static_source):
        shutdown_event = asyncio.Event()
        runner = asyncio.create_task(scheduler.run(shutdown_event))

        await asyncio.sleep(0.05)
        assert scheduler.running
        shutdown_event.set()
        await asyncio.wait_for(runner, timeout=2.0)

        assert not scheduler.running
        assert {call["series_key"] for call in static_source.calls} == {"a", "b"}


# ===================================================================
# Registry changes
# ===================================================================

class TestRegistryChanges:
    """State follows the registry: removed series drop, changed ones reset."""

    @pytest.mark.asyncio
    async def test_removed_series_state_dropped(self, scheduler, registry, store, feed):
        feed("a", [1, 2])
        feed("b", [1, 2])
        await asyncio.gather(*await scheduler.tick(NOW))

        registry.reload([entry("b")])
        await scheduler.tick(NOW + timedelta(seconds=10))

        assert scheduler.get_state("a") is None
        assert scheduler.get_state("b") is not None
        assert "a" not in await store.load_states()
        assert "a" not in scheduler.health().series

    @pytest.mark.asyncio
    async def test_removed_during_unit_commits_nothing(self, scheduler, registry, static_source, feed):
        feed("a", [1, 2])
        static_source.delays["a"] = 0.1

        tasks = await scheduler.tick(NOW)
        registry.reload([entry("b")])
        await asyncio.gather(*tasks)

        assert scheduler.get_state("a") is None

    @pytest.mark.asyncio
    async def test_changed_definition_resets_state(self, scheduler, registry, static_source, feed):
        scheduler.restore(
            {
                "a": SeriesState(
                    series_key="a",
                    dedup_key="stale",
                    baseline=BaselineModel(count=50, mean=3.0, last_timestamp=NOW),
                )
            }
        )
        feed("a", [1, 2, 3])

        await scheduler.evaluate(registry.get("a"), NOW)

        state = scheduler.get_state("a")
        assert state.dedup_key == registry.get("a").dedup_key
        assert state.baseline.count == 3
        assert static_source.calls[0]["time_range"].start == NOW - timedelta(seconds=3600)


# ===================================================================
# Incidents
# ===================================================================

class TestIncidentFlow:
    """Events are handed off and resolved incidents archived."""

    @pytest.mark.asyncio
    async def test_open_resolve_dispatch_and_archive(
        self, scheduler, registry, dispatcher, store, recording_channel, feed
    ):
        feed("a", [10, 10, 10, 10, 50, 10])

        await scheduler.evaluate(registry.get("a"), NOW)

        assert dispatcher.pending == 2
        assert await dispatcher.drain(1.0) == 0
        assert [e.kind for e in recording_channel.events] == [
            TransitionKind.OPENED,
            TransitionKind.RESOLVED,
        ]
        archived = await store.list_archive()
        assert len(archived) == 1
        assert archived[0].archived_at == NOW
        assert archived[0].incident_id == recording_channel.events[0].incident_id
        assert scheduler.open_incidents() == []

    @pytest.mark.asyncio
    async def test_open_incident_survives_in_state(self, scheduler, registry, feed):
        feed("a", [10, 10, 10, 10, 50])

        await scheduler.evaluate(registry.get("a"), NOW)

        incidents = scheduler.open_incidents()
        assert len(incidents) == 1
        assert incidents[0].series_key == "a"
        assert scheduler.health().open_incidents == 1

    def test_restore_open_incidents_sorted(self, scheduler):
        def state(key, opened_at):
            incident = Incident(
                series_key=key,
                dedup_key="d",
                opened_at=opened_at,
                last_seen_at=opened_at,
            )
            tracker = IncidentTracker(state=IncidentState.FIRING, incident=incident)
            return SeriesState(series_key=key, dedup_key="d", tracker=tracker)

        scheduler.restore({"b": state("b", NOW), "a": state("a", NOW - timedelta(hours=1))})

        assert [i.series_key for i in scheduler.open_incidents()] == ["a", "b"]

    @pytest.mark.asyncio
    async def test_prune_is_throttled(self, scheduler, store):
        old = Incident(
            series_key="a",
            dedup_key="d",
            opened_at=BASE_TIME,
            last_seen_at=BASE_TIME,
            resolved_at=BASE_TIME,
            archived_at=BASE_TIME,
        )
        await store.archive_incident(old)
        later = BASE_TIME + timedelta(days=8)

        assert await scheduler.prune_archive(later) == 1
        await store.archive_incident(old)
        assert await scheduler.prune_archive(later + timedelta(seconds=10)) == 0


# ===================================================================
# Restart
# ===================================================================

class TestRestart:
    """Persisted state resumes exactly where an uninterrupted run would be."""

    @pytest.mark.asyncio
    async def test_restored_state_matches_uninterrupted_run(
        self, scheduler, registry, static_source, dispatcher, recording_channel, make_channel, feed
    ):
        feed("a", [10, 10, 10, 10, 50, 52, 10, 10, 80, 10])
        checkpoint = NOW - timedelta(minutes=6)

        await scheduler.evaluate(registry.get("a"), checkpoint)
        persisted = scheduler.get_state("a").model_dump_json()
        assert scheduler.get_state("a").tracker.incident is not None
        await dispatcher.drain(1.0)
        opened = list(recording_channel.events)

        await scheduler.evaluate(registry.get("a"), NOW)
        await dispatcher.drain(1.0)
        uninterrupted = recording_channel.events[len(opened):]

        restarted_channel = make_channel()
        restarted_dispatcher = NotificationDispatcher(
            channels={"recording": restarted_channel},
            severity_channels={severity: ["recording"] for severity in Severity},
        )
        restarted = EvaluationScheduler(
            registry=registry,
            fetcher=SeriesFetcher(
                static_source,
                retry_policy=RetryPolicy(max_attempts=1, jitter=False, name="fetch"),
            ),
            dispatcher=restarted_dispatcher,
            store=InMemoryStateStore(),
        )
        restarted.restore({"a": SeriesState.model_validate_json(persisted)})

        await restarted.evaluate(registry.get("a"), NOW)
        await restarted_dispatcher.drain(1.0)

        assert restarted.get_state("a") == scheduler.get_state("a")
        assert uninterrupted
        assert [e.model_dump(exclude={"event_id"}) for e in restarted_channel.events] == [
            e.model_dump(exclude={"event_id"}) for e in uninterrupted
        ]
        assert uninterrupted[0].incident_id == opened[0].incident_id


# ===================================================================
# Shutdown
# ===================================================================

class TestShutdown:
    """In-flight units get a grace period, then are cancelled."""

    @pytest.mark.asyncio
    async def test_nothing_in_flight(self, scheduler):
        assert await scheduler.shutdown(1.0) == 0

    @pytest.mark.asyncio
    async def test_slow_unit_cancelled_without_commit(self, scheduler, static_source, feed):
        feed("a", [1, 2])
        feed("b", [1, 2])
        static_source.delays["a"] = 10.0

        await scheduler.tick(NOW)
        cancelled = await scheduler.shutdown(0.1)

        assert cancelled == 1
        assert scheduler.get_state("a") is None
        assert scheduler.get_state("b") is not None
