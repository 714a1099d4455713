"""
Evaluation scheduler.

Drives the Fetch -> Detect -> Incident pipeline for every registered series.
Each tick takes the current registry snapshot and starts one unit of work
per series that is due and not already in flight; a series whose previous
unit is still running is skipped for that tick rather than queued.

Units run as asyncio tasks under a semaphore of ``max_workers``. A unit
computes everything on local copies and commits the new SeriesState with a
single assignment at the end, so a failed or cancelled unit leaves the
series exactly as it was.

Unit flow:
    1. Fetch [max(now - window, last_timestamp), now]
    2. Keep samples strictly newer than the baseline
    3. BaselineDetector.fold, then IncidentManager.apply_all
    4. Commit state, hand events to the dispatcher, archive resolved incidents
    5. Persist (shielded from cancellation)

Example:
    >>> scheduler = EvaluationScheduler(
    ...     registry=registry,
    ...     fetcher=fetcher,
    ...     dispatcher=dispatcher,
    ...     max_workers=8,
    ... )
    >>> await scheduler.run(shutdown_event)
"""

import asyncio
import math
from datetime import datetime, timedelta, timezone
from typing import Dict, List, Optional

import structlog

from wide_anomaly.adapters.query.fetcher import SeriesFetcher
from wide_anomaly.adapters.query.rest import FetchError
from wide_anomaly.detection.dispatcher import NotificationDispatcher
from wide_anomaly.detection.manager import IncidentManager
from wide_anomaly.detection.registry import RegistrySnapshot, SeriesRegistry
from wide_anomaly.interfaces.state_store import StateStore
from wide_anomaly.metrics.baseline import BaselineDetector, ModelError
from wide_anomaly.models.health import EngineHealth, SeriesHealth, SeriesStatus
from wide_anomaly.models.incidents import Incident, SeriesState
from wide_anomaly.models.series import SeriesConfig, TimeRange
from wide_anomaly.storage.memory import InMemoryStateStore

logger = structlog.get_logger(__name__)


MIN_TICK_SECONDS = 1.0
PRUNE_INTERVAL_SECONDS = 300


def utc_now() -> datetime:
    return datetime.now(timezone.utc)


class EvaluationScheduler:
    """
    Periodic driver of per-series evaluation units.

    The scheduler is the only owner of per-series state. Each series has at
    most one unit in flight, so no locking is needed around its state.

    Attributes:
        registry: Source of the series snapshot.
        fetcher: Sample fetcher.
        detector: Baseline detector.
        manager: Incident manager.
        dispatcher: Notification handoff.
        store: State store for persistence and the incident archive.
        max_workers: Maximum concurrently running units.
        tick_seconds: Fixed tick period, or None to follow the series intervals.
        retention_seconds: How long archived incidents are kept.
        running: Whether run() is looping.
    """

    def __init__(
        self,
        registry: SeriesRegistry,
        fetcher: SeriesFetcher,
        dispatcher: NotificationDispatcher,
        detector: Optional[BaselineDetector] = None,
        manager: Optional[IncidentManager] = None,
        store: Optional[StateStore] = None,
        max_workers: int = 8,
        tick_seconds: Optional[float] = None,
        retention_seconds: int = 7 * 24 * 3600,
    ) -> None:
        self.registry = registry
        self.fetcher = fetcher
        self.dispatcher = dispatcher
        self.detector = detector or BaselineDetector()
        self.manager = manager or IncidentManager()
        self.store = store or InMemoryStateStore()
        self.max_workers = max_workers
        self.tick_seconds = tick_seconds
        self.retention_seconds = retention_seconds
        self.running = False

        self._semaphore = asyncio.Semaphore(max_workers)
        self._states: Dict[str, SeriesState] = {}
        self._in_flight: Dict[str, asyncio.Task] = {}
        self._last_started: Dict[str, datetime] = {}
        self._health: Dict[str, SeriesHealth] = {}
        self._synced_version: Optional[int] = None
        self._last_pruned: Optional[datetime] = None

        logger.info(
            "scheduler_initialized",
            max_workers=max_workers,
            tick_seconds=tick_seconds,
        )

    # =========================================================================
    # STATE ACCESS
    # =========================================================================

    def get_state(self, series_key: str) -> Optional[SeriesState]:
        """Return the committed state of a series, if any."""
        return self._states.get(series_key)

    def in_flight(self) -> List[str]:
        """Series keys with a unit currently running."""
        return list(self._in_flight.keys())

    def restore(self, states: Dict[str, SeriesState]) -> None:
        """
        Seed per-series state, typically from the state store at startup.

        States whose dedup key no longer matches the registered definition
        are reset on the next unit of that series.

        Args:
            states: States keyed by series key.
        """
        for series_key, state in states.items():
            self._states[series_key] = state

        logger.info(
            "states_restored",
            count=len(states),
            open_incidents=sum(1 for s in states.values() if s.tracker.incident),
        )

    def open_incidents(self) -> List[Incident]:
        """
        List currently open incidents.

        Returns:
            List[Incident]: Open incidents, oldest first.
        """
        incidents = [
            state.tracker.incident
            for state in self._states.values()
            if state.tracker.incident is not None
        ]
        incidents.sort(key=lambda i: i.opened_at)
        return incidents

    def health(self) -> EngineHealth:
        """
        Summarize engine health for the current snapshot.

        Returns:
            EngineHealth: Per-series health plus engine-wide counters.
        """
        snapshot = self.registry.snapshot()
        series_health: Dict[str, SeriesHealth] = {}
        for series in snapshot.series:
            series_health[series.key] = self._health.get(series.key) or SeriesHealth(
                series_key=series.key,
                min_history=series.detector.min_history,
            )

        return EngineHealth(
            timestamp=utc_now(),
            running=self.running,
            registry_version=snapshot.version,
            series=series_health,
            open_incidents=len(self.open_incidents()),
            dispatch_queue_depth=self.dispatcher.pending,
        )

    def tick_interval(self) -> float:
        """
        Seconds between ticks.

        Returns:
            float: tick_seconds when configured, else the greatest common
                divisor of the series intervals, floored at one second.
        """
        if self.tick_seconds is not None:
            return max(self.tick_seconds, MIN_TICK_SECONDS)

        intervals = [series.interval_seconds for series in self.registry.list()]
        if not intervals:
            return MIN_TICK_SECONDS
        return max(float(math.gcd(*intervals)), MIN_TICK_SECONDS)

    # =========================================================================
    # TICK
    # =========================================================================

    def is_due(self, series: SeriesConfig, now: datetime) -> bool:
        """Check if a series should start a unit at ``now``."""
        last = self._last_started.get(series.key)
        if last is None:
            return True
        return (now - last).total_seconds() >= series.interval_seconds

    async def tick(self, now: Optional[datetime] = None) -> List[asyncio.Task]:
        """
        Start units for every due series that is not in flight.

        Args:
            now: Tick time; the current UTC time when None.

        Returns:
            List[asyncio.Task]: Units started by this tick.
        """
        now = now or utc_now()
        snapshot = self.registry.snapshot()
        await self._sync_registry(snapshot)

        started: List[asyncio.Task] = []
        for series in snapshot.series:
            key = series.key

            if key in self._in_flight:
                if self.is_due(series, now):
                    self._mark_skipped(series)
                    logger.info(
                        "series_skipped_in_flight",
                        series_key=key,
                        started_at=self._last_started[key].isoformat(),
                    )
                continue

            if not self.is_due(series, now):
                continue

            self._last_started[key] = now
            task = asyncio.create_task(self._run_unit(series, now), name=f"unit:{key}")
            self._in_flight[key] = task
            task.add_done_callback(lambda t, key=key: self._unit_done(key, t))
            started.append(task)

        if started:
            logger.debug(
                "scheduler_tick",
                registry_version=snapshot.version,
                started=len(started),
                in_flight=len(self._in_flight),
            )
        return started

    def _unit_done(self, series_key: str, task: asyncio.Task) -> None:
        if self._in_flight.get(series_key) is task:
            del self._in_flight[series_key]

    async def _sync_registry(self, snapshot: RegistrySnapshot) -> None:
        """Drop state of series no longer in the registry."""
        if snapshot.version == self._synced_version:
            return
        self._synced_version = snapshot.version

        current = set(snapshot.keys)
        removed = [key for key in self._states if key not in current]
        for key in list(self._health):
            if key not in current:
                del self._health[key]
        for key in list(self._last_started):
            if key not in current:
                del self._last_started[key]

        for key in removed:
            del self._states[key]
            try:
                await self.store.delete_state(key)
            except Exception as e:
                logger.error("state_delete_failed", series_key=key, error=str(e))

        if removed:
            logger.info(
                "series_state_dropped",
                registry_version=snapshot.version,
                series_keys=removed,
            )

    # =========================================================================
    # UNIT OF WORK
    # =========================================================================

    async def _run_unit(self, series: SeriesConfig, now: datetime) -> None:
        async with self._semaphore:
            await self.evaluate(series, now)

    def _state_for(self, series: SeriesConfig) -> SeriesState:
        state = self._states.get(series.key)
        if state is not None and state.dedup_key == series.dedup_key:
            return state

        if state is not None:
            logger.info(
                "series_state_reset",
                series_key=series.key,
                old_dedup_key=state.dedup_key,
                new_dedup_key=series.dedup_key,
                had_open_incident=state.tracker.incident is not None,
            )
        return SeriesState(series_key=series.key, dedup_key=series.dedup_key)

    def fetch_range(self, series: SeriesConfig, state: SeriesState, now: datetime) -> TimeRange:
        """
        Time range a unit fetches.

        Args:
            series: Series definition.
            state: Committed state of the series.
            now: Unit time.

        Returns:
            TimeRange: [max(now - window, last_timestamp), now].
        """
        start = now - timedelta(seconds=series.window_seconds)
        last = state.baseline.last_timestamp
        if last is not None and last > start:
            start = min(last, now)
        return TimeRange(start=start, end=now)

    async def evaluate(self, series: SeriesConfig, now: datetime) -> bool:
        """
        Run one unit for a series.

        Failures are recorded in series health and never propagate.

        Args:
            series: Series definition from the snapshot the tick used.
            now: Unit time.

        Returns:
            bool: True if the unit committed.
        """
        key = series.key
        self._mark_started(series, now)
        state = self._state_for(series)

        try:
            samples = await self.fetcher.fetch(series, self.fetch_range(series, state, now))
            fresh = [s for s in samples if state.baseline.accepts(s.timestamp)]
            baseline, scores = self.detector.fold(state.baseline, fresh, series)
            update = self.manager.apply_all(state.tracker, series, scores)
        except (FetchError, ModelError) as e:
            self._mark_failed(series, e.message, e.kind)
            return False
        except Exception as e:
            logger.exception("series_unit_crashed", series_key=key, error=str(e))
            self._mark_failed(series, str(e), "internal")
            return False

        if self.registry.get(key) is None:
            logger.info("series_removed_during_unit", series_key=key)
            return False

        new_state = state.model_copy(update={"baseline": baseline, "tracker": update.tracker})
        self._states[key] = new_state

        for event in update.events:
            self.dispatcher.dispatch(event)
        archived = [self.manager.archive(incident, now) for incident in update.resolved]

        self._mark_succeeded(series, new_state, len(fresh), now)
        await asyncio.shield(self._persist(new_state, archived))
        return True

    async def _persist(self, state: SeriesState, archived: List[Incident]) -> None:
        try:
            await self.store.save_state(state)
            for incident in archived:
                await self.store.archive_incident(incident)
        except Exception as e:
            logger.error(
                "state_persist_failed",
                series_key=state.series_key,
                error=str(e),
            )

    # =========================================================================
    # HEALTH BOOKKEEPING
    # =========================================================================

    def _current_health(self, series: SeriesConfig) -> SeriesHealth:
        return self._health.get(series.key) or SeriesHealth(
            series_key=series.key,
            min_history=series.detector.min_history,
        )

    def _mark_started(self, series: SeriesConfig, now: datetime) -> None:
        self._health[series.key] = self._current_health(series).model_copy(
            update={"last_started_at": now}
        )

    def _mark_skipped(self, series: SeriesConfig) -> None:
        health = self._current_health(series)
        self._health[series.key] = health.model_copy(
            update={"skipped_in_flight": health.skipped_in_flight + 1}
        )

    def _mark_failed(self, series: SeriesConfig, error: str, kind: str) -> None:
        health = self._current_health(series)
        self._health[series.key] = health.model_copy(
            update={
                "status": SeriesStatus.FAILED,
                "last_error": error,
                "last_error_kind": kind,
                "consecutive_failures": health.consecutive_failures + 1,
            }
        )
        logger.warning(
            "series_evaluation_failed",
            series_key=series.key,
            error_kind=kind,
            error=error,
            consecutive_failures=health.consecutive_failures + 1,
        )

    def _mark_succeeded(
        self, series: SeriesConfig, state: SeriesState, processed: int, now: datetime
    ) -> None:
        health = self._current_health(series)
        warm = state.baseline.is_warm(series.detector.min_history)
        self._health[series.key] = health.model_copy(
            update={
                "status": SeriesStatus.OK if warm else SeriesStatus.WARMING_UP,
                "last_success_at": now,
                "last_error": None,
                "last_error_kind": None,
                "consecutive_failures": 0,
                "samples_processed": health.samples_processed + processed,
                "sample_count": state.baseline.count,
                "min_history": series.detector.min_history,
            }
        )

    # =========================================================================
    # LIFECYCLE
    # =========================================================================

    async def prune_archive(self, now: datetime) -> int:
        """
        Drop archived incidents past retention, at most every few minutes.

        Args:
            now: Reference time.

        Returns:
            int: Incidents removed.
        """
        if (
            self._last_pruned is not None
            and (now - self._last_pruned).total_seconds() < PRUNE_INTERVAL_SECONDS
        ):
            return 0
        self._last_pruned = now
        return await self.store.prune_archive(self.retention_seconds, now)

    async def run(self, shutdown_event: asyncio.Event) -> None:
        """
        Tick until the shutdown event is set.

        Args:
            shutdown_event: Event that stops the loop.
        """
        self.running = True
        logger.info("scheduler_started", tick_seconds=self.tick_interval())

        try:
            while not shutdown_event.is_set():
                now = utc_now()
                try:
                    await self.tick(now)
                    await self.prune_archive(now)
                except Exception as e:
                    logger.exception("scheduler_tick_failed", error=str(e))

                try:
                    await asyncio.wait_for(shutdown_event.wait(), timeout=self.tick_interval())
                except asyncio.TimeoutError:
                    pass
        finally:
            self.running = False
            logger.info("scheduler_stopped")

    async def shutdown(self, grace_seconds: float) -> int:
        """
        Wait for in-flight units, cancelling those still running after the grace period.

        Args:
            grace_seconds: How long units may keep running.

        Returns:
            int: Units that were cancelled.
        """
        tasks = list(self._in_flight.values())
        if not tasks:
            return 0

        logger.info(
            "scheduler_draining",
            in_flight=len(tasks),
            grace_seconds=grace_seconds,
        )
        _, pending = await asyncio.wait(tasks, timeout=grace_seconds)
        for task in pending:
            task.cancel()
        if pending:
            await asyncio.gather(*pending, return_exceptions=True)
            logger.warning("scheduler_units_cancelled", cancelled=len(pending))
        return len(pending)
