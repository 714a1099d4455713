"""
Incident manager for the incident lifecycle.

This module provides the IncidentManager class which turns the stream of
anomaly scores of a series into deduplicated incidents using hysteresis:
an incident opens only after ``open_threshold`` consecutive breaches and
resolves only after ``close_threshold`` consecutive normal samples.

State machine:
    idle ──breach──> pending ──open_threshold──> firing
      ^                 │                          │  ^
      └─────normal──────┘                   normal │  │ breach
      ^                                            v  │
      └──────────────close_threshold──────────── resolving

Key Features:
    - Pure: apply() takes a tracker and returns a new one plus events
    - At most one open incident per series
    - Severity follows the peak deviation and never falls while open
    - Exactly one NotificationEvent per opened/escalated/resolved transition

Example:
    >>> manager = IncidentManager()
    >>> tracker, events = manager.apply(IncidentTracker(), series, score)
"""

from dataclasses import dataclass, field
from datetime import datetime
from typing import List, Optional, Tuple

import structlog

from wide_anomaly.models.anomaly import AnomalyScore
from wide_anomaly.models.incidents import (
    Incident,
    IncidentState,
    IncidentTracker,
    NotificationEvent,
    Severity,
    TransitionKind,
)
from wide_anomaly.models.series import SeriesConfig

logger = structlog.get_logger(__name__)


Step = Tuple[IncidentTracker, List[NotificationEvent], Optional[Incident]]


@dataclass(frozen=True)
class IncidentUpdate:
    """
    Outcome of advancing a tracker through a batch of scores.

    Attributes:
        tracker: Tracker after the last score.
        events: Events in emission order.
        resolved: Incidents resolved during the batch.
    """

    tracker: IncidentTracker
    events: List[NotificationEvent] = field(default_factory=list)
    resolved: List[Incident] = field(default_factory=list)


def _is_new_peak(deviation: float, peak: float) -> bool:
    return abs(deviation) > abs(peak)


class IncidentManager:
    """
    Drives per-series incident trackers from anomaly scores.

    The manager holds no series state; callers own the trackers and commit
    the returned tracker only when the whole evaluation succeeded.
    """

    def apply(
        self,
        tracker: IncidentTracker,
        series: SeriesConfig,
        score: AnomalyScore,
    ) -> Tuple[IncidentTracker, List[NotificationEvent]]:
        """
        Advance the tracker by one score.

        Args:
            tracker: Tracker before the score.
            series: Series definition supplying hysteresis and severity bands.
            score: Score of the next sample.

        Returns:
            Tuple of (new tracker, events emitted by this step).
        """
        tracker, events, _ = self._step(tracker, series, score)
        return tracker, events

    def apply_all(
        self,
        tracker: IncidentTracker,
        series: SeriesConfig,
        scores: List[AnomalyScore],
    ) -> IncidentUpdate:
        """
        Advance the tracker through a batch of scores in order.

        Args:
            tracker: Tracker before the batch.
            series: Series definition.
            scores: Scores in timestamp order.

        Returns:
            IncidentUpdate: Final tracker, events, and resolved incidents.
        """
        events: List[NotificationEvent] = []
        resolved: List[Incident] = []
        for score in scores:
            tracker, step_events, closed = self._step(tracker, series, score)
            events.extend(step_events)
            if closed is not None:
                resolved.append(closed)
        return IncidentUpdate(tracker=tracker, events=events, resolved=resolved)

    def _step(
        self, tracker: IncidentTracker, series: SeriesConfig, score: AnomalyScore
    ) -> Step:
        state = tracker.state
        if state == IncidentState.IDLE:
            return self._from_idle(tracker, series, score)
        elif state == IncidentState.PENDING:
            return self._from_pending(tracker, series, score)
        elif state == IncidentState.FIRING:
            return self._from_firing(tracker, series, score)
        return self._from_resolving(tracker, series, score)

    # -------------------------------------------------------------------------
    # Transitions
    # -------------------------------------------------------------------------

    def _from_idle(
        self, tracker: IncidentTracker, series: SeriesConfig, score: AnomalyScore
    ) -> Step:
        if not score.is_breach:
            return tracker, [], None

        pending = IncidentTracker(
            state=IncidentState.PENDING,
            breach_streak=1,
            pending_since=score.timestamp,
            pending_peak_deviation=score.deviation,
            pending_peak_value=score.value,
        )
        logger.debug(
            "incident_pending",
            series_key=series.key,
            deviation=round(score.deviation, 4),
        )
        if pending.breach_streak >= series.hysteresis.open_threshold:
            return self._open(pending, series, score)
        return pending, [], None

    def _from_pending(
        self, tracker: IncidentTracker, series: SeriesConfig, score: AnomalyScore
    ) -> Step:
        if not score.is_breach:
            logger.debug(
                "incident_pending_cleared",
                series_key=series.key,
                breach_streak=tracker.breach_streak,
            )
            return IncidentTracker(), [], None

        update = {"breach_streak": tracker.breach_streak + 1}
        if _is_new_peak(score.deviation, tracker.pending_peak_deviation):
            update["pending_peak_deviation"] = score.deviation
            update["pending_peak_value"] = score.value
        pending = tracker.model_copy(update=update)

        if pending.breach_streak >= series.hysteresis.open_threshold:
            return self._open(pending, series, score)
        return pending, [], None

    def _from_firing(
        self, tracker: IncidentTracker, series: SeriesConfig, score: AnomalyScore
    ) -> Step:
        if score.is_breach:
            return self._continue_breach(tracker, series, score)

        incident = tracker.incident.model_copy(
            update={"state": IncidentState.RESOLVING, "normal_streak": 1}
        )
        resolving = tracker.model_copy(
            update={
                "state": IncidentState.RESOLVING,
                "normal_streak": 1,
                "incident": incident,
            }
        )
        if resolving.normal_streak >= series.hysteresis.close_threshold:
            return self._resolve(resolving, series, score)
        return resolving, [], None

    def _from_resolving(
        self, tracker: IncidentTracker, series: SeriesConfig, score: AnomalyScore
    ) -> Step:
        if score.is_breach:
            return self._continue_breach(tracker, series, score)

        normal_streak = tracker.normal_streak + 1
        incident = tracker.incident.model_copy(update={"normal_streak": normal_streak})
        resolving = tracker.model_copy(
            update={"normal_streak": normal_streak, "incident": incident}
        )
        if normal_streak >= series.hysteresis.close_threshold:
            return self._resolve(resolving, series, score)
        return resolving, [], None

    # -------------------------------------------------------------------------
    # Effects
    # -------------------------------------------------------------------------

    def _open(
        self, tracker: IncidentTracker, series: SeriesConfig, score: AnomalyScore
    ) -> Step:
        severity = Severity.from_deviation(
            tracker.pending_peak_deviation, series.detector.critical_deviation
        )
        incident = Incident(
            series_key=series.key,
            dedup_key=series.dedup_key,
            state=IncidentState.FIRING,
            opened_at=score.timestamp,
            last_seen_at=score.timestamp,
            breach_streak=tracker.breach_streak,
            peak_deviation=tracker.pending_peak_deviation,
            peak_value=tracker.pending_peak_value,
            severity=severity,
        )
        firing = IncidentTracker(
            state=IncidentState.FIRING,
            breach_streak=tracker.breach_streak,
            incident=incident,
        )

        logger.info(
            "incident_opened",
            series_key=series.key,
            incident_id=incident.incident_id,
            severity=severity.value,
            peak_deviation=round(incident.peak_deviation, 4),
            breach_streak=incident.breach_streak,
        )
        return firing, [self._event(TransitionKind.OPENED, incident, series, score)], None

    def _continue_breach(
        self, tracker: IncidentTracker, series: SeriesConfig, score: AnomalyScore
    ) -> Step:
        incident = tracker.incident
        breach_streak = tracker.breach_streak + 1

        update = {
            "state": IncidentState.FIRING,
            "last_seen_at": score.timestamp,
            "breach_streak": breach_streak,
            "normal_streak": 0,
        }
        if _is_new_peak(score.deviation, incident.peak_deviation):
            update["peak_deviation"] = score.deviation
            update["peak_value"] = score.value

        peak = update.get("peak_deviation", incident.peak_deviation)
        severity = Severity.from_deviation(peak, series.detector.critical_deviation)
        escalated = severity.rank > incident.severity.rank
        if escalated:
            update["severity"] = severity

        incident = incident.model_copy(update=update)
        firing = tracker.model_copy(
            update={
                "state": IncidentState.FIRING,
                "breach_streak": breach_streak,
                "normal_streak": 0,
                "incident": incident,
            }
        )

        if not escalated:
            return firing, [], None

        logger.info(
            "incident_escalated",
            series_key=series.key,
            incident_id=incident.incident_id,
            severity=incident.severity.value,
            peak_deviation=round(incident.peak_deviation, 4),
        )
        return firing, [self._event(TransitionKind.ESCALATED, incident, series, score)], None

    def _resolve(
        self, tracker: IncidentTracker, series: SeriesConfig, score: AnomalyScore
    ) -> Step:
        incident = tracker.incident.model_copy(
            update={
                "state": IncidentState.IDLE,
                "normal_streak": tracker.normal_streak,
                "resolved_at": score.timestamp,
            }
        )

        logger.info(
            "incident_resolved",
            series_key=series.key,
            incident_id=incident.incident_id,
            severity=incident.severity.value,
            duration_seconds=incident.duration_seconds,
        )
        event = self._event(TransitionKind.RESOLVED, incident, series, score)
        return IncidentTracker(), [event], incident

    def _event(
        self,
        kind: TransitionKind,
        incident: Incident,
        series: SeriesConfig,
        score: AnomalyScore,
    ) -> NotificationEvent:
        message = (
            f"{series.display_name}: {kind.value} {incident.severity.value} incident, "
            f"value {score.value:.6g} vs expected {score.expected:.6g} "
            f"(peak deviation {incident.peak_deviation:+.2f})"
        )
        return NotificationEvent(
            kind=kind,
            series_key=series.key,
            series_name=series.display_name,
            labels=dict(series.id.labels),
            incident_id=incident.incident_id,
            dedup_key=incident.dedup_key,
            timestamp=score.timestamp,
            severity=incident.severity,
            peak_deviation=incident.peak_deviation,
            value=score.value,
            expected=score.expected,
            message=message,
            channels=series.channels,
        )

    # -------------------------------------------------------------------------
    # Archive
    # -------------------------------------------------------------------------

    def archive(self, incident: Incident, now: datetime) -> Incident:
        """
        Produce the immutable archived copy of a resolved incident.

        Args:
            incident: A resolved incident.
            now: Archive time.

        Returns:
            Incident: Copy with archived_at set.

        Raises:
            ValueError: If the incident is still open.
        """
        if incident.is_open:
            raise ValueError(f"incident {incident.incident_id} is still open")
        return incident.model_copy(update={"archived_at": now})
