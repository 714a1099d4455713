"""Test the baseline detector: cold start, scoring, updates and ordering."""

import math
import random
from datetime import timedelta

import pytest

from wide_anomaly.metrics.baseline import BaselineDetector, ModelError
from wide_anomaly.models.anomaly import BaselineModel, Verdict
from wide_anomaly.models.series import Sample


@pytest.fixture
def detector() -> BaselineDetector:
    return BaselineDetector()


# ===================================================================
# Cold start
# ===================================================================

class TestColdStart:
    """Verdicts are forced normal until min_history samples."""

    def test_warming_up_verdicts_forced_normal(self, detector, series, make_samples):
        samples = make_samples([10, 500, -300, 10_000, 7, 8])

        model, scores = detector.fold(BaselineModel(), samples, series)

        assert [s.warming_up for s in scores] == [True] * 5 + [False]
        assert all(s.verdict == Verdict.NORMAL for s in scores[:5])
        assert model.count == 6

    def test_first_sample_initializes_mean(self, detector, series, make_samples):
        model = detector.update(BaselineModel(), make_samples([42])[0], series)
        assert model.count == 1
        assert model.mean == 42.0
        assert model.variance == 0.0

    def test_is_warm(self):
        assert BaselineModel(count=12).is_warm(12)
        assert not BaselineModel(count=11).is_warm(12)


# ===================================================================
# Scoring
# ===================================================================

class TestScoring:
    """Deviation and verdicts against the model before the sample."""

    def test_update_formula(self, detector, make_series, make_samples):
        series = make_series(min_history=0, alpha=0.2)
        model, _ = detector.fold(BaselineModel(), make_samples([10, 20]), series)

        assert model.mean == pytest.approx(12.0)
        assert model.variance == pytest.approx(16.0)

    def test_score_uses_model_before_update(self, detector, make_series, make_samples):
        series = make_series(min_history=0, alpha=0.2)
        samples = make_samples([10, 20, 30])

        _, scores = detector.fold(BaselineModel(), samples, series)

        third = scores[2]
        assert third.expected == pytest.approx(12.0)
        assert third.std == pytest.approx(4.0)
        assert third.deviation == pytest.approx(4.5)
        assert third.verdict == Verdict.HIGH
        assert not third.warming_up

    def test_sensitivity_is_strict(self, detector, make_series, base_time):
        series = make_series(min_history=0)
        model = BaselineModel(count=20, mean=0.0, variance=1.0)

        at_band = detector.score(model, Sample(timestamp=base_time, value=3.0), series)
        beyond = detector.score(model, Sample(timestamp=base_time, value=3.01), series)
        below = detector.score(model, Sample(timestamp=base_time, value=-3.01), series)

        assert at_band.verdict == Verdict.NORMAL
        assert beyond.verdict == Verdict.HIGH
        assert below.verdict == Verdict.LOW
        assert below.is_breach

    def test_flat_series_uses_min_std(self, detector, make_series, make_samples):
        series = make_series(min_history=3, min_std=0.01)
        model, scores = detector.fold(BaselineModel(), make_samples([5, 5, 5, 5, 5.5]), series)

        assert scores[3].verdict == Verdict.NORMAL
        assert scores[3].std == 0.01
        assert scores[4].deviation == pytest.approx(50.0)
        assert scores[4].verdict == Verdict.HIGH

    def test_deterministic(self, detector, series, make_samples):
        samples = make_samples([3, 4, 5, 4, 3, 9, 2, 4, 4, 30])

        first = detector.fold(BaselineModel(), samples, series)
        second = detector.fold(BaselineModel(), samples, series)

        assert first == second


# ===================================================================
# Seasonality and anomaly exclusion
# ===================================================================

class TestSeasonality:
    """Per-bucket offsets from the global mean."""

    def test_hour_of_day_offsets(self, detector, make_series, base_time):
        series = make_series(min_history=0, alpha=0.1, seasonality="hour_of_day", seasonal_alpha=0.1)
        samples = [
            Sample(timestamp=base_time, value=10.0),
            Sample(timestamp=base_time + timedelta(hours=1), value=20.0),
            Sample(timestamp=base_time + timedelta(hours=25), value=30.0),
        ]

        model, scores = detector.fold(BaselineModel(), samples, series)

        assert model.seasonal_offsets["h00"] == pytest.approx(0.0)
        # First observation sets the offset, the next moves it by seasonal_alpha
        assert model.seasonal_offsets["h01"] == pytest.approx(10.9)
        assert model.seasonal_counts == {"h00": 1, "h01": 2}
        assert scores[2].expected == pytest.approx(11.0 + 10.0)
        assert model.mean == pytest.approx(12.9)

    def test_variance_follows_adjusted_residual(self, detector, make_series, base_time):
        series = make_series(min_history=0, alpha=0.5, seasonality="hour_of_day")
        samples = [
            Sample(timestamp=base_time, value=10.0),
            Sample(timestamp=base_time + timedelta(hours=1), value=20.0),
            Sample(timestamp=base_time + timedelta(hours=25), value=30.0),
        ]

        model, scores = detector.fold(BaselineModel(), samples[:2], series)
        # An unseen bucket seeds its offset without widening the band
        assert model.variance == 0.0
        assert model.seasonal_offsets["h01"] == pytest.approx(10.0)

        model, scores = detector.fold(model, samples[2:], series)
        assert scores[0].expected == pytest.approx(25.0)
        # Residual against 15 + 10, not against the global mean of 15
        assert model.variance == pytest.approx(0.5 * (0.5 * 5.0 ** 2))
        assert model.mean == pytest.approx(22.5)

    def test_daily_cycle_does_not_mask_anomaly(self, detector, make_series, make_samples):
        series = make_series(
            min_history=24,
            alpha=0.05,
            seasonality="hour_of_day",
            seasonal_alpha=0.3,
        )
        rng = random.Random(7)
        values = [
            100 + 50 * math.sin(2 * math.pi * (i % 24) / 24) + rng.uniform(-0.5, 0.5)
            for i in range(28 * 24)
        ]
        samples = make_samples(values, step=3600)

        model, _ = detector.fold(BaselineModel(), samples, series)
        spike = Sample(
            timestamp=samples[-1].timestamp + timedelta(hours=1),
            value=100.0 + 20.0,
        )
        score = detector.score(model, spike, series)

        assert score.expected == pytest.approx(100.0, abs=2.0)
        assert score.std < 2.0
        assert score.deviation > 10.0
        assert score.verdict == Verdict.HIGH

    def test_hour_of_week_bucket(self, make_series, base_time):
        series = make_series(seasonality="hour_of_week")
        # 2024-01-01 is a Monday
        assert series.detector.seasonality.bucket(base_time + timedelta(hours=3)) == "d0h03"

    def test_no_seasonality_has_no_offsets(self, detector, series, make_samples):
        model, _ = detector.fold(BaselineModel(), make_samples([1, 2, 3]), series)
        assert model.seasonal_offsets == {}


class TestExcludeAnomalies:
    """Breaching samples can be kept out of mean and variance."""

    def test_breach_only_advances_count_and_timestamp(self, detector, make_series, make_samples):
        series = make_series(min_history=3, alpha=0.5, exclude_anomalies=True)
        samples = make_samples([10, 10, 10, 1000])

        model, scores = detector.fold(BaselineModel(), samples, series)

        assert scores[3].verdict == Verdict.HIGH
        assert model.count == 4
        assert model.mean == 10.0
        assert model.variance == 0.0
        assert model.last_timestamp == samples[3].timestamp

    def test_breach_included_by_default(self, detector, make_series, make_samples):
        series = make_series(min_history=3, alpha=0.5)
        model, _ = detector.fold(BaselineModel(), make_samples([10, 10, 10, 1000]), series)
        assert model.mean == pytest.approx(505.0)


# ===================================================================
# Ordering
# ===================================================================

class TestOrdering:
    """Out-of-order samples raise ModelError and leave the model untouched."""

    def test_update_rejects_stale_sample(self, detector, series, make_samples):
        samples = make_samples([1, 2])
        model, _ = detector.fold(BaselineModel(), samples, series)

        with pytest.raises(ModelError) as exc_info:
            detector.update(model, samples[1], series)

        assert exc_info.value.series_key == series.key
        assert exc_info.value.last_timestamp == samples[1].timestamp
        assert exc_info.value.kind == "model_error"

    def test_fold_rejects_whole_batch(self, detector, series, make_samples):
        samples = make_samples([1, 2, 3, 4])
        model, _ = detector.fold(BaselineModel(), samples[:2], series)
        before = model.model_copy()

        with pytest.raises(ModelError):
            detector.fold(model, [samples[3], samples[2]], series)

        assert model == before

        # The same model still accepts a valid newer batch
        model, scores = detector.fold(model, samples[2:], series)
        assert model.count == 4
        assert len(scores) == 2

    def test_fold_rejects_sample_not_newer_than_model(self, detector, series, make_samples):
        samples = make_samples([1, 2, 3])
        model, _ = detector.fold(BaselineModel(), samples, series)

        with pytest.raises(ModelError):
            detector.fold(model, [samples[2]], series)

    def test_empty_batch_is_noop(self, detector, series):
        model = BaselineModel(count=3, mean=1.0)
        assert detector.fold(model, [], series) == (model, [])
