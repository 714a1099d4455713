"""
Baseline detector for statistical anomaly detection.

This module scores samples against an incrementally learned baseline: an
exponentially weighted mean and variance plus an optional seasonal offset
table keyed by hour of day or hour of week.

Key Safety Features:
    - Score-then-update: a sample is judged against the baseline as it stood
      before the sample was folded in
    - Cold start: verdicts are forced normal until min_history samples
    - Flat series protection: the denominator is floored at min_std
    - Ordering guard: out-of-order samples raise ModelError and leave the
      model untouched

Formula:
    expected  = mean + offset[bucket]
    deviation = (value - expected) / max(sqrt(variance), min_std)

The variance follows the seasonally adjusted residual ``value - expected``,
so a regular daily or weekly swing does not widen the band.

Classes:
    BaselineDetector: Stateless score/update/fold over BaselineModel
    ModelError: Ordering violation reaching the model
"""

import math
from datetime import datetime
from typing import List, Optional, Tuple

import structlog

from wide_anomaly.models.anomaly import AnomalyScore, BaselineModel, Verdict
from wide_anomaly.models.series import Sample, SeriesConfig

logger = structlog.get_logger(__name__)


class ModelError(Exception):
    """
    Raised when a sample would fold into the baseline out of timestamp order.

    Attributes:
        message: Error message.
        series_key: Series the model belongs to, if known.
        timestamp: Offending sample timestamp.
        last_timestamp: Newest timestamp already folded in.
    """

    kind = "model_error"

    def __init__(
        self,
        message: str,
        series_key: Optional[str] = None,
        timestamp: Optional[datetime] = None,
        last_timestamp: Optional[datetime] = None,
    ):
        self.message = message
        self.series_key = series_key
        self.timestamp = timestamp
        self.last_timestamp = last_timestamp
        super().__init__(message)


class BaselineDetector:
    """
    Stateless detector over per-series baseline models.

    The detector never holds series state: every call takes a model and
    returns a new one, so the owner of the model decides when a result is
    committed.

    Example:
        >>> detector = BaselineDetector()
        >>> model, scores = detector.fold(BaselineModel(), samples, series)
        >>> [s.verdict for s in scores if s.is_breach]
        []
    """

    def score(
        self, model: BaselineModel, sample: Sample, series: SeriesConfig
    ) -> AnomalyScore:
        """
        Score a sample against the model as it stands.

        Args:
            model: Baseline before the sample.
            sample: Sample to score.
            series: Series definition supplying the detector parameters.

        Returns:
            AnomalyScore: Verdict and deviation. During cold start the
                verdict is normal and warming_up is set.
        """
        params = series.detector
        bucket = params.seasonality.bucket(sample.timestamp)
        offset = model.seasonal_offsets.get(bucket, 0.0) if bucket else 0.0

        expected = model.mean + offset
        std = max(math.sqrt(model.variance), params.min_std)
        deviation = (sample.value - expected) / std

        if not model.is_warm(params.min_history):
            return AnomalyScore(
                timestamp=sample.timestamp,
                value=sample.value,
                expected=expected,
                std=std,
                deviation=deviation,
                verdict=Verdict.NORMAL,
                warming_up=True,
            )

        if deviation > params.sensitivity:
            verdict = Verdict.HIGH
        elif deviation < -params.sensitivity:
            verdict = Verdict.LOW
        else:
            verdict = Verdict.NORMAL

        return AnomalyScore(
            timestamp=sample.timestamp,
            value=sample.value,
            expected=expected,
            std=std,
            deviation=deviation,
            verdict=verdict,
        )

    def update(
        self,
        model: BaselineModel,
        sample: Sample,
        series: SeriesConfig,
        score: Optional[AnomalyScore] = None,
    ) -> BaselineModel:
        """
        Fold one sample into the model.

        Args:
            model: Baseline before the sample.
            sample: Sample strictly newer than model.last_timestamp.
            series: Series definition supplying the detector parameters.
            score: Score of this sample, when already computed.

        Returns:
            BaselineModel: A new model including the sample.

        Raises:
            ModelError: If the sample is not strictly newer than the model.
        """
        if not model.accepts(sample.timestamp):
            raise ModelError(
                f"sample at {sample.timestamp.isoformat()} is not newer than "
                f"{model.last_timestamp.isoformat()}",
                series_key=series.key,
                timestamp=sample.timestamp,
                last_timestamp=model.last_timestamp,
            )

        params = series.detector
        if params.exclude_anomalies:
            if score is None:
                score = self.score(model, sample, series)
            if score.is_breach:
                return model.model_copy(
                    update={
                        "count": model.count + 1,
                        "last_timestamp": sample.timestamp,
                    }
                )

        offsets = model.seasonal_offsets
        counts = model.seasonal_counts
        bucket = params.seasonality.bucket(sample.timestamp)

        # First sample initializes the mean
        if model.count == 0:
            mean_before = sample.value
            mean = sample.value
            variance = 0.0
        else:
            alpha = series.alpha
            mean_before = model.mean
            diff = sample.value - model.mean
            mean = model.mean + alpha * diff
            if bucket is not None and bucket not in offsets:
                # An unseen bucket only seeds its offset
                variance = model.variance
            else:
                offset = offsets.get(bucket, 0.0) if bucket else 0.0
                residual = sample.value - (model.mean + offset)
                variance = (1.0 - alpha) * (model.variance + alpha * residual * residual)

        if bucket is not None:
            residual = sample.value - mean_before
            offsets = dict(offsets)
            counts = dict(counts)
            if bucket in offsets:
                previous = offsets[bucket]
                offsets[bucket] = previous + params.seasonal_alpha * (residual - previous)
            else:
                offsets[bucket] = residual
            counts[bucket] = counts.get(bucket, 0) + 1

        return BaselineModel(
            count=model.count + 1,
            mean=mean,
            variance=variance,
            last_timestamp=sample.timestamp,
            seasonal_offsets=offsets,
            seasonal_counts=counts,
        )

    def check_order(
        self, model: BaselineModel, samples: List[Sample], series_key: Optional[str] = None
    ) -> None:
        """
        Validate that a batch may be folded into the model.

        Args:
            model: Baseline the batch would be folded into.
            samples: Batch to check.
            series_key: Series key for error context.

        Raises:
            ModelError: If the batch is not strictly increasing or its first
                sample is not newer than model.last_timestamp.
        """
        last = model.last_timestamp
        for sample in samples:
            if last is not None and sample.timestamp <= last:
                raise ModelError(
                    f"sample at {sample.timestamp.isoformat()} is not newer than "
                    f"{last.isoformat()}",
                    series_key=series_key,
                    timestamp=sample.timestamp,
                    last_timestamp=last,
                )
            last = sample.timestamp

    def fold(
        self, model: BaselineModel, samples: List[Sample], series: SeriesConfig
    ) -> Tuple[BaselineModel, List[AnomalyScore]]:
        """
        Score then update for every sample of a batch, in order.

        The whole batch is validated before anything is computed, so a
        ModelError leaves the caller with the original model.

        Args:
            model: Baseline before the batch.
            samples: Strictly increasing samples newer than the model.
            series: Series definition supplying the detector parameters.

        Returns:
            Tuple of (new model, one score per sample).

        Raises:
            ModelError: If the batch is out of order.
        """
        self.check_order(model, samples, series_key=series.key)

        scores: List[AnomalyScore] = []
        was_warm = model.is_warm(series.detector.min_history)
        for sample in samples:
            score = self.score(model, sample, series)
            model = self.update(model, sample, series, score=score)
            scores.append(score)

        if not was_warm and model.is_warm(series.detector.min_history):
            logger.info(
                "baseline_warmed_up",
                series_key=series.key,
                sample_count=model.count,
                mean=round(model.mean, 6),
                std=round(math.sqrt(model.variance), 6),
            )

        return model, scores
