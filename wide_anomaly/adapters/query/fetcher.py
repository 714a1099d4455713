"""
Series fetcher.

Wraps a QuerySource with the per-call deadline and the retry policy. The
deadline of one call is ``min(fetch_timeout_seconds, interval_seconds *
deadline_ratio)`` so a slow query can never overrun its own series interval.
Transient failures (FetchTimeout, FetchUnavailable) are retried; BadData
propagates on the first attempt. Whatever is still failing once attempts are
exhausted is raised to the caller for that series only.
"""

import asyncio
from typing import List, Optional

import structlog

from wide_anomaly.adapters.query.rest import FetchTimeout, validate_samples
from wide_anomaly.adapters.retry import RetryPolicy
from wide_anomaly.interfaces.query_source import QuerySource
from wide_anomaly.models.series import Sample, SeriesConfig, TimeRange

logger = structlog.get_logger(__name__)


class SeriesFetcher:
    """
    Fetches samples for one series at a time.

    Attributes:
        source: Query backend.
        retry_policy: Policy applied to every fetch.
        fetch_timeout_seconds: Upper bound for a single call.
        deadline_ratio: Fraction of the series interval a call may take.

    Example:
        >>> fetcher = SeriesFetcher(QueryClient("http://localhost:8080"))
        >>> samples = await fetcher.fetch(series, TimeRange(start=start, end=now))
    """

    def __init__(
        self,
        source: QuerySource,
        retry_policy: Optional[RetryPolicy] = None,
        fetch_timeout_seconds: float = 10.0,
        deadline_ratio: float = 0.8,
    ):
        self.source = source
        self.retry_policy = retry_policy or RetryPolicy(name="fetch")
        self.fetch_timeout_seconds = fetch_timeout_seconds
        self.deadline_ratio = deadline_ratio

    def deadline_for(self, series: SeriesConfig) -> float:
        """
        Per-call deadline for a series.

        Args:
            series: Series being fetched.

        Returns:
            float: Seconds one query call may take.
        """
        return min(
            self.fetch_timeout_seconds,
            series.interval_seconds * self.deadline_ratio,
        )

    async def _fetch_once(
        self, series: SeriesConfig, time_range: TimeRange, deadline: float
    ) -> List[Sample]:
        try:
            return await asyncio.wait_for(
                self.source.query_range(
                    series.query,
                    series.id.labels,
                    time_range,
                    series.step_seconds,
                    deadline,
                    series_key=series.key,
                ),
                timeout=deadline,
            )
        except asyncio.TimeoutError as e:
            raise FetchTimeout(
                f"query exceeded deadline of {deadline:.2f}s",
                series_key=series.key,
            ) from e

    async def fetch(self, series: SeriesConfig, time_range: TimeRange) -> List[Sample]:
        """
        Fetch the samples of a series over a time range.

        Args:
            series: Series definition.
            time_range: Closed interval to fetch.

        Returns:
            List[Sample]: Strictly increasing samples, possibly empty.

        Raises:
            FetchTimeout: If every attempt timed out.
            FetchUnavailable: If the service stayed unavailable.
            BadData: If the response was malformed or ambiguous.
        """
        deadline = self.deadline_for(series)
        samples = await self.retry_policy.execute(
            self._fetch_once, series, time_range, deadline
        )
        samples = validate_samples(list(samples), series_key=series.key)

        logger.debug(
            "series_fetched",
            series_key=series.key,
            start=time_range.start.isoformat(),
            end=time_range.end.isoformat(),
            sample_count=len(samples),
        )
        return samples
