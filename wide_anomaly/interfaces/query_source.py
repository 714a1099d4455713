"""
Abstract base class for query sources.

This module defines the QuerySource interface the fetcher depends on. The
production implementation is the aiohttp client for the wide-event query
service; tests substitute in-memory sources.

The interface allows the engine to:
- Swap the query backend without touching scheduling or detection
- Keep the fetcher's retry and deadline logic independent of transport
- Report failures through one error taxonomy (FetchTimeout,
  FetchUnavailable, BadData)

Example:
    >>> class StaticSource(QuerySource):
    ...     async def query_range(self, query, labels, time_range, step_seconds, timeout, series_key=None):
    ...         return [Sample(timestamp=time_range.end, value=1.0)]
    ...
    ...     async def close(self) -> None:
    ...         pass
"""

from abc import ABC, abstractmethod
from typing import Dict, List, Optional

from wide_anomaly.models.series import QueryDefinition, Sample, TimeRange


class QuerySource(ABC):
    """
    Abstract interface for time series query backends.
    """

    @abstractmethod
    async def query_range(
        self,
        query: QueryDefinition,
        labels: Dict[str, str],
        time_range: TimeRange,
        step_seconds: int,
        timeout: float,
        series_key: Optional[str] = None,
    ) -> List[Sample]:
        """
        Fetch the samples of one series over a time range.

        Args:
            query: Query definition of the series.
            labels: Label set identifying the series.
            time_range: Closed interval to fetch.
            step_seconds: Query resolution.
            timeout: Deadline for the call in seconds.
            series_key: Series key attached to raised errors.

        Returns:
            List[Sample]: Samples in strictly increasing timestamp order;
                empty when the range holds no data.

        Raises:
            FetchTimeout: If the deadline elapsed.
            FetchUnavailable: If the backend could not be reached or
                answered with a transient error.
            BadData: If the response was malformed or ambiguous.
        """
        pass

    @abstractmethod
    async def close(self) -> None:
        """
        Release transport resources.

        Must be safe to call multiple times.
        """
        pass
