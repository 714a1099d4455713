"""
Query service REST client.

Fetches series samples from the wide-event query service through its
Prometheus-compatible range endpoint.

Endpoint:
    GET {base_url}/prom/api/v1/query_range?query=...&start=...&end=...&step=...

Response Format:
    {
        "status": "success",
        "data": {
            "resultType": "matrix",
            "result": [
                {"metric": {"service": "api"}, "values": [[1700000000, "12.5"], ...]}
            ]
        }
    }

Error mapping:
    - Timeout: FetchTimeout
    - Connection errors, 429, 5xx: FetchUnavailable
    - Other 4xx, malformed or ambiguous payloads: BadData
"""

import asyncio
import math
from datetime import datetime, timezone
from typing import Any, Dict, List, Optional

import aiohttp
import structlog

from wide_anomaly.interfaces.query_source import QuerySource
from wide_anomaly.models.series import (
    COUNTER_SUFFIXES,
    QueryDefinition,
    Sample,
    TimeRange,
)

logger = structlog.get_logger(__name__)

QUERY_RANGE_PATH = "/prom/api/v1/query_range"
RATE_WINDOW = "5m"


class FetchError(Exception):
    """
    Base class for query failures.

    Attributes:
        message: Error message.
        series_key: Series the failing query belonged to, if known.
        kind: Short failure kind used in logs and health.
        retryable: Whether the failure is transient.
    """

    kind = "fetch_error"
    retryable = False

    def __init__(self, message: str, series_key: Optional[str] = None):
        self.message = message
        self.series_key = series_key
        super().__init__(message)


class FetchTimeout(FetchError):
    """Raised when the query did not answer within the deadline."""

    kind = "timeout"
    retryable = True


class FetchUnavailable(FetchError):
    """Raised when the query service is unreachable or overloaded."""

    kind = "unavailable"
    retryable = True


class BadData(FetchError):
    """Raised when the response is malformed, out of order, or ambiguous."""

    kind = "bad_data"
    retryable = False


def format_labels(labels: Dict[str, str]) -> str:
    """Render a label set as a PromQL selector body, sorted by name."""
    return ",".join(f'{k}="{v}"' for k, v in sorted(labels.items()))


def build_expression(query: QueryDefinition, labels: Dict[str, str]) -> str:
    """
    Build the expression sent to the query service.

    ``expr`` is passed through verbatim. Otherwise counters become a summed
    rate and gauges a plain sum over the pattern narrowed by the labels.

    Args:
        query: Query definition.
        labels: Series label set.

    Returns:
        str: Expression text.

    Example:
        >>> build_expression(QueryDefinition(pattern="http_requests_total"), {"service": "api"})
        'sum(rate(http_requests_total{service="api"}[5m]))'
    """
    if query.expr:
        return query.expr

    selector = query.pattern
    if labels:
        selector = f"{selector}{{{format_labels(labels)}}}"

    if query.pattern.endswith(COUNTER_SUFFIXES):
        return f"sum(rate({selector}[{RATE_WINDOW}]))"
    return f"sum({selector})"


def validate_samples(samples: List[Sample], series_key: Optional[str] = None) -> List[Sample]:
    """
    Check that a batch is strictly increasing in timestamp.

    Args:
        samples: Batch to check.
        series_key: Series the batch belongs to, for error context.

    Returns:
        List[Sample]: The same batch.

    Raises:
        BadData: If any timestamp is not strictly greater than its predecessor.
    """
    for previous, current in zip(samples, samples[1:]):
        if current.timestamp <= previous.timestamp:
            raise BadData(
                f"timestamps not strictly increasing: {current.timestamp.isoformat()} "
                f"follows {previous.timestamp.isoformat()}",
                series_key=series_key,
            )
    return samples


def _select_result(
    results: List[Dict[str, Any]], labels: Dict[str, str], series_key: Optional[str]
) -> Optional[Dict[str, Any]]:
    """Pick the single result series belonging to the configured labels."""
    if not results:
        return None
    if len(results) == 1:
        return results[0]

    matching = [
        result
        for result in results
        if all(
            (result.get("metric") or {}).get(name) == value
            for name, value in labels.items()
        )
    ]
    if len(matching) != 1:
        raise BadData(
            f"expected one result series, got {len(results)} "
            f"({len(matching)} matching the configured labels)",
            series_key=series_key,
        )
    return matching[0]


def parse_response(
    payload: Any, labels: Dict[str, str], series_key: Optional[str] = None
) -> List[Sample]:
    """
    Normalize a query_range payload into validated samples.

    Non-finite values are dropped as absent points.

    Args:
        payload: Decoded JSON body.
        labels: Series label set used to disambiguate results.
        series_key: Series key for error context.

    Returns:
        List[Sample]: Strictly increasing samples, possibly empty.

    Raises:
        BadData: If the payload does not have the expected shape.
    """
    if not isinstance(payload, dict):
        raise BadData("response body is not a JSON object", series_key=series_key)

    status = payload.get("status")
    if status != "success":
        error = payload.get("error", "no error message")
        raise BadData(f"query status {status!r}: {error}", series_key=series_key)

    data = payload.get("data")
    if not isinstance(data, dict) or not isinstance(data.get("result"), list):
        raise BadData("response is missing data.result", series_key=series_key)

    result = _select_result(data["result"], labels, series_key)
    if result is None:
        return []

    values = result.get("values")
    if not isinstance(values, list):
        raise BadData("result series is missing values", series_key=series_key)

    samples: List[Sample] = []
    dropped = 0
    for point in values:
        try:
            raw_ts, raw_value = point
            value = float(raw_value)
            timestamp = datetime.fromtimestamp(float(raw_ts), tz=timezone.utc)
        except (TypeError, ValueError, OverflowError, OSError) as e:
            raise BadData(f"unparseable point {point!r}: {e}", series_key=series_key) from e

        if not math.isfinite(value):
            dropped += 1
            continue
        samples.append(Sample(timestamp=timestamp, value=value))

    if dropped:
        logger.debug("non_finite_points_dropped", series_key=series_key, count=dropped)

    return validate_samples(samples, series_key=series_key)


class QueryClient(QuerySource):
    """
    Async REST client for the wide-event query service.

    Attributes:
        base_url: Query service base URL.
        timeout_seconds: Default request timeout.

    Example:
        >>> client = QueryClient(base_url="http://localhost:8080")
        >>> samples = await client.query_range(query, {"service": "api"}, rng, 15, 5.0)
        >>> await client.close()
    """

    def __init__(self, base_url: str, timeout_seconds: float = 10.0):
        """
        Initialize the client.

        Args:
            base_url: Query service base URL.
            timeout_seconds: Default session timeout in seconds.
        """
        self.base_url = base_url.rstrip("/")
        self.timeout_seconds = timeout_seconds
        self._session: Optional[aiohttp.ClientSession] = None

        logger.info("query_client_initialized", base_url=self.base_url)

    async def _ensure_session(self) -> aiohttp.ClientSession:
        """Ensure aiohttp session is created."""
        if self._session is None or self._session.closed:
            timeout = aiohttp.ClientTimeout(total=self.timeout_seconds)
            self._session = aiohttp.ClientSession(
                timeout=timeout,
                headers={"User-Agent": "wide-anomaly-engine/0.1"},
            )
        return self._session

    async def close(self) -> None:
        """Close the HTTP session."""
        if self._session and not self._session.closed:
            await self._session.close()
            logger.debug("query_client_session_closed", base_url=self.base_url)

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
        Fetch one series over a time range.

        Args:
            query: Query definition.
            labels: Series label set.
            time_range: Closed interval to fetch.
            step_seconds: Query resolution.
            timeout: Deadline for this call in seconds.
            series_key: Series key for error context.

        Returns:
            List[Sample]: Strictly increasing samples, possibly empty.

        Raises:
            FetchTimeout: If the deadline elapsed.
            FetchUnavailable: On connection errors, 429 or 5xx.
            BadData: On other 4xx or malformed payloads.
        """
        session = await self._ensure_session()
        url = f"{self.base_url}{QUERY_RANGE_PATH}"
        params = {
            "query": build_expression(query, labels),
            "start": f"{time_range.start.timestamp():.3f}",
            "end": f"{time_range.end.timestamp():.3f}",
            "step": str(step_seconds),
        }

        try:
            async with session.get(
                url, params=params, timeout=aiohttp.ClientTimeout(total=timeout)
            ) as response:
                if response.status == 429 or response.status >= 500:
                    error_text = await response.text()
                    raise FetchUnavailable(
                        f"query service returned {response.status}: {error_text[:200]}",
                        series_key=series_key,
                    )

                if response.status >= 400:
                    error_text = await response.text()
                    raise BadData(
                        f"query rejected with {response.status}: {error_text[:200]}",
                        series_key=series_key,
                    )

                try:
                    payload = await response.json(content_type=None)
                except ValueError as e:
                    raise BadData(
                        f"response is not valid JSON: {e}", series_key=series_key
                    ) from e

        except asyncio.TimeoutError as e:
            raise FetchTimeout(
                f"query timed out after {timeout}s", series_key=series_key
            ) from e
        except aiohttp.ClientError as e:
            raise FetchUnavailable(
                f"query request failed: {e}", series_key=series_key
            ) from e

        return parse_response(payload, labels, series_key=series_key)

    def __repr__(self) -> str:
        return f"QueryClient(base_url={self.base_url!r})"
