"""
Query service adapter.

Fetches series samples from the wide-event query service and maps every
failure onto the fetch error taxonomy:

    FetchError
    ├── FetchTimeout       (transient, retried)
    ├── FetchUnavailable   (transient, retried)
    └── BadData            (permanent)

Modules:
    rest: aiohttp client, expression building, response normalization
    fetcher: Per-series deadline and retry wrapper
"""

from wide_anomaly.adapters.query.fetcher import SeriesFetcher
from wide_anomaly.adapters.query.rest import (
    BadData,
    FetchError,
    FetchTimeout,
    FetchUnavailable,
    QueryClient,
    build_expression,
    parse_response,
    validate_samples,
)

__all__: list[str] = [
    "SeriesFetcher",
    "QueryClient",
    "FetchError",
    "FetchTimeout",
    "FetchUnavailable",
    "BadData",
    "build_expression",
    "parse_response",
    "validate_samples",
]
