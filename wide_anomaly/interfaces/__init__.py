"""
Abstract interfaces for the anomaly engine.

Modules:
    query_source: QuerySource ABC for time series query backends
    state_store: StateStore ABC for series state and incident archive
"""

from wide_anomaly.interfaces.query_source import QuerySource
from wide_anomaly.interfaces.state_store import StateStore

__all__: list[str] = [
    "QuerySource",
    "StateStore",
]
