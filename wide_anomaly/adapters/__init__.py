"""
External collaborator adapters for the anomaly engine.

Modules:
    query: Client for the wide-event query service
    retry: Retry policy with exponential backoff and jitter
"""

from wide_anomaly.adapters.retry import RetryPolicy, is_transient

__all__: list[str] = [
    "RetryPolicy",
    "is_transient",
]
