"""
State storage for the anomaly engine.

Modules:
    memory: InMemoryStateStore, process-local
    redis_client: RedisStateStore on redis.asyncio

Example:
    >>> store = create_state_store(config.storage, config.redis)
    >>> await store.connect()
"""

from typing import Optional

from wide_anomaly.config.models import (
    RedisConnectionConfig,
    StorageBackend,
    StorageConfig,
)
from wide_anomaly.interfaces.state_store import StateStore
from wide_anomaly.storage.memory import InMemoryStateStore
from wide_anomaly.storage.redis_client import (
    RedisClientError,
    RedisConnectionException,
    RedisOperationError,
    RedisStateStore,
)


def create_state_store(
    config: StorageConfig,
    redis: Optional[RedisConnectionConfig] = None,
) -> StateStore:
    """
    Factory function to create the configured StateStore.

    Args:
        config: Storage configuration.
        redis: Redis connection settings, used by the redis backend.

    Returns:
        StateStore: Unconnected store instance.
    """
    if config.backend == StorageBackend.REDIS:
        return RedisStateStore(redis or RedisConnectionConfig(), key_prefix=config.key_prefix)
    return InMemoryStateStore()


__all__: list[str] = [
    "create_state_store",
    "InMemoryStateStore",
    "RedisStateStore",
    "RedisClientError",
    "RedisConnectionException",
    "RedisOperationError",
]
