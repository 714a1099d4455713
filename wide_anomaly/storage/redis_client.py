"""
Redis-backed state store.

Persists the committed state of every series and the resolved-incident
archive so a restarted engine resumes with warm baselines and its open
incidents.

Key Patterns:
    - Series state: `{prefix}:states` (hash, field = series key, value = JSON)
    - Archive: `{prefix}:archive` (hash, field = incident id, value = JSON)
    - Archive index: `{prefix}:archive:index` (sorted set scored by archived_at)

Example:
    >>> from wide_anomaly.config.models import RedisConnectionConfig
    >>> store = RedisStateStore(RedisConnectionConfig(url="redis://localhost:6379"))
    >>> await store.connect()
    >>> try:
    ...     await store.save_state(state)
    ... finally:
    ...     await store.close()
"""

from __future__ import annotations

from datetime import datetime, timedelta
from typing import Dict, List, Optional

import structlog
from pydantic import ValidationError
from redis.asyncio import ConnectionPool, Redis
from redis.exceptions import ConnectionError as RedisConnectionError
from redis.exceptions import RedisError, TimeoutError as RedisTimeoutError

from wide_anomaly.config.models import RedisConnectionConfig
from wide_anomaly.interfaces.state_store import StateStore
from wide_anomaly.models.incidents import Incident, SeriesState

logger = structlog.get_logger(__name__)


class RedisClientError(Exception):
    """Base exception for Redis client errors."""

    pass


class RedisConnectionException(RedisClientError):
    """Raised when Redis connection fails."""

    pass


class RedisOperationError(RedisClientError):
    """Raised when a Redis operation fails."""

    pass


class RedisStateStore(StateStore):
    """
    StateStore on redis.asyncio.

    Attributes:
        config: Redis connection configuration.
        key_prefix: Prefix applied to every key.
        _pool: Connection pool for efficient connection reuse.
        _client: Redis client instance.
        _connected: Whether the client is connected.
    """

    def __init__(
        self,
        config: RedisConnectionConfig,
        key_prefix: str = "wide_anomaly",
    ) -> None:
        """
        Initialize the store (does not connect yet).

        Args:
            config: Redis connection configuration.
            key_prefix: Prefix applied to every key.
        """
        self.config = config
        self.key_prefix = key_prefix
        self._pool: Optional[ConnectionPool] = None
        self._client: Optional[Redis] = None  # type: ignore[type-arg]
        self._connected = False

        logger.debug(
            "redis_state_store_initialized",
            url=config.url,
            key_prefix=key_prefix,
        )

    @property
    def is_connected(self) -> bool:
        return self._connected

    @property
    def states_key(self) -> str:
        return f"{self.key_prefix}:states"

    @property
    def archive_key(self) -> str:
        return f"{self.key_prefix}:archive"

    @property
    def archive_index_key(self) -> str:
        return f"{self.key_prefix}:archive:index"

    # =========================================================================
    # CONNECTION
    # =========================================================================

    async def connect(self) -> None:
        """
        Establish the connection pool and verify it with a PING.

        Raises:
            RedisConnectionException: If Redis is unreachable.
        """
        if self._connected:
            return

        try:
            self._pool = ConnectionPool.from_url(
                self.config.url,
                max_connections=self.config.max_connections,
                socket_timeout=self.config.socket_timeout,
                socket_connect_timeout=self.config.socket_timeout,
                decode_responses=True,
            )
            self._client = Redis(connection_pool=self._pool)

            await self._client.ping()
            self._connected = True

            logger.info("redis_connected", url=self.config.url)

        except (RedisConnectionError, RedisTimeoutError, OSError) as e:
            self._connected = False
            logger.error(
                "redis_connection_failed",
                url=self.config.url,
                error=str(e),
            )
            raise RedisConnectionException(
                f"Failed to connect to Redis at {self.config.url}: {e}"
            ) from e

    async def close(self) -> None:
        """
        Close the client and the pool. Safe to call multiple times.
        """
        if self._client is not None:
            try:
                await self._client.aclose()
            except RedisError as e:
                logger.warning("redis_close_error", error=str(e))
            finally:
                self._client = None

        if self._pool is not None:
            try:
                await self._pool.aclose()
            except RedisError as e:
                logger.warning("redis_pool_close_error", error=str(e))
            finally:
                self._pool = None

        if self._connected:
            logger.info("redis_disconnected")
        self._connected = False

    async def ping(self) -> bool:
        """
        Check Redis connection health.

        Returns:
            bool: True if Redis responds to PING, False otherwise.
        """
        if not self._client:
            return False

        try:
            await self._client.ping()
            return True
        except RedisError as e:
            logger.warning("redis_ping_failed", error=str(e))
            return False

    def _require_connection(self) -> Redis:  # type: ignore[type-arg]
        if not self._connected or self._client is None:
            raise RedisConnectionException("Redis client is not connected")
        return self._client

    # =========================================================================
    # SERIES STATE
    # =========================================================================

    async def save_state(self, state: SeriesState) -> None:
        """
        Store the committed state of a series.

        Raises:
            RedisConnectionException: If not connected.
            RedisOperationError: If the write fails.
        """
        client = self._require_connection()

        try:
            await client.hset(self.states_key, state.series_key, state.model_dump_json())
        except RedisError as e:
            logger.error(
                "state_store_failed",
                series_key=state.series_key,
                error=str(e),
            )
            raise RedisOperationError(
                f"Failed to store state of {state.series_key}: {e}"
            ) from e

    async def load_states(self) -> Dict[str, SeriesState]:
        """
        Load every persisted series state.

        Entries that no longer validate are skipped and logged.

        Raises:
            RedisConnectionException: If not connected.
            RedisOperationError: If the read fails.
        """
        client = self._require_connection()

        try:
            raw = await client.hgetall(self.states_key)
        except RedisError as e:
            logger.error("state_load_failed", error=str(e))
            raise RedisOperationError(f"Failed to load series states: {e}") from e

        states: Dict[str, SeriesState] = {}
        for series_key, data in raw.items():
            try:
                states[series_key] = SeriesState.model_validate_json(data)
            except ValidationError as e:
                logger.warning(
                    "state_entry_invalid",
                    series_key=series_key,
                    error=str(e),
                )

        logger.info("states_loaded", count=len(states))
        return states

    async def delete_state(self, series_key: str) -> None:
        client = self._require_connection()

        try:
            await client.hdel(self.states_key, series_key)
        except RedisError as e:
            raise RedisOperationError(
                f"Failed to delete state of {series_key}: {e}"
            ) from e

    # =========================================================================
    # INCIDENT ARCHIVE
    # =========================================================================

    async def archive_incident(self, incident: Incident) -> None:
        """
        Store an archived incident and index it by archive time.

        Raises:
            ValueError: If the incident has no archived_at.
            RedisConnectionException: If not connected.
            RedisOperationError: If the write fails.
        """
        if incident.archived_at is None:
            raise ValueError(f"incident {incident.incident_id} has not been archived")

        client = self._require_connection()

        try:
            async with client.pipeline(transaction=True) as pipe:
                pipe.hset(self.archive_key, incident.incident_id, incident.model_dump_json())
                pipe.zadd(
                    self.archive_index_key,
                    {incident.incident_id: incident.archived_at.timestamp()},
                )
                await pipe.execute()

            logger.debug(
                "incident_archived",
                incident_id=incident.incident_id,
                series_key=incident.series_key,
            )

        except RedisError as e:
            logger.error(
                "incident_archive_failed",
                incident_id=incident.incident_id,
                error=str(e),
            )
            raise RedisOperationError(
                f"Failed to archive incident {incident.incident_id}: {e}"
            ) from e

    async def list_archive(
        self, series_key: Optional[str] = None, limit: int = 100
    ) -> List[Incident]:
        """
        List archived incidents, newest first.

        Raises:
            RedisConnectionException: If not connected.
            RedisOperationError: If the read fails.
        """
        client = self._require_connection()

        try:
            incident_ids = await client.zrevrange(self.archive_index_key, 0, -1)
            if not incident_ids:
                return []
            payloads = await client.hmget(self.archive_key, incident_ids)
        except RedisError as e:
            logger.error("incident_archive_read_failed", error=str(e))
            raise RedisOperationError(f"Failed to read incident archive: {e}") from e

        incidents: List[Incident] = []
        for data in payloads:
            if data is None:
                continue
            incident = Incident.model_validate_json(data)
            if series_key is not None and incident.series_key != series_key:
                continue
            incidents.append(incident)
            if len(incidents) >= limit:
                break
        return incidents

    async def prune_archive(self, retention_seconds: int, now: datetime) -> int:
        """
        Drop archived incidents older than the retention period.

        Raises:
            RedisConnectionException: If not connected.
            RedisOperationError: If the operation fails.
        """
        client = self._require_connection()
        cutoff = (now - timedelta(seconds=retention_seconds)).timestamp()

        try:
            expired = await client.zrangebyscore(
                self.archive_index_key, "-inf", f"({cutoff}"
            )
            if not expired:
                return 0

            async with client.pipeline(transaction=True) as pipe:
                pipe.zrem(self.archive_index_key, *expired)
                pipe.hdel(self.archive_key, *expired)
                await pipe.execute()

        except RedisError as e:
            logger.error("incident_archive_prune_failed", error=str(e))
            raise RedisOperationError(f"Failed to prune incident archive: {e}") from e

        logger.info("incident_archive_pruned", removed=len(expired))
        return len(expired)
