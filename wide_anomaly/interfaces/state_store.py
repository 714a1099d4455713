"""
Abstract base class for engine state stores.

The scheduler persists the committed SeriesState of every series after each
unit and archives resolved incidents, so a restarted engine resumes with
warm baselines and open incidents instead of a cold start.

Implementations:
    - InMemoryStateStore: process-local, used by default and in tests
    - RedisStateStore: redis.asyncio backed, survives restarts

Example:
    >>> store = InMemoryStateStore()
    >>> await store.connect()
    >>> await store.save_state(state)
    >>> states = await store.load_states()
"""

from abc import ABC, abstractmethod
from datetime import datetime
from typing import Dict, List, Optional

from wide_anomaly.models.incidents import Incident, SeriesState


class StateStore(ABC):
    """
    Abstract interface for series state and incident archive persistence.
    """

    @abstractmethod
    async def connect(self) -> None:
        """Open connections. Called once before any other method."""
        pass

    @abstractmethod
    async def close(self) -> None:
        """
        Release resources.

        Must be safe to call multiple times.
        """
        pass

    @abstractmethod
    async def save_state(self, state: SeriesState) -> None:
        """
        Persist the committed state of one series, replacing any previous one.

        Args:
            state: Committed series state.
        """
        pass

    @abstractmethod
    async def load_states(self) -> Dict[str, SeriesState]:
        """
        Load every persisted series state.

        Returns:
            Dict[str, SeriesState]: States keyed by series key.
        """
        pass

    @abstractmethod
    async def delete_state(self, series_key: str) -> None:
        """
        Remove the persisted state of a series.

        Args:
            series_key: Canonical series key.
        """
        pass

    @abstractmethod
    async def archive_incident(self, incident: Incident) -> None:
        """
        Store an archived (resolved) incident.

        Args:
            incident: Incident with archived_at set.
        """
        pass

    @abstractmethod
    async def list_archive(
        self, series_key: Optional[str] = None, limit: int = 100
    ) -> List[Incident]:
        """
        List archived incidents, newest first.

        Args:
            series_key: Restrict to one series when given.
            limit: Maximum number of incidents returned.

        Returns:
            List[Incident]: Archived incidents.
        """
        pass

    @abstractmethod
    async def prune_archive(self, retention_seconds: int, now: datetime) -> int:
        """
        Drop archived incidents older than the retention period.

        Args:
            retention_seconds: How long archived incidents are kept.
            now: Reference time.

        Returns:
            int: Number of incidents removed.
        """
        pass
