"""
In-process state store.

Keeps series state and the incident archive in dictionaries. Nothing
survives a restart; this is the default backend and the one tests use.
"""

from datetime import datetime, timedelta
from typing import Dict, List, Optional

import structlog

from wide_anomaly.interfaces.state_store import StateStore
from wide_anomaly.models.incidents import Incident, SeriesState

logger = structlog.get_logger(__name__)


class InMemoryStateStore(StateStore):
    """
    Dictionary-backed StateStore.

    Example:
        >>> store = InMemoryStateStore()
        >>> await store.save_state(state)
        >>> (await store.load_states())[state.series_key] == state
        True
    """

    def __init__(self) -> None:
        self._states: Dict[str, SeriesState] = {}
        self._archive: Dict[str, Incident] = {}

    async def connect(self) -> None:
        logger.debug("memory_state_store_ready")

    async def close(self) -> None:
        pass

    async def save_state(self, state: SeriesState) -> None:
        self._states[state.series_key] = state

    async def load_states(self) -> Dict[str, SeriesState]:
        return dict(self._states)

    async def delete_state(self, series_key: str) -> None:
        self._states.pop(series_key, None)

    async def archive_incident(self, incident: Incident) -> None:
        if incident.archived_at is None:
            raise ValueError(f"incident {incident.incident_id} has not been archived")
        self._archive[incident.incident_id] = incident

    async def list_archive(
        self, series_key: Optional[str] = None, limit: int = 100
    ) -> List[Incident]:
        incidents = [
            incident
            for incident in self._archive.values()
            if series_key is None or incident.series_key == series_key
        ]
        incidents.sort(key=lambda i: i.archived_at, reverse=True)
        return incidents[:limit]

    async def prune_archive(self, retention_seconds: int, now: datetime) -> int:
        cutoff = now - timedelta(seconds=retention_seconds)
        expired = [
            incident_id
            for incident_id, incident in self._archive.items()
            if incident.archived_at < cutoff
        ]
        for incident_id in expired:
            del self._archive[incident_id]

        if expired:
            logger.info("incident_archive_pruned", removed=len(expired))
        return len(expired)
