"""
Series registry.

Holds the set of series the engine evaluates as an immutable snapshot.
A reload builds a complete new snapshot and swaps it in with a single
reference assignment, so evaluation units that already started keep the
snapshot they were handed.

Validation is per entry: one bad entry becomes a RejectedSeries record and
the rest of the snapshot stays usable. A source that cannot be read, or that
yields no valid series at all, raises ConfigError and leaves the previous
snapshot in place.

Example:
    >>> registry = SeriesRegistry(defaults=SeriesDefaults())
    >>> snapshot = registry.reload("config/series.yaml")
    >>> [s.key for s in registry.list()]
    ['http_requests_total{service="api"}', 'checkout_latency_p95']
"""

from datetime import datetime, timezone
from pathlib import Path
from typing import Any, Dict, List, Optional, Tuple

import structlog
from pydantic import BaseModel, Field, ValidationError

from wide_anomaly.config.loader import ConfigError, load_series_entries
from wide_anomaly.config.models import SeriesDefaults, SeriesEntry
from wide_anomaly.models.series import SeriesConfig

logger = structlog.get_logger(__name__)


class RejectedSeries(BaseModel):
    """
    A series entry that failed validation.

    Attributes:
        index: Position of the entry in the source.
        series_key: Key of the entry, when it could be determined.
        message: ConfigError message.
    """

    model_config = {"frozen": True, "extra": "forbid"}

    index: int = Field(..., ge=0)
    series_key: Optional[str] = None
    message: str


class RegistrySnapshot(BaseModel):
    """
    Immutable view of the registry at one point in time.

    Attributes:
        version: Monotonic snapshot version (0 before the first load).
        loaded_at: When the snapshot was built.
        source: Where the entries came from, if a file.
        series: Valid, enabled series in source order.
        rejected: Entries that failed validation.
    """

    model_config = {"frozen": True, "extra": "forbid"}

    version: int = Field(default=0, ge=0)
    loaded_at: Optional[datetime] = None
    source: Optional[str] = None
    series: Tuple[SeriesConfig, ...] = ()
    rejected: Tuple[RejectedSeries, ...] = ()

    @property
    def is_loaded(self) -> bool:
        return self.version > 0

    def get(self, series_key: str) -> Optional[SeriesConfig]:
        """
        Look up a series by key.

        Args:
            series_key: Canonical series key.

        Returns:
            Optional[SeriesConfig]: The series, or None if absent.
        """
        for series in self.series:
            if series.key == series_key:
                return series
        return None

    @property
    def keys(self) -> List[str]:
        return [series.key for series in self.series]


class SeriesRegistry:
    """
    Owner of the current RegistrySnapshot.

    Attributes:
        defaults: Global defaults merged under every entry.
        source: Default source used by reload() without arguments.
    """

    def __init__(self, defaults: Optional[SeriesDefaults] = None, source: Any = None):
        self.defaults = defaults or SeriesDefaults()
        self.source = source
        self._snapshot = RegistrySnapshot()

    def snapshot(self) -> RegistrySnapshot:
        """Return the current snapshot."""
        return self._snapshot

    def list(self) -> Tuple[SeriesConfig, ...]:
        """Return the current series in source order."""
        return self._snapshot.series

    def get(self, series_key: str) -> Optional[SeriesConfig]:
        return self._snapshot.get(series_key)

    def build(self, entries: List[Any]) -> Tuple[List[SeriesConfig], List[RejectedSeries]]:
        """
        Validate raw entries individually.

        Args:
            entries: Raw entry mappings in source order.

        Returns:
            Tuple of (valid enabled series, rejected entries).
        """
        series: List[SeriesConfig] = []
        rejected: List[RejectedSeries] = []
        seen: Dict[str, int] = {}

        for index, raw in enumerate(entries):
            key: Optional[str] = None
            try:
                if not isinstance(raw, dict):
                    raise ConfigError(
                        f"series entry must be a mapping, got {type(raw).__name__}"
                    )
                entry = SeriesEntry(**raw)
                key = entry.series_key
                if key in seen:
                    raise ConfigError(
                        f"duplicate series key {key} (first defined at entry {seen[key]})",
                        series_key=key,
                    )
                seen[key] = index
                config = entry.resolve(self.defaults)
            except (ConfigError, ValidationError, ValueError, TypeError) as e:
                error = e if isinstance(e, ConfigError) else ConfigError(
                    f"invalid series entry: {e}", series_key=key, cause=e
                )
                rejected.append(
                    RejectedSeries(index=index, series_key=key, message=error.message)
                )
                logger.warning(
                    "series_rejected",
                    index=index,
                    series_key=key,
                    error=error.message,
                )
                continue

            if not config.enabled:
                logger.debug("series_disabled", series_key=config.key)
                continue
            series.append(config)

        return series, rejected

    def reload(self, source: Any = None) -> RegistrySnapshot:
        """
        Load a new snapshot and swap it in.

        Args:
            source: YAML path, mapping with a ``series`` list, or a sequence
                of raw entries. Defaults to the source given at construction.

        Returns:
            RegistrySnapshot: The new snapshot.

        Raises:
            ConfigError: If the source is unreadable or yields no valid
                series. The previous snapshot stays in place.
        """
        if source is None:
            source = self.source
        if source is None:
            raise ConfigError("no series source configured")

        file_path = Path(source) if isinstance(source, (str, Path)) else None
        entries = load_series_entries(source)
        series, rejected = self.build(entries)

        if not series:
            logger.error(
                "registry_reload_rejected",
                source=str(file_path) if file_path else None,
                entries=len(entries),
                rejected=len(rejected),
            )
            raise ConfigError(
                f"no valid series in source ({len(entries)} entries, "
                f"{len(rejected)} rejected)",
                file_path=file_path,
            )

        snapshot = RegistrySnapshot(
            version=self._snapshot.version + 1,
            loaded_at=datetime.now(timezone.utc),
            source=str(file_path) if file_path else None,
            series=tuple(series),
            rejected=tuple(rejected),
        )
        self._snapshot = snapshot

        logger.info(
            "registry_loaded",
            version=snapshot.version,
            series_count=len(snapshot.series),
            rejected_count=len(snapshot.rejected),
        )
        return snapshot
