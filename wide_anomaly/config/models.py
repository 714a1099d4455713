"""
Pydantic models for engine configuration.

This module defines all configuration models that are validated when loading
YAML configuration files. The models ensure type safety and provide sensible
defaults, so a missing engine.yaml still yields a usable configuration.

Configuration files:
    - config/engine.yaml: Engine, retry, defaults, channels, storage, API, logging
    - config/series.yaml: The series list consumed by the registry

Example:
    >>> from wide_anomaly.config.models import AppConfig
    >>> config = AppConfig()
    >>> config.engine.max_workers
    8
"""

from enum import Enum
from typing import Any, Dict, List, Optional

from pydantic import BaseModel, Field, model_validator

from wide_anomaly.models.incidents import Severity
from wide_anomaly.models.series import (
    DetectorParams,
    HysteresisParams,
    QueryDefinition,
    SeriesConfig,
    SeriesId,
)


# =============================================================================
# ENUMS
# =============================================================================


class LogFormat(str, Enum):
    """Logging format options."""

    JSON = "json"
    TEXT = "text"


class LogLevel(str, Enum):
    """Logging level options."""

    DEBUG = "DEBUG"
    INFO = "INFO"
    WARNING = "WARNING"
    ERROR = "ERROR"


class StorageBackend(str, Enum):
    """Engine state storage backends."""

    MEMORY = "memory"
    REDIS = "redis"


# =============================================================================
# ENGINE CONFIGURATION
# =============================================================================


class EngineSettings(BaseModel):
    """Scheduler and fetch deadline settings."""

    model_config = {"frozen": True, "extra": "forbid"}

    tick_seconds: Optional[float] = Field(
        default=None,
        description="Scheduler tick period; GCD of the series intervals when unset",
        gt=0,
    )
    max_workers: int = Field(
        default=8,
        description="Maximum concurrently running evaluation units",
        ge=1,
    )
    shutdown_grace_seconds: float = Field(
        default=10.0,
        description="Time in-flight units get to finish at shutdown",
        ge=0,
    )
    fetch_timeout_seconds: float = Field(
        default=10.0,
        description="Upper bound for a single query call",
        gt=0,
    )
    deadline_ratio: float = Field(
        default=0.8,
        description="Fraction of the series interval a query call may take",
        gt=0,
        le=1,
    )


class RetrySettings(BaseModel):
    """Retry policy settings shared by the fetcher and the dispatcher."""

    model_config = {"frozen": True, "extra": "forbid"}

    max_attempts: int = Field(
        default=3,
        description="Total attempts including the first",
        ge=1,
    )
    base_delay_seconds: float = Field(
        default=0.5,
        description="Delay before the first retry",
        ge=0,
    )
    max_delay_seconds: float = Field(
        default=5.0,
        description="Cap on the backoff delay",
        ge=0,
    )
    exponential_base: float = Field(
        default=2.0,
        description="Backoff multiplier per attempt",
        ge=1,
    )
    jitter: bool = Field(
        default=True,
        description="Randomize delays by a factor in [0.5, 1.5)",
    )


class SeriesDefaults(BaseModel):
    """
    Global defaults merged under every series entry.

    Attributes:
        interval_seconds: Evaluation interval; entries must set it when None.
        window_seconds: Length of the fetched window.
        detector: Detector parameter defaults.
        hysteresis: Hysteresis parameter defaults.
    """

    model_config = {"frozen": True, "extra": "forbid"}

    interval_seconds: Optional[int] = Field(
        default=60,
        description="Evaluation interval in seconds",
        gt=0,
    )
    window_seconds: int = Field(
        default=3600,
        description="Fetched window in seconds",
        gt=0,
    )
    detector: DetectorParams = Field(
        default_factory=DetectorParams,
        description="Detector parameter defaults",
    )
    hysteresis: HysteresisParams = Field(
        default_factory=HysteresisParams,
        description="Hysteresis parameter defaults",
    )


class IncidentSettings(BaseModel):
    """Incident archive settings."""

    model_config = {"frozen": True, "extra": "forbid"}

    retention_seconds: int = Field(
        default=7 * 24 * 3600,
        description="How long resolved incidents stay queryable",
        ge=0,
    )


# =============================================================================
# SERIES ENTRIES
# =============================================================================


class SeriesEntry(BaseModel):
    """
    One raw entry of series.yaml, before defaults are applied.

    Detector and hysteresis blocks are partial: only the keys given override
    the defaults.

    Example:
        >>> entry = SeriesEntry(metric="http_requests_total", pattern="http_requests_total")
        >>> series = entry.resolve(SeriesDefaults())
        >>> series.interval_seconds
        60
    """

    model_config = {"frozen": True, "extra": "forbid"}

    metric: str = Field(
        ...,
        description="Metric name",
        min_length=1,
    )
    labels: Dict[str, str] = Field(
        default_factory=dict,
        description="Label set narrowing the metric",
    )
    name: str = Field(
        default="",
        description="Human-readable name",
    )
    expr: str = Field(
        default="",
        description="Query expression passed through verbatim",
    )
    pattern: str = Field(
        default="",
        description="Metric pattern the query client expands",
    )
    step_seconds: Optional[int] = Field(
        default=None,
        description="Query resolution in seconds",
        gt=0,
    )
    interval_seconds: Optional[int] = Field(
        default=None,
        description="Evaluation interval override",
    )
    window_seconds: Optional[int] = Field(
        default=None,
        description="Fetched window override",
    )
    detector: Dict[str, Any] = Field(
        default_factory=dict,
        description="Detector parameter overrides",
    )
    hysteresis: Dict[str, Any] = Field(
        default_factory=dict,
        description="Hysteresis parameter overrides",
    )
    enabled: bool = Field(
        default=True,
        description="Whether the series is evaluated",
    )
    channels: Optional[List[str]] = Field(
        default=None,
        description="Channels notified for this series; severity routing when unset",
    )

    @property
    def series_key(self) -> str:
        return SeriesId(metric=self.metric, labels=self.labels).key

    def resolve(self, defaults: SeriesDefaults) -> SeriesConfig:
        """
        Merge this entry over the defaults into a validated SeriesConfig.

        Args:
            defaults: Global series defaults.

        Returns:
            SeriesConfig: The resolved definition.

        Raises:
            ValueError: If the merged definition is invalid
                (pydantic ValidationError is a ValueError).
        """
        interval = self.interval_seconds
        if interval is None:
            interval = defaults.interval_seconds
        if interval is None:
            raise ValueError("interval_seconds is required (no default configured)")

        window = self.window_seconds
        if window is None:
            window = defaults.window_seconds

        detector = {**defaults.detector.model_dump(), **self.detector}
        hysteresis = {**defaults.hysteresis.model_dump(), **self.hysteresis}

        return SeriesConfig(
            id=SeriesId(metric=self.metric, labels=self.labels),
            name=self.name,
            query=QueryDefinition(
                expr=self.expr,
                pattern=self.pattern,
                step_seconds=self.step_seconds,
            ),
            interval_seconds=interval,
            window_seconds=window,
            detector=DetectorParams(**detector),
            hysteresis=HysteresisParams(**hysteresis),
            enabled=self.enabled,
            channels=self.channels,
        )


# =============================================================================
# CHANNELS CONFIGURATION
# =============================================================================


class LogChannelConfig(BaseModel):
    """Log notification channel configuration."""

    model_config = {"frozen": True, "extra": "forbid"}

    enabled: bool = Field(
        default=True,
        description="Whether this channel is enabled",
    )


class WebhookChannelConfig(BaseModel):
    """Webhook notification channel configuration."""

    model_config = {"frozen": True, "extra": "forbid"}

    enabled: bool = Field(
        default=False,
        description="Whether this channel is enabled",
    )
    url: Optional[str] = Field(
        default=None,
        description="Webhook URL receiving JSON POSTs",
    )
    timeout_seconds: float = Field(
        default=5.0,
        description="Timeout for a single POST",
        gt=0,
    )
    severities: List[Severity] = Field(
        default_factory=lambda: [Severity.CRITICAL],
        description="Severities delivered to this channel",
    )

    @model_validator(mode="after")
    def validate_url(self) -> "WebhookChannelConfig":
        """Validate that an enabled webhook has somewhere to post."""
        if self.enabled and not self.url:
            raise ValueError(f"{self.channel_name} channel is enabled but has no url")
        return self

    @property
    def channel_name(self) -> str:
        return "webhook"


class SlackChannelConfig(WebhookChannelConfig):
    """Slack incoming-webhook channel configuration."""

    @property
    def channel_name(self) -> str:
        return "slack"


class ChannelsConfig(BaseModel):
    """Notification channels configuration."""

    model_config = {"frozen": True, "extra": "forbid"}

    log: LogChannelConfig = Field(
        default_factory=LogChannelConfig,
        description="Log channel settings",
    )
    webhook: WebhookChannelConfig = Field(
        default_factory=WebhookChannelConfig,
        description="Webhook channel settings",
    )
    slack: SlackChannelConfig = Field(
        default_factory=SlackChannelConfig,
        description="Slack channel settings",
    )


# =============================================================================
# STORAGE / API / LOGGING CONFIGURATION
# =============================================================================


class StorageConfig(BaseModel):
    """Engine state storage configuration."""

    model_config = {"frozen": True, "extra": "forbid"}

    backend: StorageBackend = Field(
        default=StorageBackend.MEMORY,
        description="Where series state and the incident archive live",
    )
    key_prefix: str = Field(
        default="wide_anomaly",
        description="Prefix for all Redis keys",
        min_length=1,
    )


class ApiConfig(BaseModel):
    """Health and incident API configuration."""

    model_config = {"frozen": True, "extra": "forbid"}

    enabled: bool = Field(
        default=True,
        description="Whether the HTTP API is served",
    )
    host: str = Field(
        default="0.0.0.0",
        description="Bind address",
    )
    port: int = Field(
        default=8090,
        description="Bind port",
        ge=1,
        le=65535,
    )


class LoggingConfig(BaseModel):
    """Logging configuration."""

    model_config = {"frozen": True, "extra": "forbid"}

    format: LogFormat = Field(
        default=LogFormat.JSON,
        description="Log output format",
    )
    level: LogLevel = Field(
        default=LogLevel.INFO,
        description="Default log level",
    )


# =============================================================================
# CONNECTION CONFIGURATION (from environment)
# =============================================================================


class QueryServiceConfig(BaseModel):
    """Query service connection configuration."""

    model_config = {"frozen": True, "extra": "forbid"}

    base_url: str = Field(
        default="http://localhost:8080",
        description="Base URL of the wide-event query service",
    )


class RedisConnectionConfig(BaseModel):
    """Redis connection configuration."""

    model_config = {"frozen": True, "extra": "forbid"}

    url: str = Field(
        default="redis://localhost:6379",
        description="Redis connection URL",
    )
    max_connections: int = Field(
        default=10,
        description="Maximum connection pool size",
        ge=1,
    )
    socket_timeout: int = Field(
        default=5,
        description="Socket timeout in seconds",
        ge=1,
    )


# =============================================================================
# ROOT CONFIGURATION
# =============================================================================


class AppConfig(BaseModel):
    """
    Root engine configuration.

    Aggregates all configuration sections into a single validated object.
    Every section has defaults, so ``AppConfig()`` is a valid configuration.

    Example:
        >>> config = AppConfig()
        >>> config.retry.max_attempts
        3
    """

    model_config = {"frozen": True, "extra": "forbid"}

    engine: EngineSettings = Field(
        default_factory=EngineSettings,
        description="Scheduler settings",
    )
    retry: RetrySettings = Field(
        default_factory=RetrySettings,
        description="Retry policy settings",
    )
    defaults: SeriesDefaults = Field(
        default_factory=SeriesDefaults,
        description="Series defaults",
    )
    incidents: IncidentSettings = Field(
        default_factory=IncidentSettings,
        description="Incident archive settings",
    )
    channels: ChannelsConfig = Field(
        default_factory=ChannelsConfig,
        description="Notification channels",
    )
    storage: StorageConfig = Field(
        default_factory=StorageConfig,
        description="State storage settings",
    )
    api: ApiConfig = Field(
        default_factory=ApiConfig,
        description="HTTP API settings",
    )
    logging: LoggingConfig = Field(
        default_factory=LoggingConfig,
        description="Logging settings",
    )
    query: QueryServiceConfig = Field(
        default_factory=QueryServiceConfig,
        description="Query service connection",
    )
    redis: RedisConnectionConfig = Field(
        default_factory=RedisConnectionConfig,
        description="Redis connection",
    )
