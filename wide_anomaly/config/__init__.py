"""
Configuration management for the anomaly engine.

This module handles loading and validating configuration from YAML files.
All configuration values are validated using Pydantic models so that
configuration errors are caught at startup or at reload time.

Configuration is loaded from the CONFIG_PATH directory:
    - engine.yaml: Engine, retry, defaults, channels, storage, API, logging
    - series.yaml: Series definitions consumed by the registry

Environment variables can override connection settings:
    - WIDE_QUERY_BASE_URL: Query service base URL
    - REDIS_URL: Redis connection URL
    - LOG_LEVEL: Application log level

Example:
    >>> from wide_anomaly.config import load_config, AppConfig
    >>> config = load_config()
    >>> config.defaults.detector.sensitivity
    3.0

Modules:
    loader: Configuration file loading utilities
    models: Pydantic models for configuration validation
"""

from wide_anomaly.config.loader import (
    ConfigError,
    ConfigLoader,
    load_config,
    load_series_entries,
    read_yaml,
)
from wide_anomaly.config.models import (
    # Enums
    LogFormat,
    LogLevel,
    StorageBackend,
    # Engine config
    EngineSettings,
    IncidentSettings,
    RetrySettings,
    SeriesDefaults,
    SeriesEntry,
    # Channels config
    ChannelsConfig,
    LogChannelConfig,
    SlackChannelConfig,
    WebhookChannelConfig,
    # Service config
    ApiConfig,
    LoggingConfig,
    StorageConfig,
    # Connection config
    QueryServiceConfig,
    RedisConnectionConfig,
    # Root config
    AppConfig,
)

__all__: list[str] = [
    # Loader
    "load_config",
    "load_series_entries",
    "read_yaml",
    "ConfigLoader",
    "ConfigError",
    # Enums
    "LogFormat",
    "LogLevel",
    "StorageBackend",
    # Engine config
    "EngineSettings",
    "RetrySettings",
    "SeriesDefaults",
    "SeriesEntry",
    "IncidentSettings",
    # Channels config
    "LogChannelConfig",
    "WebhookChannelConfig",
    "SlackChannelConfig",
    "ChannelsConfig",
    # Service config
    "StorageConfig",
    "ApiConfig",
    "LoggingConfig",
    # Connection config
    "QueryServiceConfig",
    "RedisConnectionConfig",
    # Root config
    "AppConfig",
]
