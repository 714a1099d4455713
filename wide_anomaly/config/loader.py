"""
Configuration loader for YAML-based engine configuration.

This module provides utilities to load and validate configuration from YAML
files. All configuration is validated using Pydantic models to ensure type
safety and catch configuration errors early.

Configuration files expected (under CONFIG_PATH, default ``config``):
    - engine.yaml: Engine settings (optional, all sections default)
    - series.yaml: Series definitions consumed by the registry

Environment variables override:
    - WIDE_QUERY_BASE_URL: Query service base URL
    - REDIS_URL: Redis connection URL
    - LOG_LEVEL: Application log level
    - WIDE_WEBHOOK_URL: Webhook channel URL (enables the channel)
    - WIDE_SLACK_URL: Slack incoming-webhook URL (enables the channel)
    - WIDE_API_HOST / WIDE_API_PORT: API bind address

Example:
    >>> from wide_anomaly.config.loader import load_config
    >>> config = load_config("config")
    >>> config.engine.max_workers
    8
"""

import os
from pathlib import Path
from typing import Any, Dict, List, Optional

import yaml
from pydantic import ValidationError

from wide_anomaly.config.models import AppConfig, LogLevel


ENGINE_FILE = "engine.yaml"
SERIES_FILE = "series.yaml"


class ConfigError(Exception):
    """
    Raised when configuration loading or a series definition fails.

    Attributes:
        message: Error message describing what went wrong.
        file_path: Path to the file that caused the error, if applicable.
        series_key: Series the error refers to, if applicable.
        cause: Original exception that caused the error, if any.
    """

    def __init__(
        self,
        message: str,
        file_path: Optional[Path] = None,
        series_key: Optional[str] = None,
        cause: Optional[Exception] = None,
    ):
        """
        Initialize ConfigError.

        Args:
            message: Error message.
            file_path: Path to the problematic file.
            series_key: Key of the problematic series.
            cause: Original exception.
        """
        self.message = message
        self.file_path = file_path
        self.series_key = series_key
        self.cause = cause
        super().__init__(message)


def read_yaml(file_path: Path | str, required: bool = True) -> Dict[str, Any]:
    """
    Read a YAML mapping from disk.

    Args:
        file_path: File to read.
        required: Raise when the file is missing; otherwise return {}.

    Returns:
        Dict containing parsed YAML content ({} for an empty file).

    Raises:
        ConfigError: If the file is missing (and required), unreadable,
            invalid YAML, or not a mapping.
    """
    file_path = Path(file_path)
    if not file_path.exists():
        if not required:
            return {}
        raise ConfigError(
            f"Configuration file not found: {file_path}",
            file_path=file_path,
        )

    try:
        with open(file_path, "r", encoding="utf-8") as f:
            data = yaml.safe_load(f)
    except yaml.YAMLError as e:
        raise ConfigError(
            f"Invalid YAML syntax in {file_path}: {e}",
            file_path=file_path,
            cause=e,
        ) from e
    except OSError as e:
        raise ConfigError(
            f"Error reading {file_path}: {e}",
            file_path=file_path,
            cause=e,
        ) from e

    if data is None:
        return {}
    if not isinstance(data, dict):
        raise ConfigError(
            f"Configuration file must contain a mapping: {file_path}",
            file_path=file_path,
        )
    return data


class ConfigLoader:
    """
    Loads and validates engine configuration from a config directory.

    Expects the following directory structure:
        config/
        ├── engine.yaml   - Engine settings (optional)
        └── series.yaml   - Series definitions

    Example:
        >>> loader = ConfigLoader("config")
        >>> config = loader.load()
        >>> loader.series_path.name
        'series.yaml'
    """

    def __init__(self, config_dir: Path | str = "config"):
        """
        Initialize config loader.

        Args:
            config_dir: Path to configuration directory (default: 'config').

        Raises:
            ConfigError: If the path exists but is not a directory.
        """
        self.config_dir = Path(config_dir)
        if self.config_dir.exists() and not self.config_dir.is_dir():
            raise ConfigError(
                f"Configuration path is not a directory: {self.config_dir}",
                file_path=self.config_dir,
            )

    @property
    def engine_path(self) -> Path:
        return self.config_dir / ENGINE_FILE

    @property
    def series_path(self) -> Path:
        return self.config_dir / SERIES_FILE

    def _apply_env(self, data: Dict[str, Any]) -> Dict[str, Any]:
        """
        Overlay environment variables on the raw engine.yaml mapping.

        Args:
            data: Raw engine.yaml content.

        Returns:
            A new mapping with environment overrides applied.
        """
        data = dict(data)

        query_url = os.getenv("WIDE_QUERY_BASE_URL")
        if query_url:
            data["query"] = {**data.get("query", {}), "base_url": query_url}

        redis_url = os.getenv("REDIS_URL")
        if redis_url:
            data["redis"] = {**data.get("redis", {}), "url": redis_url}

        level = self._get_log_level()
        if level is not None:
            data["logging"] = {**data.get("logging", {}), "level": level.value}

        for channel_name, env_var in (("webhook", "WIDE_WEBHOOK_URL"), ("slack", "WIDE_SLACK_URL")):
            url = os.getenv(env_var)
            if url:
                channels = dict(data.get("channels", {}))
                channels[channel_name] = {
                    **channels.get(channel_name, {}),
                    "url": url,
                    "enabled": True,
                }
                data["channels"] = channels

        api = dict(data.get("api", {}))
        host = os.getenv("WIDE_API_HOST")
        if host:
            api["host"] = host
        port = os.getenv("WIDE_API_PORT")
        if port:
            try:
                api["port"] = int(port)
            except ValueError as e:
                raise ConfigError(
                    f"WIDE_API_PORT must be an integer, got {port!r}",
                    cause=e,
                ) from e
        if api:
            data["api"] = api

        return data

    def _get_log_level(self) -> Optional[LogLevel]:
        """
        Get log level from environment.

        Environment variables:
            - LOG_LEVEL: Log level (unset or unknown leaves the file value)

        Returns:
            Optional[LogLevel]: The level, or None when not overridden.
        """
        level_str = os.getenv("LOG_LEVEL")
        if not level_str:
            return None
        try:
            return LogLevel(level_str.upper())
        except ValueError:
            return None

    def load(self) -> AppConfig:
        """
        Load and validate engine.yaml plus environment overrides.

        A missing engine.yaml yields an all-defaults configuration.

        Returns:
            AppConfig: Validated engine configuration.

        Raises:
            ConfigError: If the configuration is invalid or unreadable.
        """
        data = self._apply_env(read_yaml(self.engine_path, required=False))
        try:
            return AppConfig(**data)
        except ValidationError as e:
            raise ConfigError(
                f"Invalid engine configuration: {e}",
                file_path=self.engine_path,
                cause=e,
            ) from e
        except TypeError as e:
            raise ConfigError(
                f"Invalid engine configuration: {e}",
                file_path=self.engine_path,
                cause=e,
            ) from e


def load_config(config_dir: Path | str | None = None) -> AppConfig:
    """
    Convenience function to load engine configuration.

    Args:
        config_dir: Configuration directory; CONFIG_PATH or 'config' when None.

    Returns:
        AppConfig: Validated engine configuration.

    Raises:
        ConfigError: If configuration loading fails.

    Example:
        >>> from wide_anomaly.config import load_config
        >>> config = load_config()
        >>> config.storage.backend.value
        'memory'
    """
    if config_dir is None:
        config_dir = os.getenv("CONFIG_PATH", "config")
    return ConfigLoader(config_dir).load()


def load_series_entries(source: Any) -> List[Dict[str, Any]]:
    """
    Normalize a registry source into a list of raw entry mappings.

    Args:
        source: A YAML file path, a mapping with a ``series`` list, or a
            sequence of entry mappings.

    Returns:
        List of raw entry mappings in source order.

    Raises:
        ConfigError: If the source cannot be read or has the wrong shape.
    """
    file_path: Optional[Path] = None
    if isinstance(source, (str, Path)):
        file_path = Path(source)
        source = read_yaml(file_path)

    if isinstance(source, dict):
        entries = source.get("series")
        if entries is None:
            raise ConfigError(
                "Series source has no 'series' list",
                file_path=file_path,
            )
    else:
        entries = source

    if not isinstance(entries, (list, tuple)):
        raise ConfigError(
            f"'series' must be a list, got {type(entries).__name__}",
            file_path=file_path,
        )
    return list(entries)

