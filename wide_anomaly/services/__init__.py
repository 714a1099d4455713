"""
Service runtime for the anomaly engine.

Provides the ServiceRunner base class (configuration loading, logging
setup, signal handling and lifecycle) and the structlog configuration
shared by every entry point.

Lifecycle:
    run() -> load config -> setup_logging -> _initialize() -> _run() -> _cleanup()

Example:
    >>> class MyService(ServiceRunner):
    ...     @property
    ...     def service_name(self) -> str:
    ...         return "my-service"
    ...
    ...     async def _initialize(self) -> None:
    ...         ...
    ...
    ...     async def _run(self) -> None:
    ...         await self.shutdown_event.wait()
"""

import asyncio
import logging
import signal
from abc import ABC, abstractmethod
from typing import Callable, Dict, Optional, Union

import structlog

from wide_anomaly.config.loader import ConfigLoader
from wide_anomaly.config.models import AppConfig, LogFormat, LogLevel


def setup_logging(
    level: Union[LogLevel, str] = LogLevel.INFO,
    fmt: Union[LogFormat, str] = LogFormat.JSON,
) -> None:
    """
    Configure structured logging.

    Args:
        level: Log level name.
        fmt: ``json`` for JSONRenderer output, ``text`` for ConsoleRenderer.
    """
    level_name = level.value if isinstance(level, LogLevel) else str(level).upper()
    fmt = LogFormat(fmt)

    renderer = (
        structlog.processors.JSONRenderer()
        if fmt == LogFormat.JSON
        else structlog.dev.ConsoleRenderer()
    )

    structlog.configure(
        processors=[
            structlog.stdlib.filter_by_level,
            structlog.stdlib.add_logger_name,
            structlog.stdlib.add_log_level,
            structlog.stdlib.PositionalArgumentsFormatter(),
            structlog.processors.TimeStamper(fmt="iso"),
            structlog.processors.StackInfoRenderer(),
            structlog.processors.format_exc_info,
            structlog.processors.UnicodeDecoder(),
            renderer,
        ],
        wrapper_class=structlog.stdlib.BoundLogger,
        context_class=dict,
        logger_factory=structlog.stdlib.LoggerFactory(),
        cache_logger_on_first_use=True,
    )

    logging.basicConfig(
        format="%(message)s",
        level=getattr(logging, level_name),
        force=True,
    )

    # Reduce noise from uvicorn access logs
    logging.getLogger("uvicorn.access").setLevel(logging.WARNING)


class ServiceRunner(ABC):
    """
    Base class for long-running services.

    Attributes:
        config_path: Directory holding the YAML configuration.
        config: Loaded configuration, set by run().
        shutdown_event: Set when the service should stop.
        logger: Logger bound to the service name.
    """

    def __init__(self, config_path: str = "config") -> None:
        self.config_path = config_path
        self.config: Optional[AppConfig] = None
        self.shutdown_event = asyncio.Event()
        self.logger = structlog.get_logger(__name__).bind(service=self.service_name)

    @property
    @abstractmethod
    def service_name(self) -> str:
        """Service name used in logs."""
        pass

    @abstractmethod
    async def _initialize(self) -> None:
        """Build service components. Raising aborts startup."""
        pass

    @abstractmethod
    async def _run(self) -> None:
        """Main loop; returns after shutdown_event is set."""
        pass

    async def _cleanup(self) -> None:
        """Service-specific cleanup."""
        pass

    def _signal_handlers(self) -> Dict[int, Callable[[], None]]:
        """Signals handled by the running loop."""
        return {
            signal.SIGINT: self.request_shutdown,
            signal.SIGTERM: self.request_shutdown,
        }

    def _install_signal_handlers(self) -> None:
        loop = asyncio.get_running_loop()
        for signum, handler in self._signal_handlers().items():
            try:
                loop.add_signal_handler(signum, handler)
            except (NotImplementedError, RuntimeError):
                self.logger.warning("signal_handler_unavailable", signal=signum)

    def request_shutdown(self) -> None:
        if not self.shutdown_event.is_set():
            self.logger.info("shutdown_requested")
            self.shutdown_event.set()

    def load_config(self) -> AppConfig:
        return ConfigLoader(self.config_path).load()

    async def run(self) -> None:
        """
        Run the service until shutdown.

        Raises:
            Exception: Whatever _initialize() raised; the service did not start.
        """
        self.config = self.load_config()
        setup_logging(self.config.logging.level, self.config.logging.format)
        self._install_signal_handlers()

        self.logger.info("service_starting", config_path=self.config_path)
        try:
            await self._initialize()
            self.logger.info("service_started")
            await self._run()
        finally:
            await self._cleanup()
            self.logger.info("service_stopped")


__all__ = ["ServiceRunner", "setup_logging"]
