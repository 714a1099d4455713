"""
Anomaly Engine service entry point.

This service is responsible for:
- Loading the series registry (refusing to start without valid series)
- Restoring persisted series state and open incidents
- Running the evaluation scheduler and the notification dispatcher
- Serving the health, series and incident API in the same event loop
- Reloading the registry on SIGHUP or POST /api/registry/reload

Usage:
    wide-anomaly-engine
    python -m wide_anomaly.services.anomaly_engine

Environment Variables:
    CONFIG_PATH: Path to config directory (default: config)
    WIDE_QUERY_BASE_URL: Query service base URL
    REDIS_URL: Redis connection URL (redis storage backend)
    LOG_LEVEL: Logging level (default: INFO)
    WIDE_WEBHOOK_URL: Webhook URL for critical notifications (optional)
    WIDE_SLACK_URL: Slack incoming-webhook URL (optional)
    WIDE_API_HOST / WIDE_API_PORT: API bind address
"""

from __future__ import annotations

import asyncio
import contextlib
import os
import signal
import sys
from typing import Callable, Dict, List, Optional

import structlog
import uvicorn

from wide_anomaly import __version__
from wide_anomaly.adapters.query import QueryClient, SeriesFetcher
from wide_anomaly.adapters.retry import RetryPolicy
from wide_anomaly.api import create_app
from wide_anomaly.config.loader import ConfigError, ConfigLoader
from wide_anomaly.detection.dispatcher import NotificationDispatcher, create_dispatcher
from wide_anomaly.detection.registry import RegistrySnapshot, SeriesRegistry
from wide_anomaly.detection.scheduler import EvaluationScheduler
from wide_anomaly.interfaces.state_store import StateStore
from wide_anomaly.services import ServiceRunner, setup_logging
from wide_anomaly.storage import create_state_store

logger = structlog.get_logger(__name__)


class EmbeddedServer(uvicorn.Server):
    """uvicorn server that leaves signal handling to the engine."""

    @contextlib.contextmanager
    def capture_signals(self):
        yield


class AnomalyEngineService(ServiceRunner):
    """
    Anomaly engine service.

    Wires the registry, fetcher, detector, incident manager, scheduler,
    dispatcher, state store and API together and runs them in one loop.

    Attributes:
        registry: Series registry.
        query_client: Query service client.
        fetcher: Series fetcher with retry.
        dispatcher: Notification dispatcher.
        store: State store.
        scheduler: Evaluation scheduler.
    """

    def __init__(self, config_path: str = "config") -> None:
        """Initialize the anomaly engine service."""
        super().__init__(config_path)
        self.registry: Optional[SeriesRegistry] = None
        self.query_client: Optional[QueryClient] = None
        self.fetcher: Optional[SeriesFetcher] = None
        self.dispatcher: Optional[NotificationDispatcher] = None
        self.store: Optional[StateStore] = None
        self.scheduler: Optional[EvaluationScheduler] = None
        self._server: Optional[EmbeddedServer] = None
        self._tasks: List[asyncio.Task] = []

    @property
    def service_name(self) -> str:
        """Return service name."""
        return "anomaly-engine"

    @property
    def is_ready(self) -> bool:
        """Ready once a registry snapshot is loaded and the scheduler runs."""
        return (
            self.registry is not None
            and self.registry.snapshot().is_loaded
            and self.scheduler is not None
            and self.scheduler.running
        )

    def _signal_handlers(self) -> Dict[int, Callable[[], None]]:
        handlers = super()._signal_handlers()
        if hasattr(signal, "SIGHUP"):
            handlers[signal.SIGHUP] = self._on_sighup
        return handlers

    def _on_sighup(self) -> None:
        self.logger.info("registry_reload_signal")
        try:
            self.reload_registry()
        except ConfigError as e:
            self.logger.error("registry_reload_failed", error=e.message)

    def reload_registry(self) -> RegistrySnapshot:
        """
        Reload series.yaml and swap the registry snapshot.

        Returns:
            RegistrySnapshot: The new snapshot.

        Raises:
            ConfigError: If the source is unreadable or has no valid series.
                The previous snapshot stays active.
        """
        if self.registry is None:
            raise ConfigError("registry is not initialized")
        return self.registry.reload()

    async def _initialize(self) -> None:
        """Build components; a registry without valid series aborts startup."""
        if self.config is None:
            raise RuntimeError("Service not properly initialized")
        config = self.config

        self.registry = SeriesRegistry(
            defaults=config.defaults,
            source=ConfigLoader(self.config_path).series_path,
        )
        self.registry.reload()

        self.store = create_state_store(config.storage, config.redis)
        await self.store.connect()

        self.query_client = QueryClient(
            base_url=config.query.base_url,
            timeout_seconds=config.engine.fetch_timeout_seconds,
        )
        self.fetcher = SeriesFetcher(
            self.query_client,
            retry_policy=RetryPolicy.from_settings(config.retry, name="fetch"),
            fetch_timeout_seconds=config.engine.fetch_timeout_seconds,
            deadline_ratio=config.engine.deadline_ratio,
        )
        self.dispatcher = create_dispatcher(config.channels, config.retry)

        self.scheduler = EvaluationScheduler(
            registry=self.registry,
            fetcher=self.fetcher,
            dispatcher=self.dispatcher,
            store=self.store,
            max_workers=config.engine.max_workers,
            tick_seconds=config.engine.tick_seconds,
            retention_seconds=config.incidents.retention_seconds,
        )
        self.scheduler.restore(await self.store.load_states())

        self.logger.info(
            "engine_components_initialized",
            series_count=len(self.registry.list()),
            storage_backend=config.storage.backend.value,
            channels=list(self.dispatcher.channels.keys()),
            api_enabled=config.api.enabled,
        )

    async def _run(self) -> None:
        """Run scheduler, dispatcher and API until shutdown."""
        if self.config is None or self.scheduler is None or self.dispatcher is None:
            raise RuntimeError("Service not properly initialized")
        config = self.config

        dispatcher_task = asyncio.create_task(self.dispatcher.run(), name="dispatcher")
        scheduler_task = asyncio.create_task(
            self.scheduler.run(self.shutdown_event), name="scheduler"
        )
        self._tasks = [dispatcher_task, scheduler_task]

        server_task: Optional[asyncio.Task] = None
        if config.api.enabled:
            self._server = EmbeddedServer(
                uvicorn.Config(
                    create_app(self),
                    host=config.api.host,
                    port=config.api.port,
                    log_level=config.logging.level.value.lower(),
                    access_log=False,
                )
            )
            server_task = asyncio.create_task(self._server.serve(), name="api")
            self._tasks.append(server_task)

        await self.shutdown_event.wait()

        await scheduler_task
        cancelled = await self.scheduler.shutdown(config.engine.shutdown_grace_seconds)

        dispatcher_task.cancel()
        await asyncio.gather(dispatcher_task, return_exceptions=True)
        undelivered = await self.dispatcher.drain(config.engine.shutdown_grace_seconds)

        if self._server is not None and server_task is not None:
            self._server.should_exit = True
            await asyncio.gather(server_task, return_exceptions=True)

        self.logger.info(
            "engine_shutdown_complete",
            cancelled_units=cancelled,
            undelivered_events=undelivered,
            open_incidents=len(self.scheduler.open_incidents()),
        )

    async def _cleanup(self) -> None:
        """Release transport resources."""
        for task in self._tasks:
            if not task.done():
                task.cancel()
        if self._tasks:
            await asyncio.gather(*self._tasks, return_exceptions=True)

        if self.query_client is not None:
            await self.query_client.close()
        if self.dispatcher is not None:
            await self.dispatcher.close()
        if self.store is not None:
            await self.store.close()


async def run_service(config_path: str) -> int:
    """
    Run the engine until shutdown.

    Args:
        config_path: Configuration directory.

    Returns:
        int: Process exit code.
    """
    service = AnomalyEngineService(config_path=config_path)
    try:
        await service.run()
    except ConfigError as e:
        logger.error("service_failed", error=e.message, file_path=str(e.file_path))
        return 1
    except Exception as e:
        logger.exception("service_failed", error=str(e))
        return 1
    return 0


def main() -> None:
    """Main entry point."""
    setup_logging()

    config_path = os.getenv("CONFIG_PATH", "config")

    logger.info(
        "anomaly_engine_service_starting",
        version=__version__,
        config_path=config_path,
    )

    sys.exit(asyncio.run(run_service(config_path)))


if __name__ == "__main__":
    main()
