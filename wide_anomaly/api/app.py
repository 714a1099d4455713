"""
FastAPI application for the anomaly engine.

The app is built around a running engine and served by uvicorn inside the
engine's event loop, so handlers read scheduler and registry state directly.

Endpoints:
    - Status: /healthz, /readyz
    - REST API: /api/health, /api/series, /api/incidents,
      /api/incidents/archive, /api/registry/reload
"""

from typing import Any

import structlog
from fastapi import FastAPI

from wide_anomaly import __version__

logger = structlog.get_logger(__name__)


def create_app(engine: Any) -> FastAPI:
    """
    Create and configure the FastAPI application.

    Args:
        engine: The engine service the handlers read from. It must expose
            ``registry``, ``scheduler``, ``store``, ``is_ready`` and
            ``reload_registry()``.

    Returns:
        FastAPI: Configured FastAPI application instance.

    Example:
        >>> app = create_app(engine)
        >>> config = uvicorn.Config(app, host="0.0.0.0", port=8090)
    """
    app = FastAPI(
        title="Wide Anomaly Engine",
        description="Anomaly detection and incident API for wide-event metric series",
        version=__version__,
        docs_url="/docs",
        redoc_url="/redoc",
    )
    app.state.engine = engine

    from wide_anomaly.api.health import status_router, router as health_router
    from wide_anomaly.api.incidents import router as incidents_router
    from wide_anomaly.api.series import router as series_router

    app.include_router(status_router, tags=["Status"])
    app.include_router(health_router, prefix="/api", tags=["Health"])
    app.include_router(series_router, prefix="/api", tags=["Series"])
    app.include_router(incidents_router, prefix="/api", tags=["Incidents"])

    logger.info("fastapi_app_created")

    return app
