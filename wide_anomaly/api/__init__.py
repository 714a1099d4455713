"""
HTTP API for the anomaly engine.

This package provides FastAPI routers for:
- Status: liveness and readiness
- Health: per-series evaluation health
- Series: registry snapshot and reload
- Incidents: open and archived incidents
"""

from wide_anomaly.api.app import create_app

__all__ = ["create_app"]
