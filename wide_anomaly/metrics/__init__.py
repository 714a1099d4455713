"""
Statistical scoring for the anomaly engine.

Components:
    baseline: BaselineDetector (EWMA mean/variance with seasonal offsets)
        and ModelError
"""

from wide_anomaly.metrics.baseline import BaselineDetector, ModelError

__all__: list[str] = [
    "BaselineDetector",
    "ModelError",
]
