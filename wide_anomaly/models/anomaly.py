"""
Baseline and scoring models for the anomaly engine.

Models:
    Verdict: Outcome of scoring one sample
    BaselineModel: Incremental per-series baseline state
    AnomalyScore: Score of one sample against the baseline
"""

from datetime import datetime
from enum import Enum
from typing import Dict, Optional

from pydantic import BaseModel, Field


class Verdict(str, Enum):
    """
    Outcome of scoring one sample.

    Attributes:
        NORMAL: Within the expected band (or still warming up).
        HIGH: Above the expected band.
        LOW: Below the expected band.
    """

    NORMAL = "normal"
    HIGH = "high"
    LOW = "low"

    @property
    def is_breach(self) -> bool:
        """Check if this verdict counts towards opening an incident."""
        return self != Verdict.NORMAL


class BaselineModel(BaseModel):
    """
    Incremental baseline for one series.

    Exclusively owned by the detector path of its series and replaced
    wholesale on every update; instances are never mutated.

    Attributes:
        count: Number of samples folded in.
        mean: Exponentially weighted mean.
        variance: Exponentially weighted variance.
        last_timestamp: Timestamp of the newest folded sample.
        seasonal_offsets: Per-bucket offset from the global mean.
        seasonal_counts: Per-bucket number of folded samples.

    Example:
        >>> model = BaselineModel()
        >>> model.is_warm(min_history=12)
        False
    """

    model_config = {"frozen": True, "extra": "forbid"}

    count: int = Field(
        default=0,
        description="Number of samples folded in",
        ge=0,
    )
    mean: float = Field(
        default=0.0,
        description="Exponentially weighted mean",
    )
    variance: float = Field(
        default=0.0,
        description="Exponentially weighted variance",
        ge=0.0,
    )
    last_timestamp: Optional[datetime] = Field(
        default=None,
        description="Timestamp of the newest folded sample",
    )
    seasonal_offsets: Dict[str, float] = Field(
        default_factory=dict,
        description="Per-bucket offset from the global mean",
    )
    seasonal_counts: Dict[str, int] = Field(
        default_factory=dict,
        description="Per-bucket number of folded samples",
    )

    def is_warm(self, min_history: int) -> bool:
        """Check if enough history has been absorbed to trust verdicts."""
        return self.count >= min_history

    def accepts(self, timestamp: datetime) -> bool:
        """Check if a sample at this timestamp may be folded in next."""
        return self.last_timestamp is None or timestamp > self.last_timestamp


class AnomalyScore(BaseModel):
    """
    Score of one sample against the baseline as it stood before the sample.

    Attributes:
        timestamp: Sample timestamp.
        value: Observed value.
        expected: Seasonally adjusted baseline mean.
        std: Standard deviation used as the denominator (floored).
        deviation: Signed normalized distance from the expected value.
        verdict: normal, high or low.
        warming_up: True when the verdict was forced normal by cold start.
    """

    model_config = {"frozen": True, "extra": "forbid"}

    timestamp: datetime
    value: float
    expected: float
    std: float
    deviation: float
    verdict: Verdict
    warming_up: bool = False

    @property
    def is_breach(self) -> bool:
        return self.verdict.is_breach
