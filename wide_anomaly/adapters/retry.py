"""
Retry policy with exponential backoff and jitter.

Shared by the query fetcher and the notification channels. Only errors the
policy classifies as transient are retried; everything else propagates on
the first attempt.

Delay schedule:
    delay = min(base_delay * exponential_base ** attempt, max_delay)
    with jitter: delay * uniform(0.5, 1.5)

Example:
    >>> policy = RetryPolicy(max_attempts=3, base_delay=0.5, name="fetch")
    >>> samples = await policy.execute(client.query_range, query, labels, rng, 15, 5.0)
"""

import asyncio
import random
from dataclasses import dataclass, field
from typing import Any, Awaitable, Callable, Optional

import structlog

from wide_anomaly.config.models import RetrySettings

logger = structlog.get_logger(__name__)


def is_transient(exc: BaseException) -> bool:
    """Default classification: errors flagged ``retryable`` are transient."""
    return bool(getattr(exc, "retryable", False))


@dataclass
class RetryPolicy:
    """
    Configurable retry policy with exponential backoff.

    Attributes:
        max_attempts: Total attempts including the first.
        base_delay: Delay before the first retry in seconds.
        max_delay: Cap on the backoff delay in seconds.
        exponential_base: Backoff multiplier per attempt.
        jitter: Randomize each delay by a factor in [0.5, 1.5).
        name: Label used in log lines.
        should_retry: Classifier deciding which errors are transient.
    """

    max_attempts: int = 3
    base_delay: float = 0.5
    max_delay: float = 5.0
    exponential_base: float = 2.0
    jitter: bool = True
    name: str = "unknown"
    should_retry: Callable[[BaseException], bool] = field(default=is_transient)

    @classmethod
    def from_settings(
        cls,
        settings: RetrySettings,
        name: str,
        should_retry: Callable[[BaseException], bool] = is_transient,
    ) -> "RetryPolicy":
        """
        Build a policy from the ``retry`` configuration section.

        Args:
            settings: Retry settings.
            name: Label used in log lines.
            should_retry: Classifier deciding which errors are transient.

        Returns:
            RetryPolicy: Configured policy.
        """
        return cls(
            max_attempts=settings.max_attempts,
            base_delay=settings.base_delay_seconds,
            max_delay=settings.max_delay_seconds,
            exponential_base=settings.exponential_base,
            jitter=settings.jitter,
            name=name,
            should_retry=should_retry,
        )

    async def execute(
        self,
        func: Callable[..., Awaitable[Any]],
        *args: Any,
        **kwargs: Any,
    ) -> Any:
        """
        Execute *func* with retry logic.

        Args:
            func: An async callable to execute.
            *args: Positional arguments forwarded to *func*.
            **kwargs: Keyword arguments forwarded to *func*.

        Returns:
            The return value of *func* on success.

        Raises:
            Exception: The first non-transient error, or the last transient
                error once attempts are exhausted.
        """
        last_exception: Optional[Exception] = None

        for attempt in range(self.max_attempts):
            try:
                result = await func(*args, **kwargs)
                if attempt > 0:
                    logger.info(
                        "retry_succeeded",
                        policy=self.name,
                        attempt=attempt + 1,
                        max_attempts=self.max_attempts,
                    )
                return result

            except Exception as exc:
                last_exception = exc
                if not self.should_retry(exc):
                    raise
                if attempt + 1 >= self.max_attempts:
                    logger.warning(
                        "retry_exhausted",
                        policy=self.name,
                        attempts=self.max_attempts,
                        error=str(exc),
                    )
                    raise

                delay = self.calculate_delay(attempt)
                logger.info(
                    "retry_scheduled",
                    policy=self.name,
                    attempt=attempt + 1,
                    max_attempts=self.max_attempts,
                    delay_seconds=delay,
                    error=str(exc),
                )
                await asyncio.sleep(delay)

        if last_exception is not None:
            raise last_exception

    def calculate_delay(self, attempt: int) -> float:
        """
        Calculate the delay after a failed attempt.

        Args:
            attempt: Zero-based index of the attempt that failed.

        Returns:
            float: Seconds to wait before the next attempt.
        """
        delay = self.base_delay * (self.exponential_base ** attempt)
        delay = min(delay, self.max_delay)

        if self.jitter:
            delay *= 0.5 + random.random()

        return round(delay, 3)
