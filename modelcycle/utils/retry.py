"""Unified retry logic with exponential backoff and jitter.

Used in two places:

- Store units of work are retried locally on transient database errors
  (``retry_sync`` with ``STORE_RETRY``) before surfacing ``StoreUnavailableError``.
- Training job retries reuse ``RetryConfig.calculate_delay`` to schedule the
  next attempt without sleeping on a worker (``TRAINING_BACKOFF``).

Usage:
    result = retry_sync(lambda: store_operation(), config=STORE_RETRY)
"""

import random
import time
from collections.abc import Callable
from dataclasses import dataclass, field
from typing import TypeVar

from modelcycle.utils.logging import get_logger

logger = get_logger(__name__)

T = TypeVar("T")


@dataclass
class RetryConfig:
    """Configuration for retry behavior.

    Attributes:
        max_retries: Maximum number of retry attempts (default: 3)
        base_delay: Base delay in seconds before first retry (default: 1.0)
        max_delay: Maximum delay in seconds between retries (default: 60.0)
        backoff_factor: Exponential backoff multiplier (default: 2.0)
        jitter: Whether to add random jitter to delays (default: True)
        jitter_range: Range for jitter as fraction of delay (default: 0.1 = ±10%)
        retryable_exceptions: Tuple of exception types to retry (default: all)

    Examples:
        # Retry only database connectivity errors
        RetryConfig(
            max_retries=3,
            retryable_exceptions=(OperationalError,)
        )
    """

    max_retries: int = 3
    base_delay: float = 1.0
    max_delay: float = 60.0
    backoff_factor: float = 2.0
    jitter: bool = True
    jitter_range: float = 0.1
    retryable_exceptions: tuple[type[Exception], ...] = field(default_factory=lambda: (Exception,))

    def __post_init__(self):
        """Validate configuration parameters."""
        if self.max_retries < 0:
            raise ValueError("max_retries must be >= 0")
        if self.base_delay <= 0:
            raise ValueError("base_delay must be > 0")
        if self.max_delay < self.base_delay:
            raise ValueError("max_delay must be >= base_delay")
        if self.backoff_factor < 1:
            raise ValueError("backoff_factor must be >= 1")
        if not 0 <= self.jitter_range <= 1:
            raise ValueError("jitter_range must be between 0 and 1")

    def calculate_delay(self, attempt: int) -> float:
        """Calculate delay for a given retry attempt.

        Args:
            attempt: The retry attempt number (0-indexed)

        Returns:
            Delay in seconds, with exponential backoff and optional jitter
        """
        # delay = base_delay * (backoff_factor ^ attempt), capped
        delay = min(self.base_delay * (self.backoff_factor**attempt), self.max_delay)

        if self.jitter:
            jitter_amount = delay * self.jitter_range
            jitter = random.uniform(-jitter_amount, jitter_amount)
            delay = max(0, delay + jitter)

        return delay


def retry_sync(
    func: Callable[[], T],
    config: RetryConfig | None = None,
) -> T:
    """Retry a blocking function with exponential backoff.

    Runs a plain loop with ``time.sleep``; async callers offload it to a worker
    thread (``LifecycleStore.offload``) so the backoff never blocks the loop.

    Args:
        func: Sync function to retry (takes no arguments)
        config: Retry configuration (uses defaults if None)

    Returns:
        The return value of func() on success

    Raises:
        The last exception if all retries are exhausted
    """
    config = config or RetryConfig()

    for attempt in range(config.max_retries + 1):
        try:
            return func()

        except Exception as e:
            if not isinstance(e, config.retryable_exceptions):
                raise

            if attempt >= config.max_retries:
                logger.error(
                    "retry_exhausted",
                    attempts=attempt + 1,
                    exception=type(e).__name__,
                    error=str(e),
                )
                raise

            delay = config.calculate_delay(attempt)

            logger.info(
                "retry_attempt",
                attempt=attempt + 1,
                max_retries=config.max_retries,
                delay_seconds=round(delay, 2),
                exception=type(e).__name__,
                error=str(e),
            )

            time.sleep(delay)

    raise RuntimeError("retry_sync: unexpected code path")


# Pre-configured retry strategies

# Store units of work (busy database, dropped connection)
STORE_RETRY = RetryConfig(
    max_retries=3,
    base_delay=0.2,
    max_delay=2.0,
    backoff_factor=2.0,
)

# Training attempt backoff: base 60s doubling up to one hour, deterministic
TRAINING_BACKOFF = RetryConfig(
    max_retries=3,
    base_delay=60.0,
    max_delay=3600.0,
    backoff_factor=2.0,
    jitter=False,
)
