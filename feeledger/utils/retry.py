"""Retry helpers with exponential backoff and jitter.

Every mutating ledger operation is one atomic transaction, so a
:class:`~feeledger.exceptions.TransientStorageError` can be retried by
resubmitting the whole operation. Validation, not-found and conflict errors
are never retried.

Usage:
    result = retry_sync(
        lambda: processor.pay_balance(balance_id, payment_method="gcash"),
        config=STORAGE_RETRY,
    )

Caution: without an idempotency key, a retried payment whose first attempt
actually committed fails with ConflictError on the retry.
"""

import random
import time
from collections.abc import Callable
from dataclasses import dataclass, field
from typing import TypeVar

from feeledger.exceptions import TransientStorageError
from feeledger.utils.logging import get_logger

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
        retryable_exceptions: Tuple of exception types to retry
    """

    max_retries: int = 3
    base_delay: float = 1.0
    max_delay: float = 60.0
    backoff_factor: float = 2.0
    jitter: bool = True
    jitter_range: float = 0.1
    retryable_exceptions: tuple[type[Exception], ...] = field(
        default_factory=lambda: (TransientStorageError,)
    )

    def __post_init__(self):
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
        """Delay in seconds before retry ``attempt`` (0-indexed)."""
        delay = min(self.base_delay * (self.backoff_factor**attempt), self.max_delay)

        if self.jitter:
            jitter_amount = delay * self.jitter_range
            delay = max(0, delay + random.uniform(-jitter_amount, jitter_amount))

        return delay


def _should_retry(error: Exception, attempt: int, config: RetryConfig) -> bool:
    if not isinstance(error, config.retryable_exceptions):
        logger.debug(
            "retry_skipped_non_retryable_exception",
            exception_type=type(error).__name__,
            error=str(error),
        )
        return False

    if attempt >= config.max_retries:
        logger.error(
            "retry_exhausted",
            attempts=attempt + 1,
            exception=type(error).__name__,
            error=str(error),
        )
        return False

    return True



def retry_sync(
    func: Callable[[], T],
    config: RetryConfig | None = None,
    on_retry: Callable[[Exception, int], None] | None = None,
) -> T:
    """Retry a blocking function with exponential backoff.

    Runs in the calling thread, so it is safe to use inside request handlers
    that already run an event loop.
    """
    config = config or RetryConfig()

    for attempt in range(config.max_retries + 1):
        try:
            return func()
        except Exception as e:
            if not _should_retry(e, attempt, config):
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
            if on_retry:
                on_retry(e, attempt + 1)
            time.sleep(delay)

    raise RuntimeError("retry_sync: unexpected code path")


# Whole-transaction retries for lock timeouts and dropped connections
STORAGE_RETRY = RetryConfig(
    max_retries=3,
    base_delay=0.2,
    max_delay=2.0,
    backoff_factor=2.0,
)
