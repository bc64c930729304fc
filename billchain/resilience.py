"""
billchain Resilience

Retry for storage writes. The sync layer wraps every `save_chain` in a
`RetryPolicy` restricted to `StorageError`, so a validation failure is never
retried. Delays double per attempt from `base_delay_seconds`, gain up to
`jitter_factor` of random jitter, and are capped at `max_delay_seconds`.

Example:
    retry = RetryPolicy(max_attempts=3, retryable_exceptions=(StorageError,))
    retry.execute(lambda: store.save_chain(bill_id, chain))
"""

from __future__ import annotations

import random
import time
from typing import Callable, Tuple, Type, TypeVar

from billchain.observability import Layer, get_logger

logger = get_logger("retry", Layer.PERSISTENCE)

T = TypeVar("T")


class RetryExhaustedError(Exception):
    """Every attempt failed with a retryable exception."""

    def __init__(self, attempts: int, last_exception: Exception):
        self.attempts = attempts
        self.last_exception = last_exception
        super().__init__(f"Retry exhausted after {attempts} attempts: {last_exception}")


class RetryPolicy:
    """Exponential backoff with jitter. `sleep` is injectable for tests."""

    def __init__(
        self,
        max_attempts: int = 3,
        base_delay_seconds: float = 0.05,
        max_delay_seconds: float = 2.0,
        jitter_factor: float = 0.5,
        retryable_exceptions: Tuple[Type[Exception], ...] = (Exception,),
        sleep: Callable[[float], None] = time.sleep,
    ):
        if max_attempts < 1:
            raise ValueError("max_attempts must be >= 1")
        self.max_attempts = max_attempts
        self.base_delay_seconds = base_delay_seconds
        self.max_delay_seconds = max_delay_seconds
        self.jitter_factor = jitter_factor
        self.retryable_exceptions = retryable_exceptions
        self._sleep = sleep

    def delay_for(self, attempt: int) -> float:
        """Delay after the `attempt`-th failure (1-based)."""
        delay = self.base_delay_seconds * (2 ** (attempt - 1))
        delay += random.uniform(0, self.jitter_factor * delay)
        return min(delay, self.max_delay_seconds)

    def execute(self, func: Callable[[], T]) -> T:
        """Run `func`, retrying retryable failures.

        Other exceptions propagate from the first attempt. When every attempt
        fails, raises RetryExhaustedError carrying the last exception.
        """
        attempt = 1
        while True:
            try:
                return func()
            except self.retryable_exceptions as ex:
                if attempt >= self.max_attempts:
                    raise RetryExhaustedError(attempt, ex) from ex
                delay = self.delay_for(attempt)
                logger.warning(
                    f"attempt {attempt} failed, retrying in {delay:.3f}s: {ex}",
                    operation="retry",
                    attempt=attempt,
                )
                self._sleep(delay)
                attempt += 1
