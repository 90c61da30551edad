"""Bounded retry with exponential backoff around a single external call."""

import logging
import time
from typing import Callable, TypeVar

logger = logging.getLogger(__name__)

T = TypeVar("T")

RetryCallback = Callable[[int, BaseException, float], None]


def backoff_delays(max_retries: int, initial_delay: float, max_delay: float) -> list[float]:
    """Sleeps between ``max_retries`` attempts: doubling from ``initial_delay``, capped."""
    return [min(initial_delay * (2**i), max_delay) for i in range(max(max_retries - 1, 0))]


def retry_with_backoff(
    fn: Callable[[], T],
    *,
    max_retries: int = 3,
    initial_delay: float = 1.0,
    max_delay: float = 30.0,
    on_retry: RetryCallback | None = None,
    sleep: Callable[[float], None] = time.sleep,
    retry_on: tuple[type[BaseException], ...] = (Exception,),
) -> T:
    """Call ``fn`` up to ``max_retries`` times.

    Exceptions outside ``retry_on`` propagate immediately; the last failure
    propagates once attempts are exhausted. ``on_retry(attempt, error, delay)``
    runs before each sleep.
    """
    delays = backoff_delays(max_retries, initial_delay, max_delay)
    attempt = 1
    while True:
        try:
            return fn()
        except retry_on as e:
            if attempt >= max_retries:
                raise
            delay = delays[attempt - 1]
            if on_retry is not None:
                on_retry(attempt, e, delay)
            else:
                logger.warning(f"Attempt {attempt}/{max_retries} failed: {e}. Retrying in {delay:.1f}s")
            sleep(delay)
            attempt += 1
