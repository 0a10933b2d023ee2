"""Retry logic with linear backoff.

This module provides:
- backoff_delay: Delay before a retry attempt
- retry_with_backoff: Retry a request on transport errors
"""

from __future__ import annotations

import logging
import time
from collections.abc import Callable
from typing import TypeVar

from tablesync.client.api import ServerError, TransportError

logger = logging.getLogger(__name__)

T = TypeVar("T")

# Default retry configuration
DEFAULT_MAX_RETRIES = 3
DEFAULT_BASE_DELAY = 2.0  # seconds

# Internal server errors wait longer than plain network failures
SERVER_ERROR_DELAY_FACTOR = 2.0


def backoff_delay(attempt: int, base_delay: float, error: Exception | None = None) -> float:
    """Delay before retry number `attempt` (1-based): base x attempt.

    Args:
        attempt: Retry number, starting at 1.
        base_delay: Base delay in seconds.
        error: The failure being retried.

    Returns:
        Delay in seconds.
    """
    delay = base_delay * attempt
    if isinstance(error, ServerError):
        delay *= SERVER_ERROR_DELAY_FACTOR
    return delay


def retry_with_backoff(
    func: Callable[[], T],
    max_retries: int = DEFAULT_MAX_RETRIES,
    base_delay: float = DEFAULT_BASE_DELAY,
    retryable_exceptions: tuple[type[Exception], ...] = (TransportError,),
    sleep: Callable[[float], None] = time.sleep,
    description: str = "request",
) -> T:
    """Execute a function, retrying with linear backoff.

    Only retryable exceptions are retried; anything else propagates at once.

    Args:
        func: Function to execute.
        max_retries: Maximum number of retries (attempts = max_retries + 1).
        base_delay: Base backoff in seconds, multiplied by the retry number.
        retryable_exceptions: Tuple of exception types to retry on.
        sleep: Sleep function. The sync engine passes one that aborts when
            the cycle is cancelled.
        description: What is being attempted, for log messages.

    Returns:
        Result of the function.

    Raises:
        The last exception if all retries fail.
    """
    attempt = 0
    while True:
        try:
            return func()
        except retryable_exceptions as e:
            attempt += 1
            if attempt > max_retries:
                logger.error("%s failed after %d attempts: %s", description, attempt, e)
                raise

            delay = backoff_delay(attempt, base_delay, e)
            logger.warning(
                "%s attempt %d/%d failed: %s. Retrying in %.1fs...",
                description,
                attempt,
                max_retries + 1,
                e,
                delay,
            )
            sleep(delay)
