"""
Retry utilities for LLM API calls.

Provides exponential backoff retry logic for transient failures.
"""

from __future__ import annotations

import logging
import time
from collections.abc import Callable
from typing import Any, TypeVar

logger = logging.getLogger(__name__)

T = TypeVar("T")


# Common retryable exceptions
RETRYABLE_EXCEPTIONS = (
    "RateLimitError",
    "APIConnectionError",
    "APITimeoutError",
    "InternalServerError",
    "ServiceUnavailableError",
)


def is_retryable_exception(exc: Exception) -> bool:
    """Check if an exception is retryable."""
    exc_name = type(exc).__name__
    return exc_name in RETRYABLE_EXCEPTIONS or "rate" in str(exc).lower()


def call_with_retry(
    func: Callable[..., T],
    *args: Any,
    max_attempts: int = 3,
    initial_delay: float = 1.0,
    max_delay: float = 60.0,
    exponential_base: float = 2.0,
    retryable_exceptions: tuple[type[Exception], ...] | None = None,
    sleep: Callable[[float], None] = time.sleep,
    **kwargs: Any,
) -> T:
    """
    Call a function, retrying transient failures with exponential backoff.

    Args:
        func: Function to call
        *args: Positional arguments for func
        max_attempts: Maximum number of attempts (including the first)
        initial_delay: Delay in seconds before the first retry
        max_delay: Maximum delay between retries
        exponential_base: Base for exponential backoff
        retryable_exceptions: Exception types to retry on. When omitted,
            provider exceptions are classified by name.
        sleep: Sleep function (injectable for tests)
        **kwargs: Keyword arguments for func

    Returns:
        Whatever func returns on its first successful attempt

    Example:
        response = call_with_retry(
            client.generate, messages, max_attempts=3, initial_delay=2.0
        )
    """
    if max_attempts < 1:
        raise ValueError(f"max_attempts must be >= 1, got {max_attempts}")

    delay = initial_delay

    for attempt in range(max_attempts):
        try:
            return func(*args, **kwargs)
        except Exception as e:
            if retryable_exceptions:
                if not isinstance(e, retryable_exceptions):
                    raise
            elif not is_retryable_exception(e):
                raise

            # Don't retry on last attempt
            if attempt == max_attempts - 1:
                raise

            logger.warning(
                f"Attempt {attempt + 1}/{max_attempts} failed: {e}. "
                f"Retrying in {delay:.1f}s..."
            )
            sleep(delay)
            delay = min(delay * exponential_base, max_delay)

    raise RuntimeError("Unexpected retry loop exit")
