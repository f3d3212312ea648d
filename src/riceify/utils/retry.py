"""Retry helper for store-internal filesystem writes.

Only used for writes into riceify's own store (blob promotion, profile
metadata), where the content is immutable and a second attempt is
harmless. Live-file operations are never retried.
"""
import logging
from functools import wraps
from typing import Any, Callable, TypeVar

from tenacity import (
    before_sleep_log,
    retry,
    retry_if_exception_type,
    stop_after_attempt,
    wait_exponential,
)

logger = logging.getLogger(__name__)

T = TypeVar("T")


# Transient conditions, e.g. a destination briefly held open by a scanner
RETRYABLE_EXCEPTIONS = (
    PermissionError,
    BlockingIOError,
    InterruptedError,
    TimeoutError,
)


def with_retry(
    max_attempts: int = 3,
    min_wait: float = 0.05,
    max_wait: float = 1,
    exceptions: tuple = RETRYABLE_EXCEPTIONS,
) -> Callable:
    """Decorator factory for retry logic with exponential backoff.

    Args:
        max_attempts: Maximum number of attempts
        min_wait: Minimum wait time between retries (seconds)
        max_wait: Maximum wait time between retries (seconds)
        exceptions: Tuple of exception types to retry on
    """
    def decorator(func: Callable[..., T]) -> Callable[..., T]:
        @retry(
            stop=stop_after_attempt(max_attempts),
            wait=wait_exponential(multiplier=min_wait, min=min_wait, max=max_wait),
            retry=retry_if_exception_type(exceptions),
            before_sleep=before_sleep_log(logger, logging.WARNING),
            reraise=True,
        )
        @wraps(func)
        def wrapper(*args: Any, **kwargs: Any) -> T:
            return func(*args, **kwargs)

        return wrapper

    return decorator
