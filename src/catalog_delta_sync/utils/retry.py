"""Retry utilities with exponential backoff."""

import time
from functools import wraps
from typing import Callable, Optional, Tuple, Type

import structlog

from catalog_delta_sync.errors import TransientError

log = structlog.stdlib.get_logger()

# Longest single sleep between two stop checks while backing off.
STOP_POLL_INTERVAL = 0.25


def backoff_delay(attempt: int, base_delay: float, max_delay: float) -> float:
    """Delay before retry number ``attempt`` (zero-based), capped at ``max_delay``."""
    return min(base_delay * (2**attempt), max_delay)


def _wait(delay: float, should_stop: Optional[Callable[[], None]]) -> None:
    if should_stop is None:
        time.sleep(delay)
        return

    remaining = delay
    while remaining > 0:
        should_stop()
        step = min(remaining, STOP_POLL_INTERVAL)
        time.sleep(step)
        remaining -= step


def exponential_backoff_retry(
    max_retries: int = 3,
    base_delay: float = 1.0,
    max_delay: float = 60.0,
    exceptions: Tuple[Type[Exception], ...] = (TransientError,),
) -> Callable:
    """
    Decorator that retries a function with exponential backoff.

    Only ``exceptions`` are retried; anything else propagates on the first
    attempt. When retries run out, the last exception is re-raised unchanged.

    The decorated function accepts an extra keyword argument ``should_stop``.
    When given, it is called before every retry and between short slices of
    each backoff sleep; whatever it raises ends the retry loop immediately.

    Args:
        max_retries: Maximum number of retry attempts
        base_delay: Initial delay in seconds
        max_delay: Maximum delay in seconds
        exceptions: Tuple of exception types to catch and retry

    Returns:
        Decorated function with retry logic
    """

    def decorator(func: Callable) -> Callable:
        @wraps(func)
        def wrapper(*args, should_stop: Optional[Callable[[], None]] = None, **kwargs):
            for attempt in range(max_retries + 1):
                if attempt and should_stop is not None:
                    should_stop()
                try:
                    return func(*args, **kwargs)
                except exceptions as e:
                    if attempt == max_retries:
                        log.error(
                            "max_retries_reached",
                            function=func.__name__,
                            max_retries=max_retries,
                            error=str(e),
                        )
                        raise

                    delay = backoff_delay(attempt, base_delay, max_delay)

                    log.warning(
                        "retrying_after_error",
                        function=func.__name__,
                        attempt=attempt + 1,
                        max_retries=max_retries,
                        delay_seconds=delay,
                        error=str(e),
                    )

                    _wait(delay, should_stop)

        return wrapper

    return decorator
