"""
Retry with exponential backoff for model requests.

Only rate limits and 5xx transport errors are retried. Timeouts propagate
immediately since every participant call already runs under the voting
round's deadline.
"""

import functools
import time
from typing import Any, Callable, Optional, TypeVar, cast

from loguru import logger

from .errors import ModelRateLimitError, ModelTransportError


T = TypeVar("T")

log = logger.bind(component="model_calls")


def _is_retryable(error: Exception) -> bool:
    if isinstance(error, ModelRateLimitError):
        return True
    if isinstance(error, ModelTransportError):
        return error.status_code is not None and 500 <= error.status_code < 600
    return False


def next_delay(
    error: Exception,
    attempt: int,
    base_delay: float,
    max_delay: float,
    exponential_base: float = 2.0,
) -> Optional[float]:
    """
    Seconds to wait before retry number ``attempt`` (1-based), or None when
    the error should not be retried.

    A rate limit carrying ``retry_after`` waits that long (capped); every other
    retryable error waits ``base_delay * exponential_base ** attempt`` (capped).
    """
    if not _is_retryable(error):
        return None
    retry_after = getattr(error, "retry_after", None)
    if retry_after:
        return min(retry_after, max_delay)
    return min(base_delay * exponential_base**attempt, max_delay)


def exponential_backoff(
    max_retries: int = 2,
    base_delay: float = 0.5,
    max_delay: float = 8.0,
    exponential_base: float = 2.0,
) -> Callable[[Callable[..., T]], Callable[..., T]]:
    """
    Decorator retrying rate limited and server-side failures.

    Args:
        max_retries: Retries after the first attempt
        base_delay: Delay unit in seconds
        max_delay: Upper bound on any single wait
        exponential_base: Growth factor per attempt

    Returns:
        Decorated function with retry logic
    """

    def decorator(func: Callable[..., T]) -> Callable[..., T]:
        @functools.wraps(func)
        def wrapper(*args: Any, **kwargs: Any) -> T:
            attempt = 0
            while True:
                try:
                    return func(*args, **kwargs)
                except ModelTransportError as e:
                    attempt += 1
                    delay = next_delay(e, attempt, base_delay, max_delay, exponential_base)
                    if delay is None:
                        log.error(f"Non-retryable provider error: {e}")
                        raise
                    if attempt > max_retries:
                        log.error(f"Giving up after {max_retries} retries: {e}")
                        raise
                    log.warning(
                        f"{type(e).__name__} from {e.provider}, retry {attempt}/{max_retries} "
                        f"in {delay:.2f}s"
                    )
                    time.sleep(delay)

        return cast(Callable[..., T], wrapper)

    return decorator
