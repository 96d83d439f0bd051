"""
Retry utilities with exponential backoff for API calls and queued jobs.

Connectors use retry_async around single HTTP calls; the job queue uses
calculate_backoff (without jitter) to reschedule failed jobs.
"""
import asyncio
import functools
import random
from dataclasses import dataclass, field
from typing import Callable, List, Optional, Tuple, Type

import aiohttp

from app.utils.logger import log


@dataclass
class RetryStats:
    """Tracks retry statistics for a single operation."""
    attempts: int = 0
    total_delay_seconds: float = 0.0
    last_error: Optional[str] = None
    errors: List[str] = field(default_factory=list)
    success: bool = False

    def record_attempt(self, error: Optional[Exception] = None, delay: float = 0.0):
        """
        Record one attempt.

        Args:
            error: The exception the attempt raised, None when it succeeded
            delay: Seconds slept before the next attempt
        """
        self.attempts += 1
        self.total_delay_seconds += delay
        if error:
            error_str = f"{type(error).__name__}: {str(error)}"
            self.last_error = error_str
            self.errors.append(error_str)

    def to_dict(self) -> dict:
        """Convert to dictionary for logging and sync results."""
        return {
            "attempts": self.attempts,
            "total_delay_seconds": round(self.total_delay_seconds, 2),
            "success": self.success,
            "last_error": self.last_error,
            "errors": self.errors[:5]  # Cap at 5 errors
        }


# Network errors from the stdlib and aiohttp
DEFAULT_RETRYABLE_EXCEPTIONS: Tuple[Type[Exception], ...] = (
    ConnectionError,
    TimeoutError,
    asyncio.TimeoutError,
    aiohttp.ClientConnectionError,
)

RETRYABLE_STATUS_CODES: Tuple[int, ...] = (429, 500, 502, 503, 504)


def calculate_backoff(
    attempt: int,
    base_delay: float = 1.0,
    max_delay: float = 60.0,
    exponential_base: float = 2.0,
    jitter: bool = True
) -> float:
    """
    Calculate delay for exponential backoff.

    Args:
        attempt: Current attempt number (1-indexed)
        base_delay: Initial delay in seconds
        max_delay: Maximum delay cap
        exponential_base: Base for exponential calculation
        jitter: Add 0-25% randomness to spread out simultaneous retries

    Returns:
        Delay in seconds
    """
    # base_delay * (exponential_base ^ (attempt - 1))
    delay = base_delay * (exponential_base ** (max(attempt, 1) - 1))

    # Cap at max_delay
    delay = min(delay, max_delay)

    if jitter:
        delay += delay * random.uniform(0, 0.25)

    return delay


def is_retryable_error(
    error: Exception,
    retryable_exceptions: Tuple[Type[Exception], ...] = DEFAULT_RETRYABLE_EXCEPTIONS,
    retryable_status_codes: Tuple[int, ...] = RETRYABLE_STATUS_CODES
) -> bool:
    """
    Check if an error is worth retrying.

    Args:
        error: The exception to check
        retryable_exceptions: Exception types that are always retried
        retryable_status_codes: HTTP status codes to retry

    Returns:
        True if the call should be attempted again
    """
    # aiohttp HTTP errors carry the status directly
    if isinstance(error, aiohttp.ClientResponseError):
        return error.status in retryable_status_codes

    if isinstance(error, retryable_exceptions):
        return True

    # Otherwise match on the message, the way the Graph and Admin APIs phrase it
    error_str = str(error).lower()

    # Throttling
    if "rate limit" in error_str or "too many requests" in error_str or "too many calls" in error_str:
        return True

    for code in retryable_status_codes:
        if str(code) in error_str:
            return True

    if "timeout" in error_str or "timed out" in error_str:
        return True

    if "connection" in error_str and ("refused" in error_str or "reset" in error_str or "failed" in error_str):
        return True

    return False


def retry_async(
    max_attempts: int = 3,
    base_delay: float = 1.0,
    max_delay: float = 60.0,
    exponential_base: float = 2.0,
    retryable_exceptions: Tuple[Type[Exception], ...] = DEFAULT_RETRYABLE_EXCEPTIONS,
    on_retry: Optional[Callable[[int, Exception, float], None]] = None
):
    """
    Async decorator for retrying operations with exponential backoff.

    Args:
        max_attempts: Maximum number of attempts
        base_delay: Initial delay between retries
        max_delay: Maximum delay cap
        exponential_base: Base for exponential backoff
        retryable_exceptions: Exception types to retry
        on_retry: Callback called on each retry (attempt, error, delay)

    Usage:
        @retry_async(max_attempts=3)
        async def fetch_page():
            ...
    """
    def decorator(func: Callable):
        # Holds the stats of the most recent call for get_retry_stats
        last_stats = [None]

        @functools.wraps(func)
        async def wrapper(*args, **kwargs):
            stats = RetryStats()
            last_stats[0] = stats

            for attempt in range(1, max_attempts + 1):
                try:
                    result = await func(*args, **kwargs)
                    stats.record_attempt()
                    stats.success = True

                    # Log if we recovered from errors
                    if attempt > 1:
                        log.info(
                            f"{func.__name__} succeeded on attempt {attempt} "
                            f"after {stats.total_delay_seconds:.1f}s total delay"
                        )

                    return result

                except Exception as e:
                    if attempt >= max_attempts or not is_retryable_error(e, retryable_exceptions):
                        stats.record_attempt(error=e)
                        log.error(f"{func.__name__} failed after {attempt} attempts: {e}")
                        raise

                    delay = calculate_backoff(
                        attempt,
                        base_delay=base_delay,
                        max_delay=max_delay,
                        exponential_base=exponential_base
                    )
                    stats.record_attempt(error=e, delay=delay)

                    log.warning(
                        f"{func.__name__} attempt {attempt} failed: {e}. "
                        f"Retrying in {delay:.1f}s..."
                    )

                    if on_retry:
                        on_retry(attempt, e, delay)

                    await asyncio.sleep(delay)

            raise RuntimeError("Retry exhausted")

        wrapper.get_retry_stats = lambda: last_stats[0]
        return wrapper

    return decorator
