"""
Retry decorator with exponential backoff for external I/O

Provides retry logic for transient failures when talking to the
delivery provider API or the run-history database:
- Exponential backoff (base 2.0)
- Jitter to prevent thundering herd
- Configurable max retries
- Exception filtering by type or by predicate
- Callback support for metrics integration

Reconcile calls themselves are never wrapped: the next scheduled tick is
the retry mechanism for a whole task run.

Usage:
    from opsutils.retry import retry_with_backoff

    @retry_with_backoff(max_retries=3, base_delay=1.0)
    def fetch_page(session, offset):
        return session.get(url, params={"offset": offset})
"""

import logging
import random
import time
from collections.abc import Callable
from functools import wraps
from typing import Any

logger = logging.getLogger(__name__)


def compute_backoff_delay(
    attempt: int,
    base_delay: float,
    max_delay: float = 60.0,
    exponential_base: float = 2.0,
    jitter: bool = True,
) -> float:
    """
    Calculate the sleep before the next attempt

    Args:
        attempt: Zero-based attempt number that just failed
        base_delay: Initial delay in seconds
        max_delay: Upper bound for the delay
        exponential_base: Growth factor per attempt
        jitter: Add +/-25% random jitter

    Returns:
        Delay in seconds (never below 0.1 when jitter is applied)
    """
    delay = min(base_delay * (exponential_base ** attempt), max_delay)

    if jitter:
        jitter_amount = delay * 0.25
        delay = delay + random.uniform(-jitter_amount, jitter_amount)
        delay = max(0.1, delay)

    return delay


def retry_with_backoff(
    max_retries: int = 3,
    base_delay: float = 1.0,
    max_delay: float = 60.0,
    exponential_base: float = 2.0,
    jitter: bool = True,
    retryable_exceptions: tuple[type[Exception], ...] | None = None,
    retry_if: Callable[[Exception], bool] | None = None,
    on_retry: Callable[[int, Exception, float], None] | None = None,
):
    """
    Decorator that retries a function with exponential backoff

    Args:
        max_retries: Maximum number of retry attempts (default: 3)
        base_delay: Initial delay in seconds (default: 1.0)
        max_delay: Maximum delay in seconds (default: 60.0)
        exponential_base: Base for exponential backoff (default: 2.0)
        jitter: Add random jitter to prevent thundering herd (default: True)
        retryable_exceptions: Tuple of exception types to retry (default: all exceptions)
        retry_if: Predicate deciding whether an exception is retryable
        on_retry: Callback function(attempt, exception, delay) called on each retry

    Returns:
        Decorated function with retry logic

    Example:
        @retry_with_backoff(
            max_retries=5,
            retryable_exceptions=(ConnectionError, TimeoutError),
            on_retry=lambda attempt, exc, delay: metrics.retries.inc()
        )
        def list_bounces(client, offset):
            return client.get("/bounces", params={"offset": offset})
    """
    def decorator(func: Callable) -> Callable:
        @wraps(func)
        def wrapper(*args, **kwargs) -> Any:
            func_name = getattr(func, '__name__', 'function')

            for attempt in range(max_retries + 1):
                try:
                    return func(*args, **kwargs)

                except Exception as e:
                    retryable = True
                    if retryable_exceptions and not isinstance(e, retryable_exceptions):
                        retryable = False
                    if retry_if is not None and not retry_if(e):
                        retryable = False

                    if not retryable:
                        logger.error(
                            f"Non-retryable exception in {func_name}: {type(e).__name__}: {e}"
                        )
                        raise

                    if attempt == max_retries:
                        logger.error(
                            f"Max retries ({max_retries}) exceeded for {func_name}: "
                            f"{type(e).__name__}: {e}"
                        )
                        raise

                    delay = compute_backoff_delay(
                        attempt,
                        base_delay,
                        max_delay=max_delay,
                        exponential_base=exponential_base,
                        jitter=jitter,
                    )

                    logger.warning(
                        f"Attempt {attempt + 1}/{max_retries} failed for {func_name}: "
                        f"{type(e).__name__}: {e}. Retrying in {delay:.2f}s..."
                    )

                    if on_retry:
                        try:
                            on_retry(attempt + 1, e, delay)
                        except Exception as callback_error:
                            logger.error(f"Error in retry callback: {callback_error}")

                    time.sleep(delay)

            raise RuntimeError(f"Unexpected error in retry logic for {func_name}")

        return wrapper
    return decorator


def is_retryable_db_exception(exception: Exception) -> bool:
    """
    Determine if a database exception is retryable

    Checks for common transient database errors: connection loss,
    timeouts, lock waits and deadlocks. Syntax errors and constraint
    violations are not retryable.

    Args:
        exception: The exception to check

    Returns:
        True if the exception is retryable, False otherwise
    """
    exception_str = str(exception).lower()
    exception_type = type(exception).__name__.lower()

    retryable_patterns = [
        "connection",
        "timeout",
        "deadlock",
        "lock wait timeout",
        "server closed the connection",
        "could not connect",
        "connection refused",
        "connection reset",
        "broken pipe",
        "terminating connection",
    ]

    for pattern in retryable_patterns:
        if pattern in exception_str or pattern in exception_type:
            return True

    return exception_type in {
        "connectionerror",
        "timeouterror",
        "operationalerror",
        "interfaceerror",
    }


def retry_database_operation(
    max_retries: int = 3,
    base_delay: float = 1.0,
    on_retry: Callable[[int, Exception, float], None] | None = None,
):
    """
    Convenience decorator for database operations with smart exception filtering

    Only retries on transient database errors (connection, timeout, deadlock).
    Non-retryable errors fail immediately.

    Example:
        @retry_database_operation(max_retries=5)
        def insert_run(cursor, run):
            cursor.execute(INSERT_SQL, params)
    """
    return retry_with_backoff(
        max_retries=max_retries,
        base_delay=base_delay,
        max_delay=60.0,
        retry_if=is_retryable_db_exception,
        on_retry=on_retry,
    )
