"""
Retry utilities for handling transient server failures.

Grant and revoke calls are idempotent at the server boundary, so they can be
repeated safely when the failure looks transient.
"""

import time
import logging
from typing import Any, Callable, Dict, Optional, Tuple, Type

logger = logging.getLogger(__name__)


class RetryableError(Exception):
    """Base exception for errors that should trigger retries."""
    pass


class MaxRetriesExceeded(Exception):
    """Raised when maximum retry attempts are exceeded."""

    def __init__(self, attempts: int, last_exception: Exception):
        self.attempts = attempts
        self.last_exception = last_exception
        super().__init__(f"Failed after {attempts} attempts: {last_exception}")


def retry_call(
    func: Callable,
    args: tuple = (),
    kwargs: dict = None,
    max_attempts: int = 3,
    delay: float = 1.0,
    backoff: float = 1.0,
    exceptions: Tuple[Type[Exception], ...] = (Exception,),
    retry_if: Optional[Callable[[Exception], bool]] = None,
    on_retry: Optional[Callable[[int, Exception], None]] = None
) -> Any:
    """
    Call a function with retry logic.

    Args:
        func: Function to call
        args: Positional arguments for function
        kwargs: Keyword arguments for function
        max_attempts: Maximum number of attempts (including the first call)
        delay: Initial delay between retries
        backoff: Delay multiplier for exponential backoff
        exceptions: Exception types to catch
        retry_if: Optional predicate; a caught exception for which it returns
            False is re-raised immediately without further attempts
        on_retry: Optional callback for retry events

    Returns:
        Function result

    Raises:
        MaxRetriesExceeded: If all retry attempts fail
    """
    if kwargs is None:
        kwargs = {}

    max_attempts = max(1, max_attempts)
    last_exception = None
    current_delay = delay

    for attempt in range(max_attempts):
        try:
            result = func(*args, **kwargs)
            if attempt > 0:
                logger.info(f"Operation succeeded on attempt {attempt + 1}")
            return result

        except exceptions as e:
            last_exception = e

            if retry_if is not None and not retry_if(e):
                raise

            if attempt == max_attempts - 1:
                break

            logger.debug(f"Attempt {attempt + 1} failed with {type(e).__name__}: {e}")
            logger.debug(f"Retrying in {current_delay:.1f} seconds...")

            if on_retry:
                try:
                    on_retry(attempt + 1, e)
                except Exception as callback_error:
                    logger.warning(f"Retry callback failed: {callback_error}")

            time.sleep(current_delay)
            current_delay *= backoff

    raise MaxRetriesExceeded(max_attempts, last_exception)


def call_with_config(func: Callable, error_config: Dict[str, Any], operation_name: str) -> Any:
    """
    Call ``func`` retrying transient failures per the error_handling section.

    The original exception is raised once attempts are exhausted or the
    failure is not transient.
    """
    max_retries = error_config.get('max_retries', 3)
    try:
        return retry_call(
            func,
            max_attempts=max_retries + 1,
            delay=error_config.get('retry_wait_seconds', 5),
            backoff=error_config.get('retry_backoff', 1.0),
            exceptions=(Exception,),
            retry_if=is_retryable_error,
            on_retry=create_retry_callback(operation_name)
        )
    except MaxRetriesExceeded as e:
        logger.warning(f"{operation_name} still failing after {e.attempts} attempts: {e.last_exception}")
        raise e.last_exception


def is_retryable_error(exception: Exception) -> bool:
    """
    Determine if an exception should trigger a retry.

    Args:
        exception: Exception to check

    Returns:
        True if the exception indicates a transient failure
    """
    if isinstance(exception, (ConnectionError, TimeoutError, RetryableError)):
        return True

    status_code = getattr(exception, 'status_code', None)
    if isinstance(status_code, int):
        # 429 and 5xx are transient, other HTTP errors are not
        return status_code == 429 or 500 <= status_code < 600

    error_msg = str(exception).lower()
    transient_patterns = [
        'timeout',
        'timed out',
        'connection reset',
        'connection refused',
        'network is unreachable',
        'temporary failure',
        'service unavailable',
        'too many requests'
    ]

    return any(pattern in error_msg for pattern in transient_patterns)


def create_retry_callback(operation_name: str) -> Callable[[int, Exception], None]:
    """
    Create a standard retry callback for logging retry attempts.

    Args:
        operation_name: Name of the operation being retried

    Returns:
        Callback function for retry events
    """
    def on_retry(attempt: int, exception: Exception):
        logger.warning(f"{operation_name} failed on attempt {attempt}, "
                       f"retrying due to {type(exception).__name__}: {exception}")

    return on_retry
