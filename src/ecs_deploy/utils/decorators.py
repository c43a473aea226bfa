"""Decorator utilities for cross-cutting concerns."""
import time
import logging
import functools
from typing import Any, Callable, Optional, TypeVar, cast

from ..errors import PlatformError

logger = logging.getLogger(__name__)

F = TypeVar('F', bound=Callable[..., Any])

# AWS error codes worth a second attempt
TRANSIENT_ERROR_CODES = {
    'Throttling',
    'ThrottlingException',
    'RequestLimitExceeded',
    'TooManyRequestsException',
    'ServerException',
    'ServiceUnavailable',
    'InternalFailure',
}


def log_execution_time(func: F) -> F:
    """Log how long a controller operation took, including failures."""
    @functools.wraps(func)
    def wrapper(*args, **kwargs):
        start_time = time.time()
        try:
            result = func(*args, **kwargs)
            logger.info(f"{func.__name__} completed in {time.time() - start_time:.2f}s")
            return result
        except Exception as e:
            logger.error(f"{func.__name__} failed after {time.time() - start_time:.2f}s: {str(e)}")
            raise
    return cast(F, wrapper)


def is_transient(error: Exception) -> bool:
    return isinstance(error, PlatformError) and error.code in TRANSIENT_ERROR_CODES


def retry(max_attempts: int = 3, delay: float = 1.0, backoff: float = 2.0,
          exceptions: tuple = (Exception,), retry_if: Optional[Callable[[Exception], bool]] = None,
          logger_name: Optional[str] = None):
    """Decorator for retrying functions with exponential backoff.

    Args:
        max_attempts: Maximum number of attempts
        delay: Initial delay between attempts in seconds
        backoff: Multiplier applied to the delay after each failure
        exceptions: Exception types that may be retried
        retry_if: Optional predicate; an error it rejects is raised immediately
        logger_name: Optional logger name (defaults to module logger)
    """
    retry_logger = logging.getLogger(logger_name) if logger_name else logger

    def decorator(func: F) -> F:
        @functools.wraps(func)
        def wrapper(*args, **kwargs):
            current_delay = delay
            for attempt in range(1, max_attempts + 1):
                try:
                    return func(*args, **kwargs)
                except exceptions as e:
                    if retry_if is not None and not retry_if(e):
                        raise
                    if attempt == max_attempts:
                        retry_logger.error(f"All {max_attempts} attempts failed for {func.__name__}: {str(e)}")
                        raise
                    retry_logger.warning(
                        f"Attempt {attempt}/{max_attempts} for {func.__name__} failed: {str(e)}. "
                        f"Retrying in {current_delay:.2f}s"
                    )
                    time.sleep(current_delay)
                    current_delay *= backoff

        return cast(F, wrapper)

    return decorator


# Read-only platform calls retry on throttling and server-side errors
platform_retry = retry(max_attempts=3, delay=1.0, backoff=2.0,
                       exceptions=(PlatformError,), retry_if=is_transient)
