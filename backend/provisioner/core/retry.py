"""
Retry logic with exponential backoff for the flaky parts of provisioning:
downloads, pip runs and deletes/copies that hit a locked file.

Only ProvisioningBaseException subclasses marked recoverable are retried
(plus any plain exception types listed explicitly). A server that says how
long to wait (`retry_after` in the error context) is believed, up to
`max_delay`. When the last attempt fails, the attempt count is added to the
error context so the Failed event shows how hard we tried.
"""

import asyncio
import inspect
import time
from typing import Callable, TypeVar, Any, Optional, Type, Tuple
from functools import wraps
import logging

from provisioner.core.exceptions import ProvisioningBaseException

logger = logging.getLogger(__name__)

T = TypeVar('T')


def backoff_delay(
    attempt: int,
    initial_delay: float,
    max_delay: float,
    exponential_base: float = 2.0,
    error: Optional[Exception] = None,
) -> float:
    """Seconds to wait after failed attempt number `attempt` (1-based)."""
    if isinstance(error, ProvisioningBaseException):
        retry_after = error.context.get("retry_after")
        if isinstance(retry_after, (int, float)) and retry_after >= 0:
            return min(float(retry_after), max_delay)
    return min(initial_delay * (exponential_base ** (attempt - 1)), max_delay)


def _give_up(name: str, e: Exception, attempt: int, max_attempts: int) -> bool:
    if isinstance(e, ProvisioningBaseException):
        if not e.recoverable:
            logger.error(f"{name}: {e.error_code} is not retryable, giving up")
            return True
        if attempt >= max_attempts:
            e.context.setdefault("attempts", attempt)

    if attempt >= max_attempts:
        if max_attempts > 1:
            logger.error(f"{name}: still failing after {max_attempts} attempts")
        return True

    return False


def retry_with_backoff(
    max_attempts: int = 3,
    initial_delay: float = 1.0,
    max_delay: float = 60.0,
    exponential_base: float = 2.0,
    exceptions: Tuple[Type[Exception], ...] = (Exception,),
    on_retry: Optional[Callable[[Exception, int], None]] = None
):
    """
    Decorator for automatic retry with exponential backoff.

    Args:
        max_attempts: Maximum number of attempts (1 disables retrying)
        initial_delay: Delay after the first failure, in seconds
        max_delay: Cap for both the computed backoff and a server's retry_after
        exponential_base: Growth factor between consecutive delays
        exceptions: Exception types that trigger a retry
        on_retry: Called with (error, attempt) before each wait

    Example:
        @retry_with_backoff(max_attempts=3, initial_delay=0.5, exceptions=(FileLockedError,))
        def copy_into_place(source: Path, target: Path):
            ...

    Attempts usually come from settings, so it is mostly applied at runtime:
        self._download = retry_with_backoff(
            max_attempts=settings.DOWNLOAD_MAX_ATTEMPTS,
            exceptions=(TransientIOError,),
        )(self._download_once)
    """
    if max_attempts < 1:
        raise ValueError(f"max_attempts must be at least 1, got {max_attempts}")

    def decorator(func: Callable[..., T]) -> Callable[..., T]:
        name = getattr(func, "__qualname__", func.__name__)

        def next_delay(e: Exception, attempt: int) -> Optional[float]:
            if _give_up(name, e, attempt, max_attempts):
                return None

            delay = backoff_delay(attempt, initial_delay, max_delay, exponential_base, e)
            logger.warning(f"🔁 {name} attempt {attempt}/{max_attempts} failed: {e}. Retrying in {delay:.2f}s")
            if on_retry:
                on_retry(e, attempt)
            return delay

        @wraps(func)
        async def async_wrapper(*args, **kwargs) -> T:
            attempt = 0
            while True:
                attempt += 1
                try:
                    return await func(*args, **kwargs)
                except exceptions as e:
                    delay = next_delay(e, attempt)
                    if delay is None:
                        raise
                await asyncio.sleep(delay)

        @wraps(func)
        def sync_wrapper(*args, **kwargs) -> T:
            attempt = 0
            while True:
                attempt += 1
                try:
                    return func(*args, **kwargs)
                except exceptions as e:
                    delay = next_delay(e, attempt)
                    if delay is None:
                        raise
                time.sleep(delay)

        return async_wrapper if inspect.iscoroutinefunction(func) else sync_wrapper

    return decorator


def fallback_on_error(fallback_value: Any, exceptions: Tuple[Type[Exception], ...] = (Exception,)):
    """
    Return `fallback_value` instead of raising. For best-effort filesystem
    scans where an unreadable directory simply means "nothing found there".
    """
    def decorator(func: Callable[..., T]) -> Callable[..., T]:
        @wraps(func)
        async def async_wrapper(*args, **kwargs):
            try:
                return await func(*args, **kwargs)
            except exceptions as e:
                logger.debug(f"{func.__name__} failed, using {fallback_value!r}: {e}")
                return fallback_value

        @wraps(func)
        def sync_wrapper(*args, **kwargs):
            try:
                return func(*args, **kwargs)
            except exceptions as e:
                logger.debug(f"{func.__name__} failed, using {fallback_value!r}: {e}")
                return fallback_value

        return async_wrapper if inspect.iscoroutinefunction(func) else sync_wrapper

    return decorator
