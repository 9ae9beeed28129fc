"""
Retry Utilities

Retry decorator with fixed or exponential backoff and an optional
per-attempt timeout, used by the webhook job processor.
"""

import asyncio
from functools import wraps
from typing import Any, Awaitable, Callable, Optional, Tuple, Type

from fic_middleware.config import settings
from fic_middleware.utils.exceptions import RetryableException
from fic_middleware.utils.logging_config import get_logger

logger = get_logger(__name__)


def calculate_backoff(
    attempt: int,
    base: float = 2,
    max_backoff: float = 32,
    strategy: str = "exponential",
) -> float:
    """
    Calculate the delay before the next attempt.

    Args:
        attempt: Current retry attempt (0-indexed)
        base: Fixed delay, or base for the exponential calculation
        max_backoff: Maximum backoff time in seconds
        strategy: "fixed" or "exponential"

    Returns:
        Backoff delay in seconds
    """
    if strategy == "fixed":
        return float(base)
    backoff = min(base**attempt, max_backoff)
    return float(backoff)


def retry_async(
    max_attempts: Optional[int] = None,
    backoff_base: Optional[float] = None,
    backoff_max: Optional[float] = None,
    backoff_strategy: str = "fixed",
    attempt_timeout: Optional[float] = None,
    retryable_exceptions: Tuple[Type[Exception], ...] = (RetryableException,),
    on_retry: Optional[Callable[[Exception, int], None]] = None,
    sleep: Callable[[float], Awaitable[Any]] = asyncio.sleep,
) -> Callable:
    """
    Decorator for async functions with backoff retry logic.

    Args:
        max_attempts: Total number of attempts (default from config)
        backoff_base: Fixed delay or exponential base (default from config)
        backoff_max: Cap for exponential backoff
        backoff_strategy: "fixed" or "exponential"
        attempt_timeout: Seconds allowed per attempt; a timeout counts as a
            retryable failure
        retryable_exceptions: Exception types that trigger another attempt;
            anything else propagates immediately
        on_retry: Optional callback called before each retry
        sleep: Awaitable used to wait between attempts

    Example:
        @retry_async(max_attempts=3, backoff_base=60, attempt_timeout=120)
        async def sync_resource():
            ...
    """
    _max_attempts = max_attempts or settings.job_max_attempts
    _backoff_base = backoff_base if backoff_base is not None else settings.job_backoff_seconds
    _backoff_max = backoff_max if backoff_max is not None else _backoff_base

    def decorator(func: Callable) -> Callable:
        @wraps(func)
        async def wrapper(*args: Any, **kwargs: Any) -> Any:
            last_exception: Optional[Exception] = None

            for attempt in range(_max_attempts):
                try:
                    if attempt_timeout:
                        result = await asyncio.wait_for(
                            func(*args, **kwargs), timeout=attempt_timeout
                        )
                    else:
                        result = await func(*args, **kwargs)
                    if attempt > 0:
                        logger.info(
                            f"Function {func.__name__} succeeded after {attempt} retries"
                        )
                    return result

                except asyncio.TimeoutError:
                    last_exception = RetryableException(
                        f"Attempt timed out after {attempt_timeout}s",
                        retry_count=attempt + 1,
                        max_retries=_max_attempts,
                    )
                except retryable_exceptions as e:
                    last_exception = e

                if attempt < _max_attempts - 1:
                    backoff_time = calculate_backoff(
                        attempt, _backoff_base, _backoff_max, backoff_strategy
                    )

                    logger.warning(
                        f"Attempt {attempt + 1}/{_max_attempts} failed for {func.__name__}: {last_exception}. "
                        f"Retrying in {backoff_time}s...",
                        extra={
                            "function": func.__name__,
                            "attempt": attempt + 1,
                            "max_attempts": _max_attempts,
                            "backoff_time": backoff_time,
                            "error": str(last_exception),
                        },
                    )

                    if on_retry:
                        on_retry(last_exception, attempt)

                    await sleep(backoff_time)
                else:
                    logger.error(
                        f"All {_max_attempts} attempts failed for {func.__name__}",
                        extra={
                            "function": func.__name__,
                            "max_attempts": _max_attempts,
                            "error": str(last_exception),
                        },
                    )

            if isinstance(last_exception, RetryableException):
                last_exception.details["retry_count"] = _max_attempts
                last_exception.details["max_retries"] = _max_attempts
            if last_exception:
                raise last_exception

            raise RuntimeError(f"Unexpected error in retry logic for {func.__name__}")

        return wrapper

    return decorator
