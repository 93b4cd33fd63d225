"""
Retry utilities for recipe-autopilot.

Tenacity-based decorators for the operations that can fail transiently:
recipe file I/O and browser launch. Probing and repair never retry on their
own; a failed probe is a reported outcome, not something to hammer the site
with.
"""

import logging
from typing import Callable, Tuple, Type, TypeVar

from playwright.async_api import Error as PlaywrightError
from tenacity import (
    retry as tenacity_retry,
    stop_after_attempt,
    wait_exponential,
    retry_if_exception_type,
    retry_if_not_exception_type,
    before_sleep_log
)

logger = logging.getLogger(__name__)

T = TypeVar('T')

FILE_EXCEPTIONS = (
    IOError,
    OSError,
    PermissionError
)


def with_exponential_backoff(
    max_attempts: int = 3,
    min_wait: float = 1.0,
    max_wait: float = 10.0,
    exception_types: Tuple[Type[Exception], ...] = FILE_EXCEPTIONS,
    never_retry: Tuple[Type[Exception], ...] = ()
) -> Callable[[Callable[..., T]], Callable[..., T]]:
    """
    Decorator that adds exponential backoff retry logic to a function.

    Args:
        max_attempts: Maximum number of attempts
        min_wait: Minimum wait time between retries (seconds)
        max_wait: Maximum wait time between retries (seconds)
        exception_types: Exception types to retry on
        never_retry: Subclasses of ``exception_types`` that fail immediately

    Returns:
        Decorated function with retry logic
    """
    condition = retry_if_exception_type(exception_types)
    if never_retry:
        condition = condition & retry_if_not_exception_type(never_retry)
    return tenacity_retry(
        stop=stop_after_attempt(max_attempts),
        wait=wait_exponential(multiplier=1, min=min_wait, max=max_wait),
        retry=condition,
        before_sleep=before_sleep_log(logger, logging.WARNING),
        reraise=True
    )


def with_file_operation_retry(max_attempts: int = 3) -> Callable[[Callable[..., T]], Callable[..., T]]:
    """
    Specialized retry for file operations. A missing file is not transient.
    """
    return with_exponential_backoff(
        max_attempts=max_attempts,
        min_wait=0.5,
        max_wait=5.0,
        exception_types=FILE_EXCEPTIONS,
        never_retry=(FileNotFoundError, IsADirectoryError)
    )


def with_browser_retry(max_attempts: int = 2) -> Callable[[Callable[..., T]], Callable[..., T]]:
    """Specialized retry for launching the Playwright browser."""
    return with_exponential_backoff(
        max_attempts=max_attempts,
        min_wait=2.0,
        max_wait=15.0,
        exception_types=(PlaywrightError,)
    )
