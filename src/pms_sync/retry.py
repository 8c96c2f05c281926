"""
Retry with exponential backoff for outbound API calls.

Usage:
    from pms_sync.retry import retry, RetryConfig

    @retry(config=API_RETRY_CONFIG)
    async def call_external_api():
        ...

When every attempt fails the last exception is re-raised unchanged, so
callers keep handling ExternalApiError and friends as usual.
"""
from __future__ import annotations

import asyncio
import functools
import logging
import random
from dataclasses import dataclass
from typing import Awaitable, Callable, Optional, ParamSpec, Type, TypeVar

import httpx

from .constants import RetryDefaults
from .exceptions import AuthenticationError, ExternalApiError, RateLimitError

logger = logging.getLogger("pms.retry")

P = ParamSpec("P")
T = TypeVar("T")


def is_transient_error(exc: BaseException) -> bool:
    """Network failures, throttling and 5xx responses are worth retrying."""
    if isinstance(exc, AuthenticationError):
        return False
    if isinstance(exc, (httpx.TransportError, RateLimitError)):
        return True
    if isinstance(exc, ExternalApiError):
        return exc.status_code is None or exc.status_code >= 500
    return False


@dataclass(frozen=True)
class RetryConfig:
    """Configuration for retry behavior.

    Attributes:
        max_retries: Maximum number of retry attempts (0 means no retries)
        base_delay: Initial delay between retries in seconds
        max_delay: Maximum delay between retries in seconds
        exponential_base: Base for exponential backoff calculation
        jitter: Maximum jitter factor (0.0-1.0) applied to delays
        retryable_exceptions: Exception types that trigger retries
        retry_condition: Optional predicate overriding retryable_exceptions
    """

    max_retries: int = RetryDefaults.MAX_RETRIES
    base_delay: float = RetryDefaults.BASE_DELAY
    max_delay: float = RetryDefaults.MAX_DELAY
    exponential_base: float = RetryDefaults.EXPONENTIAL_BASE
    jitter: float = RetryDefaults.JITTER
    retryable_exceptions: tuple[Type[BaseException], ...] = (Exception,)
    retry_condition: Optional[Callable[[BaseException], bool]] = None

    def calculate_delay(self, attempt: int) -> float:
        """Delay before retry number ``attempt`` (0-based), jitter included."""
        delay = min(self.base_delay * (self.exponential_base ** attempt), self.max_delay)
        if self.jitter > 0:
            jitter_range = delay * self.jitter
            delay = delay + random.uniform(-jitter_range, jitter_range)
        return max(0.0, delay)

    def should_retry(self, exception: BaseException) -> bool:
        if self.retry_condition is not None:
            return self.retry_condition(exception)
        return isinstance(exception, self.retryable_exceptions)


API_RETRY_CONFIG = RetryConfig(retry_condition=is_transient_error)


async def retry_async(
    func: Callable[P, Awaitable[T]],
    *args: P.args,
    config: Optional[RetryConfig] = None,
    **kwargs: P.kwargs,
) -> T:
    """Execute an async function with retry logic.

    Raises:
        The last exception once retries are exhausted, or the first
        exception that is not retryable.
    """
    if config is None:
        config = RetryConfig()

    attempt = 0
    while True:
        try:
            return await func(*args, **kwargs)
        except Exception as e:
            if attempt >= config.max_retries or not config.should_retry(e):
                raise
            delay = config.calculate_delay(attempt)
            attempt += 1
            logger.warning(
                f"Retry {attempt}/{config.max_retries} for "
                f"{func.__name__} after {type(e).__name__}: {e}. "
                f"Waiting {delay:.2f}s"
            )
            await asyncio.sleep(delay)


def retry(
    config: Optional[RetryConfig] = None,
) -> Callable[[Callable[P, Awaitable[T]]], Callable[P, Awaitable[T]]]:
    """Decorator form of :func:`retry_async`."""

    def decorator(func: Callable[P, Awaitable[T]]) -> Callable[P, Awaitable[T]]:
        @functools.wraps(func)
        async def wrapper(*args: P.args, **kwargs: P.kwargs) -> T:
            return await retry_async(func, *args, config=config, **kwargs)

        return wrapper

    return decorator
