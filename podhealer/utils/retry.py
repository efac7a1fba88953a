"""
Pod Healer - Retry Utilities
============================

Short exponential backoff for a single cluster call. This is the retry
*inside* one remediation; spacing remediations across cycles is the
cooldown store's job.

Only exception types listed in ``RetryConfig.retryable_exceptions`` are
retried. Anything else, and the last retryable error once attempts run
out, propagates to the caller.

Usage:
    from podhealer.utils.retry import with_retry, RetryConfig

    @with_retry(RetryConfig(max_attempts=3, base_delay=0.5,
                            retryable_exceptions=(TransientActionError,)))
    async def delete():
        await cluster.delete_pod("shop", "web-1", 30)
"""

import asyncio
from collections.abc import Awaitable
from dataclasses import dataclass, field
from functools import wraps
from typing import Any, Callable, Optional, Type, TypeVar

from podhealer.utils.logging import get_logger

logger = get_logger(__name__)

T = TypeVar("T")


@dataclass
class RetryConfig:
    """
    Attributes:
        max_attempts: Total calls allowed, the first one included
        base_delay: Seconds to wait before the second call
        max_delay: Upper bound for any single wait
        backoff_multiplier: Growth factor between consecutive waits
        retryable_exceptions: Errors worth another call
        on_retry: Called as ``on_retry(failed_attempt, error)`` before waiting
    """
    max_attempts: int = 3
    base_delay: float = 0.5
    max_delay: float = 5.0
    backoff_multiplier: float = 2.0
    retryable_exceptions: tuple[Type[BaseException], ...] = field(default_factory=lambda: (Exception,))
    on_retry: Optional[Callable[[int, BaseException], None]] = None


def calculate_delay(
    attempt: int,
    base_delay: float,
    max_delay: float,
    backoff_multiplier: float
) -> float:
    """Wait after the ``attempt``-th failure (0-indexed), capped at ``max_delay``."""
    return min(base_delay * backoff_multiplier ** attempt, max_delay)


def with_retry(config: Optional[RetryConfig] = None):
    """Decorate an async callable so retryable failures are retried per ``config``."""
    config = config or RetryConfig()

    def decorator(func: Callable[..., Awaitable[T]]) -> Callable[..., Awaitable[T]]:
        name = getattr(func, "__name__", "call")

        @wraps(func)
        async def wrapper(*args: Any, **kwargs: Any) -> T:
            attempt = 1
            while True:
                try:
                    return await func(*args, **kwargs)
                except config.retryable_exceptions as e:
                    if attempt >= config.max_attempts:
                        logger.warning(
                            f"{name} gave up after {attempt} attempts: {e}",
                            extra={"call": name, "attempts": attempt, "error": str(e)}
                        )
                        raise

                    delay = calculate_delay(
                        attempt - 1, config.base_delay, config.max_delay, config.backoff_multiplier
                    )
                    logger.info(
                        f"{name} failed, attempt {attempt + 1}/{config.max_attempts} in {delay:.2f}s",
                        extra={"call": name, "attempt": attempt, "delay": delay, "error": str(e)}
                    )
                    if config.on_retry:
                        config.on_retry(attempt, e)

                    await asyncio.sleep(delay)
                    attempt += 1

        return wrapper
    return decorator


async def retry_async(
    func: Callable[..., Awaitable[T]],
    *args: Any,
    config: Optional[RetryConfig] = None,
    **kwargs: Any
) -> T:
    """One-off form of ``with_retry`` for policies chosen at runtime."""
    async def call() -> T:
        return await func(*args, **kwargs)

    call.__name__ = getattr(func, "__name__", "call")
    return await with_retry(config)(call)()
