"""Retry with exponential backoff for async calls.

Only message classification retries in this pipeline; embedding and search
calls degrade through fallbacks instead.
"""

from __future__ import annotations

import asyncio
import functools
import logging
import random
from dataclasses import dataclass
from typing import Any, Awaitable, Callable, Optional, Tuple, Type, TypeVar

logger = logging.getLogger(__name__)

T = TypeVar("T")


@dataclass
class RetryConfig:
    """Configuration for retry behavior.

    ``max_attempts`` counts the first call, so the default of 3 gives two
    retries with delays of base_delay and base_delay * exponential_base.
    """

    max_attempts: int = 3
    base_delay: float = 1.0
    max_delay: float = 60.0
    exponential_base: float = 2.0
    jitter: bool = False

    def delay_for(self, attempt: int) -> float:
        """Delay after the given zero-based failed attempt."""
        delay = min(self.base_delay * (self.exponential_base ** attempt), self.max_delay)
        if self.jitter:
            delay *= 0.5 + random.random()
        return delay


def with_async_retry(
    config: Optional[RetryConfig] = None,
    retryable_exceptions: Tuple[Type[BaseException], ...] = (Exception,),
    sleep: Callable[[float], Awaitable[Any]] = asyncio.sleep,
) -> Callable[[Callable[..., Awaitable[T]]], Callable[..., Awaitable[T]]]:
    """Decorator adding retries with exponential backoff to a coroutine function.

    Args:
        config: Retry configuration
        retryable_exceptions: Exception types that trigger a retry
        sleep: Awaitable sleep function (tests pass a recorder)

    Example:
        >>> @with_async_retry(RetryConfig(max_attempts=3))
        ... async def classify(message):
        ...     return await client.classify(message)
    """
    config = config or RetryConfig()

    def decorator(func: Callable[..., Awaitable[T]]) -> Callable[..., Awaitable[T]]:
        @functools.wraps(func)
        async def wrapper(*args: Any, **kwargs: Any) -> T:
            for attempt in range(config.max_attempts):
                try:
                    return await func(*args, **kwargs)
                except retryable_exceptions as e:
                    if attempt + 1 >= config.max_attempts:
                        raise
                    delay = config.delay_for(attempt)
                    logger.warning(
                        f"{func.__name__} failed (attempt {attempt + 1}/{config.max_attempts}): {e}; "
                        f"retrying in {delay:.1f}s"
                    )
                    await sleep(delay)
            raise RuntimeError("max_attempts must be at least 1")

        return wrapper

    return decorator
