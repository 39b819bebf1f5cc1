"""Retrying transient storage failures with exponential backoff.

Only errors classified as transient (a locked or busy database) are retried.
Validation errors and corruption are raised at once.
"""

from __future__ import annotations

import asyncio
import logging
import random
import time
from dataclasses import dataclass
from functools import wraps
from typing import Any, Awaitable, Callable, TypeVar

from ..errors import TransientStorageError

logger = logging.getLogger(__name__)

T = TypeVar("T")


@dataclass
class RetryConfig:
    """Configuration for retry behavior."""

    max_attempts: int = 3
    base_delay: float = 0.05  # seconds
    max_delay: float = 2.0  # seconds
    exponential_base: float = 2.0
    jitter: bool = True

    retry_on: tuple[type[Exception], ...] = (TransientStorageError,)


def calculate_backoff(
    attempt: int,
    base_delay: float = 0.05,
    max_delay: float = 2.0,
    exponential_base: float = 2.0,
    jitter: bool = True,
) -> float:
    """Calculate backoff delay for a given attempt.

    Args:
        attempt: Current attempt number (0-indexed)
        base_delay: Initial delay in seconds
        max_delay: Maximum delay cap
        exponential_base: Base for exponential growth
        jitter: Whether to add up to 25% random jitter

    Returns:
        Delay in seconds
    """
    delay = min(base_delay * (exponential_base ** attempt), max_delay)
    if jitter:
        jitter_range = delay * 0.25
        delay = delay + random.uniform(-jitter_range, jitter_range)
    return max(0.0, delay)


def call_with_retry(
    fn: Callable[..., T],
    *args: Any,
    config: RetryConfig | None = None,
    sleep: Callable[[float], None] = time.sleep,
    **kwargs: Any,
) -> T:
    """Call `fn`, retrying on the configured transient errors."""
    cfg = config or RetryConfig()
    name = getattr(fn, "__name__", repr(fn))
    for attempt in range(cfg.max_attempts):
        try:
            return fn(*args, **kwargs)
        except cfg.retry_on as e:
            if attempt >= cfg.max_attempts - 1:
                logger.error(f"All {cfg.max_attempts} attempts failed for {name}")
                raise
            delay = calculate_backoff(
                attempt, cfg.base_delay, cfg.max_delay, cfg.exponential_base, cfg.jitter
            )
            logger.warning(
                f"Retry {attempt + 1}/{cfg.max_attempts} for {name} after {delay:.2f}s: {e}"
            )
            sleep(delay)
    raise RuntimeError("max_attempts must be at least 1")


def retry_sync(
    func: Callable[..., T] | None = None,
    *,
    config: RetryConfig | None = None,
) -> Callable[..., T]:
    """Decorator form of `call_with_retry`.

    Example:
        @retry_sync
        def append(entry):
            return store.append_entry(entry)
    """

    def decorator(fn: Callable[..., T]) -> Callable[..., T]:
        @wraps(fn)
        def wrapper(*args: Any, **kwargs: Any) -> T:
            return call_with_retry(fn, *args, config=config, **kwargs)

        return wrapper

    if func is not None:
        return decorator(func)
    return decorator



async def acall_with_retry(
    fn: Callable[..., Awaitable[T]],
    *args: Any,
    config: RetryConfig | None = None,
    **kwargs: Any,
) -> T:
    """Await `fn`, retrying on the configured transient errors."""
    cfg = config or RetryConfig()
    name = getattr(fn, "__name__", repr(fn))
    for attempt in range(cfg.max_attempts):
        try:
            return await fn(*args, **kwargs)
        except cfg.retry_on as e:
            if attempt >= cfg.max_attempts - 1:
                logger.error(f"All {cfg.max_attempts} attempts failed for {name}")
                raise
            delay = calculate_backoff(
                attempt, cfg.base_delay, cfg.max_delay, cfg.exponential_base, cfg.jitter
            )
            logger.warning(
                f"Retry {attempt + 1}/{cfg.max_attempts} for {name} after {delay:.2f}s: {e}"
            )
            await asyncio.sleep(delay)
    raise RuntimeError("max_attempts must be at least 1")


def retry_async(
    func: Callable[..., Awaitable[T]] | None = None,
    *,
    config: RetryConfig | None = None,
) -> Callable[..., Awaitable[T]]:
    """Decorator for async retry with exponential backoff.

    Example:
        @retry_async(config=RetryConfig(max_attempts=5))
        async def backfill():
            return await service.aindex_missing_embeddings()
    """

    def decorator(fn: Callable[..., Awaitable[T]]) -> Callable[..., Awaitable[T]]:
        @wraps(fn)
        async def wrapper(*args: Any, **kwargs: Any) -> T:
            return await acall_with_retry(fn, *args, config=config, **kwargs)

        return wrapper

    if func is not None:
        return decorator(func)
    return decorator


__all__ = [
    "RetryConfig",
    "calculate_backoff",
    "call_with_retry",
    "acall_with_retry",
    "retry_sync",
    "retry_async",
]
