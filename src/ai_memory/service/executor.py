"""Thread pool for blocking store and embedding calls made from async code.

Each MemoryService owns one BlockingExecutor, so separate services (and
separate tests) never share a pool.

Usage:
    executor = BlockingExecutor(max_workers=4)
    result = await executor.run(store.query_by_type, "DECISION", 10)
    executor.shutdown()
"""

from __future__ import annotations

import asyncio
import logging
from concurrent.futures import ThreadPoolExecutor
from functools import partial
from typing import Any, Callable, TypeVar

logger = logging.getLogger(__name__)

R = TypeVar("R")

DEFAULT_MAX_WORKERS = 4
DEFAULT_THREAD_PREFIX = "ai-memory-blocking-"


class BlockingExecutor:
    """Lazily created ThreadPoolExecutor with an async `run` helper."""

    def __init__(
        self,
        max_workers: int = DEFAULT_MAX_WORKERS,
        thread_name_prefix: str = DEFAULT_THREAD_PREFIX,
    ):
        self.max_workers = max_workers
        self.thread_name_prefix = thread_name_prefix
        self._pool: ThreadPoolExecutor | None = None

    @property
    def pool(self) -> ThreadPoolExecutor:
        if self._pool is None:
            logger.info(f"Creating thread pool executor with {self.max_workers} workers")
            self._pool = ThreadPoolExecutor(
                max_workers=self.max_workers,
                thread_name_prefix=self.thread_name_prefix,
            )
        return self._pool

    async def run(self, func: Callable[..., R], *args: Any, **kwargs: Any) -> R:
        """Run a blocking function in the pool without blocking the event loop."""
        loop = asyncio.get_running_loop()
        call = partial(func, *args, **kwargs) if (args or kwargs) else func
        return await loop.run_in_executor(self.pool, call)

    def shutdown(self, wait: bool = True) -> None:
        """Shut the pool down. A later `run` creates a fresh one."""
        if self._pool is not None:
            logger.info("Shutting down thread pool executor...")
            self._pool.shutdown(wait=wait)
            self._pool = None


__all__ = ["BlockingExecutor", "DEFAULT_MAX_WORKERS"]
