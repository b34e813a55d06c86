"""Bounded concurrency for stage levels and batched generation."""

from __future__ import annotations

import asyncio
import logging
from typing import Any, Awaitable, Callable, Dict, Hashable, Iterable, List, Optional, Sequence, TypeVar

logger = logging.getLogger(__name__)

T = TypeVar("T")
K = TypeVar("K", bound=Hashable)


class ConcurrencyManager:
    """Run coroutines with at most ``limit`` of them in flight."""

    def __init__(self, config: Any | None = None, max_concurrent: Optional[int] = None) -> None:
        limit = max_concurrent if max_concurrent is not None else getattr(config, "max_concurrent_requests", 3)
        self._limit = max(1, int(limit or 1))
        self._semaphore = asyncio.Semaphore(self._limit)
        self.active = 0
        self.peak = 0

    @property
    def limit(self) -> int:
        return self._limit

    async def run_with_limit(self, coro: Awaitable[T]) -> T:
        async with self._semaphore:
            self.active += 1
            self.peak = max(self.peak, self.active)
            try:
                return await coro
            finally:
                self.active -= 1

    async def gather_with_limit(self, coros: Iterable[Awaitable[T]]) -> List[T]:
        """Run every coroutine, preserving order.

        The first failure is raised once all of them have settled, so nothing
        is left running unobserved.
        """
        results = await asyncio.gather(*(self.run_with_limit(c) for c in coros), return_exceptions=True)
        for result in results:
            if isinstance(result, BaseException):
                raise result
        return results  # type: ignore[return-value]

    async def run_levels(self, levels: Sequence[Sequence[K]], run: Callable[[K], Awaitable[T]]) -> Dict[K, T]:
        """Run ``levels`` one after another; members of a level run concurrently.

        A failure in one level stops before the next level starts.
        """
        results: Dict[K, T] = {}
        for depth, level in enumerate(levels):
            logger.debug("Running level %d: %s", depth, ", ".join(str(k) for k in level))
            outcomes = await self.gather_with_limit(run(key) for key in level)
            results.update(zip(level, outcomes))
        return results
