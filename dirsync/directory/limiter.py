"""
Bounded fetch scheduler.

A counting semaphore gates every unit of work that issues directory calls, so
directory load stays bounded whatever the size of the realm. One scheduler is
created per sync or event, never shared across providers.
"""

import asyncio
from typing import Any, Awaitable, Callable, Iterable, List, TypeVar

from dirsync.core.config import DEFAULT_MAX_CONCURRENCY


T = TypeVar("T")


class BoundedFetchScheduler:
    """
    Runs coroutine functions with at most ``max_concurrency`` in flight.

    ``schedule`` returns a task immediately; completion order is not
    submission order.
    """

    def __init__(self, max_concurrency: int = DEFAULT_MAX_CONCURRENCY):
        if max_concurrency < 1:
            raise ValueError("max_concurrency must be at least 1")
        self.max_concurrency = max_concurrency
        self._semaphore = asyncio.Semaphore(max_concurrency)
        self.in_flight = 0
        self.peak_in_flight = 0

    def schedule(self, fn: Callable[..., Awaitable[T]], *args: Any, **kwargs: Any) -> "asyncio.Task[T]":
        """Schedule ``fn(*args, **kwargs)`` behind the semaphore."""
        return asyncio.ensure_future(self._run(fn, *args, **kwargs))

    async def run_all(self, factories: Iterable[Callable[[], Awaitable[T]]]) -> List[T]:
        """
        Schedule every factory and wait for all results, in submission order.

        If any unit fails the others are cancelled and have finished unwinding
        by the time the error propagates.
        """
        tasks = [self.schedule(factory) for factory in factories]
        if not tasks:
            return []
        try:
            return list(await asyncio.gather(*tasks))
        except BaseException:
            for task in tasks:
                task.cancel()
            await asyncio.gather(*tasks, return_exceptions=True)
            raise

    async def _run(self, fn: Callable[..., Awaitable[T]], *args: Any, **kwargs: Any) -> T:
        async with self._semaphore:
            self.in_flight += 1
            self.peak_in_flight = max(self.peak_in_flight, self.in_flight)
            try:
                return await fn(*args, **kwargs)
            finally:
                self.in_flight -= 1
