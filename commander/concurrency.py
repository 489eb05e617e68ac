"""
Bounded-parallelism gate with FIFO queueing.

    limiter = ConcurrencyLimiter(3)
    result = await limiter.limit(lambda: invoke(request))

Work runs immediately while fewer than `concurrency` calls are in flight;
otherwise it waits in arrival order. Releasing a slot hands it directly to
the oldest live waiter, so a late arrival can never jump the queue.
"""
from __future__ import annotations

import asyncio
from collections import deque
from typing import Awaitable, Callable, TypeVar

T = TypeVar("T")


class ConcurrencyLimiter:

    def __init__(self, concurrency: int) -> None:
        if concurrency < 1:
            raise ValueError(f"concurrency must be >= 1, got {concurrency}")
        self.concurrency = concurrency
        self._active = 0
        self._waiters: deque[asyncio.Future] = deque()

    @property
    def active(self) -> int:
        return self._active

    @property
    def pending(self) -> int:
        return sum(1 for w in self._waiters if not w.done())

    async def _acquire(self) -> None:
        if self._active < self.concurrency and not self.pending:
            self._active += 1
            return
        waiter = asyncio.get_running_loop().create_future()
        self._waiters.append(waiter)
        try:
            await waiter
        except asyncio.CancelledError:
            if waiter.done() and not waiter.cancelled():
                # slot was handed over just before cancellation; pass it on
                self._release()
            else:
                try:
                    self._waiters.remove(waiter)
                except ValueError:
                    pass
            raise

    def _release(self) -> None:
        self._active -= 1
        while self._waiters and self._active < self.concurrency:
            waiter = self._waiters.popleft()
            if waiter.done():
                continue
            self._active += 1
            waiter.set_result(None)

    async def limit(self, fn: Callable[[], Awaitable[T]]) -> T:
        await self._acquire()
        try:
            return await fn()
        finally:
            self._release()
