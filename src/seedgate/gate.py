from __future__ import annotations

import asyncio
from collections import deque
from collections.abc import Callable
from dataclasses import dataclass


@dataclass(frozen=True, slots=True)
class Acquired:
    release: Callable[[], None]


@dataclass(frozen=True, slots=True)
class Full:
    pass


FULL = Full()


class Gate:
    """Counting admission gate with a FIFO waiter queue.

    All bookkeeping happens synchronously between awaits, so no lock is needed
    as long as the gate is used from a single event loop.
    """

    def __init__(self, max_parallel: int) -> None:
        self.capacity = max(1, int(max_parallel))
        self.in_use = 0
        self._waiters: deque[asyncio.Future[None]] = deque()

    @property
    def waiting(self) -> int:
        return sum(1 for waiter in self._waiters if not waiter.done())

    def try_acquire(self) -> Acquired | Full:
        if self.in_use < self.capacity and not self.waiting:
            self.in_use += 1
            return Acquired(self._release_once())
        return FULL

    async def acquire(self) -> Acquired:
        if self.in_use < self.capacity and not self.waiting:
            self.in_use += 1
            return Acquired(self._release_once())

        waiter: asyncio.Future[None] = asyncio.get_running_loop().create_future()
        self._waiters.append(waiter)
        try:
            await waiter
        except asyncio.CancelledError:
            if waiter.done() and not waiter.cancelled():
                # slot was handed over before the cancellation landed
                self._release()
            else:
                self._discard(waiter)
            raise
        return Acquired(self._release_once())

    def _release_once(self) -> Callable[[], None]:
        released = False

        def release() -> None:
            nonlocal released
            if released:
                return
            released = True
            self._release()

        return release

    def _release(self) -> None:
        self.in_use = max(0, self.in_use - 1)
        while self._waiters:
            waiter = self._waiters.popleft()
            if waiter.done():
                continue
            self.in_use += 1
            waiter.set_result(None)
            return

    def _discard(self, waiter: asyncio.Future[None]) -> None:
        try:
            self._waiters.remove(waiter)
        except ValueError:
            pass
