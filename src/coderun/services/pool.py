from __future__ import annotations

import asyncio
from collections import deque
from typing import Deque, Optional

from ..core.errors import QueueFull


class SlotPool:
    """
    Fixed number of worker slots plus a bounded FIFO of waiters.

    All counter updates happen in reserve()/release()/withdraw(), none of
    which await, so each is atomic with respect to the event loop. A released
    slot is handed straight to the oldest waiter; it is never put back in the
    free count while someone is queued, so late arrivals cannot overtake.
    """

    def __init__(self, size: int, max_queue: int):
        if size < 1:
            raise ValueError("worker pool needs at least one slot")
        self.size = size
        self.max_queue = max_queue
        self._free = size
        self._waiters: Deque[asyncio.Future] = deque()

    @property
    def in_use(self) -> int:
        return self.size - self._free

    @property
    def queued(self) -> int:
        return sum(1 for w in self._waiters if not w.done())

    def reserve(self) -> Optional[asyncio.Future]:
        """
        None when a slot was granted on the spot; otherwise a future resolved
        when a slot is handed over. Raises QueueFull when the queue is at depth.
        """
        if self._free > 0 and not self._waiters:
            self._free -= 1
            return None
        if self.queued >= self.max_queue:
            raise QueueFull(f"all {self.size} slots busy and {self.max_queue} jobs queued")
        fut = asyncio.get_running_loop().create_future()
        self._waiters.append(fut)
        return fut

    def withdraw(self, fut: asyncio.Future) -> None:
        """Drop a waiter that gave up. A slot it was already handed goes back."""
        try:
            self._waiters.remove(fut)
        except ValueError:
            pass
        if fut.done() and not fut.cancelled() and fut.exception() is None:
            self.release()
        elif not fut.done():
            fut.cancel()

    def release(self) -> None:
        while self._waiters:
            fut = self._waiters.popleft()
            if not fut.done():
                fut.set_result(None)
                return
        self._free += 1
        if self._free > self.size:
            raise RuntimeError("slot released more times than acquired")
