"""Time sources for the run loop, workers and latency measurement.

MonotonicClock is the production clock. FakeClock only moves when a test
calls advance(); sleepers whose deadline has passed are woken on advance.
"""

from __future__ import annotations

import asyncio
import heapq
import itertools
import time
from typing import Protocol


class ClockSource(Protocol):
    """Monotonic seconds plus a cooperative sleep that suspends only the caller."""

    def now(self) -> float: ...

    async def sleep(self, seconds: float) -> None: ...


class MonotonicClock:
    """perf_counter-based clock; sleep delegates to asyncio.sleep."""

    __slots__ = ()

    def now(self) -> float:
        return time.perf_counter()

    async def sleep(self, seconds: float) -> None:
        await asyncio.sleep(max(0.0, seconds))


class FakeClock:
    """Deterministic clock for tests.

    sleep() parks the caller on a future that resolves once advance() moves
    the clock to or past its deadline. Cancelled sleepers are skipped.
    """

    __slots__ = ("_now", "_sleepers", "_seq")

    def __init__(self, start: float = 0.0) -> None:
        self._now = start
        self._sleepers: list[tuple[float, int, asyncio.Future[None]]] = []
        self._seq = itertools.count()

    def now(self) -> float:
        return self._now

    @property
    def pending_sleepers(self) -> int:
        return sum(1 for _, _, fut in self._sleepers if not fut.done())

    async def sleep(self, seconds: float) -> None:
        if seconds <= 0:
            await asyncio.sleep(0)
            return
        fut: asyncio.Future[None] = asyncio.get_running_loop().create_future()
        heapq.heappush(self._sleepers, (self._now + seconds, next(self._seq), fut))
        await fut

    def advance(self, seconds: float) -> None:
        """Move time forward and wake every sleeper whose deadline is reached."""
        if seconds < 0:
            raise ValueError("cannot move a clock backwards")
        self._now += seconds
        while self._sleepers and self._sleepers[0][0] <= self._now:
            _, _, fut = heapq.heappop(self._sleepers)
            if not fut.done():
                fut.set_result(None)
