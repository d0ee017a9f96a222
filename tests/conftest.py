"""Shared fixtures: a virtual clock, a recording collector and indicator."""

from __future__ import annotations

import asyncio
import heapq
import itertools
from typing import Any, Callable, Dict, List, Optional, Tuple

import pytest

from tether.sync.errors import DeliveryError
from tether.sync.protocol import SyncEvent


class _ManualTimer:
    def __init__(self) -> None:
        self.cancelled = False

    def cancel(self) -> None:
        self.cancelled = True


class ManualClock:
    """Virtual clock: timers fire only when the test advances time."""

    def __init__(self) -> None:
        self.current = 0.0
        self.sleeps: List[float] = []
        self._timers: List[Tuple[float, int, _ManualTimer, Callable[[], None]]] = []
        self._seq = itertools.count()

    def now(self) -> float:
        return self.current

    def call_later(self, delay: float, callback: Callable[[], None]) -> _ManualTimer:
        timer = _ManualTimer()
        heapq.heappush(self._timers, (self.current + delay, next(self._seq), timer, callback))
        return timer

    async def sleep(self, delay: float) -> None:
        self.sleeps.append(delay)
        future = asyncio.get_running_loop().create_future()
        self.call_later(delay, lambda: future.done() or future.set_result(None))
        await future

    async def settle(self) -> None:
        for _ in range(50):
            await asyncio.sleep(0)

    async def advance(self, seconds: float) -> None:
        target = self.current + seconds
        await self.settle()
        while self._timers and self._timers[0][0] <= target:
            when, _, timer, callback = heapq.heappop(self._timers)
            self.current = max(self.current, when)
            if not timer.cancelled:
                callback()
            await self.settle()
        self.current = target
        await self.settle()


class FakeCollector:
    """Records delivered events; can be told to fail the next N attempts."""

    def __init__(self) -> None:
        self.delivered: List[SyncEvent] = []
        self.attempts: List[SyncEvent] = []
        self.failures: List[Exception] = []

    def fail_next(self, count: int, status: Optional[int] = None) -> None:
        for _ in range(count):
            self.failures.append(DeliveryError("collector unreachable", status=status))

    async def post_event(self, event: SyncEvent) -> None:
        self.attempts.append(event)
        if self.failures:
            raise self.failures.pop(0)
        self.delivered.append(event)

    def bodies(self) -> List[Tuple[str, Dict[str, Any]]]:
        return [(event.kind.value, event.to_dict()) for event in self.delivered]


class RecordingIndicator:
    def __init__(self) -> None:
        self.message: Optional[str] = None
        self.history: List[Optional[str]] = []

    def show_failure(self, message: str) -> None:
        self.message = message
        self.history.append(message)

    def clear_failure(self) -> None:
        self.message = None
        self.history.append(None)


@pytest.fixture
def clock() -> ManualClock:
    return ManualClock()


@pytest.fixture
def collector() -> FakeCollector:
    return FakeCollector()


@pytest.fixture
def indicator() -> RecordingIndicator:
    return RecordingIndicator()
