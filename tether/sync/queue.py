"""Strictly sequential delivery queue with infinite exponential-backoff retry."""

from __future__ import annotations

import asyncio
import logging
from collections import deque
from enum import Enum
from typing import Awaitable, Callable, Deque, Optional, Protocol

from .clock import Clock, LoopClock
from .diagnostics import DiagnosticChannel
from .errors import DeliveryError

logger = logging.getLogger("tether.sync.queue")

DeliveryTask = Callable[[], Awaitable[None]]

DEFAULT_BACKOFF_FLOOR = 1.0
DEFAULT_BACKOFF_CEILING = 30.0


class QueueState(str, Enum):
    """Lifecycle of the drain loop. There is no terminal state."""
    IDLE = "idle"
    DRAINING = "draining"


class FailureIndicator(Protocol):
    """Single shared surface showing the most recent delivery failure."""

    def show_failure(self, message: str) -> None: ...

    def clear_failure(self) -> None: ...


class NullIndicator:
    def show_failure(self, message: str) -> None:
        pass

    def clear_failure(self) -> None:
        pass


def backoff_delay(
    failures: int,
    floor: float = DEFAULT_BACKOFF_FLOOR,
    ceiling: float = DEFAULT_BACKOFF_CEILING,
) -> float:
    """Wait after the ``failures``-th consecutive failure (0-indexed)."""
    # Cap the exponent so long outages never overflow the float.
    return min(floor * (2 ** min(failures, 32)), ceiling)


class RetryDeliveryQueue:
    """FIFO task runner that never drops or reorders tasks.

    The head task is retried until it succeeds before the next one starts, so
    one stuck task holds back everything behind it. Ordering is the point.
    """

    def __init__(
        self,
        indicator: Optional[FailureIndicator] = None,
        clock: Optional[Clock] = None,
        backoff_floor: float = DEFAULT_BACKOFF_FLOOR,
        backoff_ceiling: float = DEFAULT_BACKOFF_CEILING,
        drop_rejected: bool = False,
        diagnostics: Optional[DiagnosticChannel] = None,
    ):
        self.indicator = indicator or NullIndicator()
        self.clock = clock or LoopClock()
        self.backoff_floor = backoff_floor
        self.backoff_ceiling = backoff_ceiling
        self.drop_rejected = drop_rejected
        self.diagnostics = diagnostics or DiagnosticChannel("tether.sync.queue")

        self._tasks: Deque[DeliveryTask] = deque()
        self._state = QueueState.IDLE
        self._drain_task: Optional[asyncio.Task] = None
        self.delivered = 0
        self.dropped = 0
        self.last_error: Optional[str] = None

    @property
    def state(self) -> QueueState:
        return self._state

    @property
    def pending(self) -> int:
        """Tasks not yet delivered, including the one in flight."""
        return len(self._tasks)

    def enqueue(self, task: DeliveryTask) -> None:
        self._tasks.append(task)
        if self._state is QueueState.IDLE:
            # Flip the state before anything can suspend so a re-entrant
            # enqueue never starts a second drain loop.
            self._state = QueueState.DRAINING
            self._drain_task = asyncio.get_running_loop().create_task(self._drain())

    async def drained(self) -> None:
        """Wait until every task enqueued so far has been delivered."""
        while self._drain_task is not None and not self._drain_task.done():
            await asyncio.shield(self._drain_task)

    async def close(self) -> None:
        """Stop the drain loop; undelivered tasks are discarded with the process."""
        task = self._drain_task
        if task is not None and not task.done():
            task.cancel()
            try:
                await task
            except asyncio.CancelledError:
                pass
        if self._tasks:
            logger.warning("Queue closed with %d undelivered task(s)", len(self._tasks))

    async def _drain(self) -> None:
        try:
            while self._tasks:
                await self._deliver(self._tasks[0])
                self._tasks.popleft()
        finally:
            self._state = QueueState.IDLE

    async def _deliver(self, task: DeliveryTask) -> None:
        failures = 0
        while True:
            try:
                await task()
            except DeliveryError as exc:
                if self.drop_rejected and exc.permanent:
                    self.dropped += 1
                    self.diagnostics.report(exc, level="error")
                    self.indicator.clear_failure()
                    return
                await self._wait_after_failure(exc, failures)
            except Exception as exc:
                await self._wait_after_failure(exc, failures)
            else:
                self.delivered += 1
                if self.last_error is not None:
                    logger.info("Delivery recovered after %d failed attempt(s)", failures)
                self.last_error = None
                self.indicator.clear_failure()
                return
            failures += 1

    async def _wait_after_failure(self, exc: Exception, failures: int) -> None:
        delay = backoff_delay(failures, self.backoff_floor, self.backoff_ceiling)
        self.last_error = str(exc) or exc.__class__.__name__
        self.indicator.show_failure(f"Delivery failed, retrying in {delay:g}s: {self.last_error}")
        logger.warning(
            "Delivery attempt %d failed (%s); retrying in %.1fs",
            failures + 1,
            self.last_error,
            delay,
            extra={"attempt": failures + 1, "delay": delay, "status": getattr(exc, "status", None)},
        )
        await self.clock.sleep(delay)


__all__ = [
    "DeliveryTask",
    "FailureIndicator",
    "NullIndicator",
    "QueueState",
    "RetryDeliveryQueue",
    "backoff_delay",
]
