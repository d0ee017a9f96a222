"""Per-document debounce of snapshot requests."""

from __future__ import annotations

import logging
from typing import Callable, Dict, Hashable, Optional

from .clock import Clock, LoopClock, TimerHandle

logger = logging.getLogger("tether.sync.scheduler")

DEFAULT_DEBOUNCE = 0.5


class PendingSnapshotScheduler:
    """Maps a document key to one cancellable scheduled action.

    Scheduling again for the same key before the delay elapses replaces the
    pending action, so a burst of edits collapses into a single call.
    """

    def __init__(self, delay: float = DEFAULT_DEBOUNCE, clock: Optional[Clock] = None):
        self.delay = delay
        self.clock = clock or LoopClock()
        self._pending: Dict[Hashable, TimerHandle] = {}

    def schedule(self, key: Hashable, action: Callable[[], None]) -> None:
        self.cancel(key)

        def _fire() -> None:
            self._pending.pop(key, None)
            action()

        self._pending[key] = self.clock.call_later(self.delay, _fire)

    def cancel(self, key: Hashable) -> bool:
        handle = self._pending.pop(key, None)
        if handle is None:
            return False
        handle.cancel()
        return True

    def cancel_all(self) -> None:
        for key in list(self._pending):
            self.cancel(key)
        logger.debug("Cancelled all pending snapshots")

    def __contains__(self, key: object) -> bool:
        return key in self._pending

    def __len__(self) -> int:
        return len(self._pending)


__all__ = ["PendingSnapshotScheduler", "DEFAULT_DEBOUNCE"]
