"""Turns local workspace activity into ordered delivery tasks."""

from __future__ import annotations

import asyncio
import logging
import os
import stat
from pathlib import Path
from typing import Iterable, Iterator, Optional, Protocol, Tuple, Union

from .clock import Clock, LoopClock
from .errors import WatchRaceError
from .protocol import (
    CreateEvent,
    DeleteEvent,
    FileSnapshot,
    HeartbeatEvent,
    RenameEvent,
    SyncEvent,
    relative_posix,
)
from .queue import DeliveryTask, RetryDeliveryQueue
from .scheduler import PendingSnapshotScheduler
from .watcher import ChangeKind, FileSystemEvent, PollingWatcher

logger = logging.getLogger("tether.sync.capture")

DEFAULT_HEARTBEAT_INTERVAL = 30.0

PathLike = Union[str, Path]


class EventSink(Protocol):
    """Anything that can deliver a :class:`SyncEvent`; normally a CollectorClient."""

    async def post_event(self, event: SyncEvent) -> None: ...


class ChangeCaptureEngine:
    """Baseline snapshot, live event translation, text edits and heartbeats.

    Every event becomes one or more tasks on the shared queue, enqueued in the
    order the activity was observed; the queue provides the rest of the
    ordering guarantee.
    """

    def __init__(
        self,
        root: Path,
        client: EventSink,
        queue: RetryDeliveryQueue,
        scheduler: Optional[PendingSnapshotScheduler] = None,
        watcher: Optional[PollingWatcher] = None,
        reserved_paths: Iterable[str] = (),
        heartbeat_interval: float = DEFAULT_HEARTBEAT_INTERVAL,
        clock: Optional[Clock] = None,
    ):
        self.root = Path(root)
        self.client = client
        self.queue = queue
        self.clock = clock or LoopClock()
        self.scheduler = scheduler or PendingSnapshotScheduler(clock=self.clock)
        self.reserved_paths = frozenset(reserved_paths)
        self.watcher = watcher or PollingWatcher(
            self.root,
            ignore=self.is_reserved,
            clock=self.clock,
        )
        self.heartbeat_interval = heartbeat_interval
        self._heartbeat_task: Optional[asyncio.Task] = None

    # Lifecycle

    async def start(self) -> int:
        """Enqueue the baseline snapshot, then start watching and heartbeats."""
        count = await self.baseline()
        await self.watcher.start(self.handle)
        if self._heartbeat_task is None:
            self._heartbeat_task = asyncio.get_running_loop().create_task(self._heartbeat_loop())
        return count

    async def stop(self) -> None:
        self.scheduler.cancel_all()
        await self.watcher.stop()
        task = self._heartbeat_task
        self._heartbeat_task = None
        if task is not None and not task.done():
            task.cancel()
            try:
                await task
            except asyncio.CancelledError:
                pass

    async def baseline(self) -> int:
        """Enqueue one snapshot per file currently under the root."""
        paths = await asyncio.to_thread(lambda: list(self.iter_files()))
        for path in paths:
            self.enqueue_snapshot(path)
        count = len(paths)
        logger.info("Baseline snapshot queued for %d file(s) under %s", count, self.root)
        return count

    def iter_files(self) -> Iterator[Path]:
        for dirpath, dirnames, filenames in os.walk(self.root):
            dirnames.sort()
            for name in sorted(filenames):
                path = Path(dirpath) / name
                if not self.is_reserved(self.relative(path)):
                    yield path

    # Helpers

    def relative(self, path: PathLike) -> str:
        return relative_posix(self.root, path)

    def is_reserved(self, rel_path: str) -> bool:
        return rel_path in self.reserved_paths

    def contains(self, path: PathLike) -> bool:
        rel = self.relative(Path(path).absolute())
        return rel != "" and rel != ".." and not rel.startswith("../")

    def enqueue_event(self, event: SyncEvent) -> None:
        self.queue.enqueue(self._post_task(event))

    def enqueue_snapshot(self, path: Path) -> None:
        self.queue.enqueue(self._snapshot_task(path))

    def _post_task(self, event: SyncEvent) -> DeliveryTask:
        async def task() -> None:
            await self.client.post_event(event)

        return task

    def _snapshot_task(self, path: Path) -> DeliveryTask:
        rel = self.relative(path)

        async def task() -> None:
            # Content is read when the task runs so retries carry the latest bytes.
            try:
                data = await asyncio.to_thread(path.read_bytes)
            except (FileNotFoundError, IsADirectoryError, NotADirectoryError):
                logger.debug("Skipping snapshot of %s: no longer a file", rel)
                return
            await self.client.post_event(FileSnapshot.from_bytes(rel, data))

        return task

    # Event translation

    async def handle(self, event: FileSystemEvent) -> None:
        if event.kind is ChangeKind.CREATED:
            self.on_created(event.path)
        elif event.kind is ChangeKind.MODIFIED:
            self.on_modified(event.path)
        elif event.kind is ChangeKind.DELETED:
            self.on_deleted(event.path)
        elif event.kind is ChangeKind.RENAMED and event.dest_path is not None:
            self.on_files_renamed([(event.path, event.dest_path)])

    def on_created(self, path: Path) -> None:
        rel = self.relative(path)
        if self.is_reserved(rel):
            return
        try:
            mode = self._stat(path)
        except WatchRaceError as exc:
            logger.debug("%s; announcing create without a type", exc)
            self.enqueue_event(CreateEvent(rel))
            self.enqueue_snapshot(path)
            return

        if stat.S_ISDIR(mode):
            self.enqueue_event(CreateEvent(rel, is_directory=True))
        elif stat.S_ISREG(mode):
            self.enqueue_event(CreateEvent(rel, is_directory=False))
            self.enqueue_snapshot(path)

    def on_modified(self, path: Path) -> None:
        rel = self.relative(path)
        if self.is_reserved(rel):
            return
        try:
            mode = self._stat(path)
        except WatchRaceError as exc:
            logger.debug("%s; ignoring modify", exc)
            return
        if stat.S_ISREG(mode):
            self.enqueue_snapshot(path)

    def on_deleted(self, path: Path) -> None:
        rel = self.relative(path)
        if self.is_reserved(rel):
            return
        self.enqueue_event(DeleteEvent(rel))

    def on_files_renamed(self, pairs: Iterable[Tuple[PathLike, PathLike]]) -> None:
        for old, new in pairs:
            self.enqueue_event(RenameEvent(self.relative(old), self.relative(new)))

    def on_text_changed(self, path: PathLike, scheme: str = "file") -> bool:
        """Debounce an editor change notification; returns False when ignored."""
        if scheme != "file":
            return False
        document = Path(path).absolute()
        if not self.contains(document) or self.is_reserved(self.relative(document)):
            return False
        self.scheduler.schedule(str(document), lambda: self.enqueue_snapshot(document))
        return True

    def _stat(self, path: Path) -> int:
        try:
            return path.stat().st_mode
        except OSError as e:
            raise WatchRaceError(f"stat failed for {self.relative(path)}: {e}") from e

    async def _heartbeat_loop(self) -> None:
        while True:
            await self.clock.sleep(self.heartbeat_interval)
            self.enqueue_event(HeartbeatEvent())


__all__ = ["ChangeCaptureEngine", "EventSink", "DEFAULT_HEARTBEAT_INTERVAL"]
