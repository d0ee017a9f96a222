"""Polling file-system watcher for a session root."""

from __future__ import annotations

import asyncio
import hashlib
import logging
import os
from dataclasses import dataclass
from enum import Enum
from pathlib import Path
from typing import Awaitable, Callable, Dict, List, Optional, Set, Tuple

from .clock import Clock, LoopClock

logger = logging.getLogger("tether.sync.watcher")

DEFAULT_POLL_INTERVAL = 1.0


class ChangeKind(str, Enum):
    """Kinds of file-system activity reported to the capture engine."""
    CREATED = "created"
    MODIFIED = "modified"
    DELETED = "deleted"
    RENAMED = "renamed"


@dataclass(frozen=True)
class FileSystemEvent:
    kind: ChangeKind
    path: Path
    dest_path: Optional[Path] = None  # Only set for RENAMED


@dataclass(frozen=True)
class EntryState:
    """What the watcher remembers about one path between scans."""

    is_dir: bool
    size: int = 0
    mtime_ns: int = 0
    digest: str = ""


TreeState = Dict[str, EntryState]
EventHandler = Callable[[FileSystemEvent], Awaitable[None]]


def compute_file_hash(file_path: Path) -> str:
    """Compute SHA-256 hash of a file."""
    hasher = hashlib.sha256()
    with open(file_path, "rb") as f:
        for chunk in iter(lambda: f.read(8192), b""):
            hasher.update(chunk)
    return hasher.hexdigest()


def _depth(rel_path: str) -> int:
    return rel_path.count("/")


def _is_under(rel_path: str, parent: str) -> bool:
    return rel_path.startswith(parent + "/")


class PollingWatcher:
    """Detects create, modify, delete and rename activity by diffing scans.

    The first scan happens in :meth:`start` and is never reported, so
    whatever already exists (including freshly materialized files) is the
    baseline rather than a burst of creates.
    """

    def __init__(
        self,
        root: Path,
        interval: float = DEFAULT_POLL_INTERVAL,
        ignore: Optional[Callable[[str], bool]] = None,
        clock: Optional[Clock] = None,
    ):
        self.root = root
        self.interval = interval
        self.ignore = ignore or (lambda _rel: False)
        self.clock = clock or LoopClock()

        self._state: TreeState = {}
        self._task: Optional[asyncio.Task] = None

    @property
    def running(self) -> bool:
        return self._task is not None and not self._task.done()

    def scan(self, previous: Optional[TreeState] = None) -> TreeState:
        """Walk the root and record every directory and file below it."""
        previous = previous or {}
        state: TreeState = {}

        for dirpath, dirnames, filenames in os.walk(self.root):
            dirnames.sort()
            base = Path(dirpath)
            for name in dirnames:
                rel = (base / name).relative_to(self.root).as_posix()
                if not self.ignore(rel):
                    state[rel] = EntryState(is_dir=True)

            for name in sorted(filenames):
                file_path = base / name
                rel = file_path.relative_to(self.root).as_posix()
                if self.ignore(rel):
                    continue
                try:
                    st = file_path.stat()
                    known = previous.get(rel)
                    if (
                        known is not None
                        and not known.is_dir
                        and known.size == st.st_size
                        and known.mtime_ns == st.st_mtime_ns
                    ):
                        digest = known.digest
                    else:
                        digest = compute_file_hash(file_path)
                except OSError as e:
                    # Vanished mid-scan; the next scan reports it properly.
                    logger.debug("Skipping %s during scan: %s", rel, e)
                    continue
                state[rel] = EntryState(
                    is_dir=False,
                    size=st.st_size,
                    mtime_ns=st.st_mtime_ns,
                    digest=digest,
                )

        return state

    def diff(self, previous: TreeState, current: TreeState) -> List[FileSystemEvent]:
        """Translate two scans into ordered events.

        Order: creates of directories that a rename lands in, renames,
        deletes, remaining creates, modifies.
        """
        vanished: Set[str] = set(previous) - set(current)
        appeared: Set[str] = set(current) - set(previous)

        # A path that switched between file and directory is a delete plus a create.
        for rel in set(previous) & set(current):
            if previous[rel].is_dir != current[rel].is_dir:
                vanished.add(rel)
                appeared.add(rel)

        renames: List[Tuple[str, str]] = []
        renames.extend(self._match_directory_renames(previous, current, vanished, appeared))
        renames.extend(self._match_file_renames(previous, current, vanished, appeared))

        events: List[FileSystemEvent] = []

        # A rename destination's new parent directories must exist first.
        for rel in self._rename_parents(renames, appeared):
            if rel in vanished:
                events.append(FileSystemEvent(ChangeKind.DELETED, self.root / rel))
                vanished.discard(rel)
            events.append(FileSystemEvent(ChangeKind.CREATED, self.root / rel))
            appeared.discard(rel)

        events.extend(
            FileSystemEvent(ChangeKind.RENAMED, self.root / old, self.root / new)
            for old, new in renames
        )

        # Only the topmost vanished path is reported; its descendants went with it.
        for rel in sorted(vanished, key=lambda p: (-_depth(p), p)):
            parent = rel.rpartition("/")[0]
            if parent and parent in vanished and previous[parent].is_dir:
                continue
            events.append(FileSystemEvent(ChangeKind.DELETED, self.root / rel))

        for rel in sorted(appeared, key=lambda p: (_depth(p), p)):
            events.append(FileSystemEvent(ChangeKind.CREATED, self.root / rel))

        for rel in sorted(set(previous) & set(current)):
            old, new = previous[rel], current[rel]
            if rel in appeared or new.is_dir:
                continue
            if (old.size, old.mtime_ns, old.digest) != (new.size, new.mtime_ns, new.digest):
                events.append(FileSystemEvent(ChangeKind.MODIFIED, self.root / rel))

        return events

    def _rename_parents(self, renames: List[Tuple[str, str]], appeared: Set[str]) -> List[str]:
        parents: Set[str] = set()
        for _, new in renames:
            parts = new.split("/")[:-1]
            for index in range(1, len(parts) + 1):
                ancestor = "/".join(parts[:index])
                if ancestor in appeared:
                    parents.add(ancestor)
        return sorted(parents, key=lambda p: (_depth(p), p))

    def _descendants(self, state: TreeState, directory: str) -> Dict[str, str]:
        prefix = directory + "/"
        return {
            rel[len(prefix):]: ("/" if entry.is_dir else entry.digest)
            for rel, entry in state.items()
            if rel.startswith(prefix)
        }

    def _match_directory_renames(
        self,
        previous: TreeState,
        current: TreeState,
        vanished: Set[str],
        appeared: Set[str],
    ) -> List[Tuple[str, str]]:
        matches: List[Tuple[str, str]] = []
        old_dirs = sorted(
            (rel for rel in vanished if previous[rel].is_dir),
            key=lambda p: (_depth(p), p),
        )
        for old in old_dirs:
            if old not in vanished:
                continue
            old_tree = self._descendants(previous, old)
            for new in sorted(appeared, key=lambda p: (_depth(p), p)):
                if not current[new].is_dir:
                    continue
                if self._descendants(current, new) != old_tree:
                    continue
                matches.append((old, new))
                vanished.difference_update({old} | {r for r in vanished if _is_under(r, old)})
                appeared.difference_update({new} | {r for r in appeared if _is_under(r, new)})
                break
        return matches

    def _match_file_renames(
        self,
        previous: TreeState,
        current: TreeState,
        vanished: Set[str],
        appeared: Set[str],
    ) -> List[Tuple[str, str]]:
        by_digest: Dict[str, List[str]] = {}
        for rel in sorted(appeared):
            if not current[rel].is_dir:
                by_digest.setdefault(current[rel].digest, []).append(rel)

        matches: List[Tuple[str, str]] = []
        for old in sorted(vanished):
            if previous[old].is_dir:
                continue
            candidates = by_digest.get(previous[old].digest)
            if not candidates:
                continue
            new = candidates.pop(0)
            matches.append((old, new))
            vanished.discard(old)
            appeared.discard(new)
        return matches

    async def start(self, handler: EventHandler) -> None:
        """Take the baseline scan and begin polling on the running loop."""
        if self.running:
            return
        self._state = await asyncio.to_thread(self.scan)
        self._task = asyncio.get_running_loop().create_task(self._run(handler))
        logger.info("Watching %s (%d entries, every %.1fs)", self.root, len(self._state), self.interval)

    async def poll_once(self, handler: EventHandler) -> int:
        current = await asyncio.to_thread(self.scan, self._state)
        events = self.diff(self._state, current)
        self._state = current
        for event in events:
            await handler(event)
        return len(events)

    async def stop(self) -> None:
        task = self._task
        self._task = None
        if task is not None and not task.done():
            task.cancel()
            try:
                await task
            except asyncio.CancelledError:
                pass

    async def _run(self, handler: EventHandler) -> None:
        while True:
            await self.clock.sleep(self.interval)
            try:
                await self.poll_once(handler)
            except Exception:
                logger.exception("Watcher poll failed under %s", self.root)


__all__ = [
    "ChangeKind",
    "EntryState",
    "FileSystemEvent",
    "PollingWatcher",
    "TreeState",
    "compute_file_hash",
    "DEFAULT_POLL_INTERVAL",
]
