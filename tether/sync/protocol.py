"""Wire-level synchronization events sent to the collector."""

from __future__ import annotations

import base64
import os
import time
from dataclasses import dataclass, field
from enum import Enum
from pathlib import Path
from typing import Any, ClassVar, Dict, Optional, Tuple, Union


class EventKind(str, Enum):
    """Event types, named after their collector endpoints."""
    FILE_SNAPSHOT = "fileSnapshot"
    CREATE = "create"
    DELETE = "delete"
    RENAME = "rename"
    HEARTBEAT = "heartbeat"


@dataclass(frozen=True)
class SyncEvent:
    """Base class for events POSTed to ``/event/<kind>``."""

    kind: ClassVar[EventKind]

    @property
    def endpoint(self) -> str:
        return f"/event/{self.kind.value}"

    def to_dict(self) -> Dict[str, Any]:
        raise NotImplementedError


@dataclass(frozen=True)
class FileSnapshot(SyncEvent):
    """Full current content of one file, always base64 on the wire."""

    kind: ClassVar[EventKind] = EventKind.FILE_SNAPSHOT

    path: str
    is_binary: bool
    content: str

    @classmethod
    def from_bytes(cls, path: str, data: bytes) -> "FileSnapshot":
        is_binary, content = encode_snapshot(data)
        return cls(path=path, is_binary=is_binary, content=content)

    def decode(self) -> bytes:
        return base64.b64decode(self.content)

    def to_dict(self) -> Dict[str, Any]:
        return {
            "path": self.path,
            "isBinary": self.is_binary,
            "content": self.content,
        }


@dataclass(frozen=True)
class CreateEvent(SyncEvent):
    kind: ClassVar[EventKind] = EventKind.CREATE

    path: str
    is_directory: Optional[bool] = None  # None when the path could not be stat'ed

    def to_dict(self) -> Dict[str, Any]:
        result: Dict[str, Any] = {"path": self.path}
        if self.is_directory is not None:
            result["isDirectory"] = self.is_directory
        return result


@dataclass(frozen=True)
class DeleteEvent(SyncEvent):
    kind: ClassVar[EventKind] = EventKind.DELETE

    path: str

    def to_dict(self) -> Dict[str, Any]:
        return {"path": self.path}


@dataclass(frozen=True)
class RenameEvent(SyncEvent):
    kind: ClassVar[EventKind] = EventKind.RENAME

    old_path: str
    new_path: str

    def to_dict(self) -> Dict[str, Any]:
        return {"oldPath": self.old_path, "newPath": self.new_path}


@dataclass(frozen=True)
class HeartbeatEvent(SyncEvent):
    kind: ClassVar[EventKind] = EventKind.HEARTBEAT

    ts: int = field(default_factory=lambda: int(time.time() * 1000))

    def to_dict(self) -> Dict[str, Any]:
        return {"ts": self.ts}


def is_binary_content(data: bytes) -> bool:
    """Treat content as binary when it holds a NUL byte or is not valid UTF-8."""
    if b"\x00" in data:
        return True
    try:
        data.decode("utf-8")
    except UnicodeDecodeError:
        return True
    return False


def encode_snapshot(data: bytes) -> Tuple[bool, str]:
    """Return ``(is_binary, base64 content)`` for raw file bytes.

    Text is only ever valid UTF-8, so encoding the raw bytes and encoding the
    UTF-8 text produce the same payload; ``is_binary`` tells the collector how
    to interpret the decoded bytes.
    """
    is_binary = is_binary_content(data)
    if is_binary:
        content = base64.b64encode(data)
    else:
        content = base64.b64encode(data.decode("utf-8").encode("utf-8"))
    return is_binary, content.decode("ascii")


def relative_posix(root: Union[str, Path], path: Union[str, Path]) -> str:
    """Root-relative path with forward slashes regardless of the host separator."""
    relative = os.path.relpath(os.fspath(path), os.fspath(root))
    if relative == os.curdir:
        return ""
    return relative.replace(os.sep, "/")


__all__ = [
    "EventKind",
    "SyncEvent",
    "FileSnapshot",
    "CreateEvent",
    "DeleteEvent",
    "RenameEvent",
    "HeartbeatEvent",
    "is_binary_content",
    "encode_snapshot",
    "relative_posix",
]
