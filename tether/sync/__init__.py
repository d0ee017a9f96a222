"""Workspace materialization and live synchronization for Tether."""

from __future__ import annotations

from .errors import (
    CleanupError,
    DeliveryError,
    LaunchLinkError,
    ManifestDecodeError,
    ManifestFetchError,
    MaterializationError,
    SyncError,
    WatchRaceError,
)
from .diagnostics import DiagnosticChannel, SyncDiagnostic
from .protocol import (
    CreateEvent,
    DeleteEvent,
    EventKind,
    FileSnapshot,
    HeartbeatEvent,
    RenameEvent,
    SyncEvent,
    encode_snapshot,
    relative_posix,
)
from .transport import CollectorClient
from .queue import FailureIndicator, QueueState, RetryDeliveryQueue, backoff_delay
from .scheduler import PendingSnapshotScheduler
from .watcher import ChangeKind, FileSystemEvent, PollingWatcher
from .capture import ChangeCaptureEngine
from .settings import SyncSettings
from .session import SessionConfig, SyncSession, discover_sessions
from .materializer import EntryKind, ManifestEntry, ManifestMaterializer, decode_manifest

__all__ = [
    # Errors
    "SyncError",
    "LaunchLinkError",
    "ManifestFetchError",
    "ManifestDecodeError",
    "MaterializationError",
    "DeliveryError",
    "CleanupError",
    "WatchRaceError",
    "DiagnosticChannel",
    "SyncDiagnostic",
    # Protocol
    "EventKind",
    "SyncEvent",
    "FileSnapshot",
    "CreateEvent",
    "DeleteEvent",
    "RenameEvent",
    "HeartbeatEvent",
    "encode_snapshot",
    "relative_posix",
    "CollectorClient",
    # Delivery
    "FailureIndicator",
    "QueueState",
    "RetryDeliveryQueue",
    "backoff_delay",
    # Capture
    "PendingSnapshotScheduler",
    "ChangeKind",
    "FileSystemEvent",
    "PollingWatcher",
    "ChangeCaptureEngine",
    # Session
    "SyncSettings",
    "SessionConfig",
    "SyncSession",
    "discover_sessions",
    # Materializer
    "EntryKind",
    "ManifestEntry",
    "ManifestMaterializer",
    "decode_manifest",
]
