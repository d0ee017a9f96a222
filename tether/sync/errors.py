"""Error taxonomy for workspace materialization and synchronization."""

from __future__ import annotations

from typing import Optional

# 408 Request Timeout and 429 Too Many Requests are worth retrying even
# though they sit in the 4xx range.
RETRYABLE_CLIENT_STATUSES = frozenset({408, 429})


class SyncError(Exception):
    """Base class for all Tether synchronization errors."""


class LaunchLinkError(SyncError, ValueError):
    """A launch link could not be turned into a session configuration."""


class ManifestFetchError(SyncError):
    """The manifest request failed at the transport level or returned non-2xx."""

    def __init__(self, message: str, status: Optional[int] = None):
        super().__init__(message)
        self.status = status


class ManifestDecodeError(SyncError):
    """The manifest response could not be decoded into entries."""


class DeliveryError(SyncError):
    """An event POST did not reach the collector or was not accepted."""

    def __init__(self, message: str, status: Optional[int] = None):
        super().__init__(message)
        self.status = status

    @property
    def permanent(self) -> bool:
        """True when the collector rejected the event rather than being unavailable."""
        if self.status is None:
            return False
        return 400 <= self.status < 500 and self.status not in RETRYABLE_CLIENT_STATUSES


class MaterializationError(SyncError):
    """The session root could not be written; the partial tree was removed."""


class CleanupError(SyncError):
    """A best-effort housekeeping step (stale session purge, editor settings) failed."""


class WatchRaceError(SyncError):
    """A watched path changed between the event and its handling."""


__all__ = [
    "SyncError",
    "LaunchLinkError",
    "ManifestFetchError",
    "ManifestDecodeError",
    "MaterializationError",
    "DeliveryError",
    "CleanupError",
    "WatchRaceError",
]
