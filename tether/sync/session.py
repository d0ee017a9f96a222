"""Session configuration, the on-disk session marker and the live sync session."""

from __future__ import annotations

import json
import logging
from dataclasses import dataclass, field
from pathlib import Path
from types import MappingProxyType
from typing import Any, Dict, Iterable, List, Mapping, Optional, Tuple
from urllib.parse import parse_qsl, urlsplit

from .capture import ChangeCaptureEngine
from .clock import Clock, LoopClock
from .diagnostics import DiagnosticChannel
from .errors import LaunchLinkError
from .queue import FailureIndicator, RetryDeliveryQueue
from .scheduler import PendingSnapshotScheduler
from .settings import SyncSettings
from .transport import CollectorClient
from .watcher import PollingWatcher

logger = logging.getLogger("tether.sync.session")


@dataclass(frozen=True)
class SessionConfig:
    """Where to deliver events and who they belong to. Immutable per session."""

    server_url: str
    identity: Mapping[str, str] = field(default_factory=dict)

    def __post_init__(self):
        object.__setattr__(self, "identity", MappingProxyType(dict(self.identity)))

    def to_dict(self) -> Dict[str, Any]:
        return {"server_url": self.server_url, "identity": dict(self.identity)}

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "SessionConfig":
        identity = data.get("identity") or {}
        return cls(
            server_url=str(data["server_url"]),
            identity={str(k): str(v) for k, v in identity.items()},
        )

    @classmethod
    def from_link(cls, link: str) -> "SessionConfig":
        """Parse a launch link such as ``vscode://pub.ext/start?server=...&student=...``.

        ``server`` is required; every other query parameter is identity.
        """
        query = urlsplit(link).query
        server: Optional[str] = None
        identity: Dict[str, str] = {}
        for key, value in parse_qsl(query, keep_blank_values=False):
            if key == "server":
                server = server or value
            elif key not in identity:
                identity[key] = value
        if not server:
            raise LaunchLinkError("launch link is missing the 'server' parameter")
        return cls(server_url=server, identity=identity)

    def save(self, path: Path) -> None:
        """Write the session marker."""
        path.parent.mkdir(parents=True, exist_ok=True)
        with open(path, "w", encoding="utf-8") as f:
            json.dump(self.to_dict(), f, indent=2)
        logger.debug("Saved session marker to %s", path)

    @classmethod
    def load(cls, path: Path) -> Optional["SessionConfig"]:
        """Read a session marker; ``None`` when absent or unreadable."""
        if not path.exists():
            return None
        try:
            with open(path, "r", encoding="utf-8") as f:
                data = json.load(f)
            return cls.from_dict(data)
        except (OSError, json.JSONDecodeError, KeyError, TypeError, AttributeError) as e:
            logger.error("Failed to load session marker from %s: %s", path, e)
            return None


def discover_sessions(
    folders: Iterable[Path],
    marker_path: str,
) -> List[Tuple[Path, SessionConfig]]:
    """Return the session-managed folders among ``folders`` with their configs."""
    found: List[Tuple[Path, SessionConfig]] = []
    for folder in folders:
        config = SessionConfig.load(Path(folder) / marker_path)
        if config is not None:
            found.append((Path(folder), config))
    return found


class SyncSession:
    """Owns everything that keeps one session root mirrored to its collector."""

    def __init__(
        self,
        root: Path,
        config: SessionConfig,
        settings: SyncSettings,
        indicator: Optional[FailureIndicator] = None,
        client: Optional[CollectorClient] = None,
        clock: Optional[Clock] = None,
    ):
        self.root = root
        self.config = config
        self.settings = settings
        self.clock = clock or LoopClock()
        self.diagnostics = DiagnosticChannel()
        self.client = client or CollectorClient(
            base_url=config.server_url,
            identity=config.identity,
            timeout=settings.request_timeout,
        )
        self.queue = RetryDeliveryQueue(
            indicator=indicator,
            clock=self.clock,
            backoff_floor=settings.backoff_floor,
            backoff_ceiling=settings.backoff_ceiling,
            drop_rejected=settings.drop_rejected,
            diagnostics=self.diagnostics,
        )
        self.scheduler = PendingSnapshotScheduler(delay=settings.debounce, clock=self.clock)
        reserved = settings.reserved_paths
        self.watcher = PollingWatcher(
            root,
            interval=settings.poll_interval,
            ignore=lambda rel: rel in reserved,
            clock=self.clock,
        )
        self.engine = ChangeCaptureEngine(
            root,
            self.client,
            self.queue,
            scheduler=self.scheduler,
            watcher=self.watcher,
            reserved_paths=reserved,
            heartbeat_interval=settings.heartbeat_interval,
            clock=self.clock,
        )
        self._started = False

    @classmethod
    def resume(
        cls,
        root: Path,
        settings: SyncSettings,
        indicator: Optional[FailureIndicator] = None,
        clock: Optional[Clock] = None,
    ) -> Optional["SyncSession"]:
        """Build a session for ``root`` if it carries a session marker."""
        config = SessionConfig.load(root / settings.marker_path)
        if config is None:
            return None
        return cls(root, config, settings, indicator=indicator, clock=clock)

    @property
    def started(self) -> bool:
        return self._started

    async def start(self) -> None:
        if self._started:
            return
        self._started = True
        logger.info("Starting sync of %s to %s", self.root, self.config.server_url)
        await self.engine.start()

    async def close(self) -> None:
        if not self._started:
            return
        self._started = False
        await self.engine.stop()
        await self.queue.close()
        logger.info("Stopped sync of %s", self.root)

    async def __aenter__(self) -> "SyncSession":
        await self.start()
        return self

    async def __aexit__(self, exc_type, exc, tb) -> None:
        await self.close()


__all__ = ["SessionConfig", "SyncSession", "discover_sessions"]
