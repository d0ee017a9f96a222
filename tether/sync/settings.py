"""Typed view over the ``sync`` configuration section."""

from __future__ import annotations

import tempfile
from dataclasses import dataclass
from pathlib import Path
from typing import Any, Dict

DEFAULT_SESSIONS_DIRNAME = "tether-sessions"


@dataclass
class SyncSettings:
    """Settings for materialization and live synchronization."""

    sessions_root: Path
    marker_path: str = ".vscode/tether-session.json"
    editor_settings_path: str = ".vscode/settings.json"
    hide_glob: str = "**/.vscode"
    session_hint_key: str = "exercise"
    backoff_floor: float = 1.0
    backoff_ceiling: float = 30.0
    debounce: float = 0.5
    heartbeat_interval: float = 30.0
    poll_interval: float = 1.0
    request_timeout: float = 30.0
    drop_rejected: bool = False

    @classmethod
    def from_config(cls, config: Dict[str, Any]) -> "SyncSettings":
        raw = config.get("sync", {}) if config else {}
        raw = raw or {}
        sessions_root = str(raw.get("sessions_root") or "")
        return cls(
            sessions_root=(
                Path(sessions_root).expanduser()
                if sessions_root
                else default_sessions_root()
            ),
            marker_path=str(raw.get("marker_path", ".vscode/tether-session.json")),
            editor_settings_path=str(raw.get("editor_settings_path", ".vscode/settings.json")),
            hide_glob=str(raw.get("hide_glob", "**/.vscode")),
            session_hint_key=str(raw.get("session_hint_key", "exercise")),
            backoff_floor=float(raw.get("backoff_floor", 1.0)),
            backoff_ceiling=float(raw.get("backoff_ceiling", 30.0)),
            debounce=float(raw.get("debounce", 0.5)),
            heartbeat_interval=float(raw.get("heartbeat_interval", 30.0)),
            poll_interval=float(raw.get("poll_interval", 1.0)),
            request_timeout=float(raw.get("request_timeout", 30.0)),
            drop_rejected=bool(raw.get("drop_rejected", False)),
        )

    @property
    def reserved_paths(self) -> frozenset:
        """Root-relative paths Tether writes itself and never reports."""
        return frozenset({self.marker_path.strip("/"), self.editor_settings_path.strip("/")})


def default_sessions_root() -> Path:
    return Path(tempfile.gettempdir()) / DEFAULT_SESSIONS_DIRNAME


__all__ = ["SyncSettings", "default_sessions_root"]
