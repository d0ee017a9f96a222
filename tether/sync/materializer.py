"""Seeds a fresh session root from the collector's manifest."""

from __future__ import annotations

import base64
import binascii
import json
import logging
import posixpath
import re
import secrets
import shutil
import string
import time
from dataclasses import dataclass
from enum import Enum
from pathlib import Path
from typing import Any, Callable, Dict, Iterable, List, Optional

from .diagnostics import DiagnosticChannel
from .errors import CleanupError, ManifestDecodeError, MaterializationError
from .session import SessionConfig
from .settings import SyncSettings
from .transport import CollectorClient

logger = logging.getLogger("tether.sync.materializer")

SESSION_PREFIX = "session"
_SUFFIX_ALPHABET = string.digits + string.ascii_lowercase
_HINT_UNSAFE = re.compile(r"[^A-Za-z0-9._-]+")


class EntryKind(str, Enum):
    FILE = "file"
    DIRECTORY = "directory"


@dataclass(frozen=True)
class ManifestEntry:
    """One node of the remote template tree."""

    path: str  # Normalized, root-relative, forward slashes; "" is the root
    kind: EntryKind
    content: Optional[bytes] = None  # Set iff kind is FILE

    @classmethod
    def from_dict(cls, data: Any) -> "ManifestEntry":
        if not isinstance(data, dict):
            raise ManifestDecodeError(f"manifest entry must be an object, got {type(data).__name__}")

        raw_path = data.get("path")
        if not isinstance(raw_path, str):
            raise ManifestDecodeError(f"manifest entry has no string 'path': {data!r}")
        path = normalize_entry_path(raw_path)

        try:
            kind = EntryKind(data.get("type"))
        except ValueError:
            raise ManifestDecodeError(
                f"manifest entry '{raw_path}' has unknown type {data.get('type')!r}"
            ) from None

        if kind is EntryKind.DIRECTORY:
            return cls(path=path, kind=kind)

        if path == "":
            raise ManifestDecodeError("file entry cannot target the session root")
        encoded = data.get("contentBase64") or ""
        if not isinstance(encoded, str):
            raise ManifestDecodeError(f"contentBase64 of '{raw_path}' must be a string")
        try:
            content = base64.b64decode("".join(encoded.split()), validate=True)
        except (binascii.Error, ValueError) as exc:
            raise ManifestDecodeError(f"contentBase64 of '{raw_path}' is not valid base64") from exc
        return cls(path=path, kind=kind, content=content)


def normalize_entry_path(raw: str) -> str:
    """Normalize a manifest path, rejecting anything that escapes the root."""
    candidate = raw.replace("\\", "/")
    if candidate.startswith("/") or re.match(r"^[A-Za-z]:", candidate):
        raise ManifestDecodeError(f"manifest path '{raw}' is absolute")
    normalized = posixpath.normpath(candidate) if candidate else "."
    if normalized == ".." or normalized.startswith("../"):
        raise ManifestDecodeError(f"manifest path '{raw}' escapes the session root")
    return "" if normalized == "." else normalized


def decode_manifest(payload: Any) -> List[ManifestEntry]:
    """Decode a manifest response body (already parsed JSON, bytes or str)."""
    if isinstance(payload, (bytes, str)):
        try:
            payload = json.loads(payload)
        except (UnicodeDecodeError, json.JSONDecodeError) as exc:
            raise ManifestDecodeError(f"manifest is not valid JSON: {exc}") from exc
    if not isinstance(payload, list):
        raise ManifestDecodeError(f"manifest must be a JSON array, got {type(payload).__name__}")
    entries = [ManifestEntry.from_dict(item) for item in payload]
    _check_conflicts(entries)
    return entries


def _check_conflicts(entries: List[ManifestEntry]) -> None:
    """Reject trees where one path is both a file and a directory."""
    kinds: Dict[str, EntryKind] = {}
    for entry in entries:
        if kinds.setdefault(entry.path, entry.kind) is not entry.kind:
            raise ManifestDecodeError(f"manifest path '{entry.path}' is both a file and a directory")
    for path in kinds:
        parent = posixpath.dirname(path)
        while parent:
            if kinds.get(parent) is EntryKind.FILE:
                raise ManifestDecodeError(f"manifest path '{path}' is nested under file '{parent}'")
            parent = posixpath.dirname(parent)


def session_hint(config: SessionConfig, key: str) -> str:
    value = config.identity.get(key, "") if key else ""
    cleaned = _HINT_UNSAFE.sub("-", value).strip("-.")
    return cleaned[:48] or "unknown"


def session_dirname(hint: str) -> str:
    suffix = "".join(secrets.choice(_SUFFIX_ALPHABET) for _ in range(6))
    return f"{SESSION_PREFIX}-{int(time.time() * 1000)}-{suffix}-{hint}"


class ManifestMaterializer:
    """Fetches the manifest and writes it into a freshly allocated session root."""

    def __init__(
        self,
        settings: SyncSettings,
        open_folders: Optional[Callable[[], Iterable[Path]]] = None,
        diagnostics: Optional[DiagnosticChannel] = None,
        client_factory: Optional[Callable[[SessionConfig], CollectorClient]] = None,
    ):
        self.settings = settings
        self.open_folders = open_folders or (lambda: ())
        self.diagnostics = diagnostics or DiagnosticChannel("tether.sync.materializer")
        self.client_factory = client_factory or self._default_client

    def _default_client(self, config: SessionConfig) -> CollectorClient:
        return CollectorClient(
            base_url=config.server_url,
            identity=config.identity,
            timeout=self.settings.request_timeout,
        )

    @property
    def sessions_root(self) -> Path:
        return self.settings.sessions_root

    async def materialize(self, config: SessionConfig) -> Path:
        """Produce a populated session root with its marker, or raise.

        Raises ``ManifestFetchError`` or ``ManifestDecodeError`` before any
        directory is touched. A write failure removes the partial root and
        raises ``MaterializationError``.
        """
        client = self.client_factory(config)
        payload = await client.fetch_manifest()
        entries = decode_manifest(payload)
        logger.info("Manifest from %s has %d entries", config.server_url, len(entries))

        self.sessions_root.mkdir(parents=True, exist_ok=True)
        self.collect_stale_sessions()
        root = self.allocate_session_root(session_hint(config, self.settings.session_hint_key))

        try:
            self.write_entries(root, entries)
            config.save(root / self.settings.marker_path)
        except ManifestDecodeError:
            self.discard_partial_root(root)
            raise
        except OSError as exc:
            self.discard_partial_root(root)
            raise MaterializationError(f"could not write session {root}: {exc}") from exc
        self.hide_reserved_directory(root)

        logger.info("Materialized session at %s", root)
        return root

    def collect_stale_sessions(self) -> List[Path]:
        """Delete earlier session roots, keeping open workspace folders. Best effort."""
        preserved = [Path(p).resolve() for p in self.open_folders()]
        removed: List[Path] = []

        try:
            children = sorted(self.sessions_root.iterdir())
        except OSError as exc:
            self.diagnostics.report(
                CleanupError(f"could not list sessions root {self.sessions_root}: {exc}"),
                source=self.sessions_root,
            )
            return removed

        for child in children:
            resolved = child.resolve()
            if any(folder == resolved or resolved in folder.parents for folder in preserved):
                logger.debug("Keeping open session %s", child)
                continue
            try:
                if child.is_dir() and not child.is_symlink():
                    shutil.rmtree(child)
                else:
                    child.unlink()
            except OSError as exc:
                self.diagnostics.report(
                    CleanupError(f"could not delete stale session {child}: {exc}"),
                    source=child,
                )
                continue
            removed.append(child)

        if removed:
            logger.info("Removed %d stale session(s) from %s", len(removed), self.sessions_root)
        return removed

    def allocate_session_root(self, hint: str) -> Path:
        while True:
            candidate = self.sessions_root / session_dirname(hint)
            try:
                candidate.mkdir()
            except FileExistsError:
                continue
            return candidate

    def discard_partial_root(self, root: Path) -> None:
        try:
            shutil.rmtree(root)
        except OSError as exc:
            self.diagnostics.report(
                CleanupError(f"could not remove partial session {root}: {exc}"), source=root
            )
        else:
            logger.warning("Removed partial session %s", root)

    def write_entries(self, root: Path, entries: Iterable[ManifestEntry]) -> None:
        resolved_root = root.resolve()
        for entry in entries:
            target = (root / entry.path) if entry.path else root
            if target.resolve() != resolved_root and resolved_root not in target.resolve().parents:
                raise ManifestDecodeError(f"manifest path '{entry.path}' escapes the session root")
            if entry.kind is EntryKind.DIRECTORY:
                target.mkdir(parents=True, exist_ok=True)
            else:
                target.parent.mkdir(parents=True, exist_ok=True)
                target.write_bytes(entry.content or b"")

    def hide_reserved_directory(self, root: Path) -> None:
        """Merge the hide glob into the editor's ``files.exclude``. Never raises."""
        settings_path = root / self.settings.editor_settings_path
        try:
            try:
                current = json.loads(settings_path.read_text(encoding="utf-8"))
            except (OSError, ValueError):
                current = {}
            if not isinstance(current, dict):
                current = {}
            excluded = current.get("files.exclude")
            if not isinstance(excluded, dict):
                excluded = {}
            excluded[self.settings.hide_glob] = True
            current["files.exclude"] = excluded

            settings_path.parent.mkdir(parents=True, exist_ok=True)
            settings_path.write_text(json.dumps(current, indent=2), encoding="utf-8")
        except OSError as exc:
            self.diagnostics.report(
                CleanupError(f"could not update editor settings {settings_path}: {exc}"),
                source=settings_path,
            )


__all__ = [
    "EntryKind",
    "ManifestEntry",
    "ManifestMaterializer",
    "decode_manifest",
    "normalize_entry_path",
    "session_dirname",
    "session_hint",
]
