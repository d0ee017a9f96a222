"""Logging setup for Tether: a rotating text log, JSON lines, optional console echo."""

from __future__ import annotations

import json
import logging
from datetime import datetime, timezone
from logging.handlers import RotatingFileHandler
from pathlib import Path
import sys
from typing import List, Union

LOG_DIR = Path("logs")
TEXT_LOG = "tether.log"
JSON_LOG = "tether.jsonl"
TEXT_FORMAT = "%(asctime)s [%(levelname)s] %(name)s: %(message)s"
MAX_BYTES = 5 * 1024 * 1024  # 5 MB per log segment
BACKUP_COUNT = 3
REPO_ROOT = Path(__file__).resolve().parent.parent
FALLBACK_ROOT = REPO_ROOT / ".tether_runtime"

# Attributes passed through ``extra=`` that the JSON log keeps.
CONTEXT_FIELDS = ("event", "path", "attempt", "delay", "status")


class JSONFormatter(logging.Formatter):
    """One JSON object per record, with any known context fields."""

    def format(self, record: logging.LogRecord) -> str:
        entry = {
            "timestamp": datetime.fromtimestamp(record.created, timezone.utc).isoformat(),
            "level": record.levelname,
            "logger": record.name,
            "message": record.getMessage(),
        }
        for name in CONTEXT_FIELDS:
            if hasattr(record, name):
                entry[name] = getattr(record, name)
        if record.exc_info:
            entry["exception"] = self.formatException(record.exc_info)
        return json.dumps(entry, default=str)


def log_directory(home_dir: Path) -> Path:
    """``<home>/logs``, or the repository fallback when home is not writable."""
    target = home_dir / LOG_DIR
    try:
        target.mkdir(parents=True, exist_ok=True)
        return target
    except PermissionError:
        fallback = FALLBACK_ROOT / LOG_DIR
        fallback.mkdir(parents=True, exist_ok=True)
        print(
            f"[config] Unable to write logs under '{home_dir}'; falling back to '{fallback}'.",
            file=sys.stderr,
        )
        return fallback


def _resolve_level(level: Union[str, int]) -> int:
    if isinstance(level, str):
        return getattr(logging, level.upper(), logging.INFO)
    return int(level)


def _rotating(path: Path, formatter: logging.Formatter) -> RotatingFileHandler:
    handler = RotatingFileHandler(path, maxBytes=MAX_BYTES, backupCount=BACKUP_COUNT, encoding="utf-8")
    handler.setFormatter(formatter)
    return handler


def setup_logging(
    home_dir: Path,
    level: Union[str, int] = logging.INFO,
    structured: bool = True,
    console: bool = True,
) -> Path:
    """Route the ``tether`` logger tree to files (and optionally stderr).

    Calling it again replaces the previous handlers.

    Args:
        home_dir: Tether home; logs go under ``<home>/logs``.
        level: Level name or ``logging`` constant.
        structured: Also write ``tether.jsonl`` through :class:`JSONFormatter`.
        console: Echo records to stderr.

    Returns:
        Path to the text log.
    """
    directory = log_directory(home_dir)
    text_formatter = logging.Formatter(TEXT_FORMAT)

    handlers: List[logging.Handler] = [_rotating(directory / TEXT_LOG, text_formatter)]
    if structured:
        handlers.append(_rotating(directory / JSON_LOG, JSONFormatter()))
    if console:
        stream = logging.StreamHandler()
        stream.setFormatter(text_formatter)
        handlers.append(stream)

    logger = logging.getLogger("tether")
    for old in list(logger.handlers):
        logger.removeHandler(old)
        old.close()
    logger.setLevel(_resolve_level(level))
    for handler in handlers:
        logger.addHandler(handler)
    logger.propagate = False

    # asyncio reports slow callbacks at DEBUG; watcher scans trip it.
    logging.getLogger("asyncio").setLevel(logging.WARNING)
    return directory / TEXT_LOG


__all__ = ["setup_logging", "log_directory", "JSONFormatter", "CONTEXT_FIELDS", "FALLBACK_ROOT"]
