"""Non-fatal diagnostic channel for best-effort synchronization steps."""

from __future__ import annotations

import logging
from dataclasses import dataclass, field
from pathlib import Path
from typing import List, Literal, Optional, Type

from .errors import SyncError

DiagnosticLevel = Literal["debug", "info", "warning", "error"]

_LOG_LEVELS = {
    "debug": logging.DEBUG,
    "info": logging.INFO,
    "warning": logging.WARNING,
    "error": logging.ERROR,
}


@dataclass
class SyncDiagnostic:
    """A recorded failure that did not abort the surrounding operation."""

    level: DiagnosticLevel
    message: str
    error: Optional[SyncError] = None
    source: Optional[Path] = None


@dataclass
class DiagnosticChannel:
    """Collects non-fatal errors and mirrors them to the log.

    Fatal errors (materialization failures) are raised instead; anything
    reported here is something the caller chose to survive.
    """

    logger_name: str = "tether.sync"
    entries: List[SyncDiagnostic] = field(default_factory=list)

    def report(
        self,
        error: SyncError,
        *,
        level: DiagnosticLevel = "warning",
        source: Optional[Path] = None,
    ) -> SyncDiagnostic:
        message = str(error)
        diagnostic = SyncDiagnostic(level=level, message=message, error=error, source=source)
        self.entries.append(diagnostic)
        logging.getLogger(self.logger_name).log(_LOG_LEVELS[level], message)
        return diagnostic

    def of_type(self, error_type: Type[SyncError]) -> List[SyncDiagnostic]:
        return [entry for entry in self.entries if isinstance(entry.error, error_type)]

    def clear(self) -> None:
        self.entries.clear()

    def __len__(self) -> int:
        return len(self.entries)


__all__ = ["DiagnosticChannel", "SyncDiagnostic", "DiagnosticLevel"]
