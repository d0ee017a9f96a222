"""Terminal status line and shared delivery-failure indicator."""

from __future__ import annotations

from typing import Optional

from rich.console import Console
from rich.text import Text

STATUS_STYLES = {
    "idle": "dim",
    "starting": "cyan",
    "running": "green",
    "stopped": "dim",
}


class ConsoleIndicator:
    """Shows session status and the most recent delivery failure.

    Only transitions are printed (failing -> recovered and back), so a long
    outage produces one line instead of one per retry.
    """

    def __init__(self, console: Optional[Console] = None):
        self.console = console or Console(stderr=True)
        self.status = "idle"
        self.failure: Optional[str] = None

    def set_status(self, status: str, detail: str = "") -> None:
        self.status = status
        line = Text(f"[tether] {status}", style=STATUS_STYLES.get(status, ""))
        if detail:
            line.append(f"  {detail}", style="dim")
        self.console.print(line)

    def show_failure(self, message: str) -> None:
        first = self.failure is None
        self.failure = message
        if first:
            self.console.print(Text(f"[tether] sync error: {message}", style="bold red"))

    def clear_failure(self) -> None:
        if self.failure is None:
            return
        self.failure = None
        self.console.print(Text("[tether] sync recovered", style="green"))

    @property
    def failing(self) -> bool:
        return self.failure is not None


__all__ = ["ConsoleIndicator"]
