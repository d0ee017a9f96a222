# tether/app.py
"""
Terminal host for Tether.

Stands in for the editor integration: it turns a launch link into a
materialized session, keeps that session mirrored until interrupted, and can
resume or list session-managed folders later.
"""

from __future__ import annotations

import argparse
import asyncio
import logging
import os
from pathlib import Path
from shutil import get_terminal_size
from typing import Iterable, List, Optional, Sequence

from rich.console import Console
from rich.table import Table

from .configuration import ConfigurationBundle, load_runtime_configuration
from .logging_utils import setup_logging
from .status import ConsoleIndicator
from .sync import (
    ManifestMaterializer,
    SessionConfig,
    SyncError,
    SyncSession,
    SyncSettings,
    discover_sessions,
)

logger = logging.getLogger("tether")
TRUE_STRINGS = {"1", "true", "yes", "on"}
FALSE_STRINGS = {"0", "false", "no", "off"}


def print_banner(console: Console) -> None:
    """Print a one-line header, wider terminals get a rule."""

    terminal_width = get_terminal_size(fallback=(80, 24)).columns
    if terminal_width >= 60:
        console.rule("[bold]Tether[/bold] :: live workspace sync")
    else:
        console.print("[bold]Tether[/bold]")


def _parse_env_flag(value: str, *, default: bool = True) -> bool:
    normalized = value.strip().lower()
    if normalized in TRUE_STRINGS:
        return True
    if normalized in FALSE_STRINGS:
        return False
    return default


def _resolve_ui_verbose(config_bundle: ConfigurationBundle) -> bool:
    """Resolve whether the host should echo log records to the terminal."""

    env_value = os.environ.get("TETHER_UI_VERBOSE")
    if env_value is not None:
        return _parse_env_flag(env_value)

    merged = config_bundle.merged or {}
    ui_cfg = merged.get("ui") or {}
    verbose_setting = ui_cfg.get("verbose")
    if verbose_setting is None:
        return True
    return bool(verbose_setting)


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(
        prog="tether",
        description="Launch a workspace from a link and mirror it to the collector.",
    )
    sub = parser.add_subparsers(dest="command", required=True)

    launch = sub.add_parser("launch", help="materialize a workspace from a launch link and sync it")
    launch.add_argument("link", help="launch link carrying 'server' and identity parameters")

    resume = sub.add_parser("resume", help="resume syncing a session-managed folder")
    resume.add_argument("folder", nargs="?", default=".", help="session root (default: current directory)")

    status = sub.add_parser("status", help="list session-managed folders")
    status.add_argument("folders", nargs="*", help="folders to inspect (default: the sessions root)")
    return parser


def show_sessions(console: Console, sessions: Sequence[tuple]) -> None:
    table = Table(title="Tether Sessions")
    table.add_column("Folder", style="cyan")
    table.add_column("Collector")
    table.add_column("Identity", style="dim")
    for root, config in sessions:
        identity = ", ".join(f"{k}={v}" for k, v in config.identity.items() if k != "token")
        table.add_row(str(root), config.server_url, identity or "(none)")
    console.print(table)


async def run_session(session: SyncSession, indicator: ConsoleIndicator) -> None:
    """Keep a session running until the task is cancelled."""

    indicator.set_status("starting", str(session.root))
    async with session:
        indicator.set_status("running", f"{session.root} -> {session.config.server_url}")
        await asyncio.Event().wait()


async def launch(
    link: str,
    settings: SyncSettings,
    indicator: ConsoleIndicator,
    open_folders: Iterable[Path] = (),
) -> None:
    config = SessionConfig.from_link(link)
    indicator.set_status("starting", f"fetching manifest from {config.server_url}")
    folders = list(open_folders)
    materializer = ManifestMaterializer(settings, open_folders=lambda: folders)
    root = await materializer.materialize(config)
    indicator.console.print(f"\\[tether] workspace ready at [bold]{root}[/bold]")
    await run_session(SyncSession(root, config, settings, indicator=indicator), indicator)


def _candidate_folders(folders: List[str], settings: SyncSettings) -> List[Path]:
    if folders:
        return [Path(f).expanduser() for f in folders]
    root = settings.sessions_root
    if not root.is_dir():
        return []
    return sorted(child for child in root.iterdir() if child.is_dir())


def main(argv: Optional[Sequence[str]] = None) -> int:
    args = build_parser().parse_args(argv)
    console = Console(stderr=True)

    config_bundle = load_runtime_configuration()
    verbose = _resolve_ui_verbose(config_bundle)
    logging_cfg = config_bundle.merged.get("logging") or {}
    config_bundle.log_path = setup_logging(
        config_bundle.home_dir,
        level=logging_cfg.get("level", "INFO"),
        structured=bool(logging_cfg.get("structured", True)),
        console=verbose,
    )
    for diag in config_bundle.diagnostics:
        if diag.level != "info":
            logger.warning("[config] %s", diag.message)

    settings = SyncSettings.from_config(config_bundle.merged)
    indicator = ConsoleIndicator(console)
    print_banner(console)

    if args.command == "status":
        sessions = discover_sessions(_candidate_folders(args.folders, settings), settings.marker_path)
        if not sessions:
            console.print("no session-managed folders found", markup=False)
            return 0
        show_sessions(console, sessions)
        return 0

    try:
        if args.command == "launch":
            asyncio.run(launch(args.link, settings, indicator, open_folders=[Path.cwd()]))
        else:
            root = Path(args.folder).expanduser().absolute()
            session = SyncSession.resume(root, settings, indicator=indicator)
            if session is None:
                console.print(f"{root} is not a Tether session", style="red", markup=False)
                return 1
            asyncio.run(run_session(session, indicator))
    except SyncError as exc:
        logger.error("Launch failed: %s", exc)
        console.print(f"launch failed: {exc}", style="bold red", markup=False)
        return 1
    except KeyboardInterrupt:
        indicator.set_status("stopped")
    return 0


if __name__ == "__main__":  # pragma: no cover
    raise SystemExit(main())
