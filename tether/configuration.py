"""Layered YAML configuration for Tether.

Values come from three layers, later ones winning:

1. the schema defaults below,
2. ``config/*.yml`` shipped next to the package,
3. ``$TETHER_HOME/config/*.yml`` on the operator's machine.
"""

from __future__ import annotations

from copy import deepcopy
from dataclasses import dataclass, field
import os
from pathlib import Path
from typing import Any, Dict, List, Literal, Mapping, MutableMapping, Optional, Tuple

import yaml

REPO_ROOT = Path(__file__).resolve().parent.parent
DEFAULT_CONFIG_DIR = REPO_ROOT / "config"
DEFAULT_HOME = "~/.tether"

DiagnosticLevel = Literal["info", "warning", "error"]
ConfigurationStatus = Literal["ready", "invalid"]

NUMBER = (int, float)

# section -> key -> (accepted type(s), default)
SECTIONS: Dict[str, Dict[str, Tuple[Any, Any]]] = {
    "runtime": {
        "name": (str, "Tether"),
    },
    "logging": {
        "level": (str, "INFO"),
        "structured": (bool, True),
    },
    "ui": {
        "verbose": (bool, True),
    },
    "sync": {
        "sessions_root": (str, ""),  # empty: <system temp>/tether-sessions
        "marker_path": (str, ".vscode/tether-session.json"),
        "editor_settings_path": (str, ".vscode/settings.json"),
        "hide_glob": (str, "**/.vscode"),
        "session_hint_key": (str, "exercise"),
        "backoff_floor": (NUMBER, 1.0),
        "backoff_ceiling": (NUMBER, 30.0),
        "debounce": (NUMBER, 0.5),
        "heartbeat_interval": (NUMBER, 30.0),
        "poll_interval": (NUMBER, 1.0),
        "request_timeout": (NUMBER, 30.0),
        "drop_rejected": (bool, False),
    },
}


@dataclass
class Diagnostic:
    """A problem found while loading or checking configuration."""

    level: DiagnosticLevel
    message: str
    source: Optional[Path] = None


@dataclass
class ConfigurationBundle:
    """Merged configuration plus everything needed to explain where it came from."""

    home_dir: Path
    status: ConfigurationStatus
    merged: Dict[str, Any] = field(default_factory=dict)
    repo_defaults: Dict[str, Any] = field(default_factory=dict)
    home_overrides: Dict[str, Any] = field(default_factory=dict)
    files_loaded: List[Path] = field(default_factory=list)
    diagnostics: List[Diagnostic] = field(default_factory=list)
    log_path: Optional[Path] = None


def resolve_home_dir(
    env: Optional[Mapping[str, str]] = None,
    default: str = DEFAULT_HOME,
) -> Path:
    """Resolve the Tether home directory from ``TETHER_HOME``."""

    env_source = env or os.environ
    return Path(env_source.get("TETHER_HOME", default)).expanduser()


def schema_defaults() -> Dict[str, Any]:
    return {
        section: {key: deepcopy(default) for key, (_, default) in keys.items()}
        for section, keys in SECTIONS.items()
    }


def load_runtime_configuration(home_dir: Optional[Path] = None) -> ConfigurationBundle:
    """Load repository defaults and home overrides into one checked mapping.

    A missing home directory only produces an info diagnostic; Tether runs
    on defaults until the operator creates ``<home>/config``.
    """

    home = home_dir or resolve_home_dir()
    diagnostics: List[Diagnostic] = []

    repo_defaults, files_loaded = _read_layer(DEFAULT_CONFIG_DIR, "repo defaults", diagnostics)

    home_overrides: Dict[str, Any] = {}
    if not home.exists():
        diagnostics.append(
            Diagnostic("info", f"Tether home '{home}' does not exist; using defaults.")
        )
    elif not home.is_dir():
        diagnostics.append(
            Diagnostic("error", f"Tether home '{home}' is not a directory.", source=home)
        )
    else:
        home_overrides, home_files = _read_layer(home / "config", "home overrides", diagnostics)
        files_loaded.extend(home_files)

    merged = schema_defaults()
    _merge_into(merged, repo_defaults)
    _merge_into(merged, home_overrides)
    diagnostics.extend(_check_types(merged))

    status: ConfigurationStatus = (
        "invalid" if any(d.level == "error" for d in diagnostics) else "ready"
    )
    return ConfigurationBundle(
        home_dir=home,
        status=status,
        merged=merged,
        repo_defaults=repo_defaults,
        home_overrides=home_overrides,
        files_loaded=files_loaded,
        diagnostics=diagnostics,
    )


def _read_layer(
    directory: Path,
    label: str,
    diagnostics: List[Diagnostic],
) -> Tuple[Dict[str, Any], List[Path]]:
    """Merge every ``*.yml``/``*.yaml`` file of one layer in name order."""

    layer: Dict[str, Any] = {}
    loaded: List[Path] = []

    if not directory.is_dir():
        level: DiagnosticLevel = "error" if directory.exists() else "warning"
        diagnostics.append(
            Diagnostic(level, f"No configuration directory at '{directory}' ({label}).", source=directory)
        )
        return layer, loaded

    for path in sorted(directory.glob("*.yml")) + sorted(directory.glob("*.yaml")):
        try:
            content = yaml.safe_load(path.read_text(encoding="utf-8"))
        except yaml.YAMLError as exc:
            diagnostics.append(Diagnostic("error", f"Failed to parse '{path}': {exc}", source=path))
            continue
        if content is not None and not isinstance(content, MutableMapping):
            diagnostics.append(
                Diagnostic("warning", f"Ignoring '{path}': top level is not a mapping.", source=path)
            )
            continue
        _merge_into(layer, content or {})
        loaded.append(path)

    return layer, loaded


def _merge_into(dest: MutableMapping[str, Any], source: Mapping[str, Any]) -> None:
    for key, value in source.items():
        current = dest.get(key)
        if isinstance(current, MutableMapping) and isinstance(value, Mapping):
            _merge_into(current, value)
        else:
            dest[key] = deepcopy(value)


def _type_name(expected: Any) -> str:
    if isinstance(expected, tuple):
        return " or ".join(t.__name__ for t in expected)
    return expected.__name__


def _accepts(expected: Any, value: Any) -> bool:
    # bool is an int subclass; only bool-typed keys take booleans.
    if isinstance(value, bool) and expected is not bool:
        return False
    return isinstance(value, expected)


def _check_types(config: Dict[str, Any]) -> List[Diagnostic]:
    """Reset wrongly typed values to their defaults and report every problem."""

    found: List[Diagnostic] = []
    for section in [s for s in config if s not in SECTIONS]:
        found.append(Diagnostic("warning", f"Unknown configuration key '{section}'."))

    for section, keys in SECTIONS.items():
        values = config[section]
        if values is None:  # an empty section in YAML
            config[section] = schema_defaults()[section]
            continue
        if not isinstance(values, dict):
            found.append(Diagnostic("error", f"'{section}' must be a mapping."))
            config[section] = schema_defaults()[section]
            continue
        for key in values:
            if key not in keys:
                found.append(Diagnostic("warning", f"Unknown configuration key '{section}.{key}'."))
        for key, (expected, default) in keys.items():
            if not _accepts(expected, values[key]):
                found.append(
                    Diagnostic("error", f"'{section}.{key}' must be of type {_type_name(expected)}.")
                )
                values[key] = deepcopy(default)
    return found


__all__ = [
    "ConfigurationBundle",
    "ConfigurationStatus",
    "DEFAULT_CONFIG_DIR",
    "Diagnostic",
    "SECTIONS",
    "load_runtime_configuration",
    "resolve_home_dir",
    "schema_defaults",
]
