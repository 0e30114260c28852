"""Configuration loading utilities for the change watcher."""
from __future__ import annotations

import logging
import os
import re
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any, Dict, FrozenSet, Iterable, List, Mapping, Optional, Tuple

import yaml # type: ignore

from .events import EventType

logger = logging.getLogger(__name__)


class ConfigError(Exception):
    """Raised when the configuration file or the resolved options are invalid."""


# Kinds that run the command unless the user says otherwise. Attribute-only
# changes are reported to hooks but do not trigger a run by themselves.
DEFAULT_TRIGGERS: FrozenSet[EventType] = frozenset(
    {EventType.CREATED, EventType.MODIFIED, EventType.MOVED, EventType.DELETED}
)

# Kinds a user may list in ``trigger_on``.
TRIGGER_KINDS: Tuple[EventType, ...] = (
    EventType.CREATED,
    EventType.MODIFIED,
    EventType.MOVED,
    EventType.DELETED,
    EventType.CHMOD,
)


@dataclass(frozen=True)
class WatchTarget:
    """A file or directory registered for watching."""

    path: Path
    is_directory: bool
    recursive: bool = False


@dataclass(frozen=True)
class Options:
    """Watcher behaviour, resolved once at startup and never mutated."""

    command: str = ""
    recursive: bool = False
    verbosity: int = 0
    run_once: bool = False
    run_at_start: bool = False
    quiet: bool = False
    command_timeout: Optional[float] = None
    shutdown_grace_period: float = 0.0
    trigger_on: FrozenSet[EventType] = DEFAULT_TRIGGERS
    exclude_patterns: Tuple[str, ...] = ()


@dataclass
class FileConfig:
    """Values read from a YAML configuration file.

    ``options`` only holds the keys present in the file so that command-line
    flags can still fall back to the built-in defaults.
    """

    paths: List[Path] = field(default_factory=list)
    options: Dict[str, Any] = field(default_factory=dict)


_BOOL_KEYS = {
    "recursive": "recursive",
    "run_once": "run_once",
    "run_at_start": "run_at_start",
    "quiet": "quiet",
}


def load_config(path: Path) -> FileConfig:
    """Load and validate the YAML configuration file."""

    if not path.exists():
        raise ConfigError(f"Configuration file not found: {path}")

    try:
        data = yaml.safe_load(path.read_text())
    except yaml.YAMLError as exc:  # pragma: no cover - logging helper
        raise ConfigError(f"Failed to parse YAML configuration: {exc}") from exc

    if data is None:
        data = {}
    if not isinstance(data, dict):
        raise ConfigError("Configuration root must be a mapping")

    unknown = sorted(set(data) - _KNOWN_KEYS)
    if unknown:
        raise ConfigError(f"Unknown configuration keys: {', '.join(unknown)}")

    paths = [
        _resolve_relative(Path(item), config_path=path)
        for item in _ensure_str_list(data.get("paths", []), "paths")
    ]

    options: Dict[str, Any] = {}
    if "command" in data:
        command = data["command"]
        if not isinstance(command, str):
            raise ConfigError("command must be a string")
        options["command"] = command

    for key, option_name in _BOOL_KEYS.items():
        if key in data:
            options[option_name] = _parse_bool(data[key], key)

    if "verbose" in data:
        options["verbosity"] = _parse_verbosity(data["verbose"], "verbose")
    if "command_timeout" in data and data["command_timeout"] is not None:
        options["command_timeout"] = _parse_seconds(data["command_timeout"], "command_timeout", positive=True)
    if "shutdown_grace_period" in data:
        options["shutdown_grace_period"] = _parse_seconds(
            data["shutdown_grace_period"], "shutdown_grace_period", positive=False
        )
    if "trigger_on" in data:
        options["trigger_on"] = parse_trigger_kinds(data["trigger_on"], "trigger_on")
    if "exclude_patterns" in data:
        options["exclude_patterns"] = tuple(
            _ensure_str_list(data["exclude_patterns"], "exclude_patterns")
        )

    logger.info("Loaded configuration from %s (%s keys)", path, len(data))
    return FileConfig(paths=paths, options=options)


def resolve_options(cli_values: Mapping[str, Any], file_config: Optional[FileConfig] = None) -> Options:
    """Merge command-line values over file values over defaults.

    ``cli_values`` maps :class:`Options` field names to values; ``None`` means
    the flag was not given.
    """

    values: Dict[str, Any] = {}
    if file_config is not None:
        values.update(file_config.options)
    values.update({key: value for key, value in cli_values.items() if value is not None})

    if "verbosity" in values:
        values["verbosity"] = _parse_verbosity(values["verbosity"], "verbosity")
    if values.get("command_timeout") is not None:
        values["command_timeout"] = _parse_seconds(values["command_timeout"], "command_timeout", positive=True)
    if "shutdown_grace_period" in values:
        values["shutdown_grace_period"] = _parse_seconds(
            values["shutdown_grace_period"], "shutdown_grace_period", positive=False
        )
    if "trigger_on" in values:
        values["trigger_on"] = parse_trigger_kinds(values["trigger_on"], "trigger_on")
    if "exclude_patterns" in values:
        patterns = tuple(values["exclude_patterns"])
        _check_patterns(patterns)
        values["exclude_patterns"] = patterns

    try:
        return Options(**values)
    except TypeError as exc:
        raise ConfigError(f"Unsupported option: {exc}") from exc


def resolve_targets(paths: Iterable[Path], *, recursive: bool) -> Tuple[WatchTarget, ...]:
    """Normalize watch paths and record whether each one is a directory."""

    targets: List[WatchTarget] = []
    seen = set()
    for raw in paths:
        normalized = Path(os.path.normpath(os.path.abspath(os.path.expanduser(str(raw)))))
        if normalized in seen:
            continue
        seen.add(normalized)
        targets.append(
            WatchTarget(path=normalized, is_directory=normalized.is_dir(), recursive=recursive)
        )
    return tuple(targets)


def parse_trigger_kinds(value: Any, field_name: str) -> FrozenSet[EventType]:
    """Parse a list (or comma-separated string) of event kind names."""

    if isinstance(value, frozenset) and all(isinstance(item, EventType) for item in value):
        return value
    if isinstance(value, str):
        items: List[Any] = [part.strip() for part in value.split(",") if part.strip()]
    elif isinstance(value, (list, tuple, set, frozenset)):
        items = list(value)
    else:
        raise ConfigError(f"{field_name} must be a list of event kinds")

    kinds = set()
    for item in items:
        try:
            kind = EventType(item)
        except ValueError as exc:
            allowed = ", ".join(option.value for option in TRIGGER_KINDS)
            raise ConfigError(f"{field_name} entries must be one of: {allowed}") from exc
        if kind not in TRIGGER_KINDS:
            allowed = ", ".join(option.value for option in TRIGGER_KINDS)
            raise ConfigError(f"{field_name} entries must be one of: {allowed}")
        kinds.add(kind)
    return frozenset(kinds)


_KNOWN_KEYS = {
    "paths",
    "command",
    "verbose",
    "command_timeout",
    "shutdown_grace_period",
    "trigger_on",
    "exclude_patterns",
    *_BOOL_KEYS,
}


def _resolve_relative(path: Path, *, config_path: Path) -> Path:
    path = path.expanduser()
    if not path.is_absolute():
        path = (config_path.parent / path).resolve()
    return path


def _parse_bool(value: Any, field_name: str) -> bool:
    if not isinstance(value, bool):
        raise ConfigError(f"{field_name} must be a boolean")
    return value


def _parse_verbosity(value: Any, field_name: str) -> int:
    if isinstance(value, bool) or not isinstance(value, int):
        raise ConfigError(f"{field_name} must be a non-negative integer")
    if value < 0:
        raise ConfigError(f"{field_name} must be a non-negative integer")
    return value


def _parse_seconds(value: Any, field_name: str, *, positive: bool) -> float:
    if isinstance(value, bool):
        raise ConfigError(f"{field_name} must be numeric")
    try:
        seconds = float(value)
    except (TypeError, ValueError) as exc:
        raise ConfigError(f"{field_name} must be numeric") from exc
    if positive and seconds <= 0:
        raise ConfigError(f"{field_name} must be positive")
    if seconds < 0:
        raise ConfigError(f"{field_name} must not be negative")
    return seconds


def _check_patterns(patterns: Iterable[str]) -> None:
    for pattern in patterns:
        try:
            re.compile(pattern)
        except re.error as exc:
            raise ConfigError(f"Invalid exclude pattern {pattern!r}: {exc}") from exc


def _ensure_str_list(value: Any, field_name: str) -> List[str]:
    if value is None:
        return []
    if isinstance(value, str):
        return [value]
    if not isinstance(value, list):
        raise ConfigError(f"{field_name} must be a list of strings")
    items: List[str] = []
    for elem in value:
        if not isinstance(elem, str):
            raise ConfigError(f"{field_name} must contain only strings")
        items.append(elem)
    return items
