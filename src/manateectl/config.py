"""Configuration loader for manateectl.

This module centralises the logic for reading harness configuration values
from multiple sources:

1. Built-in defaults.
2. ``/etc/manateectl/config.yml`` (or an override path).
3. Environment variables prefixed with ``MANATEECTL_``.
4. Explicit overrides supplied programmatically (reserved for CLI flags).

Environment keys use double underscores to express nesting, e.g.::

    export MANATEECTL_HEALTH__TIMEOUT_MS=60000
    export MANATEECTL_COMMANDS__ZFS_BIN=/usr/sbin/zfs

Values are coerced via PyYAML's ``safe_load`` so that booleans, numbers and
lists are parsed naturally. The resulting configuration is exposed as
immutable ``dataclasses``.

Per-instance values (dataset, ports, paths) do not live here; they belong to
:class:`manateectl.spec.InstanceSpec`.
"""
from __future__ import annotations

import os
from collections.abc import Mapping, MutableMapping, Sequence
from dataclasses import dataclass
from pathlib import Path
from typing import cast

try:  # PyYAML is a runtime dependency (declared in pyproject.toml).
    import yaml
except Exception as exc:  # pragma: no cover - import failure covered in tests
    raise RuntimeError(
        "PyYAML is required to load manateectl configuration. Install with "
        "`pip install manateectl` or ensure PyYAML>=6.0 is available."
    ) from exc

from .errors import ManateeError

ENV_PREFIX = "MANATEECTL_"
CONFIG_ENV_VAR = f"{ENV_PREFIX}CONFIG_FILE"
RESERVED_ENV_KEYS = {CONFIG_ENV_VAR}


class ConfigError(ManateeError):
    """Raised when configuration parsing fails."""


@dataclass(frozen=True)
class CommandsConfig:
    """External binaries used by the provisioning pipeline."""

    zfs_bin: str = "zfs"
    chown_bin: str = "chown"

    def to_dict(self) -> dict[str, object]:
        """Return a serialisable representation."""
        return {"zfs_bin": self.zfs_bin, "chown_bin": self.chown_bin}


@dataclass(frozen=True)
class ProcessesConfig:
    """How the three subordinate processes are launched."""

    launcher: tuple[str, ...] = ("/usr/bin/ctrun", "-l", "child", "-o", "noorphan")
    interpreter: str = "node"
    interpreter_args: tuple[str, ...] = ("--abort-on-uncaught-exception",)
    verbosity: str = "-vvv"
    sitter: Path = Path("../sitter.js")
    snapshotter: Path = Path("../snapshotter.js")
    backup_server: Path = Path("../backupserver.js")

    def to_dict(self) -> dict[str, object]:
        """Return a serialisable representation."""
        return {
            "launcher": list(self.launcher),
            "interpreter": self.interpreter,
            "interpreter_args": list(self.interpreter_args),
            "verbosity": self.verbosity,
            "sitter": str(self.sitter),
            "snapshotter": str(self.snapshotter),
            "backup_server": str(self.backup_server),
        }


@dataclass(frozen=True)
class HealthConfig:
    """Liveness polling defaults."""

    poll_interval_ms: int = 2000
    timeout_ms: int = 30000
    connect_timeout: float = 5.0

    def to_dict(self) -> dict[str, object]:
        """Return a serialisable representation."""
        return {
            "poll_interval_ms": self.poll_interval_ms,
            "timeout_ms": self.timeout_ms,
            "connect_timeout": self.connect_timeout,
        }


@dataclass(frozen=True)
class AppConfig:
    """Resolved configuration values for manateectl."""

    config_file: Path
    logs_dir: Path
    templates_dir: Path
    commands: CommandsConfig
    processes: ProcessesConfig
    health: HealthConfig

    def to_dict(self) -> dict[str, object]:
        """Return a JSON-serialisable representation of the config."""
        return {
            "config_file": str(self.config_file),
            "logs_dir": str(self.logs_dir),
            "templates_dir": str(self.templates_dir),
            "commands": self.commands.to_dict(),
            "processes": self.processes.to_dict(),
            "health": self.health.to_dict(),
        }


DEFAULT_CONFIG_FILE = "/etc/manateectl/config.yml"

DEFAULTS: dict[str, object] = {
    "config_file": DEFAULT_CONFIG_FILE,
    "logs_dir": "/var/log/manateectl",
    "templates_dir": "./etc",
    "commands": {
        "zfs_bin": "zfs",
        "chown_bin": "chown",
    },
    "processes": {
        "launcher": ["/usr/bin/ctrun", "-l", "child", "-o", "noorphan"],
        "interpreter": "node",
        "interpreter_args": ["--abort-on-uncaught-exception"],
        "verbosity": "-vvv",
        "sitter": "../sitter.js",
        "snapshotter": "../snapshotter.js",
        "backup_server": "../backupserver.js",
    },
    "health": {
        "poll_interval_ms": 2000,
        "timeout_ms": 30000,
        "connect_timeout": 5.0,
    },
}

ALLOWED_TOP_LEVEL_KEYS = set(DEFAULTS.keys())
ALLOWED_SECTION_KEYS: dict[str, set[str]] = {
    "commands": {"zfs_bin", "chown_bin"},
    "processes": {
        "launcher",
        "interpreter",
        "interpreter_args",
        "verbosity",
        "sitter",
        "snapshotter",
        "backup_server",
    },
    "health": {"poll_interval_ms", "timeout_ms", "connect_timeout"},
}


def load_config(
    config_file: str | os.PathLike[str] | None = None,
    *,
    env: Mapping[str, str] | None = None,
    overrides: Mapping[str, object] | None = None,
) -> AppConfig:
    """Load and merge configuration sources into an :class:`AppConfig`."""
    merged: dict[str, object] = _deep_copy(DEFAULTS)
    resolved_env = dict(os.environ if env is None else env)

    config_path = _determine_config_path(config_file, resolved_env)

    file_values = _load_yaml_file(config_path)
    if file_values:
        _deep_merge(merged, file_values)

    env_values = _build_env_overrides(resolved_env)
    if env_values:
        _deep_merge(merged, env_values)

    if overrides:
        _deep_merge(merged, dict(overrides))

    merged["config_file"] = str(config_path)

    _validate_structure(merged)

    return _build_app_config(merged)


def default_config() -> AppConfig:
    """Return the built-in defaults without consulting files or the environment."""
    merged = _deep_copy(DEFAULTS)
    return _build_app_config(merged)


def _determine_config_path(
    cli_override: str | os.PathLike[str] | None,
    env: Mapping[str, str],
) -> Path:
    if cli_override:
        return Path(cli_override)
    if CONFIG_ENV_VAR in env:
        return Path(env[CONFIG_ENV_VAR])
    return Path(DEFAULT_CONFIG_FILE)


def _load_yaml_file(path: Path) -> dict[str, object]:
    if not path.exists():
        return {}
    try:
        data = yaml.safe_load(path.read_text(encoding="utf-8")) or {}
    except yaml.YAMLError as exc:  # pragma: no cover - PyYAML owns detailed error
        raise ConfigError(f"Failed to parse config file {path}: {exc}") from exc
    if not isinstance(data, Mapping):
        raise ConfigError(f"Config file {path} must contain a mapping at the top level.")
    return _as_dict(data, f"file:{path}")


def _validate_structure(raw: Mapping[str, object]) -> None:
    unknown_keys = set(raw.keys()) - ALLOWED_TOP_LEVEL_KEYS
    if unknown_keys:
        joined = ", ".join(sorted(unknown_keys))
        raise ConfigError(f"Unknown configuration keys: {joined}.")

    for section, allowed in ALLOWED_SECTION_KEYS.items():
        section_map = _as_dict(raw.get(section), section)
        unknown = set(section_map.keys()) - allowed
        if unknown:
            joined = ", ".join(sorted(unknown))
            raise ConfigError(f"Unknown {section} configuration keys: {joined}.")


def _build_app_config(raw: Mapping[str, object]) -> AppConfig:
    commands_map = _as_dict(raw.get("commands"), "commands")
    commands = CommandsConfig(
        zfs_bin=_expect_non_empty(commands_map.get("zfs_bin", "zfs"), "commands.zfs_bin"),
        chown_bin=_expect_non_empty(
            commands_map.get("chown_bin", "chown"), "commands.chown_bin"
        ),
    )

    processes_map = _as_dict(raw.get("processes"), "processes")
    defaults = ProcessesConfig()
    launcher_raw = processes_map.get("launcher")
    launcher = (
        defaults.launcher
        if launcher_raw is None
        else _as_str_tuple(launcher_raw, "processes.launcher")
    )
    interpreter_args_raw = processes_map.get("interpreter_args")
    interpreter_args = (
        defaults.interpreter_args
        if interpreter_args_raw is None
        else _as_str_tuple(interpreter_args_raw, "processes.interpreter_args")
    )
    processes = ProcessesConfig(
        launcher=launcher,
        interpreter=_expect_non_empty(
            processes_map.get("interpreter", defaults.interpreter), "processes.interpreter"
        ),
        interpreter_args=interpreter_args,
        verbosity=str(processes_map.get("verbosity", defaults.verbosity)),
        sitter=_to_path(processes_map.get("sitter", defaults.sitter)),
        snapshotter=_to_path(processes_map.get("snapshotter", defaults.snapshotter)),
        backup_server=_to_path(processes_map.get("backup_server", defaults.backup_server)),
    )

    health_map = _as_dict(raw.get("health"), "health")
    health = HealthConfig(
        poll_interval_ms=int(
            _expect_positive_number(
                health_map.get("poll_interval_ms"), "health.poll_interval_ms", default=2000
            )
        ),
        timeout_ms=int(
            _expect_positive_number(
                health_map.get("timeout_ms"), "health.timeout_ms", default=30000
            )
        ),
        connect_timeout=float(
            _expect_positive_number(
                health_map.get("connect_timeout"), "health.connect_timeout", default=5.0
            )
        ),
    )

    return AppConfig(
        config_file=_to_path(raw.get("config_file")),
        logs_dir=_to_path(raw.get("logs_dir")),
        templates_dir=_to_path(raw.get("templates_dir")),
        commands=commands,
        processes=processes,
        health=health,
    )


def _build_env_overrides(env: Mapping[str, str]) -> dict[str, object]:
    overrides: dict[str, object] = {}
    for key, value in env.items():
        if key in RESERVED_ENV_KEYS:
            continue
        if not key.startswith(ENV_PREFIX):
            continue
        suffix = key[len(ENV_PREFIX) :]
        path_segments = [segment.lower() for segment in suffix.split("__") if segment]
        if not path_segments:
            continue
        _assign_nested(overrides, path_segments, _coerce_value(value))
    return overrides


def _assign_nested(tree: MutableMapping[str, object], path: list[str], value: object) -> None:
    current: MutableMapping[str, object] = tree
    for segment in path[:-1]:
        existing = current.get(segment)
        if existing is None:
            new_child: MutableMapping[str, object] = {}
            current[segment] = new_child
            current = new_child
            continue
        if isinstance(existing, MutableMapping):
            current = cast(MutableMapping[str, object], existing)
            continue
        raise ConfigError(
            "Environment overrides conflict with existing scalar value at "
            f"{'.'.join(path)}"
        )
    current[path[-1]] = value


def _deep_merge(target: MutableMapping[str, object], overrides: Mapping[str, object]) -> None:
    for key, value in overrides.items():
        existing = target.get(key)
        if isinstance(existing, MutableMapping) and isinstance(value, Mapping):
            _deep_merge(existing, _as_dict(value, f"merge.{key}"))
            continue
        target[key] = value


def _deep_copy(source: Mapping[str, object]) -> dict[str, object]:
    result: dict[str, object] = {}
    for key, value in source.items():
        if isinstance(value, Mapping):
            result[key] = _deep_copy(_as_dict(value, f"copy.{key}"))
        elif isinstance(value, list):
            result[key] = list(value)
        else:
            result[key] = value
    return result


def _as_str_tuple(value: object, label: str) -> tuple[str, ...]:
    if isinstance(value, str):
        # Allows ``MANATEECTL_PROCESSES__LAUNCHER="ctrun -l child"`` style overrides.
        return tuple(value.split())
    if not isinstance(value, Sequence):
        raise ConfigError(f"Expected {label} to be a list of strings. Got {type(value).__name__}.")
    items: list[str] = []
    for index, item in enumerate(value):
        if not isinstance(item, (str, int, float)) or isinstance(item, bool):
            raise ConfigError(f"{label}[{index}] must be a string.")
        items.append(str(item))
    return tuple(items)


def _coerce_value(raw: str) -> object:
    raw = raw.strip()
    try:
        parsed = yaml.safe_load(raw)
    except yaml.YAMLError:  # pragma: no cover - treat as string if parsing fails
        return raw
    return parsed


def _to_path(value: object) -> Path:
    if value is None:
        raise ConfigError("Expected a filesystem path, received None.")
    if isinstance(value, Path):
        return value.expanduser()
    if isinstance(value, str):
        return Path(value).expanduser()
    raise ConfigError(f"Cannot convert value {value!r} to Path.")


def _expect_non_empty(value: object, label: str) -> str:
    text = str(value).strip() if value is not None else ""
    if not text:
        raise ConfigError(f"{label} must be a non-empty string.")
    return text


def _expect_positive_number(
    value: object | None, label: str, *, default: int | float
) -> int | float:
    """Return *value* as a positive number of the same type as *default*."""
    if value is None:
        return default
    kind = type(default)
    if isinstance(value, bool) or not isinstance(value, (int, float, str)):
        raise ConfigError(f"Expected {label} to be a number. Got {value!r}.")
    if kind is int and isinstance(value, float) and not value.is_integer():
        raise ConfigError(f"Expected {label} to be a whole number. Got {value!r}.")
    try:
        numeric = kind(value)
    except ValueError as exc:
        raise ConfigError(f"Invalid number for {label}: {value!r}.") from exc
    if numeric <= 0:
        raise ConfigError(f"{label} must be greater than zero. Got {numeric}.")
    return numeric


def _as_dict(value: object | None, label: str) -> dict[str, object]:
    if value is None:
        return {}
    if not isinstance(value, Mapping):
        raise ConfigError(f"Expected {label} to be a mapping. Got {type(value).__name__}.")
    result: dict[str, object] = {}
    for key, item in value.items():
        if not isinstance(key, str):
            raise ConfigError(f"Mapping {label} must use string keys. Got {key!r}.")
        result[key] = item
    return result


__all__ = [
    "AppConfig",
    "CommandsConfig",
    "ConfigError",
    "HealthConfig",
    "ProcessesConfig",
    "default_config",
    "load_config",
]
