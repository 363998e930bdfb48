"""Instance specification and derived filesystem layout.

An :class:`InstanceSpec` is the caller-supplied description of one cluster
instance. It is validated as a whole when constructed; a single malformed
field rejects the spec with :class:`~manateectl.errors.ValidationError`
before anything touches the host.
"""
from __future__ import annotations

import ipaddress
import os
import posixpath
import re
from collections.abc import Mapping
from dataclasses import MISSING, dataclass, field
from pathlib import Path

import yaml

from .errors import ValidationError

DEFAULT_HOST = "127.0.0.1"
DEFAULT_COORDINATION_URL = "localhost:2181"
DEFAULT_DATABASE_USER = "postgres"
DEFAULT_DATABASE_NAME = "postgres"

ROLES = ("sitter", "snapshotter", "backupServer")

_DATASET_COMPONENT = re.compile(r"^[A-Za-z0-9][A-Za-z0-9_.:-]*$")
_LABEL = r"[A-Za-z0-9]([A-Za-z0-9-]{0,61}[A-Za-z0-9])?"
_HOSTNAME = re.compile(rf"^{_LABEL}(\.{_LABEL})*$")
_IDENTIFIER = re.compile(r"^[A-Za-z_][A-Za-z0-9_$-]*$")

# camelCase keys accepted for parity with existing harness option objects.
_KEY_ALIASES = {
    "zfsDataset": "zfs_dataset",
    "zfsPort": "zfs_port",
    "mountPoint": "mount_point",
    "backupPort": "backup_port",
    "postgresPort": "postgres_port",
    "metadataDir": "metadata_dir",
    "shardPath": "shard_path",
    "postgresUserId": "postgres_user_id",
    "parentDataset": "parent_dataset",
    "coordinationUrl": "coordination_url",
    "databaseUser": "database_user",
    "databaseName": "database_name",
}


@dataclass(frozen=True)
class InstanceSpec:
    """Immutable, validated description of one cluster instance."""

    zfs_dataset: str
    zfs_port: int
    mount_point: Path
    backup_port: int
    postgres_port: int
    metadata_dir: Path
    shard_path: str
    postgres_user_id: int | None = None
    parent_dataset: str | None = None
    host: str = DEFAULT_HOST
    coordination_url: str = DEFAULT_COORDINATION_URL
    database_user: str = DEFAULT_DATABASE_USER
    database_name: str = DEFAULT_DATABASE_NAME

    def __post_init__(self) -> None:
        """Validate every field and fill in derived defaults."""
        problems: list[str] = []

        dataset = _check_dataset(self.zfs_dataset, "zfs_dataset", problems)
        if dataset is not None and "/" not in dataset:
            problems.append("zfs_dataset must name a child dataset (pool/name).")

        parent = self.parent_dataset
        if parent is None and dataset is not None and "/" in dataset:
            parent = posixpath.dirname(dataset)
        elif parent is not None:
            parent = _check_dataset(parent, "parent_dataset", problems)
            if parent is not None and dataset is not None and not dataset.startswith(parent + "/"):
                problems.append(
                    f"parent_dataset '{parent}' is not an ancestor of zfs_dataset '{dataset}'."
                )

        ports = {
            "zfs_port": _check_port(self.zfs_port, "zfs_port", problems),
            "backup_port": _check_port(self.backup_port, "backup_port", problems),
            "postgres_port": _check_port(self.postgres_port, "postgres_port", problems),
        }
        seen: dict[int, str] = {}
        for label, port in ports.items():
            if port is None:
                continue
            if port in seen:
                problems.append(f"{label} duplicates {seen[port]} ({port}).")
            seen[port] = label

        mount_point = _check_abs_path(self.mount_point, "mount_point", problems)
        metadata_dir = _check_abs_path(self.metadata_dir, "metadata_dir", problems)

        if not isinstance(self.shard_path, str) or not self.shard_path.strip():
            problems.append("shard_path must be a non-empty string.")

        user_id = self.postgres_user_id
        if user_id is not None and (isinstance(user_id, bool) or not isinstance(user_id, int)):
            problems.append("postgres_user_id must be an integer when provided.")
        elif user_id is not None and user_id < 0:
            problems.append("postgres_user_id must be non-negative.")

        _check_host(self.host, "host", problems)
        _check_host_port(self.coordination_url, "coordination_url", problems)
        for label in ("database_user", "database_name"):
            value = getattr(self, label)
            if not isinstance(value, str) or not _IDENTIFIER.match(value):
                problems.append(f"{label} must be a simple identifier. Got {value!r}.")

        if problems:
            raise ValidationError(
                f"Invalid instance spec: {problems[0]}"
                + (f" (+{len(problems) - 1} more)" if len(problems) > 1 else ""),
                problems=problems,
            )

        object.__setattr__(self, "parent_dataset", parent)
        object.__setattr__(self, "mount_point", mount_point)
        object.__setattr__(self, "metadata_dir", metadata_dir)

    # ------------------------------------------------------------------
    @classmethod
    def from_mapping(cls, data: Mapping[str, object]) -> InstanceSpec:
        """Build a spec from a mapping using snake_case or camelCase keys."""
        if not isinstance(data, Mapping):
            raise ValidationError(
                f"Instance spec must be a mapping. Got {type(data).__name__}."
            )
        known = {name for name in cls.__dataclass_fields__}
        values: dict[str, object] = {}
        unknown: list[str] = []
        for raw_key, value in data.items():
            key = _KEY_ALIASES.get(str(raw_key), str(raw_key))
            if key not in known:
                unknown.append(str(raw_key))
                continue
            values[key] = value
        if unknown:
            raise ValidationError(f"Unknown instance spec keys: {', '.join(sorted(unknown))}.")
        missing = sorted(
            name
            for name, spec_field in cls.__dataclass_fields__.items()
            if name not in values and spec_field.default is MISSING
        )
        if missing:
            raise ValidationError(f"Missing instance spec keys: {', '.join(missing)}.")
        for key in ("mount_point", "metadata_dir"):
            if isinstance(values.get(key), str):
                values[key] = Path(str(values[key]))
        return cls(**values)  # type: ignore[arg-type]

    def to_dict(self) -> dict[str, object]:
        """Return a serialisable representation."""
        return {
            "zfs_dataset": self.zfs_dataset,
            "zfs_port": self.zfs_port,
            "mount_point": str(self.mount_point),
            "backup_port": self.backup_port,
            "postgres_port": self.postgres_port,
            "metadata_dir": str(self.metadata_dir),
            "shard_path": self.shard_path,
            "postgres_user_id": self.postgres_user_id,
            "parent_dataset": self.parent_dataset,
            "host": self.host,
            "coordination_url": self.coordination_url,
            "database_user": self.database_user,
            "database_name": self.database_name,
        }

    @property
    def layout(self) -> InstanceLayout:
        """Return the derived on-disk layout for this spec."""
        return InstanceLayout.for_spec(self)


@dataclass(frozen=True)
class InstanceLayout:
    """Filesystem locations and URLs derived from an :class:`InstanceSpec`."""

    config_dir: Path
    postgres_conf: Path
    sitter_config: Path
    snapshotter_config: Path
    backup_server_config: Path
    cookie: Path
    logs_dir: Path
    data_dir: Path
    log_paths: Mapping[str, Path] = field(default_factory=dict)
    database_url: str = ""
    connection_url: str = ""

    @classmethod
    def for_spec(cls, spec: InstanceSpec) -> InstanceLayout:
        """Derive the layout for *spec*."""
        config_dir = spec.metadata_dir / "config"
        logs_dir = spec.metadata_dir / "logs"
        return cls(
            config_dir=config_dir,
            postgres_conf=config_dir / "postgres.conf",
            sitter_config=config_dir / "sitter.cfg",
            snapshotter_config=config_dir / "ss.cfg",
            backup_server_config=config_dir / "bs.cfg",
            cookie=spec.metadata_dir / "sync_cookie",
            logs_dir=logs_dir,
            data_dir=spec.mount_point / "data",
            log_paths={
                "sitter": logs_dir / f"{spec.postgres_port}sitter.log",
                "snapshotter": logs_dir / f"{spec.postgres_port}ss.log",
                "backupServer": logs_dir / f"{spec.backup_port}bs.log",
            },
            database_url=postgres_url(
                spec.host, spec.postgres_port, spec.database_name, user=spec.database_user
            ),
            connection_url=postgres_url(spec.host, spec.postgres_port, spec.database_name),
        )

    def config_path(self, role: str) -> Path:
        """Return the rendered config file for *role*."""
        paths = {
            "sitter": self.sitter_config,
            "snapshotter": self.snapshotter_config,
            "backupServer": self.backup_server_config,
        }
        try:
            return paths[role]
        except KeyError:
            raise ValueError(f"Unknown role '{role}'.") from None


def postgres_url(host: str, port: int, database: str, *, user: str | None = None) -> str:
    """Return a ``tcp://[user@]host:port/database`` URL."""
    credentials = f"{user}@" if user else ""
    return f"tcp://{credentials}{host}:{port}/{database}"


def load_instance_spec(path: str | os.PathLike[str]) -> InstanceSpec:
    """Load and validate an instance spec from a YAML (or JSON) file."""
    spec_path = Path(path)
    try:
        text = spec_path.read_text(encoding="utf-8")
    except OSError as exc:
        raise ValidationError(f"Cannot read instance spec {spec_path}: {exc}") from exc
    try:
        data = yaml.safe_load(text)
    except yaml.YAMLError as exc:
        raise ValidationError(f"Failed to parse instance spec {spec_path}: {exc}") from exc
    if data is None:
        raise ValidationError(f"Instance spec {spec_path} is empty.")
    return InstanceSpec.from_mapping(data)


# ----------------------------------------------------------------------
# Field checks append to *problems* and return the normalised value (or None)


def _check_dataset(value: object, label: str, problems: list[str]) -> str | None:
    if not isinstance(value, str) or not value.strip():
        problems.append(f"{label} must be a non-empty string.")
        return None
    normalized = value.strip().strip("/")
    components = normalized.split("/")
    if not all(_DATASET_COMPONENT.match(component) for component in components):
        problems.append(f"{label} '{value}' is not a valid dataset name.")
        return None
    return normalized


def _check_port(value: object, label: str, problems: list[str]) -> int | None:
    if isinstance(value, bool) or not isinstance(value, int):
        problems.append(f"{label} must be an integer. Got {value!r}.")
        return None
    if not 1 <= value <= 65535:
        problems.append(f"{label} must be between 1 and 65535. Got {value}.")
        return None
    return value


def _check_abs_path(value: object, label: str, problems: list[str]) -> Path:
    if isinstance(value, str):
        value = Path(value) if value.strip() else None
    if not isinstance(value, Path) or not str(value).strip():
        problems.append(f"{label} must be a non-empty path.")
        return Path()
    if not value.is_absolute():
        problems.append(f"{label} must be an absolute path. Got '{value}'.")
    return value


def _check_host(value: object, label: str, problems: list[str]) -> None:
    if not isinstance(value, str) or not value:
        problems.append(f"{label} must be a non-empty string.")
        return
    try:
        ipaddress.ip_address(value)
    except ValueError:
        if not _HOSTNAME.match(value):
            problems.append(f"{label} '{value}' is not a valid IP address or hostname.")


def _check_host_port(value: object, label: str, problems: list[str]) -> None:
    if not isinstance(value, str) or ":" not in value:
        problems.append(f"{label} must look like host:port. Got {value!r}.")
        return
    host, _, port_text = value.rpartition(":")
    _check_host(host, label, problems)
    if not port_text.isdigit() or not 1 <= int(port_text) <= 65535:
        problems.append(f"{label} has an invalid port '{port_text}'.")


__all__ = [
    "DEFAULT_COORDINATION_URL",
    "DEFAULT_HOST",
    "InstanceLayout",
    "InstanceSpec",
    "ROLES",
    "load_instance_spec",
    "postgres_url",
]
