"""Base configuration templates and the helpers that render them.

Two template flavours live under the configured templates directory:

* JSON documents (``sitter.json``, ``snapshotter.json``, ``backupserver.json``)
  which are deep-merged with instance-specific overrides;
* the PostgreSQL key/value file (``postgres.integ.conf``) whose settings are
  replaced in place so comments and ordering survive.

Rendered artifacts are written through :func:`write_atomic` so readers only
ever observe a complete file or the previous one.
"""
from __future__ import annotations

import copy
import json
import os
import re
import tempfile
from collections.abc import Mapping, MutableMapping
from dataclasses import dataclass, field
from pathlib import Path

from .errors import ManateeError

SITTER_TEMPLATE = "sitter.json"
SNAPSHOTTER_TEMPLATE = "snapshotter.json"
BACKUP_SERVER_TEMPLATE = "backupserver.json"
POSTGRES_TEMPLATE = "postgres.integ.conf"

_CONF_LINE = re.compile(r"^\s*(?P<key>[A-Za-z_][A-Za-z0-9_.]*)\s*=?\s*(?P<value>.*?)\s*$")


class TemplateError(ManateeError):
    """Raised when a template is missing or malformed."""


@dataclass(slots=True)
class PostgresConf:
    """Line-preserving view of a ``postgresql.conf`` style file."""

    lines: list[str] = field(default_factory=list)

    @classmethod
    def parse(cls, text: str) -> PostgresConf:
        """Parse *text* without discarding comments or blank lines."""
        return cls(lines=text.splitlines())

    def get(self, key: str) -> str | None:
        """Return the active raw value for *key* (quotes stripped)."""
        value: str | None = None
        for line in self.lines:
            parsed = _parse_setting(line)
            if parsed is not None and parsed[0] == key:
                value = parsed[1]
        return value

    def set(self, key: str, value: object) -> None:
        """Set *key*, replacing its last active line or appending a new one."""
        rendered = f"{key} = {_format_conf_value(value)}"
        for index in range(len(self.lines) - 1, -1, -1):
            parsed = _parse_setting(self.lines[index])
            if parsed is not None and parsed[0] == key:
                self.lines[index] = rendered
                return
        self.lines.append(rendered)

    def render(self) -> str:
        """Return the file contents."""
        return "\n".join(self.lines) + "\n"


@dataclass(frozen=True)
class TemplateEngine:
    """Load base templates from a fixed directory."""

    root: Path

    def path_for(self, name: str) -> Path:
        """Return the filesystem path for template *name*."""
        return self.root / name

    def load_json(self, name: str) -> dict[str, object]:
        """Return a fresh copy of the JSON template *name*."""
        path = self.path_for(name)
        try:
            data = json.loads(path.read_text(encoding="utf-8"))
        except FileNotFoundError as exc:
            raise TemplateError(f"Template {path} not found.") from exc
        except (OSError, json.JSONDecodeError) as exc:
            raise TemplateError(f"Failed to read template {path}: {exc}") from exc
        if not isinstance(data, dict):
            raise TemplateError(f"Template {path} must contain a JSON object.")
        return data

    def load_conf(self, name: str) -> PostgresConf:
        """Return the key/value template *name*."""
        path = self.path_for(name)
        try:
            return PostgresConf.parse(path.read_text(encoding="utf-8"))
        except FileNotFoundError as exc:
            raise TemplateError(f"Template {path} not found.") from exc
        except OSError as exc:
            raise TemplateError(f"Failed to read template {path}: {exc}") from exc


def deep_merge(base: Mapping[str, object], overrides: Mapping[str, object]) -> dict[str, object]:
    """Return *base* with *overrides* merged in; neither input is mutated.

    Nested mappings merge key by key, any other value replaces the base value.
    Keys only present in *base* are kept untouched.
    """
    merged: dict[str, object] = copy.deepcopy(dict(base))
    _merge_into(merged, overrides)
    return merged


def _merge_into(target: MutableMapping[str, object], overrides: Mapping[str, object]) -> None:
    for key, value in overrides.items():
        existing = target.get(key)
        if isinstance(existing, MutableMapping) and isinstance(value, Mapping):
            _merge_into(existing, value)
            continue
        target[key] = copy.deepcopy(value)


def write_atomic(path: Path, content: str, *, mode: int = 0o644) -> None:
    """Write *content* to *path* via a temporary file and ``os.replace``."""
    path.parent.mkdir(parents=True, exist_ok=True)
    tmp_fd, tmp_name = tempfile.mkstemp(dir=str(path.parent), prefix=f".{path.name}.")
    tmp_path = Path(tmp_name)
    try:
        with os.fdopen(tmp_fd, "w", encoding="utf-8") as handle:
            handle.write(content)
            handle.flush()
            os.fsync(handle.fileno())
        os.chmod(tmp_path, mode)
        os.replace(tmp_path, path)
    finally:
        tmp_path.unlink(missing_ok=True)


def write_json_atomic(path: Path, payload: Mapping[str, object], *, mode: int = 0o644) -> None:
    """Serialise *payload* as JSON and write it atomically."""
    write_atomic(path, json.dumps(payload, indent=2, sort_keys=False) + "\n", mode=mode)


def _parse_setting(line: str) -> tuple[str, str] | None:
    stripped = line.strip()
    if not stripped or stripped.startswith("#"):
        return None
    match = _CONF_LINE.match(stripped)
    if match is None:
        return None
    value = match.group("value")
    if "#" in value and not value.startswith("'"):
        value = value.split("#", 1)[0].rstrip()
    elif value.startswith("'"):
        end = value.find("'", 1)
        value = value[1:end] if end > 0 else value[1:]
    return match.group("key"), value


def _format_conf_value(value: object) -> str:
    if isinstance(value, bool):
        return "on" if value else "off"
    if isinstance(value, (int, float)):
        return str(value)
    text = str(value).replace("'", "''")
    return f"'{text}'"


__all__ = [
    "BACKUP_SERVER_TEMPLATE",
    "POSTGRES_TEMPLATE",
    "PostgresConf",
    "SITTER_TEMPLATE",
    "SNAPSHOTTER_TEMPLATE",
    "TemplateEngine",
    "TemplateError",
    "deep_merge",
    "write_atomic",
    "write_json_atomic",
]
