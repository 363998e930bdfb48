"""Pytest configuration helpers for the test suite."""

from __future__ import annotations

import os
import shutil
import subprocess
import sys
from collections.abc import Callable, Sequence
from pathlib import Path

import pytest

from manateectl.config import AppConfig, load_config
from manateectl.errors import CommandError
from manateectl.spec import InstanceSpec

REPO_ROOT = Path(__file__).resolve().parent.parent
TEMPLATES_DIR = REPO_ROOT / "etc"

SLEEPER = "import time\ntime.sleep(60)\n"


def pytest_collection_modifyitems(config: pytest.Config, items: list[pytest.Item]) -> None:
    """Skip expensive tests during mutation runs."""
    if not os.environ.get("MUTANT_UNDER_TEST"):
        return
    skip_marker = pytest.mark.skip(reason="Skipped during mutation run to avoid timeouts.")
    for item in items:
        if "mutation_timeout" in item.keywords:
            item.add_marker(skip_marker)


class FakeRunner:
    """Command runner double that records invocations instead of executing them.

    *failures* maps a command suffix to the exit status it should fail with.
    """

    def __init__(self, failures: dict[str, int] | None = None) -> None:
        self.calls: list[list[str]] = []
        self.failures = failures or {}
        self.dry_run = False

    async def run(
        self, args: Sequence[str], *, check: bool = True
    ) -> subprocess.CompletedProcess[str]:
        argv = [str(arg) for arg in args]
        self.calls.append(argv)
        joined = " ".join(argv)
        for needle, returncode in self.failures.items():
            if joined.endswith(needle):
                if check:
                    raise CommandError(argv, returncode, "simulated failure")
                return subprocess.CompletedProcess(argv, returncode, "", "simulated failure")
        return subprocess.CompletedProcess(argv, 0, "", "")


@pytest.fixture
def fake_runner() -> FakeRunner:
    return FakeRunner()


@pytest.fixture
def runner_factory() -> type[FakeRunner]:
    return FakeRunner


@pytest.fixture
def templates_dir(tmp_path: Path) -> Path:
    """Copy the shipped base templates into a scratch directory."""
    target = tmp_path / "templates"
    shutil.copytree(TEMPLATES_DIR, target)
    return target


@pytest.fixture
def make_spec(tmp_path: Path) -> Callable[..., InstanceSpec]:
    """Return a factory producing valid specs rooted under ``tmp_path``."""

    def _factory(**overrides: object) -> InstanceSpec:
        values: dict[str, object] = {
            "zfs_dataset": "zones/manatee/1",
            "zfs_port": 10001,
            "mount_point": tmp_path / "mnt" / "1",
            "backup_port": 10002,
            "postgres_port": 5432,
            "metadata_dir": tmp_path / "meta" / "1",
            "shard_path": "/manatee/1",
            "postgres_user_id": os.getuid(),
        }
        values.update(overrides)
        return InstanceSpec(**values)  # type: ignore[arg-type]

    return _factory


@pytest.fixture
def write_script(tmp_path: Path) -> Callable[[str, str], Path]:
    """Write a Python script standing in for one of the node daemons."""
    scripts = tmp_path / "scripts"
    scripts.mkdir(exist_ok=True)

    def _write(name: str, body: str) -> Path:
        path = scripts / name
        path.write_text(body, encoding="utf-8")
        return path

    return _write


@pytest.fixture
def process_config(
    tmp_path: Path,
    templates_dir: Path,
    write_script: Callable[[str, str], Path],
) -> Callable[..., AppConfig]:
    """Build a config that launches short-lived Python scripts directly."""

    def _build(
        *,
        sitter: str = SLEEPER,
        snapshotter: str = SLEEPER,
        backup_server: str = SLEEPER,
        poll_interval_ms: int = 10,
        timeout_ms: int = 2000,
    ) -> AppConfig:
        return load_config(
            tmp_path / "missing.yml",
            env={},
            overrides={
                "logs_dir": str(tmp_path / "oplogs"),
                "templates_dir": str(templates_dir),
                "processes": {
                    "launcher": [],
                    "interpreter": sys.executable,
                    "interpreter_args": [],
                    "verbosity": "",
                    "sitter": str(write_script("sitter.py", sitter)),
                    "snapshotter": str(write_script("snapshotter.py", snapshotter)),
                    "backup_server": str(write_script("backupserver.py", backup_server)),
                },
                "health": {"poll_interval_ms": poll_interval_ms, "timeout_ms": timeout_ms},
            },
        )

    return _build
