"""Provisioning pipeline tests using a recording command runner."""
from __future__ import annotations

import json
from collections.abc import Callable
from pathlib import Path
from typing import TYPE_CHECKING

import pytest

from manateectl.config import AppConfig, load_config
from manateectl.errors import CommandError, ProvisioningError
from manateectl.logging import StructuredLogger
from manateectl.pipeline import (
    ConfigPipeline,
    render_backup_server_config,
    render_sitter_config,
    render_snapshotter_config,
)
from manateectl.spec import InstanceSpec
from manateectl.templates import TemplateError

if TYPE_CHECKING:
    from .conftest import FakeRunner

SpecFactory = Callable[..., InstanceSpec]

STEP_NAMES = [
    "create-parent-dataset",
    "create-dataset",
    "create-mount-dir",
    "set-mountpoint",
    "create-data-dir",
    "create-config-dir",
    "create-log-dir",
    "chown-metadata-dir",
    "render-postgres-conf",
    "render-sitter-config",
    "render-backup-server-config",
    "render-snapshotter-config",
    "write-configs",
]


@pytest.fixture
def config(tmp_path: Path, templates_dir: Path) -> AppConfig:
    return load_config(
        tmp_path / "missing.yml",
        env={},
        overrides={
            "logs_dir": str(tmp_path / "oplogs"),
            "templates_dir": str(templates_dir),
            "commands": {"zfs_bin": "/sbin/zfs", "chown_bin": "/bin/chown"},
        },
    )


def test_render_sitter_config_overlays_instance_values(make_spec: SpecFactory) -> None:
    spec = make_spec(coordination_url="10.0.0.9:2181", host="10.0.0.2")
    base = {
        "ttl": 60,
        "zkCfg": {"connStr": "old", "opts": {"sessionTimeout": 1}},
        "postgresMgrCfg": {"dbUser": "postgres", "zfsClientCfg": {"pollInterval": 5}},
    }

    cfg = render_sitter_config(base, spec, spec.layout)

    assert cfg["ttl"] == 60
    assert cfg["backupPort"] == 10002
    assert cfg["postgresPort"] == 5432
    assert cfg["shardPath"] == "/manatee/1"
    assert cfg["ip"] == "10.0.0.2"
    assert cfg["zkCfg"] == {"connStr": "10.0.0.9:2181", "opts": {"sessionTimeout": 1}}
    mgr = cfg["postgresMgrCfg"]
    assert mgr["dbUser"] == "postgres"  # type: ignore[index]
    assert mgr["dataDir"] == str(spec.mount_point / "data")  # type: ignore[index]
    assert mgr["url"] == "tcp://postgres@10.0.0.2:5432/postgres"  # type: ignore[index]
    assert mgr["postgresConf"] == str(spec.layout.postgres_conf)  # type: ignore[index]
    assert mgr["snapShotterCfg"] == {"dataset": "zones/manatee/1"}  # type: ignore[index]
    assert mgr["syncStateCheckerCfg"] == {  # type: ignore[index]
        "cookieLocation": str(spec.metadata_dir / "sync_cookie")
    }
    assert mgr["zfsClientCfg"] == {  # type: ignore[index]
        "pollInterval": 5,
        "dataset": "zones/manatee/1",
        "parentDataset": "zones/manatee",
        "zfsPort": 10001,
        "mountpoint": str(spec.mount_point),
    }


def test_render_backup_and_snapshotter_configs(make_spec: SpecFactory) -> None:
    spec = make_spec()

    backup = render_backup_server_config(
        {"backupServerCfg": {"port": 1}, "backupSenderCfg": {"zfsPath": "/usr/sbin/zfs"}}, spec
    )
    snapshotter = render_snapshotter_config({"pollInterval": 10}, spec)

    assert backup == {
        "backupServerCfg": {"port": 10002},
        "backupSenderCfg": {"zfsPath": "/usr/sbin/zfs", "dataset": "zones/manatee/1"},
    }
    assert snapshotter == {"pollInterval": 10, "dataset": "zones/manatee/1"}


@pytest.mark.asyncio
async def test_pipeline_runs_steps_in_order(
    make_spec: SpecFactory, config: AppConfig, fake_runner: FakeRunner, tmp_path: Path
) -> None:
    """All commands run in order and every artifact lands on disk."""
    spec = make_spec(postgres_port=6543)
    logger = StructuredLogger(config.logs_dir)

    with logger.operation("render") as op:
        layout = await ConfigPipeline(spec, config=config, runner=fake_runner, op=op).run()
        steps = list(op.steps)

    assert fake_runner.calls == [
        ["/sbin/zfs", "create", "zones/manatee"],
        ["/sbin/zfs", "create", "zones/manatee/1"],
        ["/sbin/zfs", "set", f"mountpoint={spec.mount_point}", "zones/manatee/1"],
        ["/bin/chown", "-R", str(spec.postgres_user_id), str(spec.metadata_dir)],
    ]
    assert [step["name"] for step in steps] == [f"pipeline.{name}" for name in STEP_NAMES]
    assert {step["status"] for step in steps} == {"success"}

    assert layout.data_dir.is_dir()
    assert (layout.config_dir / "data").is_dir()
    assert layout.logs_dir.is_dir()
    assert "port = 6543" in layout.postgres_conf.read_text(encoding="utf-8").splitlines()
    sitter = json.loads(layout.sitter_config.read_text(encoding="utf-8"))
    assert sitter["postgresPort"] == 6543
    assert sitter["postgresMgrCfg"]["url"] == "tcp://postgres@127.0.0.1:6543/postgres"
    assert json.loads(layout.snapshotter_config.read_text(encoding="utf-8"))["dataset"] == (
        "zones/manatee/1"
    )
    backup = json.loads(layout.backup_server_config.read_text(encoding="utf-8"))
    assert backup["backupServerCfg"]["port"] == 10002


@pytest.mark.asyncio
async def test_chown_falls_back_to_database_user(
    make_spec: SpecFactory, config: AppConfig, fake_runner: FakeRunner
) -> None:
    spec = make_spec(postgres_user_id=None)

    await ConfigPipeline(spec, config=config, runner=fake_runner).run()

    assert ["/bin/chown", "-R", "postgres", str(spec.metadata_dir)] in fake_runner.calls


@pytest.mark.asyncio
async def test_parent_dataset_failure_is_tolerated(
    make_spec: SpecFactory, config: AppConfig, runner_factory: type[FakeRunner]
) -> None:
    """An existing parent dataset does not stop provisioning."""
    runner = runner_factory(failures={"create zones/manatee": 1})
    spec = make_spec()
    logger = StructuredLogger(config.logs_dir)

    with logger.operation("render") as op:
        await ConfigPipeline(spec, config=config, runner=runner, op=op).run()
        statuses = {step["name"]: step["status"] for step in op.steps}

    assert statuses["pipeline.create-parent-dataset"] == "warning"
    assert statuses["pipeline.create-dataset"] == "success"
    assert statuses["pipeline.write-configs"] == "success"
    assert spec.layout.sitter_config.exists()


@pytest.mark.asyncio
async def test_child_dataset_failure_stops_pipeline(
    make_spec: SpecFactory, config: AppConfig, runner_factory: type[FakeRunner]
) -> None:
    runner = runner_factory(failures={"create zones/manatee/1": 2})
    spec = make_spec()

    with pytest.raises(ProvisioningError) as excinfo:
        await ConfigPipeline(spec, config=config, runner=runner).run()

    assert excinfo.value.step == "create-dataset"
    assert isinstance(excinfo.value.cause, CommandError)
    assert excinfo.value.cause.returncode == 2
    # Nothing after the failing step ran.
    assert all("set" not in call for call in runner.calls)
    assert not spec.mount_point.exists()


@pytest.mark.asyncio
async def test_missing_template_fails_render_step(
    make_spec: SpecFactory, config: AppConfig, fake_runner: FakeRunner, templates_dir: Path
) -> None:
    (templates_dir / "backupserver.json").unlink()
    spec = make_spec()

    with pytest.raises(ProvisioningError) as excinfo:
        await ConfigPipeline(spec, config=config, runner=fake_runner).run()

    assert excinfo.value.step == "render-backup-server-config"
    assert isinstance(excinfo.value.cause, TemplateError)
    assert not spec.layout.sitter_config.exists()


@pytest.mark.asyncio
async def test_dry_run_has_no_side_effects(
    make_spec: SpecFactory, config: AppConfig, fake_runner: FakeRunner
) -> None:
    spec = make_spec()
    logger = StructuredLogger(config.logs_dir)

    with logger.operation("render") as op:
        await ConfigPipeline(spec, config=config, runner=fake_runner, op=op, dry_run=True).run()
        statuses = [step["status"] for step in op.steps]

    assert fake_runner.calls == []
    assert statuses == ["skipped"] * len(STEP_NAMES)
    assert not spec.metadata_dir.exists()
