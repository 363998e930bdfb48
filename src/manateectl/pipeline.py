"""Ordered provisioning pipeline for a cluster instance.

The pipeline turns a validated :class:`~manateectl.spec.InstanceSpec` into a
mounted dataset, the instance directory tree and four rendered configuration
artifacts. Steps run strictly one after another; the first failing step stops
the run and surfaces as :class:`~manateectl.errors.ProvisioningError` tagged
with the step name. Nothing is rolled back.
"""
from __future__ import annotations

import logging
from collections.abc import Awaitable, Callable, Mapping
from dataclasses import dataclass, field
from pathlib import Path

from .config import AppConfig, default_config
from .errors import ProvisioningError
from .logging import OperationScope
from .providers import CommandRunner, ZfsProvider
from .spec import InstanceLayout, InstanceSpec
from .templates import (
    BACKUP_SERVER_TEMPLATE,
    POSTGRES_TEMPLATE,
    SITTER_TEMPLATE,
    SNAPSHOTTER_TEMPLATE,
    PostgresConf,
    TemplateEngine,
    deep_merge,
    write_atomic,
    write_json_atomic,
)

LOGGER = logging.getLogger(__name__)


@dataclass(frozen=True, slots=True)
class PipelineStep:
    """A named unit of provisioning work."""

    name: str
    run: Callable[[], Awaitable[object]]
    tolerate_failure: bool = False


@dataclass(slots=True)
class RenderedConfigs:
    """Configuration documents produced by the render steps."""

    postgres_conf: PostgresConf | None = None
    documents: dict[str, dict[str, object]] = field(default_factory=dict)


# ----------------------------------------------------------------------
# Pure rendering helpers


def render_postgres_conf(conf: PostgresConf, spec: InstanceSpec) -> PostgresConf:
    """Return *conf* with the instance port substituted."""
    rendered = PostgresConf(lines=list(conf.lines))
    rendered.set("port", spec.postgres_port)
    return rendered


def render_sitter_config(
    base: Mapping[str, object],
    spec: InstanceSpec,
    layout: InstanceLayout,
) -> dict[str, object]:
    """Overlay instance ports, paths and dataset names onto the sitter template."""
    overrides: dict[str, object] = {
        "backupPort": spec.backup_port,
        "postgresPort": spec.postgres_port,
        "shardPath": spec.shard_path,
        "ip": spec.host,
        "zkCfg": {"connStr": spec.coordination_url},
        "postgresMgrCfg": {
            "dataDir": str(layout.data_dir),
            "snapShotterCfg": {"dataset": spec.zfs_dataset},
            "syncStateCheckerCfg": {"cookieLocation": str(layout.cookie)},
            "url": layout.database_url,
            "postgresConf": str(layout.postgres_conf),
            "zfsClientCfg": {
                "dataset": spec.zfs_dataset,
                "parentDataset": spec.parent_dataset,
                "zfsPort": spec.zfs_port,
                "mountpoint": str(spec.mount_point),
            },
        },
    }
    return deep_merge(base, overrides)


def render_backup_server_config(
    base: Mapping[str, object],
    spec: InstanceSpec,
) -> dict[str, object]:
    """Overlay the backup port and dataset onto the backup server template."""
    overrides: dict[str, object] = {
        "backupServerCfg": {"port": spec.backup_port},
        "backupSenderCfg": {"dataset": spec.zfs_dataset},
    }
    return deep_merge(base, overrides)


def render_snapshotter_config(
    base: Mapping[str, object],
    spec: InstanceSpec,
) -> dict[str, object]:
    """Overlay the dataset onto the snapshotter template."""
    return deep_merge(base, {"dataset": spec.zfs_dataset})


# ----------------------------------------------------------------------


class ConfigPipeline:
    """Provision the dataset, directories and configs for one instance."""

    def __init__(
        self,
        spec: InstanceSpec,
        *,
        config: AppConfig | None = None,
        runner: CommandRunner | None = None,
        op: OperationScope | None = None,
        dry_run: bool = False,
    ) -> None:
        """Bind the pipeline to *spec* and the harness configuration."""
        self.spec = spec
        self.layout = spec.layout
        self.config = config or default_config()
        self.runner = runner or CommandRunner()
        self.zfs = ZfsProvider(self.runner, self.config.commands.zfs_bin)
        self.templates = TemplateEngine(self.config.templates_dir)
        self.rendered = RenderedConfigs()
        self.dry_run = dry_run
        self._op = op

    def steps(self) -> list[PipelineStep]:
        """Return the provisioning steps in execution order."""
        spec = self.spec
        layout = self.layout
        return [
            PipelineStep(
                "create-parent-dataset",
                lambda: self.zfs.create(str(spec.parent_dataset)),
                tolerate_failure=True,
            ),
            PipelineStep("create-dataset", lambda: self.zfs.create(spec.zfs_dataset)),
            PipelineStep("create-mount-dir", lambda: _mkdir(spec.mount_point)),
            PipelineStep(
                "set-mountpoint",
                lambda: self.zfs.set_mountpoint(spec.zfs_dataset, spec.mount_point),
            ),
            PipelineStep("create-data-dir", lambda: _mkdir(layout.data_dir)),
            PipelineStep("create-config-dir", lambda: _mkdir(layout.config_dir / "data")),
            PipelineStep("create-log-dir", lambda: _mkdir(layout.logs_dir)),
            PipelineStep("chown-metadata-dir", self._chown_metadata_dir),
            PipelineStep("render-postgres-conf", self._render_postgres_conf),
            PipelineStep("render-sitter-config", self._render_sitter_config),
            PipelineStep("render-backup-server-config", self._render_backup_server_config),
            PipelineStep("render-snapshotter-config", self._render_snapshotter_config),
            PipelineStep("write-configs", self._write_configs),
        ]

    async def run(self) -> InstanceLayout:
        """Execute every step in order, stopping at the first failure."""
        for step in self.steps():
            if self.dry_run:
                self._record(step.name, "skipped", "dry-run")
                continue
            LOGGER.debug("pipeline step %s: starting", step.name)
            try:
                await step.run()
            except Exception as exc:
                if step.tolerate_failure:
                    LOGGER.warning("pipeline step %s failed, continuing: %s", step.name, exc)
                    self._record(step.name, "warning", str(exc))
                    continue
                LOGGER.error("pipeline step %s failed: %s", step.name, exc)
                self._record(step.name, "error", str(exc))
                raise ProvisioningError(step.name, exc) from exc
            self._record(step.name, "success", None)
        return self.layout

    # Step implementations ---------------------------------------------
    async def _chown_metadata_dir(self) -> None:
        owner = (
            str(self.spec.postgres_user_id)
            if self.spec.postgres_user_id is not None
            else self.spec.database_user
        )
        await self.runner.run(
            [self.config.commands.chown_bin, "-R", owner, str(self.spec.metadata_dir)]
        )

    async def _render_postgres_conf(self) -> None:
        base = self.templates.load_conf(POSTGRES_TEMPLATE)
        rendered = render_postgres_conf(base, self.spec)
        write_atomic(self.layout.postgres_conf, rendered.render())
        self.rendered.postgres_conf = rendered

    async def _render_sitter_config(self) -> None:
        base = self.templates.load_json(SITTER_TEMPLATE)
        self.rendered.documents["sitter"] = render_sitter_config(base, self.spec, self.layout)

    async def _render_backup_server_config(self) -> None:
        base = self.templates.load_json(BACKUP_SERVER_TEMPLATE)
        self.rendered.documents["backupServer"] = render_backup_server_config(base, self.spec)

    async def _render_snapshotter_config(self) -> None:
        base = self.templates.load_json(SNAPSHOTTER_TEMPLATE)
        self.rendered.documents["snapshotter"] = render_snapshotter_config(base, self.spec)

    async def _write_configs(self) -> None:
        for role, document in self.rendered.documents.items():
            write_json_atomic(self.layout.config_path(role), document)

    def _record(self, name: str, status: str, detail: object) -> None:
        if self._op is not None:
            self._op.add_step(f"pipeline.{name}", status=status, detail=detail)


async def _mkdir(path: Path) -> None:
    path.mkdir(parents=True, exist_ok=True)


__all__ = [
    "ConfigPipeline",
    "PipelineStep",
    "RenderedConfigs",
    "render_backup_server_config",
    "render_postgres_conf",
    "render_sitter_config",
    "render_snapshotter_config",
]
