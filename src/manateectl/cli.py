"""Typer-powered command line for ``manateectl``.

Commands map one to one onto the library: ``spec validate`` builds an
:class:`~manateectl.spec.InstanceSpec`, ``render`` runs the provisioning
pipeline only, ``up`` brings a whole instance up and keeps it in the
foreground, and ``health`` probes a database URL.
"""
from __future__ import annotations

import asyncio
import json
import textwrap
from collections.abc import Sequence
from dataclasses import dataclass
from pathlib import Path
from typing import NoReturn

import typer
from rich.console import Console
from rich.table import Table

from . import __version__
from .config import AppConfig, ConfigError, load_config
from .errors import (
    CrashFault,
    HealthTimeoutError,
    LaunchError,
    ManateeError,
    ProvisioningError,
    ValidationError,
)
from .exit_codes import ExitCode
from .health import HealthPoller
from .instance import ClusterInstance
from .logging import OperationScope, StructuredLogger
from .pipeline import ConfigPipeline
from .spec import InstanceSpec, load_instance_spec

console = Console()

CONFIG_FILE_OPTION = typer.Option(
    None,
    "--config-file",
    dir_okay=False,
    help="Override the path to manateectl's YAML config file.",
)

SPEC_ARGUMENT = typer.Argument(
    ...,
    dir_okay=False,
    help="YAML file describing the instance (dataset, ports, paths).",
)

app = typer.Typer(
    add_completion=False,
    help=textwrap.dedent(
        """
        Manatee test-cluster instance harness.

        Provisions a ZFS dataset and configuration for one coordinator
        instance, launches its sitter, snapshotter and backup server, and
        tears them down again.
        """
    ).strip(),
)
spec_app = typer.Typer(help="Inspect and validate instance specs.")
config_app = typer.Typer(help="Inspect the effective harness configuration.")
app.add_typer(spec_app, name="spec")
app.add_typer(config_app, name="config")


@dataclass
class RuntimeContext:
    """Aggregated runtime objects shared by commands."""

    config: AppConfig
    logger: StructuredLogger


def _ensure_runtime(ctx: typer.Context, config_file: Path | None) -> RuntimeContext:
    runtime = ctx.obj
    if isinstance(runtime, RuntimeContext):
        return runtime
    try:
        config = load_config(config_file=config_file)
    except ConfigError as exc:
        console.print(f"[red]{exc}[/red]")
        raise typer.Exit(code=ExitCode.VALIDATION) from exc
    runtime = RuntimeContext(config=config, logger=StructuredLogger(config.logs_dir))
    ctx.obj = runtime
    return runtime


def _get_runtime(ctx: typer.Context) -> RuntimeContext:
    runtime = ctx.obj
    if isinstance(runtime, RuntimeContext):
        return runtime
    return _ensure_runtime(ctx, None)


@app.callback(invoke_without_command=True)
def _root(  # noqa: D401 - Typer displays help for us, docstring optional.
    ctx: typer.Context,
    version: bool = typer.Option(
        False,
        "--version",
        "-V",
        help="Show the manateectl version and exit.",
    ),
    config_file: Path | None = CONFIG_FILE_OPTION,
) -> None:
    """Entry point callback invoked for every CLI execution."""
    if version:
        console.print(f"manateectl {__version__}")
        raise typer.Exit(code=ExitCode.OK)

    _ensure_runtime(ctx, config_file)

    if ctx.invoked_subcommand is None:
        console.print(ctx.get_help())
        raise typer.Exit(code=ExitCode.OK)


def _command_error(
    op: OperationScope,
    message: str,
    *,
    rc: int = ExitCode.VALIDATION,
    errors: Sequence[str] | None = None,
) -> NoReturn:
    """Emit a structured error and terminate the command."""
    console.print(f"[red]{message}[/red]")
    op.error(message, errors=list(errors or [message]), rc=int(rc))
    raise typer.Exit(code=int(rc))


def _exit_code_for(exc: BaseException) -> ExitCode:
    if isinstance(exc, (ValidationError, ConfigError)):
        return ExitCode.VALIDATION
    if isinstance(exc, ProvisioningError):
        return ExitCode.PROVISIONING
    if isinstance(exc, HealthTimeoutError):
        return ExitCode.HEALTH_TIMEOUT
    if isinstance(exc, LaunchError):
        return ExitCode.LAUNCH
    if isinstance(exc, CrashFault):
        return ExitCode.CRASH
    return ExitCode.PROVISIONING


def _load_spec(op: OperationScope, spec_file: Path) -> InstanceSpec:
    try:
        spec = load_instance_spec(spec_file)
    except ValidationError as exc:
        _command_error(op, str(exc), errors=list(exc.problems))
    op.add_step("spec.load", status="success", detail=str(spec_file))
    return spec


def _render_layout(spec: InstanceSpec) -> Table:
    layout = spec.layout
    table = Table(title=f"Instance {spec.zfs_dataset}")
    table.add_column("Item", style="bold")
    table.add_column("Value")
    table.add_row("connection url", layout.connection_url)
    table.add_row("mount point", str(spec.mount_point))
    table.add_row("data dir", str(layout.data_dir))
    table.add_row("postgres conf", str(layout.postgres_conf))
    for role in ("sitter", "snapshotter", "backupServer"):
        table.add_row(f"{role} config", str(layout.config_path(role)))
    for role, path in layout.log_paths.items():
        table.add_row(f"{role} log", str(path))
    return table


@spec_app.command("validate")
def spec_validate(
    ctx: typer.Context,
    spec_file: Path = SPEC_ARGUMENT,
) -> None:
    """Validate an instance spec without touching the host."""
    runtime = _get_runtime(ctx)
    with runtime.logger.operation(
        "spec validate",
        args={"spec": str(spec_file)},
        target={"kind": "spec", "path": str(spec_file)},
    ) as op:
        spec = _load_spec(op, spec_file)
        console.print(f"[green]Spec for {spec.zfs_dataset} is valid.[/green]")
        console.print(_render_layout(spec))
        op.success("Spec is valid.", changed=0, context=spec.to_dict())


@config_app.command("show")
def config_show(
    ctx: typer.Context,
    json_output: bool = typer.Option(
        False,
        "--json",
        help="Emit configuration as JSON instead of a table.",
    ),
) -> None:
    """Display the effective configuration after merges."""
    runtime = _get_runtime(ctx)
    data = runtime.config.to_dict()

    with runtime.logger.operation(
        "config show",
        args={"json": json_output},
        target={"kind": "config"},
    ) as op:
        if json_output:
            console.print_json(data=data)
            op.success("Rendered configuration as JSON.", changed=0)
            return

        table = Table(show_header=True, header_style="bold magenta")
        table.add_column("Key", style="bold")
        table.add_column("Value")
        for key, value in data.items():
            if isinstance(value, dict):
                rendered = json.dumps(value, indent=2, sort_keys=True)
            else:
                rendered = str(value)
            table.add_row(key, rendered)

        console.print(table)
        op.success("Rendered configuration table.", changed=0)


@app.command()
def render(
    ctx: typer.Context,
    spec_file: Path = SPEC_ARGUMENT,
    dry_run: bool = typer.Option(
        False,
        "--dry-run",
        help="List the provisioning steps without running them.",
    ),
) -> None:
    """Provision the dataset, directories and configs for an instance."""
    runtime = _get_runtime(ctx)
    with runtime.logger.operation(
        "render",
        args={"spec": str(spec_file), "dry_run": dry_run},
        target={"kind": "instance", "path": str(spec_file)},
    ) as op:
        spec = _load_spec(op, spec_file)
        pipeline = ConfigPipeline(spec, config=runtime.config, op=op, dry_run=dry_run)
        try:
            asyncio.run(pipeline.run())
        except ProvisioningError as exc:
            _command_error(op, str(exc), rc=ExitCode.PROVISIONING)

        table = Table(title="Provisioning steps")
        table.add_column("Step", style="bold")
        table.add_column("Status")
        for step in op.steps:
            if str(step["name"]).startswith("pipeline."):
                table.add_row(str(step["name"]).removeprefix("pipeline."), str(step["status"]))
        console.print(table)

        if dry_run:
            console.print("[yellow]Dry run[/yellow]: no changes were made.")
            op.success("Dry run complete.", changed=0)
            return
        warnings = [
            str(step["name"]) for step in op.steps if step.get("status") == "warning"
        ]
        console.print(f"[green]Rendered configuration for {spec.zfs_dataset}.[/green]")
        if warnings:
            op.warning("Rendered with tolerated failures.", warnings=warnings)
        else:
            op.success("Rendered configuration.")


@app.command()
def up(
    ctx: typer.Context,
    spec_file: Path = SPEC_ARGUMENT,
) -> None:
    """Bring an instance up and keep it in the foreground until interrupted."""
    runtime = _get_runtime(ctx)
    try:
        spec = load_instance_spec(spec_file)
    except ValidationError as exc:
        console.print(f"[red]{exc}[/red]")
        raise typer.Exit(code=ExitCode.VALIDATION) from exc

    instance = ClusterInstance(spec, config=runtime.config, logger=runtime.logger)
    try:
        fault = asyncio.run(_serve(instance))
    except KeyboardInterrupt:
        console.print("[yellow]Interrupted; instance processes killed.[/yellow]")
        raise typer.Exit(code=ExitCode.OK) from None
    except ManateeError as exc:
        console.print(f"[red]{exc}[/red]")
        raise typer.Exit(code=_exit_code_for(exc)) from exc

    console.print(f"[red]{fault}[/red]")
    raise typer.Exit(code=ExitCode.CRASH)


async def _serve(instance: ClusterInstance) -> CrashFault:
    try:
        await instance.start()
    except BaseException:
        await instance.kill()
        raise
    console.print(_render_layout(instance.spec))
    console.print(f"[green]Instance up at {instance.get_connection_url()}[/green]")
    try:
        return await instance.wait_for_fault()
    finally:
        await instance.kill()


@app.command()
def health(
    ctx: typer.Context,
    url: str = typer.Argument(
        ...,
        help="Database URL, e.g. tcp://postgres@127.0.0.1:5432/postgres.",
    ),
    wait: bool = typer.Option(
        False,
        "--wait",
        help="Poll until the database answers or the timeout expires.",
    ),
    timeout_ms: int | None = typer.Option(
        None,
        "--timeout-ms",
        min=1,
        help="Overall deadline for --wait (defaults to health.timeout_ms).",
    ),
    interval_ms: int | None = typer.Option(
        None,
        "--interval-ms",
        min=1,
        help="Delay between probes for --wait (defaults to health.poll_interval_ms).",
    ),
) -> None:
    """Check whether the database behind URL answers queries."""
    runtime = _get_runtime(ctx)
    settings = runtime.config.health
    poller = HealthPoller(
        poll_interval_ms=settings.poll_interval_ms,
        timeout_ms=settings.timeout_ms,
        connect_timeout=settings.connect_timeout,
    )
    with runtime.logger.operation(
        "health",
        args={"url": url, "wait": wait, "timeout_ms": timeout_ms, "interval_ms": interval_ms},
        target={"kind": "database", "url": url},
    ) as op:
        try:
            if wait:
                attempts = asyncio.run(
                    poller.wait_until_healthy(
                        url, poll_interval_ms=interval_ms, timeout_ms=timeout_ms
                    )
                )
            else:
                asyncio.run(poller.check(url))
                attempts = 1
        except ValueError as exc:
            _command_error(op, str(exc), rc=ExitCode.VALIDATION)
        except HealthTimeoutError as exc:
            _command_error(op, str(exc), rc=ExitCode.HEALTH_TIMEOUT)
        except Exception as exc:
            _command_error(
                op, f"Database at {url} is unhealthy: {exc}", rc=ExitCode.HEALTH_TIMEOUT
            )
        op.add_step("health.probe", status="success", detail={"attempts": attempts})
        console.print(f"[green]Database at {url} is healthy.[/green]")
        op.success("Database is healthy.", context={"attempts": attempts})


__all__ = ["app"]
