"""Public façade for one cluster instance.

:class:`ClusterInstance` ties the pieces together: it provisions the
instance through :class:`~manateectl.pipeline.ConfigPipeline`, launches the
processes through :class:`~manateectl.supervisor.ProcessSupervisor` and tears
them down through :class:`~manateectl.shutdown.ShutdownCoordinator`. Each
phase is recorded as one structured operation.

Typical use::

    spec = load_instance_spec("instance.yml")
    async with ClusterInstance(spec) as instance:
        print(instance.get_connection_url())
        await instance.wait_for_fault()
"""
from __future__ import annotations

import asyncio
import logging
from collections.abc import Callable, Mapping
from types import TracebackType

from .config import AppConfig, default_config
from .errors import CrashFault
from .health import HealthPoller, Probe
from .logging import StructuredLogger
from .pipeline import ConfigPipeline
from .providers import CommandRunner
from .shutdown import ShutdownCoordinator
from .spec import InstanceLayout, InstanceSpec
from .supervisor import ProcessHandle, ProcessSupervisor

LOGGER = logging.getLogger(__name__)

CompletionCallback = Callable[[BaseException | None], None]


class ClusterInstance:
    """One provisioned and supervised coordinator/database instance."""

    def __init__(
        self,
        spec: InstanceSpec,
        *,
        config: AppConfig | None = None,
        logger: StructuredLogger | None = None,
        runner: CommandRunner | None = None,
        probe: Probe | None = None,
        on_fault: Callable[[CrashFault], None] | None = None,
    ) -> None:
        """Bind the instance to *spec*; nothing runs until :meth:`start`."""
        self.spec = spec
        self.config = config or default_config()
        self.logger = logger or StructuredLogger(self.config.logs_dir)
        self.runner = runner or CommandRunner()
        health = self.config.health
        self.poller = HealthPoller(
            probe=probe,
            poll_interval_ms=health.poll_interval_ms,
            timeout_ms=health.timeout_ms,
            connect_timeout=health.connect_timeout,
        )
        self.supervisor = ProcessSupervisor(
            spec, config=self.config, poller=self.poller, on_fault=on_fault
        )

    @property
    def layout(self) -> InstanceLayout:
        return self.supervisor.layout

    @property
    def handles(self) -> Mapping[str, ProcessHandle | None]:
        """Role to handle; ``None`` before start and after termination."""
        return self.supervisor.handles

    def get_connection_url(self) -> str:
        """Return ``tcp://<host>:<port>/<database>`` for clients."""
        return self.layout.connection_url

    async def start(self, on_complete: CompletionCallback | None = None) -> None:
        """Provision the instance and bring all three processes up.

        Raises the first error encountered. When *on_complete* is given it is
        called exactly once, with ``None`` on success or the error on failure,
        before the error propagates.
        """
        target = {"dataset": self.spec.zfs_dataset, "port": self.spec.postgres_port}
        error: BaseException | None = None
        try:
            with self.logger.operation("up", args=self.spec.to_dict(), target=target) as op:
                pipeline = ConfigPipeline(
                    self.spec, config=self.config, runner=self.runner, op=op
                )
                await pipeline.run()
                await self.supervisor.start(op=op)
                op.success(
                    "Instance is up.",
                    context={
                        "url": self.get_connection_url(),
                        "pids": {
                            role: handle.pid
                            for role, handle in self.handles.items()
                            if handle is not None
                        },
                    },
                )
        except Exception as exc:
            error = exc
            LOGGER.error("bring-up of %s failed: %s", self.spec.zfs_dataset, exc)
            raise
        finally:
            if on_complete is not None:
                on_complete(error)

    async def health_check(self) -> None:
        """Probe the database once; raise on failure."""
        await self.poller.check(self.layout.database_url)

    async def kill(self) -> None:
        """Forcefully terminate every running process and close log sinks."""
        target = {"dataset": self.spec.zfs_dataset, "port": self.spec.postgres_port}
        with self.logger.operation("kill", target=target) as op:
            coordinator = ShutdownCoordinator(op=op)
            try:
                await coordinator.terminate(self.supervisor.handles)
            finally:
                self.supervisor.close()
            op.success("Instance processes terminated.")

    async def wait_for_fault(self) -> CrashFault:
        """Wait for the first unexpected process exit."""
        return await asyncio.shield(self.supervisor.fault)

    async def __aenter__(self) -> ClusterInstance:
        try:
            await self.start()
        except BaseException:
            await self.kill()
            raise
        return self

    async def __aexit__(
        self,
        exc_type: type[BaseException] | None,
        exc: BaseException | None,
        tb: TracebackType | None,
    ) -> None:
        await self.kill()


__all__ = ["ClusterInstance", "CompletionCallback"]
