"""Launch and watch the three subordinate processes of an instance.

Every process runs in its own session (so the whole group can be signalled)
under the configured launcher, with stdout and stderr appended to a per-role
log file. An exit observer is attached as soon as a process is spawned; if a
process exits while nobody asked it to, the handle is marked ``crashed`` and
a :class:`~manateectl.errors.CrashFault` is delivered to the owner. The
supervisor never restarts anything.
"""
from __future__ import annotations

import asyncio
import contextlib
import logging
import os
import signal
from collections.abc import Callable, Mapping
from dataclasses import dataclass, field
from enum import Enum
from pathlib import Path
from typing import BinaryIO

from .config import AppConfig, default_config
from .errors import CrashFault, LaunchError
from .health import HealthPoller
from .logging import OperationScope
from .spec import ROLES, InstanceLayout, InstanceSpec

LOGGER = logging.getLogger(__name__)

ExitListener = Callable[["ProcessHandle"], None]
FaultListener = Callable[[CrashFault], None]


class ProcessState(str, Enum):
    """Lifecycle of a supervised process."""

    STARTING = "starting"
    RUNNING = "running"
    CLOSED = "closed"
    CRASHED = "crashed"


@dataclass(eq=False)
class ProcessHandle:
    """One supervised subordinate process."""

    role: str
    process: asyncio.subprocess.Process
    log_path: Path
    state: ProcessState = ProcessState.STARTING
    returncode: int | None = None
    _listeners: list[ExitListener] = field(default_factory=list, repr=False)
    _watcher: asyncio.Task[int] | None = field(default=None, repr=False)

    @property
    def pid(self) -> int:
        """Return the OS process id."""
        return self.process.pid

    @property
    def is_running(self) -> bool:
        """Return ``True`` while the process is expected to be alive."""
        return self.state in {ProcessState.STARTING, ProcessState.RUNNING}

    def add_exit_listener(self, listener: ExitListener) -> None:
        """Call *listener* once when the process exits."""
        self._listeners.append(listener)

    def remove_exit_listener(self, listener: ExitListener) -> None:
        """Detach a previously added *listener* (no-op when absent)."""
        with contextlib.suppress(ValueError):
            self._listeners.remove(listener)

    def remove_exit_listeners(self) -> None:
        """Detach every exit listener."""
        self._listeners.clear()

    def watch(self) -> None:
        """Start observing the process for exit."""
        if self._watcher is None:
            self._watcher = asyncio.create_task(
                self._wait(), name=f"manateectl-watch-{self.role}-{self.pid}"
            )

    async def wait_closed(self) -> int:
        """Wait until the process has exited and listeners have run."""
        if self._watcher is None:
            self.watch()
        assert self._watcher is not None
        return await asyncio.shield(self._watcher)

    def kill(self, sig: int = signal.SIGKILL) -> None:
        """Send *sig* to the process group, falling back to the process."""
        try:
            os.killpg(self.pid, sig)
        except ProcessLookupError:
            return
        except PermissionError:
            with contextlib.suppress(ProcessLookupError):
                self.process.send_signal(sig)

    async def _wait(self) -> int:
        returncode = await self.process.wait()
        self.returncode = returncode
        if self.is_running:
            self.state = ProcessState.CLOSED
        listeners = list(self._listeners)
        self._listeners.clear()
        for listener in listeners:
            listener(self)
        return returncode


class ProcessSupervisor:
    """Start the sitter, snapshotter and backup server in dependency order."""

    def __init__(
        self,
        spec: InstanceSpec,
        *,
        config: AppConfig | None = None,
        poller: HealthPoller | None = None,
        on_fault: FaultListener | None = None,
        op: OperationScope | None = None,
    ) -> None:
        """Bind the supervisor to *spec*; nothing is launched yet."""
        self.spec = spec
        self.layout: InstanceLayout = spec.layout
        self.config = config or default_config()
        health = self.config.health
        self.poller = poller or HealthPoller(
            poll_interval_ms=health.poll_interval_ms,
            timeout_ms=health.timeout_ms,
            connect_timeout=health.connect_timeout,
        )
        self.handles: dict[str, ProcessHandle | None] = dict.fromkeys(ROLES)
        self._on_fault = on_fault
        self._op = op
        self._log_sinks: dict[str, BinaryIO] = {}
        self._fault: asyncio.Future[CrashFault] | None = None

    # ------------------------------------------------------------------
    @property
    def fault(self) -> asyncio.Future[CrashFault]:
        """Future resolved with the first :class:`CrashFault`."""
        if self._fault is None:
            self._fault = asyncio.get_running_loop().create_future()
        return self._fault

    @property
    def log_paths(self) -> Mapping[str, Path]:
        """Return the per-role log files."""
        return self.layout.log_paths

    def command_for(self, role: str) -> list[str]:
        """Return the full command line used to launch *role*."""
        processes = self.config.processes
        scripts = {
            "sitter": processes.sitter,
            "snapshotter": processes.snapshotter,
            "backupServer": processes.backup_server,
        }
        command = [
            *processes.launcher,
            processes.interpreter,
            *processes.interpreter_args,
            str(scripts[role]),
        ]
        if processes.verbosity:
            command.append(processes.verbosity)
        command.extend(["-f", str(self.layout.config_path(role))])
        return command

    async def start(self, *, op: OperationScope | None = None) -> None:
        """Launch all three processes; return once every one is running.

        The snapshotter and backup server are only launched after the
        database behind the sitter answers a health probe. Any failure stops
        the remaining launches; processes already started keep running and
        stay reachable through :attr:`handles`.
        """
        _ = self.fault
        if op is not None:
            self._op = op
        self._open_logs()
        await self._launch("sitter")
        await self._wait_for_database()
        await self._launch("snapshotter")
        await self._launch("backupServer")
        self._ensure_running()
        LOGGER.info(
            "instance %s running: %s",
            self.layout.connection_url,
            ", ".join(f"{role}={handle.pid}" for role, handle in self._running()),
        )

    def close(self) -> None:
        """Close the per-role log sinks."""
        for role, sink in self._log_sinks.items():
            try:
                sink.close()
            except OSError as exc:
                LOGGER.error("failed to close %s log %s: %s", role, self.log_paths[role], exc)
        self._log_sinks.clear()

    # ------------------------------------------------------------------
    def _open_logs(self) -> None:
        for role in ROLES:
            if role in self._log_sinks:
                continue
            path = self.log_paths[role]
            try:
                path.parent.mkdir(parents=True, exist_ok=True)
                self._log_sinks[role] = path.open("ab")
            except OSError as exc:
                raise LaunchError(role, f"cannot open log file {path}: {exc}") from exc
        self._record(
            "supervisor.open-logs", "success", {k: str(v) for k, v in self.log_paths.items()}
        )

    async def _launch(self, role: str) -> ProcessHandle:
        command = self.command_for(role)
        sink = self._log_sinks[role]
        LOGGER.info("starting %s: %s", role, " ".join(command))
        try:
            process = await asyncio.create_subprocess_exec(
                *command,
                stdin=asyncio.subprocess.DEVNULL,
                stdout=sink,
                stderr=sink,
                start_new_session=True,
            )
        except OSError as exc:
            self._record(f"supervisor.start-{role}", "error", str(exc))
            raise LaunchError(role, exc) from exc

        handle = ProcessHandle(role=role, process=process, log_path=self.log_paths[role])
        handle.add_exit_listener(self._on_unexpected_exit)
        handle.watch()
        handle.state = ProcessState.RUNNING
        self.handles[role] = handle
        self._record(f"supervisor.start-{role}", "success", {"pid": handle.pid})
        return handle

    async def _wait_for_database(self) -> None:
        sitter = self.handles["sitter"]
        assert sitter is not None
        url = self.layout.database_url
        healthy = asyncio.create_task(self.poller.wait_until_healthy(url))
        exited = asyncio.create_task(sitter.wait_closed())
        try:
            done, _ = await asyncio.wait({healthy, exited}, return_when=asyncio.FIRST_COMPLETED)
        except asyncio.CancelledError:
            healthy.cancel()
            exited.cancel()
            raise
        if healthy in done:
            exited.cancel()
            try:
                attempts = healthy.result()
            except Exception as exc:
                self._record("supervisor.wait-for-database", "error", str(exc))
                raise
            self._record("supervisor.wait-for-database", "success", {"attempts": attempts})
            return

        healthy.cancel()
        with contextlib.suppress(asyncio.CancelledError):
            await healthy
        message = (
            f"exited with status {sitter.returncode} before the database became healthy "
            f"(log: {sitter.log_path})"
        )
        self._record("supervisor.wait-for-database", "error", message)
        raise LaunchError("sitter", message)

    def _ensure_running(self) -> None:
        for role, handle in self.handles.items():
            if handle is None or handle.is_running:
                continue
            message = (
                f"exited with status {handle.returncode} during start-up "
                f"(log: {handle.log_path})"
            )
            self._record("supervisor.running", "error", message)
            raise LaunchError(role, message)
        self._record("supervisor.running", "success", {"roles": list(self.handles)})

    def _on_unexpected_exit(self, handle: ProcessHandle) -> None:
        handle.state = ProcessState.CRASHED
        fault = CrashFault(
            handle.role,
            pid=handle.pid,
            returncode=handle.returncode,
            log_path=handle.log_path,
        )
        LOGGER.error("%s", fault)
        if self._fault is not None and not self._fault.done():
            self._fault.set_result(fault)
        if self._on_fault is not None:
            self._on_fault(fault)

    def _running(self) -> list[tuple[str, ProcessHandle]]:
        return [
            (role, handle)
            for role, handle in self.handles.items()
            if handle is not None and handle.is_running
        ]

    def _record(self, name: str, status: str, detail: object) -> None:
        if self._op is not None:
            self._op.add_step(name, status=status, detail=detail)


__all__ = [
    "ExitListener",
    "FaultListener",
    "ProcessHandle",
    "ProcessState",
    "ProcessSupervisor",
]
