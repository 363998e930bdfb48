"""Forceful teardown of a running instance."""
from __future__ import annotations

import asyncio
import logging
import signal
from collections.abc import Iterable, MutableMapping

from .logging import OperationScope
from .spec import ROLES
from .supervisor import ProcessHandle, ProcessState

LOGGER = logging.getLogger(__name__)


class Rendezvous:
    """Completes once every named party has reported done.

    Each party counts at most once; reporting an unknown party raises
    :class:`ValueError`.
    """

    def __init__(self, parties: Iterable[str]) -> None:
        """Track *parties*; an empty set is complete immediately."""
        self.parties = frozenset(parties)
        self._done: set[str] = set()
        self._event = asyncio.Event()
        self.completions = 0
        if not self.parties:
            self._complete()

    @property
    def is_complete(self) -> bool:
        """Whether every party has reported done."""
        return self._event.is_set()

    @property
    def pending(self) -> frozenset[str]:
        """Parties that have not reported done yet."""
        return self.parties - self._done

    def done(self, party: str) -> None:
        """Mark *party* as finished."""
        if party not in self.parties:
            raise ValueError(f"Unknown rendezvous party '{party}'.")
        if party in self._done:
            return
        self._done.add(party)
        if self._done == self.parties:
            self._complete()

    async def wait(self) -> None:
        """Block until every party has reported done."""
        await self._event.wait()

    def _complete(self) -> None:
        if not self._event.is_set():
            self.completions += 1
            self._event.set()


class ShutdownCoordinator:
    """Kill every running process of an instance and wait for confirmation."""

    def __init__(self, *, sig: int = signal.SIGKILL, op: OperationScope | None = None) -> None:
        self.sig = sig
        self._op = op

    async def terminate(self, handles: MutableMapping[str, ProcessHandle | None]) -> None:
        """Terminate the processes in *handles*, then clear every entry.

        Roles with no handle, or whose process already exited, are reported
        done immediately. The others have their crash observers replaced by
        a one-shot close observer before the signal is sent, so a deliberate
        kill is never reported as a crash.
        """
        rendezvous = Rendezvous(ROLES)
        waiters: list[asyncio.Future[int]] = []

        for role in ROLES:
            handle = handles.get(role)
            if handle is None or not handle.is_running:
                self._record(role, "skipped", "not running")
                rendezvous.done(role)
                continue
            handle.remove_exit_listeners()
            handle.add_exit_listener(lambda closed: self._on_closed(closed, rendezvous))
            LOGGER.info("killing %s (pid %d)", role, handle.pid)
            try:
                handle.kill(self.sig)
            except OSError as exc:
                LOGGER.error("failed to signal %s (pid %d): %s", role, handle.pid, exc)
                self._record(role, "error", str(exc))
                handle.remove_exit_listeners()
                rendezvous.done(role)
                continue
            waiters.append(asyncio.ensure_future(handle.wait_closed()))

        await rendezvous.wait()
        if waiters:
            await asyncio.gather(*waiters, return_exceptions=True)
        for role in ROLES:
            handles[role] = None
        LOGGER.info("instance processes terminated")

    def _on_closed(self, handle: ProcessHandle, rendezvous: Rendezvous) -> None:
        handle.state = ProcessState.CLOSED
        self._record(handle.role, "success", {"pid": handle.pid, "returncode": handle.returncode})
        rendezvous.done(handle.role)

    def _record(self, role: str, status: str, detail: object) -> None:
        if self._op is not None:
            self._op.add_step(f"shutdown.{role}", status=status, detail=detail)


__all__ = ["Rendezvous", "ShutdownCoordinator"]
