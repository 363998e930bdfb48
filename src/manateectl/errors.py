"""Error taxonomy shared by the orchestration components.

Every failure surfaced by bring-up, supervision or teardown derives from
:class:`ManateeError` so callers can catch the whole family at once while
still distinguishing the stage that failed.
"""
from __future__ import annotations

from collections.abc import Sequence
from pathlib import Path


class ManateeError(RuntimeError):
    """Base class for manateectl failures."""


class ValidationError(ManateeError):
    """Raised when an instance spec is malformed. No side effects have run."""

    def __init__(self, message: str, *, problems: Sequence[str] = ()) -> None:
        """Store the individual field problems alongside the summary."""
        super().__init__(message)
        self.problems = tuple(problems) or (message,)


class CommandError(ManateeError):
    """Raised when an external command exits non-zero or cannot be run."""

    def __init__(self, args: Sequence[str], returncode: int | None, output: str = "") -> None:
        """Record the command line, exit status and captured output."""
        joined = " ".join(args)
        if returncode is None:
            message = f"{joined} could not be executed: {output or 'no output'}"
        else:
            message = f"{joined} failed (exit {returncode}): {output or 'no output'}"
        super().__init__(message)
        self.command = list(args)
        self.returncode = returncode
        self.output = output


class ProvisioningError(ManateeError):
    """Raised when a named pipeline step fails."""

    def __init__(self, step: str, cause: BaseException) -> None:
        """Tag *cause* with the name of the failing *step*."""
        super().__init__(f"provisioning step '{step}' failed: {cause}")
        self.step = step
        self.cause = cause


class LaunchError(ManateeError):
    """Raised when a supervised process fails to reach ``running``."""

    def __init__(self, role: str, cause: BaseException | str) -> None:
        """Record the *role* that failed to launch and why."""
        super().__init__(f"{role} failed to launch: {cause}")
        self.role = role
        self.cause = cause


class CrashFault(ManateeError):
    """A supervised process exited while it was expected to be running.

    Terminal for the owning instance: the caller is expected to tear the
    instance down rather than attempt a partial recovery.
    """

    def __init__(
        self,
        role: str,
        *,
        pid: int | None,
        returncode: int | None,
        log_path: Path | None = None,
    ) -> None:
        """Describe the crashed process."""
        location = f" (log: {log_path})" if log_path is not None else ""
        super().__init__(
            f"{role} (pid {pid}) died unexpectedly with exit status {returncode}{location}"
        )
        self.role = role
        self.pid = pid
        self.returncode = returncode
        self.log_path = log_path


class HealthTimeoutError(ManateeError):
    """Raised when no health probe succeeds before the deadline."""

    def __init__(self, url: str, timeout_ms: int, last_error: BaseException | None = None) -> None:
        """Record the endpoint, the deadline and the last probe error seen."""
        detail = f"; last error: {last_error}" if last_error is not None else ""
        super().__init__(f"database at {url} not healthy after {timeout_ms} ms{detail}")
        self.url = url
        self.timeout_ms = timeout_ms
        self.last_error = last_error


__all__ = [
    "CommandError",
    "CrashFault",
    "HealthTimeoutError",
    "LaunchError",
    "ManateeError",
    "ProvisioningError",
    "ValidationError",
]
