"""Asynchronous runner for external commands used during provisioning."""
from __future__ import annotations

import asyncio
import logging
import subprocess
from collections.abc import Sequence
from dataclasses import dataclass

from ..errors import CommandError

LOGGER = logging.getLogger(__name__)


@dataclass(slots=True)
class CommandRunner:
    """Run a command to completion without blocking the event loop."""

    dry_run: bool = False

    async def run(
        self,
        args: Sequence[str],
        *,
        check: bool = True,
    ) -> subprocess.CompletedProcess[str]:
        """Execute *args*; raise :class:`CommandError` on failure when *check*."""
        command = [str(arg) for arg in args]
        if self.dry_run:
            LOGGER.debug("dry-run: %s", " ".join(command))
            return subprocess.CompletedProcess(command, returncode=0, stdout="", stderr="")
        LOGGER.debug("exec: %s", " ".join(command))
        try:
            process = await asyncio.create_subprocess_exec(
                *command,
                stdin=asyncio.subprocess.DEVNULL,
                stdout=asyncio.subprocess.PIPE,
                stderr=asyncio.subprocess.PIPE,
            )
        except OSError as exc:
            raise CommandError(command, None, str(exc)) from exc
        stdout_bytes, stderr_bytes = await process.communicate()
        stdout = stdout_bytes.decode("utf-8", errors="replace")
        stderr = stderr_bytes.decode("utf-8", errors="replace")
        result = subprocess.CompletedProcess(
            command,
            returncode=process.returncode if process.returncode is not None else -1,
            stdout=stdout,
            stderr=stderr,
        )
        if check and result.returncode != 0:
            message = stderr.strip() or stdout.strip() or "no output"
            raise CommandError(command, result.returncode, message)
        return result


__all__ = ["CommandRunner"]
