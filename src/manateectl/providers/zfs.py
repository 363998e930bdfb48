"""ZFS provider for creating and mounting instance datasets."""
from __future__ import annotations

import subprocess
from dataclasses import dataclass
from pathlib import Path

from .commands import CommandRunner


@dataclass(slots=True)
class ZfsProvider:
    """Thin wrapper over the ``zfs`` command line."""

    runner: CommandRunner
    zfs_bin: str = "zfs"

    async def create(
        self, dataset: str, *, check: bool = True
    ) -> subprocess.CompletedProcess[str]:
        """Create *dataset*."""
        return await self._zfs("create", dataset, check=check)

    async def set_mountpoint(
        self, dataset: str, mountpoint: Path
    ) -> subprocess.CompletedProcess[str]:
        """Point *dataset* at *mountpoint* (ZFS mounts it there)."""
        return await self._zfs("set", f"mountpoint={mountpoint}", dataset)

    async def _zfs(self, *args: str, check: bool = True) -> subprocess.CompletedProcess[str]:
        return await self.runner.run([self.zfs_bin, *args], check=check)


__all__ = ["ZfsProvider"]
