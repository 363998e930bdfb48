"""Provider interfaces for manateectl."""
from __future__ import annotations

from .commands import CommandRunner
from .zfs import ZfsProvider

__all__ = [
    "CommandRunner",
    "ZfsProvider",
]
