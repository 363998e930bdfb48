"""Enumerations for CLI exit codes."""
from __future__ import annotations

from enum import IntEnum


class ExitCode(IntEnum):
    """Well-known exit codes enforced across the CLI."""

    OK = 0
    VALIDATION = 2
    PROVISIONING = 3
    LAUNCH = 4
    CRASH = 5
    HEALTH_TIMEOUT = 6
