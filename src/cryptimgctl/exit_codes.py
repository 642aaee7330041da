"""Enumerations for CLI exit codes."""
from __future__ import annotations

from enum import IntEnum


class ExitCode(IntEnum):
    """Well-known exit codes shared by both entry points."""

    OK = 0
    FAILURE = 1
    VALIDATION = 2
    DEPENDENCY = 3
