"""Detection of the external tools both entry points rely on."""
from __future__ import annotations

import os
import shutil
from collections.abc import Iterable
from dataclasses import dataclass, field
from pathlib import Path


@dataclass(slots=True)
class DependencyReport:
    """Which required binaries were found and where."""

    found: dict[str, str] = field(default_factory=dict)
    missing: list[str] = field(default_factory=list)

    @property
    def ok(self) -> bool:
        """Return ``True`` when nothing is missing."""
        return not self.missing


def command_exists(command: str) -> str | None:
    """Return the resolved executable for *command*, or ``None``."""
    path = Path(command)
    if path.is_absolute() or (path.parent and str(path.parent) not in {"", "."}):
        if path.exists() and os.access(path, os.X_OK):
            return str(path)
        return None
    resolved = shutil.which(command)
    if resolved is not None and os.access(resolved, os.X_OK):
        return resolved
    return None


def check_dependencies(commands: Iterable[str]) -> DependencyReport:
    """Resolve every command in *commands*."""
    report = DependencyReport()
    for command in commands:
        resolved = command_exists(command)
        if resolved is None:
            if command not in report.missing:
                report.missing.append(command)
        else:
            report.found[command] = resolved
    return report


__all__ = ["DependencyReport", "check_dependencies", "command_exists"]
