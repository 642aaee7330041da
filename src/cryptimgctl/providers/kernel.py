"""Kernel module loading via ``modprobe``."""
from __future__ import annotations

import subprocess
from dataclasses import dataclass

from .commands import CommandError, run_command


class KernelModuleError(CommandError):
    """Raised when a kernel module cannot be loaded or unloaded."""


@dataclass(slots=True)
class KernelModuleProvider:
    """Load and unload kernel modules."""

    modprobe_bin: str = "modprobe"

    def load(self, module: str) -> subprocess.CompletedProcess[str]:
        """Load *module*; ``modprobe`` already treats a loaded module as success."""
        return run_command(
            [self.modprobe_bin, module],
            error_prefix=f"{self.modprobe_bin} {module}",
            error_cls=KernelModuleError,
        )

    def unload(self, module: str) -> subprocess.CompletedProcess[str]:
        """Unload *module*; fails while other devices still use it."""
        return run_command(
            [self.modprobe_bin, "-r", module],
            error_prefix=f"{self.modprobe_bin} -r {module}",
            error_cls=KernelModuleError,
        )


__all__ = ["KernelModuleError", "KernelModuleProvider"]
