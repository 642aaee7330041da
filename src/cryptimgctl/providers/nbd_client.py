"""Mapping provider wrapping ``nbd-client``."""
from __future__ import annotations

import subprocess
from dataclasses import dataclass
from pathlib import Path

from .commands import CommandError, run_command


class NbdClientError(CommandError):
    """Raised when ``nbd-client`` fails."""


def device_for_slot(slot: int) -> Path:
    """Return the block device node for *slot*."""
    return Path(f"/dev/nbd{slot}")


@dataclass(slots=True)
class NbdClientProvider:
    """Connect, query and disconnect local NBD devices."""

    nbd_client_bin: str = "nbd-client"

    def is_connected(self, device: Path) -> bool:
        """Return ``True`` when ``nbd-client -check`` reports a live connection."""
        result = run_command(
            [self.nbd_client_bin, "-check", str(device)],
            check=False,
            error_cls=NbdClientError,
        )
        return result.returncode == 0

    def connect(self, endpoint: Path, device: Path) -> subprocess.CompletedProcess[str]:
        """Attach *device* to the export listening on *endpoint*."""
        return run_command(
            [self.nbd_client_bin, "-unix", str(endpoint), str(device), "-persist"],
            error_prefix=f"{self.nbd_client_bin} {device}",
            error_cls=NbdClientError,
        )

    def disconnect(self, device: Path) -> subprocess.CompletedProcess[str]:
        """Detach *device*."""
        return run_command(
            [self.nbd_client_bin, "-d", str(device)],
            error_prefix=f"{self.nbd_client_bin} -d {device}",
            error_cls=NbdClientError,
        )


__all__ = ["NbdClientError", "NbdClientProvider", "device_for_slot"]
