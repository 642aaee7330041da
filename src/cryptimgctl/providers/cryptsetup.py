"""Encrypted volume provider wrapping ``cryptsetup``."""
from __future__ import annotations

import subprocess
from dataclasses import dataclass
from pathlib import Path

from .commands import CommandError, run_command


class CryptsetupError(CommandError):
    """Raised when ``cryptsetup`` fails."""


def volume_name_for_slot(slot: int) -> str:
    """Return the device-mapper name used for *slot*."""
    return f"nbd{slot}crypt"


@dataclass(slots=True)
class CryptsetupProvider:
    """Format, open and close LUKS containers."""

    cryptsetup_bin: str = "cryptsetup"
    mapper_dir: Path = Path("/dev/mapper")

    def mapper_path(self, name: str) -> Path:
        """Return the decrypted device node for mapping *name*."""
        return self.mapper_dir / name

    def is_open(self, name: str) -> bool:
        """Return ``True`` when the decrypted mapping *name* exists."""
        return self.mapper_path(name).exists()

    def format(
        self,
        device: Path,
        passphrase: bytes,
        *,
        luks_type: str = "luks2",
    ) -> subprocess.CompletedProcess[str]:
        """Initialise a LUKS header on *device* keyed by *passphrase*."""
        return run_command(
            [
                self.cryptsetup_bin,
                "luksFormat",
                "--batch-mode",
                "--type",
                luks_type,
                "--key-file=-",
                str(device),
            ],
            input_bytes=passphrase,
            error_prefix=f"{self.cryptsetup_bin} luksFormat {device}",
            error_cls=CryptsetupError,
        )

    def open(self, device: Path, name: str, passphrase: bytes) -> subprocess.CompletedProcess[str]:
        """Unlock *device* as *name* with discard passthrough."""
        return run_command(
            [
                self.cryptsetup_bin,
                "open",
                "--type",
                "luks",
                "--allow-discards",
                "--key-file=-",
                str(device),
                name,
            ],
            input_bytes=passphrase,
            error_prefix=f"{self.cryptsetup_bin} open {device}",
            error_cls=CryptsetupError,
        )

    def close(self, name: str) -> subprocess.CompletedProcess[str]:
        """Lock the mapping *name*."""
        return run_command(
            [self.cryptsetup_bin, "close", name],
            error_prefix=f"{self.cryptsetup_bin} close {name}",
            error_cls=CryptsetupError,
        )


__all__ = ["CryptsetupError", "CryptsetupProvider", "volume_name_for_slot"]
