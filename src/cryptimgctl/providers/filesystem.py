"""Filesystem provider: check, mount, trim and the kernel mount table."""
from __future__ import annotations

import os
import re
import subprocess
from dataclasses import dataclass
from pathlib import Path

from .commands import CommandError, run_command

_OCTAL_ESCAPE = re.compile(r"\\([0-7]{3})")


class FilesystemError(CommandError):
    """Raised when a filesystem tool fails."""


@dataclass(slots=True, frozen=True)
class MountEntry:
    """One line of the kernel mount table."""

    source: str
    target: Path
    fstype: str

    def source_matches(self, device: Path) -> bool:
        """Return ``True`` when this entry's source resolves to *device*."""
        if self.source == str(device):
            return True
        if not self.source.startswith("/"):
            return False
        return os.path.realpath(self.source) == os.path.realpath(device)


def _unescape(field: str) -> str:
    return _OCTAL_ESCAPE.sub(lambda match: chr(int(match.group(1), 8)), field)


def parse_mount_table(text: str) -> list[MountEntry]:
    """Parse ``/proc/self/mounts`` formatted *text*; malformed lines are skipped."""
    entries: list[MountEntry] = []
    for line in text.splitlines():
        fields = line.split()
        if len(fields) < 3:
            continue
        entries.append(
            MountEntry(
                source=_unescape(fields[0]),
                target=Path(_unescape(fields[1])),
                fstype=fields[2],
            )
        )
    return entries


@dataclass(slots=True)
class FilesystemProvider:
    """Wrap ``e2fsck``, ``mkfs``, ``mount``, ``umount`` and ``fstrim``."""

    fsck_bin: str = "e2fsck"
    mkfs_bin: str = "mkfs.ext4"
    mount_bin: str = "mount"
    umount_bin: str = "umount"
    fstrim_bin: str = "fstrim"
    mounts_file: Path = Path("/proc/self/mounts")

    def mount_table(self) -> list[MountEntry]:
        """Return the current mount table."""
        return parse_mount_table(self.mounts_file.read_text(encoding="utf-8"))

    def check(self, device: Path) -> subprocess.CompletedProcess[str]:
        """Run a preen-mode check; the caller interprets the return code."""
        return run_command(
            [self.fsck_bin, "-p", str(device)],
            check=False,
            error_cls=FilesystemError,
        )

    def make(self, device: Path) -> subprocess.CompletedProcess[str]:
        """Create a new filesystem on *device*."""
        return run_command(
            [self.mkfs_bin, "-q", str(device)],
            error_prefix=f"{self.mkfs_bin} {device}",
            error_cls=FilesystemError,
        )

    def mount(self, device: Path, mountpoint: Path) -> subprocess.CompletedProcess[str]:
        """Attach *device* at *mountpoint*."""
        return run_command(
            [self.mount_bin, str(device), str(mountpoint)],
            error_prefix=f"{self.mount_bin} {device}",
            error_cls=FilesystemError,
        )

    def unmount(self, mountpoint: Path) -> subprocess.CompletedProcess[str]:
        """Detach whatever is mounted at *mountpoint*."""
        return run_command(
            [self.umount_bin, str(mountpoint)],
            error_prefix=f"{self.umount_bin} {mountpoint}",
            error_cls=FilesystemError,
        )

    def trim(self, mountpoint: Path) -> subprocess.CompletedProcess[str]:
        """Discard unused blocks so the backing image stays sparse."""
        return run_command(
            [self.fstrim_bin, str(mountpoint)],
            error_prefix=f"{self.fstrim_bin} {mountpoint}",
            error_cls=FilesystemError,
        )


__all__ = ["FilesystemError", "FilesystemProvider", "MountEntry", "parse_mount_table"]
