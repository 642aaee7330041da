"""Read-only probes answering "is this layer up, and as what?".

State is never stored: each probe re-derives it from the process table, the
NBD client, the device-mapper directory or the kernel mount table.
"""
from __future__ import annotations

import os
import re
from dataclasses import dataclass
from pathlib import Path

import psutil

from ..providers.cryptsetup import CryptsetupProvider
from ..providers.filesystem import FilesystemProvider, MountEntry
from ..providers.nbd_client import NbdClientProvider
from ..providers.qemu_nbd import ExportProcess, QemuNbdProvider
from .models import LayerState

VOLUME_NAME_PATTERN = re.compile(r"^nbd(\d+)crypt$")


@dataclass(slots=True)
class ResourceProbe:
    """Stateless per-layer queries."""

    exports: QemuNbdProvider
    mappings: NbdClientProvider
    volumes: CryptsetupProvider
    filesystems: FilesystemProvider

    def active_exports(self) -> list[ExportProcess]:
        """Return running exports; an unreadable process table reads as empty."""
        try:
            return self.exports.list_exports()
        except (psutil.Error, OSError):
            return []

    def probe_export(self, image: Path) -> LayerState:
        """Return ``Active(ExportProcess)`` when some export serves *image*."""
        resolved = Path(os.path.realpath(image))
        matches = [export for export in self.active_exports() if export.image == resolved]
        if not matches:
            return LayerState.down()
        return LayerState.up(min(matches, key=lambda export: export.slot))

    def probe_mapping(self, device: Path) -> LayerState:
        """Return ``Active(device)`` when the NBD client reports *device* connected."""
        if self.mappings.is_connected(device):
            return LayerState.up(device)
        return LayerState.down()

    def probe_volume(self, name: str) -> LayerState:
        """Return ``Active(mapper path)`` when the decrypted mapping *name* exists."""
        if self.volumes.is_open(name):
            return LayerState.up(self.volumes.mapper_path(name))
        return LayerState.down()

    def probe_mount(self, volume: Path, mountpoint: Path) -> LayerState:
        """Return ``Active(target)`` when *volume* is mounted.

        A mount on *mountpoint* is preferred when the volume appears more than
        once in the table.
        """
        matches = [entry for entry in self._mount_table() if entry.source_matches(volume)]
        if not matches:
            return LayerState.down()
        for entry in matches:
            if _same_path(entry.target, mountpoint):
                return LayerState.up(entry.target)
        return LayerState.up(matches[0].target)

    def mountpoint_entry(self, mountpoint: Path) -> MountEntry | None:
        """Return the topmost entry mounted on *mountpoint*, if any."""
        found: MountEntry | None = None
        for entry in self._mount_table():
            if _same_path(entry.target, mountpoint):
                found = entry
        return found

    def slot_from_mountpoint(self, mountpoint: Path) -> int | None:
        """Return the slot of an ``nbd<N>crypt`` volume mounted on *mountpoint*."""
        entry = self.mountpoint_entry(mountpoint)
        if entry is None:
            return None
        match = VOLUME_NAME_PATTERN.match(Path(entry.source).name)
        if match is None:
            return None
        return int(match.group(1))

    def _mount_table(self) -> list[MountEntry]:
        return self.filesystems.mount_table()


def _same_path(left: Path, right: Path) -> bool:
    return os.path.realpath(left) == os.path.realpath(right)


__all__ = ["ResourceProbe"]
