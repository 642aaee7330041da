"""Provider interfaces for the external tools cryptimgctl drives."""
from __future__ import annotations

from .commands import CommandError, run_command
from .cryptsetup import CryptsetupError, CryptsetupProvider, volume_name_for_slot
from .filesystem import FilesystemError, FilesystemProvider, MountEntry, parse_mount_table
from .kernel import KernelModuleError, KernelModuleProvider
from .nbd_client import NbdClientError, NbdClientProvider, device_for_slot
from .qemu_nbd import (
    ExportError,
    ExportProcess,
    QemuNbdProvider,
    endpoint_for_slot,
    parse_export_cmdline,
)

__all__ = [
    "CommandError",
    "CryptsetupError",
    "CryptsetupProvider",
    "ExportError",
    "ExportProcess",
    "FilesystemError",
    "FilesystemProvider",
    "KernelModuleError",
    "KernelModuleProvider",
    "MountEntry",
    "NbdClientError",
    "NbdClientProvider",
    "QemuNbdProvider",
    "device_for_slot",
    "endpoint_for_slot",
    "parse_export_cmdline",
    "parse_mount_table",
    "run_command",
]
