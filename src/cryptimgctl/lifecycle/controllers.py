"""One controller per pipeline layer.

Every controller probes before acting, so ``ensure_up`` on a layer that is
already up (and ``ensure_down`` on one that is already down) returns without
touching the system. Errors propagate to the orchestrator, which decides
whether to stop (open) or carry on (close).
"""
from __future__ import annotations

import os
from abc import ABC, abstractmethod
from collections.abc import Callable
from dataclasses import dataclass
from pathlib import Path

from ..errors import (
    ArgumentValidationError,
    FilesystemCheckFatalError,
    ResourceAbsentError,
    ResourceConflictError,
)
from ..passphrase import Secret
from ..providers.cryptsetup import CryptsetupProvider
from ..providers.filesystem import FilesystemError, FilesystemProvider
from ..providers.kernel import KernelModuleProvider
from ..providers.nbd_client import NbdClientProvider
from ..providers.qemu_nbd import ExportProcess, QemuNbdProvider
from .fsck import classify_fsck
from .models import Layer, LayerOutcome, PipelineTarget, Transition
from .probes import ResourceProbe

PassphraseFactory = Callable[[], Secret]


class LayerController(ABC):
    """Idempotent transitions for a single layer."""

    layer: Layer

    def __init__(self, probe: ResourceProbe) -> None:
        """Bind the controller to the shared probe."""
        self.probe = probe

    @abstractmethod
    def ensure_up(self, target: PipelineTarget) -> LayerOutcome:
        """Bring the layer up unless it already is."""

    @abstractmethod
    def ensure_down(self, target: PipelineTarget) -> LayerOutcome:
        """Tear the layer down unless it already is."""

    def _outcome(
        self,
        transition: Transition,
        detail: str = "",
        warnings: list[str] | None = None,
    ) -> LayerOutcome:
        return LayerOutcome(
            name=self.layer.value,
            transition=transition,
            detail=detail,
            warnings=list(warnings or []),
        )


class ExportController(LayerController):
    """Serve the image file on the slot's socket."""

    layer = Layer.EXPORT

    def __init__(
        self,
        probe: ResourceProbe,
        exports: QemuNbdProvider,
        kernel: KernelModuleProvider,
        kernel_module: str = "nbd",
    ) -> None:
        """Store the export and kernel module providers."""
        super().__init__(probe)
        self.exports = exports
        self.kernel = kernel
        self.kernel_module = kernel_module

    def ensure_up(self, target: PipelineTarget) -> LayerOutcome:
        """Start an export for the image unless one is already running."""
        state = self.probe.probe_export(target.image)
        if state.active:
            export: ExportProcess = state.identity  # type: ignore[assignment]
            if export.slot != target.slot:
                raise ResourceConflictError(
                    f"{target.image} is already exported on slot {export.slot}, "
                    f"expected slot {target.slot}."
                )
            return self._outcome(Transition.ALREADY_UP, f"slot {export.slot}, pid {export.pid}")

        self.kernel.load(self.kernel_module)
        if not target.device.exists():
            raise ResourceAbsentError(
                f"Device {target.device} does not exist after loading '{self.kernel_module}'."
            )
        self.exports.start(target.image, target.endpoint)
        return self._outcome(Transition.BROUGHT_UP, f"slot {target.slot} on {target.endpoint}")

    def ensure_down(self, target: PipelineTarget) -> LayerOutcome:
        """Terminate the export bound to the slot's endpoint."""
        image = Path(os.path.realpath(target.image))
        bound = [
            export
            for export in self.probe.active_exports()
            if export.endpoint == target.endpoint
            or (export.image == image and export.slot == target.slot)
        ]
        if not bound:
            return self._outcome(Transition.ALREADY_DOWN, "no export found")
        stopped = [export.pid for export in bound if self.exports.stop(export)]
        if not stopped:
            return self._outcome(Transition.ALREADY_DOWN, "export exited before signal")
        pids = ", ".join(str(pid) for pid in stopped)
        return self._outcome(Transition.BROUGHT_DOWN, f"terminated pid {pids}")


class MappingController(LayerController):
    """Attach the local NBD device to the export."""

    layer = Layer.MAPPING

    def __init__(self, probe: ResourceProbe, mappings: NbdClientProvider) -> None:
        """Store the NBD client provider."""
        super().__init__(probe)
        self.mappings = mappings

    def ensure_up(self, target: PipelineTarget) -> LayerOutcome:
        """Connect the slot's device unless it is already connected."""
        if self.probe.probe_mapping(target.device).active:
            return self._outcome(Transition.ALREADY_UP, str(target.device))
        self.mappings.connect(target.endpoint, target.device)
        return self._outcome(Transition.BROUGHT_UP, str(target.device))

    def ensure_down(self, target: PipelineTarget) -> LayerOutcome:
        """Disconnect the slot's device if connected."""
        if not self.probe.probe_mapping(target.device).active:
            return self._outcome(Transition.ALREADY_DOWN, str(target.device))
        self.mappings.disconnect(target.device)
        return self._outcome(Transition.BROUGHT_DOWN, str(target.device))


class VolumeController(LayerController):
    """Unlock the LUKS container on the NBD device."""

    layer = Layer.VOLUME

    def __init__(
        self,
        probe: ResourceProbe,
        volumes: CryptsetupProvider,
        passphrase: PassphraseFactory | None = None,
    ) -> None:
        """Store the cryptsetup provider and the lazy passphrase source."""
        super().__init__(probe)
        self.volumes = volumes
        self.passphrase = passphrase

    def ensure_up(self, target: PipelineTarget) -> LayerOutcome:
        """Open the volume; the passphrase is only fetched when needed."""
        if self.probe.probe_volume(target.volume_name).active:
            return self._outcome(Transition.ALREADY_UP, target.volume_name)
        if self.passphrase is None:
            raise ArgumentValidationError(
                f"A passphrase command is required to unlock {target.device}."
            )
        secret = self.passphrase()
        self.volumes.open(target.device, target.volume_name, secret.reveal())
        return self._outcome(Transition.BROUGHT_UP, target.volume_name)

    def ensure_down(self, target: PipelineTarget) -> LayerOutcome:
        """Close the volume if it is open."""
        if not self.probe.probe_volume(target.volume_name).active:
            return self._outcome(Transition.ALREADY_DOWN, target.volume_name)
        self.volumes.close(target.volume_name)
        return self._outcome(Transition.BROUGHT_DOWN, target.volume_name)


class MountController(LayerController):
    """Check, mount and trim the decrypted filesystem."""

    layer = Layer.MOUNT

    def __init__(self, probe: ResourceProbe, filesystems: FilesystemProvider) -> None:
        """Store the filesystem provider."""
        super().__init__(probe)
        self.filesystems = filesystems

    def ensure_up(self, target: PipelineTarget) -> LayerOutcome:
        """Mount the volume after a passing filesystem check."""
        state = self.probe.probe_mount(target.volume_device, target.mountpoint)
        if state.active:
            return self._outcome(Transition.ALREADY_UP, f"mounted at {state.identity}")

        occupant = self.probe.mountpoint_entry(target.mountpoint)
        if occupant is not None:
            raise ResourceConflictError(
                f"{target.mountpoint} already has {occupant.source} mounted."
            )
        if not target.mountpoint.is_dir():
            raise ResourceAbsentError(f"Mountpoint {target.mountpoint} does not exist.")

        result = self.filesystems.check(target.volume_device)
        verdict = classify_fsck(result.returncode)
        if not verdict.passed:
            raise FilesystemCheckFatalError(verdict.status, verdict.describe())
        warnings: list[str] = []
        if verdict.reboot_required:
            warnings.append("Filesystem check corrected errors and recommends a reboot.")
        elif verdict.corrected:
            warnings.append("Filesystem check corrected errors.")

        self.filesystems.mount(target.volume_device, target.mountpoint)
        try:
            self.filesystems.trim(target.mountpoint)
        except FilesystemError as exc:
            warnings.append(f"Space reclaim failed: {exc}")
        return self._outcome(
            Transition.BROUGHT_UP,
            f"{target.volume_device} on {target.mountpoint} (fsck {verdict.status})",
            warnings,
        )

    def ensure_down(self, target: PipelineTarget) -> LayerOutcome:
        """Unmount the volume wherever it is mounted."""
        state = self.probe.probe_mount(target.volume_device, target.mountpoint)
        if not state.active:
            return self._outcome(Transition.ALREADY_DOWN, str(target.mountpoint))
        mounted_at = Path(str(state.identity))
        self.filesystems.unmount(mounted_at)
        return self._outcome(Transition.BROUGHT_DOWN, str(mounted_at))


__all__ = [
    "ExportController",
    "LayerController",
    "MappingController",
    "MountController",
    "PassphraseFactory",
    "VolumeController",
]
