"""Sequencing of the four layer controllers.

``open`` walks export, mapping, volume and mount in order and stops at the
first failure. ``close`` walks the same layers in reverse, attempts every
step regardless of earlier failures and finally tries to unload the kernel
module. Both actions start from whatever state the probes observe, so
repeated invocations converge instead of erroring.
"""
from __future__ import annotations

import os
from dataclasses import dataclass
from pathlib import Path

from ..config import AppConfig
from ..errors import CryptImgError, ResourceAbsentError
from ..providers.commands import CommandError
from ..providers.cryptsetup import CryptsetupProvider
from ..providers.filesystem import FilesystemProvider
from ..providers.kernel import KernelModuleProvider
from ..providers.nbd_client import NbdClientProvider
from ..providers.qemu_nbd import QemuNbdProvider
from .allocator import allocate_or_reuse_slot
from .controllers import (
    ExportController,
    LayerController,
    MappingController,
    MountController,
    PassphraseFactory,
    VolumeController,
)
from .models import (
    KERNEL_STEP,
    LAYER_ORDER,
    Layer,
    LayerOutcome,
    LayerState,
    PipelineObservation,
    PipelineReport,
    PipelineTarget,
    Transition,
)
from .probes import ResourceProbe

LAYER_ERRORS = (CryptImgError, CommandError)


@dataclass(slots=True)
class LifecycleOrchestrator:
    """Drive an image's pipeline forward (open) or backward (close)."""

    exports: QemuNbdProvider
    mappings: NbdClientProvider
    volumes: CryptsetupProvider
    filesystems: FilesystemProvider
    kernel: KernelModuleProvider
    runtime_dir: Path
    kernel_module: str = "nbd"
    device_dir: Path = Path("/dev")

    @classmethod
    def from_config(cls, config: AppConfig) -> LifecycleOrchestrator:
        """Build an orchestrator wired to the configured binaries."""
        binaries = config.binaries
        return cls(
            exports=QemuNbdProvider(qemu_nbd_bin=binaries.qemu_nbd),
            mappings=NbdClientProvider(nbd_client_bin=binaries.nbd_client),
            volumes=CryptsetupProvider(cryptsetup_bin=binaries.cryptsetup),
            filesystems=FilesystemProvider(
                fsck_bin=binaries.fsck,
                mkfs_bin=binaries.mkfs,
                mount_bin=binaries.mount,
                umount_bin=binaries.umount,
                fstrim_bin=binaries.fstrim,
            ),
            kernel=KernelModuleProvider(modprobe_bin=binaries.modprobe),
            runtime_dir=config.runtime_dir,
            kernel_module=config.kernel_module,
        )

    @property
    def probe(self) -> ResourceProbe:
        """Return a probe over this orchestrator's providers."""
        return ResourceProbe(
            exports=self.exports,
            mappings=self.mappings,
            volumes=self.volumes,
            filesystems=self.filesystems,
        )

    def target_for(self, image: Path, slot: int, mountpoint: Path) -> PipelineTarget:
        """Return the identities for *image* on *slot*."""
        return PipelineTarget.build(
            image,
            slot,
            mountpoint,
            runtime_dir=self.runtime_dir,
            device_dir=self.device_dir,
            mapper_dir=self.volumes.mapper_dir,
        )

    def controllers(self, passphrase: PassphraseFactory | None = None) -> list[LayerController]:
        """Return the layer controllers in dependency order."""
        probe = self.probe
        return [
            ExportController(probe, self.exports, self.kernel, self.kernel_module),
            MappingController(probe, self.mappings),
            VolumeController(probe, self.volumes, passphrase),
            MountController(probe, self.filesystems),
        ]

    def allocate_slot(self, image: Path) -> int:
        """Return the slot *image* is (or will be) served on."""
        return allocate_or_reuse_slot(self.probe, image, device_dir=self.device_dir)

    # ------------------------------------------------------------------
    def open(
        self,
        image: Path,
        mountpoint: Path,
        passphrase: PassphraseFactory | None,
    ) -> PipelineReport:
        """Bring every layer up, stopping at the first failure."""
        resolved = Path(os.path.realpath(image))
        if not resolved.is_file():
            raise ResourceAbsentError(f"Image file {image} does not exist.")
        target = self.target_for(resolved, self.allocate_slot(resolved), mountpoint)
        report = PipelineReport(action="open", target=target)
        for controller in self.controllers(passphrase):
            try:
                outcome = controller.ensure_up(target)
            except LAYER_ERRORS as exc:
                report.add(LayerOutcome(controller.layer.value, None, str(exc), error=exc))
                break
            report.add(outcome)
        return report

    def close(self, image: Path, mountpoint: Path) -> PipelineReport:
        """Tear every layer down in reverse, recording failures and continuing."""
        resolved = Path(os.path.realpath(image))
        slot = self.resolve_slot(resolved, mountpoint)
        if slot is None:
            report = PipelineReport(action="close", target=None)
            for layer in reversed(LAYER_ORDER):
                report.add(
                    LayerOutcome(layer.value, Transition.ALREADY_DOWN, "no active slot for image")
                )
        else:
            target = self.target_for(resolved, slot, mountpoint)
            report = PipelineReport(action="close", target=target)
            for controller in reversed(self.controllers()):
                try:
                    report.add(controller.ensure_down(target))
                except LAYER_ERRORS as exc:
                    report.add(LayerOutcome(controller.layer.value, None, str(exc), error=exc))
        report.add(self._unload_kernel_module())
        return report

    def observe(self, image: Path, mountpoint: Path) -> PipelineObservation:
        """Probe every layer for *image* without changing anything."""
        resolved = Path(os.path.realpath(image))
        slot = self.resolve_slot(resolved, mountpoint)
        if slot is None:
            states = {layer: LayerState.down() for layer in LAYER_ORDER}
            return PipelineObservation(slot=None, states=states)
        target = self.target_for(resolved, slot, mountpoint)
        probe = self.probe
        states = {
            Layer.EXPORT: probe.probe_export(resolved),
            Layer.MAPPING: probe.probe_mapping(target.device),
            Layer.VOLUME: probe.probe_volume(target.volume_name),
            Layer.MOUNT: probe.probe_mount(target.volume_device, target.mountpoint),
        }
        return PipelineObservation(slot=slot, states=states)

    def resolve_slot(self, image: Path, mountpoint: Path) -> int | None:
        """Return the slot in use for *image*, from its export or its mount."""
        probe = self.probe
        state = probe.probe_export(image)
        if state.active:
            return state.identity.slot  # type: ignore[union-attr]
        return probe.slot_from_mountpoint(mountpoint)

    def _unload_kernel_module(self) -> LayerOutcome:
        if self.probe.active_exports():
            return LayerOutcome(KERNEL_STEP, None, "other exports are still running")
        try:
            self.kernel.unload(self.kernel_module)
        except CommandError as exc:
            return LayerOutcome(
                KERNEL_STEP,
                None,
                f"{self.kernel_module} left loaded",
                warnings=[f"Kernel module '{self.kernel_module}' not unloaded: {exc}"],
            )
        return LayerOutcome(KERNEL_STEP, Transition.BROUGHT_DOWN, self.kernel_module)


__all__ = ["LifecycleOrchestrator"]
