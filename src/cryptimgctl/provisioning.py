"""One-shot creation of a new encrypted image.

This is a linear procedure, not a state machine: the first failure aborts
and nothing that was already created is cleaned up. The operator is expected
to remove partial artefacts by hand, which keeps the flow simple for a task
that runs once per image.
"""
from __future__ import annotations

import os
import re
from collections.abc import Callable
from dataclasses import dataclass, field
from pathlib import Path

from .config import AppConfig
from .errors import (
    ArgumentValidationError,
    OwnershipMismatchError,
    ResourceAbsentError,
    ResourceConflictError,
)
from .lifecycle import LifecycleOrchestrator, PipelineReport, PipelineTarget
from .passphrase import PassphraseSource
from .privilege import Owner
from .templates import TemplateEngine

HELPER_TEMPLATE = "helper.sh.j2"

_SIZE_PATTERN = re.compile(r"^\s*(\d+)\s*([kmgtp]?)(i?b)?\s*$", re.IGNORECASE)
_SIZE_UNITS = {"": 1, "k": 1 << 10, "m": 1 << 20, "g": 1 << 30, "t": 1 << 40, "p": 1 << 50}
_SLOT_PATTERN = re.compile(r"^(?:/dev/)?(?:nbd)?(\d+)$")

Chown = Callable[[Path, int, int], None]


def parse_size(value: str) -> int:
    """Parse ``512M``/``20G``/``1TiB``/``4096`` into bytes (binary units)."""
    match = _SIZE_PATTERN.match(value or "")
    if match is None:
        raise ArgumentValidationError(f"Invalid size '{value}'. Use e.g. 512M, 20G or 1T.")
    size = int(match.group(1)) * _SIZE_UNITS[match.group(2).lower()]
    if size <= 0:
        raise ArgumentValidationError("Size must be greater than zero.")
    return size


def parse_slot(value: str) -> int:
    """Parse ``3``, ``nbd3`` or ``/dev/nbd3`` into slot ``3``."""
    match = _SLOT_PATTERN.match(value.strip())
    if match is None:
        raise ArgumentValidationError(
            f"Invalid NBD device '{value}'. Use N, nbdN or /dev/nbdN."
        )
    return int(match.group(1))


@dataclass(slots=True, frozen=True)
class CreateRequest:
    """Everything the setup tool was asked to create."""

    image: Path
    size: int
    mountpoint: Path
    owner: Owner
    password_command: str
    script: Path
    slot: int | None = None


@dataclass(slots=True)
class CreateResult:
    """What setup produced."""

    target: PipelineTarget
    script: Path
    steps: list[str] = field(default_factory=list)
    close_report: PipelineReport | None = None


def _default_chown(path: Path, uid: int, gid: int) -> None:
    os.chown(path, uid, gid)


@dataclass(slots=True)
class Provisioner:
    """Create an image, format it and emit its helper script."""

    config: AppConfig
    orchestrator: LifecycleOrchestrator
    passphrase: PassphraseSource
    templates: TemplateEngine
    chown: Chown = _default_chown

    # ------------------------------------------------------------------
    def validate(self, request: CreateRequest) -> None:
        """Check every precondition before anything is created."""
        for label, value in (
            ("image", request.image),
            ("mount", request.mountpoint),
            ("script", request.script),
        ):
            if not str(value).strip():
                raise ArgumentValidationError(f"--{label} must not be empty.")
        if not request.password_command.strip():
            raise ArgumentValidationError("--password must not be empty.")
        if request.size <= 0:
            raise ArgumentValidationError("--size must be greater than zero.")

        for label, path in (
            ("Image", request.image),
            ("Mountpoint", request.mountpoint),
            ("Script", request.script),
        ):
            if path.exists() or path.is_symlink():
                raise ResourceConflictError(f"{label} {path} already exists.")
            self._check_parent(path, request.owner)

    def choose_slot(self, request: CreateRequest) -> int:
        """Return a slot that no export or mapping currently uses."""
        probe = self.orchestrator.probe
        if request.slot is None:
            return self.orchestrator.allocate_slot(request.image)
        slot = request.slot
        if any(export.slot == slot for export in probe.active_exports()):
            raise ResourceConflictError(f"/dev/nbd{slot} is already in use by an export.")
        device = self.orchestrator.device_dir / f"nbd{slot}"
        if probe.probe_mapping(device).active:
            raise ResourceConflictError(f"{device} is already connected.")
        return slot

    def create(self, request: CreateRequest) -> CreateResult:
        """Run the whole setup flow; the image ends up closed."""
        self.validate(request)
        slot = self.choose_slot(request)
        secret = self.passphrase.retrieve(
            request.owner,
            request.password_command,
            min_length=self.config.min_passphrase_length,
        )
        image = request.image.absolute()
        target = self.orchestrator.target_for(image, slot, request.mountpoint)
        result = CreateResult(target=target, script=request.script)
        owner = request.owner
        orchestrator = self.orchestrator

        self._allocate_image(image, request.size, owner)
        result.steps.append(f"allocated {request.size} bytes at {image}")

        orchestrator.kernel.load(orchestrator.kernel_module)
        if not target.device.exists():
            raise ResourceAbsentError(f"Device {target.device} does not exist.")
        orchestrator.exports.start(image, target.endpoint)
        result.steps.append(f"exported on {target.endpoint}")

        orchestrator.mappings.connect(target.endpoint, target.device)
        result.steps.append(f"connected {target.device}")

        orchestrator.volumes.format(
            target.device, secret.reveal(), luks_type=self.config.luks_type
        )
        orchestrator.volumes.open(target.device, target.volume_name, secret.reveal())
        result.steps.append(f"formatted and opened {target.volume_name}")

        orchestrator.filesystems.make(target.volume_device)
        result.steps.append(f"created filesystem on {target.volume_device}")

        request.mountpoint.mkdir(mode=0o755)
        self.chown(request.mountpoint, owner.uid, owner.gid)
        orchestrator.filesystems.mount(target.volume_device, request.mountpoint)
        self.chown(request.mountpoint, owner.uid, owner.gid)
        orchestrator.filesystems.trim(request.mountpoint)
        result.steps.append(f"mounted at {request.mountpoint}")

        self.write_helper_script(request, image)
        result.steps.append(f"wrote helper script {request.script}")

        result.close_report = orchestrator.close(image, request.mountpoint)
        return result

    def write_helper_script(self, request: CreateRequest, image: Path) -> None:
        """Render the open/close helper script for this image."""
        self.templates.render_to_path(
            HELPER_TEMPLATE,
            request.script,
            {
                "image": str(image),
                "mountpoint": str(request.mountpoint.absolute()),
                "password_command": request.password_command,
                "lifecycle_command": self.config.lifecycle_command,
                "script_name": request.script.name,
            },
            mode=0o755,
        )
        self.chown(request.script, request.owner.uid, request.owner.gid)

    # ------------------------------------------------------------------
    def _allocate_image(self, image: Path, size: int, owner: Owner) -> None:
        fd = os.open(image, os.O_WRONLY | os.O_CREAT | os.O_EXCL, 0o600)
        try:
            os.ftruncate(fd, size)
        finally:
            os.close(fd)
        self.chown(image, owner.uid, owner.gid)

    @staticmethod
    def _check_parent(path: Path, owner: Owner) -> None:
        parent = path.absolute().parent
        if not parent.is_dir():
            raise ResourceAbsentError(f"Directory {parent} does not exist.")
        actual = parent.stat().st_uid
        if actual != owner.uid:
            raise OwnershipMismatchError(
                f"Directory {parent} is owned by uid {actual}, expected {owner.name} "
                f"(uid {owner.uid})."
            )


__all__ = [
    "CreateRequest",
    "CreateResult",
    "HELPER_TEMPLATE",
    "Provisioner",
    "parse_size",
    "parse_slot",
]
