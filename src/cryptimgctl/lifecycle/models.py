"""Data models shared by the lifecycle probes, controllers and orchestrator."""
from __future__ import annotations

from dataclasses import dataclass, field
from enum import Enum
from pathlib import Path

from ..errors import CryptImgError
from ..exit_codes import ExitCode
from ..providers.cryptsetup import volume_name_for_slot
from ..providers.qemu_nbd import endpoint_for_slot


class Layer(str, Enum):
    """Pipeline layers in dependency order."""

    EXPORT = "export"
    MAPPING = "mapping"
    VOLUME = "volume"
    MOUNT = "mount"


LAYER_ORDER: tuple[Layer, ...] = (Layer.EXPORT, Layer.MAPPING, Layer.VOLUME, Layer.MOUNT)
KERNEL_STEP = "kernel-module"


class Transition(str, Enum):
    """Outcome of an ``ensure_up``/``ensure_down`` call."""

    ALREADY_UP = "already-up"
    BROUGHT_UP = "brought-up"
    ALREADY_DOWN = "already-down"
    BROUGHT_DOWN = "brought-down"

    @property
    def changed(self) -> bool:
        """Return ``True`` when the transition mutated system state."""
        return self in (Transition.BROUGHT_UP, Transition.BROUGHT_DOWN)


class PipelineStage(str, Enum):
    """Observed state of the pipeline as a whole."""

    ALL_DOWN = "all-down"
    EXPORT_UP = "export-up"
    MAPPING_UP = "mapping-up"
    VOLUME_UP = "volume-up"
    MOUNT_UP = "mount-up"


_STAGE_BY_DEPTH = (
    PipelineStage.ALL_DOWN,
    PipelineStage.EXPORT_UP,
    PipelineStage.MAPPING_UP,
    PipelineStage.VOLUME_UP,
    PipelineStage.MOUNT_UP,
)


@dataclass(slots=True, frozen=True)
class LayerState:
    """Result of probing one layer: ``Active(identity)`` or ``Inactive``."""

    active: bool
    identity: object | None = None

    @classmethod
    def up(cls, identity: object | None = None) -> LayerState:
        """Return an active state carrying *identity*."""
        return cls(active=True, identity=identity)

    @classmethod
    def down(cls) -> LayerState:
        """Return an inactive state."""
        return cls(active=False)


@dataclass(slots=True, frozen=True)
class PipelineTarget:
    """Every identity derived from an image, its slot and its mountpoint."""

    image: Path
    slot: int
    mountpoint: Path
    endpoint: Path
    device: Path
    volume_name: str
    volume_device: Path

    @classmethod
    def build(
        cls,
        image: Path,
        slot: int,
        mountpoint: Path,
        *,
        runtime_dir: Path,
        device_dir: Path = Path("/dev"),
        mapper_dir: Path = Path("/dev/mapper"),
    ) -> PipelineTarget:
        """Derive endpoint, device and volume names from *slot*."""
        name = volume_name_for_slot(slot)
        return cls(
            image=image,
            slot=slot,
            mountpoint=mountpoint,
            endpoint=endpoint_for_slot(runtime_dir, slot),
            device=device_dir / f"nbd{slot}",
            volume_name=name,
            volume_device=mapper_dir / name,
        )

    def to_dict(self) -> dict[str, object]:
        """Return a serialisable representation."""
        return {
            "image": str(self.image),
            "slot": self.slot,
            "mountpoint": str(self.mountpoint),
            "endpoint": str(self.endpoint),
            "device": str(self.device),
            "volume": self.volume_name,
        }


@dataclass(slots=True)
class LayerOutcome:
    """What happened to one layer (or the kernel module) during an action."""

    name: str
    transition: Transition | None
    detail: str = ""
    warnings: list[str] = field(default_factory=list)
    error: Exception | None = None

    @property
    def failed(self) -> bool:
        """Return ``True`` when the step raised."""
        return self.error is not None

    @property
    def status(self) -> str:
        """Return a short label for display and logs."""
        if self.error is not None:
            return "failed"
        if self.transition is None:
            return "skipped"
        return self.transition.value


@dataclass(slots=True)
class PipelineReport:
    """Ordered layer outcomes for one ``open`` or ``close`` action."""

    action: str
    target: PipelineTarget | None
    outcomes: list[LayerOutcome] = field(default_factory=list)

    def add(self, outcome: LayerOutcome) -> None:
        """Append *outcome*."""
        self.outcomes.append(outcome)

    @property
    def errors(self) -> list[Exception]:
        """Return the errors recorded across all steps, in order."""
        return [outcome.error for outcome in self.outcomes if outcome.error is not None]

    @property
    def warnings(self) -> list[str]:
        """Return warnings recorded across all steps."""
        return [warning for outcome in self.outcomes for warning in outcome.warnings]

    @property
    def ok(self) -> bool:
        """Return ``True`` when no step failed."""
        return not self.errors

    @property
    def changed(self) -> int:
        """Return the number of steps that mutated system state."""
        return sum(
            1
            for outcome in self.outcomes
            if outcome.transition is not None and outcome.transition.changed
        )

    @property
    def exit_code(self) -> ExitCode:
        """Return the CLI exit code implied by the first recorded error."""
        errors = self.errors
        if not errors:
            return ExitCode.OK
        first = errors[0]
        if self.action == "open" and isinstance(first, CryptImgError):
            return first.exit_code
        return ExitCode.FAILURE

    def outcome_for(self, name: str) -> LayerOutcome | None:
        """Return the outcome recorded for step *name*."""
        for outcome in self.outcomes:
            if outcome.name == name:
                return outcome
        return None


@dataclass(slots=True, frozen=True)
class PipelineObservation:
    """Per-layer probe results for one image."""

    slot: int | None
    states: dict[Layer, LayerState]

    @property
    def stage(self) -> PipelineStage:
        """Return the deepest stage reached by contiguous active layers."""
        depth = 0
        for layer in LAYER_ORDER:
            if not self.states.get(layer, LayerState.down()).active:
                break
            depth += 1
        return _STAGE_BY_DEPTH[depth]


__all__ = [
    "KERNEL_STEP",
    "LAYER_ORDER",
    "Layer",
    "LayerOutcome",
    "LayerState",
    "PipelineObservation",
    "PipelineReport",
    "PipelineStage",
    "PipelineTarget",
    "Transition",
]
