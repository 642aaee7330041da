"""Layered resource lifecycle: probes, slot allocation, controllers, orchestration."""

from __future__ import annotations

from .allocator import allocate_or_reuse_slot, next_free_slot
from .controllers import (
    ExportController,
    LayerController,
    MappingController,
    MountController,
    VolumeController,
)
from .fsck import FsckStatus, FsckVerdict, classify_fsck, decode_fsck_status
from .models import (
    KERNEL_STEP,
    LAYER_ORDER,
    Layer,
    LayerOutcome,
    LayerState,
    PipelineObservation,
    PipelineReport,
    PipelineStage,
    PipelineTarget,
    Transition,
)
from .orchestrator import LifecycleOrchestrator
from .probes import ResourceProbe

__all__ = [
    "ExportController",
    "FsckStatus",
    "FsckVerdict",
    "KERNEL_STEP",
    "LAYER_ORDER",
    "Layer",
    "LayerController",
    "LayerOutcome",
    "LayerState",
    "LifecycleOrchestrator",
    "MappingController",
    "MountController",
    "PipelineObservation",
    "PipelineReport",
    "PipelineStage",
    "PipelineTarget",
    "ResourceProbe",
    "Transition",
    "VolumeController",
    "allocate_or_reuse_slot",
    "classify_fsck",
    "decode_fsck_status",
    "next_free_slot",
]
