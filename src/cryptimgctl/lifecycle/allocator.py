"""NBD slot allocation.

The slot namespace is shared with every other NBD consumer on the host and
there is no registry: the slot for an image is whatever its running export
uses, and a fresh slot is one past the highest slot any export currently
holds. Callers serialise allocation plus activation with
:meth:`cryptimgctl.locking.LockManager.global_lock`.
"""
from __future__ import annotations

from pathlib import Path

from .probes import ResourceProbe


def next_free_slot(active_slots: set[int]) -> int:
    """Return ``max(active_slots) + 1``, or ``0`` when nothing is active."""
    if not active_slots:
        return 0
    return max(active_slots) + 1


def allocate_or_reuse_slot(
    probe: ResourceProbe,
    image: Path,
    *,
    device_dir: Path = Path("/dev"),
) -> int:
    """Return the slot already serving *image*, or a fresh one."""
    state = probe.probe_export(image)
    if state.active:
        return state.identity.slot  # type: ignore[union-attr]

    slots = {export.slot for export in probe.active_exports() if export.slot >= 0}
    candidate = next_free_slot(slots)
    # A device still connected without its export must not be handed out again.
    while probe.probe_mapping(device_dir / f"nbd{candidate}").active:
        candidate += 1
    return candidate


__all__ = ["allocate_or_reuse_slot", "next_free_slot"]
