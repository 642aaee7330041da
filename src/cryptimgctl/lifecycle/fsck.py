"""Decoding of filesystem-check exit statuses.

``fsck`` reports a bitwise sum of independent conditions. Statuses up to 2
mean the filesystem is clean or was repaired and may be mounted; anything
higher aborts the open sequence.
"""
from __future__ import annotations

from dataclasses import dataclass
from enum import IntFlag

FATAL_THRESHOLD = 2


class FsckStatus(IntFlag):
    """Named conditions encoded in an ``fsck`` exit status."""

    NO_ERRORS = 0
    ERRORS_CORRECTED = 1
    REBOOT_REQUIRED = 2
    ERRORS_UNCORRECTED = 4
    OPERATIONAL_ERROR = 8
    USAGE_ERROR = 16
    CANCELED = 32
    SHARED_LIBRARY_ERROR = 128


_KNOWN_FLAGS = (
    FsckStatus.ERRORS_CORRECTED,
    FsckStatus.REBOOT_REQUIRED,
    FsckStatus.ERRORS_UNCORRECTED,
    FsckStatus.OPERATIONAL_ERROR,
    FsckStatus.USAGE_ERROR,
    FsckStatus.CANCELED,
    FsckStatus.SHARED_LIBRARY_ERROR,
)


@dataclass(slots=True, frozen=True)
class FsckVerdict:
    """Classification of one ``fsck`` status."""

    status: int
    flags: tuple[FsckStatus, ...]
    passed: bool

    def describe(self) -> str:
        """Return the decoded condition names, comma separated."""
        if self.status < 0:
            return f"terminated by signal {-self.status}"
        return ", ".join(flag.name.lower().replace("_", "-") for flag in self.flags)

    @property
    def corrected(self) -> bool:
        """Return ``True`` when errors were repaired."""
        return FsckStatus.ERRORS_CORRECTED in self.flags or self.reboot_required

    @property
    def reboot_required(self) -> bool:
        """Return ``True`` when the check asked for a reboot."""
        return FsckStatus.REBOOT_REQUIRED in self.flags


def decode_fsck_status(status: int) -> tuple[FsckStatus, ...]:
    """Split *status* into its named conditions."""
    if status <= 0:
        return (FsckStatus.NO_ERRORS,) if status == 0 else ()
    return tuple(flag for flag in _KNOWN_FLAGS if status & flag)


def classify_fsck(status: int) -> FsckVerdict:
    """Return whether mounting may proceed after a check that exited with *status*."""
    return FsckVerdict(
        status=status,
        flags=decode_fsck_status(status),
        passed=0 <= status <= FATAL_THRESHOLD,
    )


__all__ = ["FATAL_THRESHOLD", "FsckStatus", "FsckVerdict", "classify_fsck", "decode_fsck_status"]
