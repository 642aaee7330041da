"""Error taxonomy shared by the lifecycle and setup flows.

Each error carries the exit code the CLI reports for it, so command handlers
can translate failures without inspecting the concrete type.
"""
from __future__ import annotations

from .exit_codes import ExitCode


class CryptImgError(RuntimeError):
    """Base class for failures surfaced to the operator."""

    exit_code: ExitCode = ExitCode.FAILURE


class DependencyMissingError(CryptImgError):
    """Raised when required external tools are not installed."""

    exit_code = ExitCode.DEPENDENCY

    def __init__(self, missing: list[str]) -> None:
        """Record the missing binaries."""
        self.missing = list(missing)
        super().__init__(f"Missing required tools: {', '.join(self.missing)}.")


class PrivilegeEscalationError(CryptImgError):
    """Raised when the process cannot obtain root privileges."""

    exit_code = ExitCode.FAILURE


class ArgumentValidationError(CryptImgError):
    """Raised when mandatory arguments are missing or malformed."""

    exit_code = ExitCode.VALIDATION


class OwnershipMismatchError(CryptImgError):
    """Raised when a path parent is not owned by the expected owner."""

    exit_code = ExitCode.VALIDATION


class ResourceConflictError(CryptImgError):
    """Raised when a path or device is already present or in use."""

    exit_code = ExitCode.VALIDATION


class ResourceAbsentError(CryptImgError):
    """Raised when an expected path or device is missing."""

    exit_code = ExitCode.VALIDATION


class PassphraseRetrievalError(CryptImgError):
    """Raised when the passphrase command fails."""

    exit_code = ExitCode.FAILURE


class WeakPassphraseError(CryptImgError):
    """Raised when a new passphrase is shorter than the configured minimum."""

    exit_code = ExitCode.VALIDATION


class FilesystemCheckFatalError(CryptImgError):
    """Raised when the filesystem check reports an unrecoverable status."""

    exit_code = ExitCode.VALIDATION

    def __init__(self, status: int, detail: str = "") -> None:
        """Record the raw fsck status."""
        self.status = status
        message = f"Filesystem check failed with status {status}"
        if detail:
            message = f"{message} ({detail})"
        super().__init__(f"{message}; refusing to mount.")


class UnknownActionError(CryptImgError):
    """Raised when the lifecycle tool receives an unsupported action."""

    exit_code = ExitCode.FAILURE


__all__ = [
    "ArgumentValidationError",
    "CryptImgError",
    "DependencyMissingError",
    "FilesystemCheckFatalError",
    "OwnershipMismatchError",
    "PassphraseRetrievalError",
    "PrivilegeEscalationError",
    "ResourceAbsentError",
    "ResourceConflictError",
    "UnknownActionError",
    "WeakPassphraseError",
]
