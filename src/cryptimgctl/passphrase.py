"""Passphrase retrieval through an operator-supplied command.

The command runs as the image owner, not as root, so it can reach the
owner's keyring or password store. Its standard output, byte for byte, is
the passphrase: the same bytes key the container at setup time and unlock
it later. Standard error and standard input stay attached to the terminal
so interactive prompts keep working.
"""
from __future__ import annotations

import os
import subprocess
from collections.abc import Callable
from dataclasses import dataclass

from .errors import PassphraseRetrievalError, WeakPassphraseError
from .privilege import Owner

Runner = Callable[..., subprocess.CompletedProcess[bytes]]


class Secret:
    """Opaque passphrase bytes that never show up in reprs or logs."""

    __slots__ = ("_value",)

    def __init__(self, value: bytes) -> None:
        """Wrap *value*."""
        self._value = value

    def reveal(self) -> bytes:
        """Return the raw passphrase bytes."""
        return self._value

    def __len__(self) -> int:
        """Return the passphrase length in bytes."""
        return len(self._value)

    def __repr__(self) -> str:
        """Hide the value."""
        return "Secret(***)"

    __str__ = __repr__


@dataclass(slots=True)
class PassphraseSource:
    """Run the passphrase command with the owner's identity."""

    runner: Runner | None = None
    shell: str = "/bin/sh"

    def retrieve(
        self,
        owner: Owner,
        command: str,
        *,
        min_length: int | None = None,
    ) -> Secret:
        """Return the command's stdout as a :class:`Secret`.

        *min_length* is enforced only when given; setup passes it so new
        containers never get a short passphrase.
        """
        if not command.strip():
            raise PassphraseRetrievalError("No passphrase command configured.")
        runner = self.runner or subprocess.run
        try:
            result = runner(
                [self.shell, "-c", command],
                stdout=subprocess.PIPE,
                check=False,
                env=_owner_env(owner),
                cwd=str(owner.home) if owner.home.is_dir() else "/",
                **_identity_kwargs(owner),
            )
        except (OSError, subprocess.SubprocessError) as exc:
            raise PassphraseRetrievalError(
                f"Failed to run passphrase command as {owner.name}: {exc}"
            ) from exc
        if result.returncode != 0:
            raise PassphraseRetrievalError(
                f"Passphrase command exited with status {result.returncode}."
            )
        secret = Secret(result.stdout or b"")
        if not len(secret):
            raise PassphraseRetrievalError("Passphrase command produced no output.")
        if min_length is not None and len(secret) < min_length:
            raise WeakPassphraseError(
                f"Passphrase is {len(secret)} bytes; at least {min_length} are required."
            )
        return secret


def _owner_env(owner: Owner) -> dict[str, str]:
    env = dict(os.environ)
    env.update(
        {
            "HOME": str(owner.home),
            "USER": owner.name,
            "LOGNAME": owner.name,
        }
    )
    return env


def _identity_kwargs(owner: Owner) -> dict[str, object]:
    if os.geteuid() != 0 or owner.uid == os.geteuid():
        return {}
    return {
        "user": owner.uid,
        "group": owner.gid,
        "extra_groups": os.getgrouplist(owner.name, owner.gid),
    }


__all__ = ["PassphraseSource", "Secret"]
