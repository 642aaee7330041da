"""Privilege boundary: the invoking owner and re-execution under sudo."""
from __future__ import annotations

import os
import pwd
import shutil
import sys
from collections.abc import Callable, Mapping, Sequence
from dataclasses import dataclass
from pathlib import Path

from .config import CONFIG_ENV_VAR, ELEVATED_ENV_VAR
from .errors import ArgumentValidationError, PrivilegeEscalationError

Exec = Callable[[str, list[str], dict[str, str]], object]


@dataclass(slots=True, frozen=True)
class Owner:
    """The unprivileged user an image belongs to."""

    name: str
    uid: int
    gid: int
    home: Path

    @classmethod
    def from_pwd(cls, entry: pwd.struct_passwd) -> Owner:
        """Build an owner from a passwd entry."""
        return cls(
            name=entry.pw_name,
            uid=entry.pw_uid,
            gid=entry.pw_gid,
            home=Path(entry.pw_dir),
        )


def lookup_owner(name: str) -> Owner:
    """Return the owner named *name*."""
    normalized = name.strip()
    if not normalized:
        raise ArgumentValidationError("Owner must be a non-empty user name.")
    try:
        return Owner.from_pwd(pwd.getpwnam(normalized))
    except KeyError as exc:
        raise ArgumentValidationError(f"Unknown user '{normalized}'.") from exc


def invoking_user(env: Mapping[str, str] | None = None) -> Owner:
    """Return the user who ran the tool before any elevation."""
    resolved_env = os.environ if env is None else env
    sudo_user = resolved_env.get("SUDO_USER", "").strip()
    if sudo_user:
        try:
            return Owner.from_pwd(pwd.getpwnam(sudo_user))
        except KeyError:
            pass
    sudo_uid = resolved_env.get("SUDO_UID", "").strip()
    if sudo_uid.isdigit():
        try:
            return Owner.from_pwd(pwd.getpwuid(int(sudo_uid)))
        except KeyError:
            pass
    return Owner.from_pwd(pwd.getpwuid(os.getuid()))


def is_privileged() -> bool:
    """Return ``True`` when running with an effective uid of root."""
    return os.geteuid() == 0


def ensure_privileged(
    argv: Sequence[str],
    *,
    sudo_bin: str = "sudo",
    env: Mapping[str, str] | None = None,
    execvpe: Exec | None = None,
) -> None:
    """Return when already root; otherwise replace the process with a sudo re-exec.

    The re-executed process carries a marker variable so a sudo setup that
    does not actually grant root fails instead of looping.
    """
    if is_privileged():
        return
    resolved_env = dict(os.environ if env is None else env)
    if resolved_env.get(ELEVATED_ENV_VAR):
        raise PrivilegeEscalationError("Elevation via sudo did not yield root privileges.")
    sudo = shutil.which(sudo_bin)
    if sudo is None:
        raise PrivilegeEscalationError(f"'{sudo_bin}' not found; run this command as root.")

    resolved_env[ELEVATED_ENV_VAR] = "1"
    command = [
        sudo,
        f"--preserve-env={ELEVATED_ENV_VAR},{CONFIG_ENV_VAR}",
        "--",
        sys.executable,
        *argv,
    ]
    runner = execvpe or os.execvpe
    try:
        runner(sudo, command, resolved_env)
    except OSError as exc:
        raise PrivilegeEscalationError(f"Failed to re-run under {sudo_bin}: {exc}") from exc


__all__ = ["Owner", "ensure_privileged", "invoking_user", "is_privileged", "lookup_owner"]
