"""Tests for the privilege boundary helpers."""
from __future__ import annotations

import os
import pwd
import sys

import pytest

from cryptimgctl import privilege
from cryptimgctl.errors import ArgumentValidationError, PrivilegeEscalationError
from cryptimgctl.privilege import ensure_privileged, invoking_user, lookup_owner


class ExecRecorder:
    """Capture the would-be ``execvpe`` call."""

    def __init__(self) -> None:
        """Start with no call recorded."""
        self.calls: list[tuple[str, list[str], dict[str, str]]] = []

    def __call__(self, file: str, args: list[str], env: dict[str, str]) -> None:
        """Record the call instead of replacing the process."""
        self.calls.append((file, args, env))


def _as_user(monkeypatch: pytest.MonkeyPatch, sudo: str | None = "/usr/bin/sudo") -> None:
    monkeypatch.setattr(privilege.os, "geteuid", lambda: 1000)
    monkeypatch.setattr(privilege.shutil, "which", lambda name: sudo)


def test_ensure_privileged_is_noop_for_root(monkeypatch: pytest.MonkeyPatch) -> None:
    """Root continues without re-executing."""
    monkeypatch.setattr(privilege.os, "geteuid", lambda: 0)
    recorder = ExecRecorder()

    ensure_privileged(["cryptimgctl", "x.img", "open"], env={}, execvpe=recorder)

    assert recorder.calls == []


def test_ensure_privileged_reexecs_under_sudo(monkeypatch: pytest.MonkeyPatch) -> None:
    """Non-root callers are re-run through sudo with a loop marker."""
    _as_user(monkeypatch)
    recorder = ExecRecorder()

    ensure_privileged(
        ["/usr/bin/cryptimgctl", "x.img", "open"],
        env={"PATH": "/usr/bin"},
        execvpe=recorder,
    )

    file, args, env = recorder.calls[0]
    assert file == "/usr/bin/sudo"
    assert args == [
        "/usr/bin/sudo",
        "--preserve-env=CRYPTIMGCTL_ELEVATED,CRYPTIMGCTL_CONFIG_FILE",
        "--",
        sys.executable,
        "/usr/bin/cryptimgctl",
        "x.img",
        "open",
    ]
    assert env["CRYPTIMGCTL_ELEVATED"] == "1"
    assert env["PATH"] == "/usr/bin"


def test_ensure_privileged_refuses_to_loop(monkeypatch: pytest.MonkeyPatch) -> None:
    """Still unprivileged after elevation is an error, not another re-exec."""
    _as_user(monkeypatch)
    recorder = ExecRecorder()

    with pytest.raises(PrivilegeEscalationError, match="did not yield root"):
        ensure_privileged(["cryptimgctl"], env={"CRYPTIMGCTL_ELEVATED": "1"}, execvpe=recorder)
    assert recorder.calls == []


def test_ensure_privileged_without_sudo(monkeypatch: pytest.MonkeyPatch) -> None:
    """Missing sudo is reported."""
    _as_user(monkeypatch, sudo=None)

    with pytest.raises(PrivilegeEscalationError, match="not found"):
        ensure_privileged(["cryptimgctl"], env={}, execvpe=ExecRecorder())


def test_ensure_privileged_exec_failure(monkeypatch: pytest.MonkeyPatch) -> None:
    """An exec that fails surfaces as a privilege error."""
    _as_user(monkeypatch)

    def broken(file: str, args: list[str], env: dict[str, str]) -> None:
        raise PermissionError("denied")

    with pytest.raises(PrivilegeEscalationError, match="denied"):
        ensure_privileged(["cryptimgctl"], env={}, execvpe=broken)


def test_invoking_user_prefers_sudo_user() -> None:
    """SUDO_USER identifies the original caller."""
    current = pwd.getpwuid(os.getuid())

    owner = invoking_user({"SUDO_USER": current.pw_name})

    assert owner.uid == current.pw_uid
    assert owner.name == current.pw_name


def test_invoking_user_falls_back_to_uid() -> None:
    """Unknown or absent sudo variables fall back to the real uid."""
    owner = invoking_user({"SUDO_USER": "no-such-user-cryptimgctl"})

    assert owner.uid == os.getuid()


def test_invoking_user_uses_sudo_uid() -> None:
    """SUDO_UID works when SUDO_USER is absent."""
    owner = invoking_user({"SUDO_UID": str(os.getuid())})

    assert owner.uid == os.getuid()


@pytest.mark.parametrize("name", ["", "   ", "no-such-user-cryptimgctl"])
def test_lookup_owner_rejects_unknown(name: str) -> None:
    """Owners must be existing users."""
    with pytest.raises(ArgumentValidationError):
        lookup_owner(name)


def test_lookup_owner_resolves_existing_user() -> None:
    """Existing users resolve to their passwd entry."""
    current = pwd.getpwuid(os.getuid())

    assert lookup_owner(current.pw_name).uid == current.pw_uid
