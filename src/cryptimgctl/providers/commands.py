"""Shared subprocess helper for the external tool providers."""
from __future__ import annotations

import subprocess
from collections.abc import Mapping, Sequence


class CommandError(RuntimeError):
    """Raised when an external command cannot be run or exits non-zero."""

    def __init__(
        self,
        message: str,
        *,
        args: Sequence[str] = (),
        returncode: int | None = None,
        stdout: str = "",
        stderr: str = "",
    ) -> None:
        """Capture the command context alongside the message."""
        super().__init__(message)
        self.command = list(args)
        self.returncode = returncode
        self.stdout = stdout
        self.stderr = stderr


def _decode(value: str | bytes | None) -> str:
    if value is None:
        return ""
    if isinstance(value, bytes):
        return value.decode("utf-8", errors="replace")
    return value


def run_command(
    args: Sequence[str],
    *,
    check: bool = True,
    error_prefix: str | None = None,
    input_bytes: bytes | None = None,
    env: Mapping[str, str] | None = None,
    error_cls: type[CommandError] = CommandError,
) -> subprocess.CompletedProcess[str]:
    """Run *args* capturing output; raise *error_cls* on failure when *check* is set.

    When *input_bytes* is given the child receives it on stdin and the process
    runs in binary mode; captured output is decoded before returning so callers
    always see text.
    """
    prefix = error_prefix or " ".join(args[:2])
    try:
        if input_bytes is not None:
            raw = subprocess.run(  # noqa: S603
                list(args),
                input=input_bytes,
                capture_output=True,
                check=False,
                env=dict(env) if env is not None else None,
            )
            result = subprocess.CompletedProcess(
                raw.args,
                raw.returncode,
                stdout=_decode(raw.stdout),
                stderr=_decode(raw.stderr),
            )
        else:
            result = subprocess.run(  # noqa: S603
                list(args),
                capture_output=True,
                text=True,
                check=False,
                env=dict(env) if env is not None else None,
            )
    except FileNotFoundError as exc:
        raise error_cls(f"{args[0]} not found: {exc}", args=args) from exc
    if check and result.returncode != 0:
        stdout = _decode(getattr(result, "stdout", "")).strip()
        stderr = _decode(getattr(result, "stderr", "")).strip()
        message = stderr or stdout or "no output"
        raise error_cls(
            f"{prefix} failed (exit {result.returncode}): {message}",
            args=args,
            returncode=result.returncode,
            stdout=stdout,
            stderr=stderr,
        )
    return result


__all__ = ["CommandError", "run_command"]
