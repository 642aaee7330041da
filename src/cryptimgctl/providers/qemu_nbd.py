"""Export provider wrapping ``qemu-nbd``.

Exports are background processes with no persisted handle: they are
discovered by scanning the process table and addressed by pid. Each running
``qemu-nbd`` is reduced to an :class:`ExportProcess` view holding the slot it
serves, the image it exports and its socket endpoint.
"""
from __future__ import annotations

import os
import re
import subprocess
import tempfile
from collections.abc import Iterable, Sequence
from dataclasses import dataclass
from pathlib import Path

import psutil

from .commands import CommandError

SOCKET_PATTERN = re.compile(r"^nbd(\d+)\.sock$")
DEVICE_PATTERN = re.compile(r"^/dev/nbd(\d+)$")

# Options that consume the following argument (or an ``=value`` suffix).
_VALUE_OPTIONS = {
    "-p", "--port",
    "-b", "--bind",
    "-k", "--socket",
    "-o", "--offset",
    "-P", "--partition",
    "-B", "--bitmap",
    "-l", "--load-snapshot",
    "-f", "--format",
    "-c", "--connect",
    "-e", "--shared",
    "-x", "--export-name",
    "-D", "--description",
    "-T", "--trace",
    "--object",
    "--tls-creds",
    "--tls-hostname",
    "--tls-authz",
    "--pid-file",
    "--cache",
    "--aio",
    "--discard",
    "--detect-zeroes",
    "--handshake-limit",
}
_SHORT_VALUE_OPTIONS = {option for option in _VALUE_OPTIONS if len(option) == 2}


class ExportError(CommandError):
    """Raised when the export service cannot be started or stopped."""


@dataclass(slots=True, frozen=True)
class ExportProcess:
    """A running export as observed in the process table."""

    pid: int
    slot: int
    image: Path
    endpoint: Path | None = None


@dataclass(slots=True, frozen=True)
class ExportCommandLine:
    """Fields extracted from a ``qemu-nbd`` argument vector."""

    slot: int
    image: str
    endpoint: str | None = None


def endpoint_for_slot(runtime_dir: Path, slot: int) -> Path:
    """Return the socket path an export for *slot* listens on."""
    return runtime_dir / f"nbd{slot}.sock"


def parse_export_cmdline(cmdline: Sequence[str]) -> ExportCommandLine | None:
    """Extract slot, image and endpoint from a ``qemu-nbd`` command line.

    Returns ``None`` when the slot or image cannot be determined.
    """
    socket: str | None = None
    connect: str | None = None
    positionals: list[str] = []
    tokens = list(cmdline[1:])
    index = 0
    while index < len(tokens):
        token = tokens[index]
        index += 1
        name, value = token, None
        if token.startswith("--") and "=" in token:
            name, value = token.split("=", 1)
        elif (
            not token.startswith("--")
            and token[:2] in _SHORT_VALUE_OPTIONS
            and len(token) > 2
        ):
            name, value = token[:2], token[2:]
        if name in _VALUE_OPTIONS:
            if value is None:
                if index >= len(tokens):
                    return None
                value = tokens[index]
                index += 1
            if name in {"-k", "--socket"}:
                socket = value
            elif name in {"-c", "--connect"}:
                connect = value
            continue
        if token.startswith("-"):
            continue
        positionals.append(token)

    if not positionals:
        return None
    slot: int | None = None
    if socket is not None:
        match = SOCKET_PATTERN.match(Path(socket).name)
        if match:
            slot = int(match.group(1))
    if slot is None and connect is not None:
        match = DEVICE_PATTERN.match(connect)
        if match:
            slot = int(match.group(1))
    if slot is None:
        return None
    return ExportCommandLine(slot=slot, image=positionals[-1], endpoint=socket)


@dataclass(slots=True)
class QemuNbdProvider:
    """Start, list and stop ``qemu-nbd`` exports."""

    qemu_nbd_bin: str = "qemu-nbd"
    stop_timeout: float = 10.0

    def start(self, image: Path, endpoint: Path) -> None:
        """Serve *image* on *endpoint* as a forked, persistent background export."""
        args = [
            self.qemu_nbd_bin,
            "--fork",
            "--persistent",
            "--shared=1",
            "--discard=unmap",
            "--format=raw",
            f"--socket={endpoint}",
            str(image),
        ]
        endpoint.parent.mkdir(parents=True, exist_ok=True)
        # The forked server inherits stdio; a pipe would keep run() waiting on it.
        with tempfile.TemporaryFile() as errors:
            try:
                result = subprocess.run(  # noqa: S603
                    args,
                    stdin=subprocess.DEVNULL,
                    stdout=subprocess.DEVNULL,
                    stderr=errors,
                    check=False,
                    start_new_session=True,
                )
            except FileNotFoundError as exc:
                raise ExportError(f"{self.qemu_nbd_bin} not found: {exc}", args=args) from exc
            if result.returncode != 0:
                errors.seek(0)
                stderr = errors.read().decode("utf-8", errors="replace").strip()
                raise ExportError(
                    f"{self.qemu_nbd_bin} failed (exit {result.returncode}): "
                    f"{stderr or 'no output'}",
                    args=args,
                    returncode=result.returncode,
                    stderr=stderr,
                )

    def list_exports(self) -> list[ExportProcess]:
        """Return every running export whose command line identifies a slot."""
        program = Path(self.qemu_nbd_bin).name
        exports: list[ExportProcess] = []
        for proc in self._iter_processes():
            info = getattr(proc, "info", None) or {}
            cmdline = info.get("cmdline") or []
            name = info.get("name") or ""
            if not cmdline:
                continue
            if name != program and Path(cmdline[0]).name != program:
                continue
            parsed = parse_export_cmdline(cmdline)
            if parsed is None:
                continue
            image = Path(parsed.image)
            if not image.is_absolute():
                try:
                    image = Path(proc.cwd()) / image
                except (psutil.NoSuchProcess, psutil.AccessDenied):
                    continue
            exports.append(
                ExportProcess(
                    pid=int(info.get("pid", proc.pid)),
                    slot=parsed.slot,
                    image=Path(os.path.realpath(image)),
                    endpoint=Path(parsed.endpoint) if parsed.endpoint else None,
                )
            )
        return exports

    def stop(self, export: ExportProcess) -> bool:
        """Terminate *export*; return ``False`` when it had already exited."""
        try:
            process = psutil.Process(export.pid)
            process.terminate()
            process.wait(timeout=self.stop_timeout)
        except psutil.NoSuchProcess:
            return False
        except psutil.TimeoutExpired as exc:
            raise ExportError(
                f"Export pid {export.pid} did not exit within {self.stop_timeout:.0f}s."
            ) from exc
        except psutil.AccessDenied as exc:
            raise ExportError(f"Not permitted to signal export pid {export.pid}.") from exc
        if export.endpoint is not None:
            export.endpoint.unlink(missing_ok=True)
        return True

    @staticmethod
    def _iter_processes() -> Iterable[psutil.Process]:
        return psutil.process_iter(["pid", "name", "cmdline"])


__all__ = [
    "ExportCommandLine",
    "ExportError",
    "ExportProcess",
    "QemuNbdProvider",
    "endpoint_for_slot",
    "parse_export_cmdline",
]
