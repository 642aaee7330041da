"""Pytest configuration helpers for the test suite."""

from __future__ import annotations

import os
import subprocess
from dataclasses import dataclass, field
from pathlib import Path

import pytest

from cryptimgctl.lifecycle import LifecycleOrchestrator
from cryptimgctl.passphrase import Secret
from cryptimgctl.providers.filesystem import MountEntry
from cryptimgctl.providers.qemu_nbd import SOCKET_PATTERN, ExportProcess


def pytest_collection_modifyitems(config: pytest.Config, items: list[pytest.Item]) -> None:
    """Skip expensive tests during mutation runs."""
    if not os.environ.get("MUTANT_UNDER_TEST"):
        return
    skip_marker = pytest.mark.skip(reason="Skipped during mutation run to avoid timeouts.")
    for item in items:
        if "mutation_timeout" in item.keywords:
            item.add_marker(skip_marker)


def _completed(args: list[str], returncode: int = 0) -> subprocess.CompletedProcess[str]:
    return subprocess.CompletedProcess(args, returncode, stdout="", stderr="")


class _Recorder:
    """Base for fakes: records calls and raises configured failures."""

    def __init__(self, calls: list[tuple[object, ...]]) -> None:
        self.calls = calls
        self.failures: dict[str, Exception] = {}

    def _record(self, name: str, *args: object) -> None:
        self.calls.append((name, *args))
        failure = self.failures.get(name)
        if failure is not None:
            raise failure


class FakeExports(_Recorder):
    """In-memory stand-in for ``QemuNbdProvider``."""

    def __init__(self, calls: list[tuple[object, ...]]) -> None:
        super().__init__(calls)
        self.running: list[ExportProcess] = []
        self._next_pid = 4000

    def start(self, image: Path, endpoint: Path) -> None:
        self._record("export.start", Path(image), Path(endpoint))
        match = SOCKET_PATTERN.match(Path(endpoint).name)
        assert match is not None
        self.add(Path(image), int(match.group(1)), endpoint=Path(endpoint))

    def add(self, image: Path, slot: int, *, endpoint: Path | None = None) -> ExportProcess:
        self._next_pid += 1
        export = ExportProcess(
            pid=self._next_pid,
            slot=slot,
            image=Path(os.path.realpath(image)),
            endpoint=endpoint,
        )
        self.running.append(export)
        return export

    def list_exports(self) -> list[ExportProcess]:
        return list(self.running)

    def stop(self, export: ExportProcess) -> bool:
        self._record("export.stop", export.pid)
        if export not in self.running:
            return False
        self.running.remove(export)
        return True


class FakeMappings(_Recorder):
    """In-memory stand-in for ``NbdClientProvider``."""

    def __init__(self, calls: list[tuple[object, ...]]) -> None:
        super().__init__(calls)
        self.connected: set[Path] = set()

    def is_connected(self, device: Path) -> bool:
        return Path(device) in self.connected

    def connect(self, endpoint: Path, device: Path) -> subprocess.CompletedProcess[str]:
        self._record("mapping.connect", Path(endpoint), Path(device))
        self.connected.add(Path(device))
        return _completed(["nbd-client"])

    def disconnect(self, device: Path) -> subprocess.CompletedProcess[str]:
        self._record("mapping.disconnect", Path(device))
        self.connected.discard(Path(device))
        return _completed(["nbd-client", "-d"])


class FakeVolumes(_Recorder):
    """In-memory stand-in for ``CryptsetupProvider``."""

    def __init__(self, calls: list[tuple[object, ...]], mapper_dir: Path) -> None:
        super().__init__(calls)
        self.mapper_dir = mapper_dir
        self.opened: dict[str, bytes] = {}
        self.formatted: dict[Path, tuple[bytes, str]] = {}

    def mapper_path(self, name: str) -> Path:
        return self.mapper_dir / name

    def is_open(self, name: str) -> bool:
        return name in self.opened

    def format(
        self, device: Path, passphrase: bytes, *, luks_type: str = "luks2"
    ) -> subprocess.CompletedProcess[str]:
        self._record("volume.format", Path(device))
        self.formatted[Path(device)] = (passphrase, luks_type)
        return _completed(["cryptsetup", "luksFormat"])

    def open(self, device: Path, name: str, passphrase: bytes) -> subprocess.CompletedProcess[str]:
        self._record("volume.open", Path(device), name)
        self.opened[name] = passphrase
        return _completed(["cryptsetup", "open"])

    def close(self, name: str) -> subprocess.CompletedProcess[str]:
        self._record("volume.close", name)
        self.opened.pop(name, None)
        return _completed(["cryptsetup", "close"])


class FakeFilesystems(_Recorder):
    """In-memory stand-in for ``FilesystemProvider``."""

    def __init__(self, calls: list[tuple[object, ...]]) -> None:
        super().__init__(calls)
        self.mounts: list[MountEntry] = []
        self.fsck_status = 0
        self.made: list[Path] = []

    def mount_table(self) -> list[MountEntry]:
        return list(self.mounts)

    def check(self, device: Path) -> subprocess.CompletedProcess[str]:
        self._record("fs.check", Path(device))
        return _completed(["e2fsck", "-p"], self.fsck_status)

    def make(self, device: Path) -> subprocess.CompletedProcess[str]:
        self._record("fs.make", Path(device))
        self.made.append(Path(device))
        return _completed(["mkfs.ext4"])

    def mount(self, device: Path, mountpoint: Path) -> subprocess.CompletedProcess[str]:
        self._record("fs.mount", Path(device), Path(mountpoint))
        self.mounts.append(MountEntry(str(device), Path(mountpoint), "ext4"))
        return _completed(["mount"])

    def unmount(self, mountpoint: Path) -> subprocess.CompletedProcess[str]:
        self._record("fs.unmount", Path(mountpoint))
        self.mounts = [entry for entry in self.mounts if entry.target != Path(mountpoint)]
        return _completed(["umount"])

    def trim(self, mountpoint: Path) -> subprocess.CompletedProcess[str]:
        self._record("fs.trim", Path(mountpoint))
        return _completed(["fstrim"])


class FakeKernel(_Recorder):
    """In-memory stand-in for ``KernelModuleProvider``."""

    def load(self, module: str) -> subprocess.CompletedProcess[str]:
        self._record("kernel.load", module)
        return _completed(["modprobe", module])

    def unload(self, module: str) -> subprocess.CompletedProcess[str]:
        self._record("kernel.unload", module)
        return _completed(["modprobe", "-r", module])


@dataclass
class FakeSystem:
    """A simulated host: four layers, kernel module and device nodes."""

    root: Path
    calls: list[tuple[object, ...]] = field(default_factory=list)

    def __post_init__(self) -> None:
        self.device_dir = self.root / "dev"
        self.device_dir.mkdir(parents=True, exist_ok=True)
        for slot in range(16):
            (self.device_dir / f"nbd{slot}").touch()
        self.runtime_dir = self.root / "run"
        self.exports = FakeExports(self.calls)
        self.mappings = FakeMappings(self.calls)
        self.volumes = FakeVolumes(self.calls, self.device_dir / "mapper")
        self.filesystems = FakeFilesystems(self.calls)
        self.kernel = FakeKernel(self.calls)

    def orchestrator(self) -> LifecycleOrchestrator:
        return LifecycleOrchestrator(
            exports=self.exports,  # type: ignore[arg-type]
            mappings=self.mappings,  # type: ignore[arg-type]
            volumes=self.volumes,  # type: ignore[arg-type]
            filesystems=self.filesystems,  # type: ignore[arg-type]
            kernel=self.kernel,  # type: ignore[arg-type]
            runtime_dir=self.runtime_dir,
            device_dir=self.device_dir,
        )

    def names(self) -> list[object]:
        """Return just the call names, in order."""
        return [call[0] for call in self.calls]

    def image(self, name: str = "disk.img") -> Path:
        path = self.root / name
        path.write_bytes(b"")
        return path

    def mountpoint(self, name: str = "mnt") -> Path:
        path = self.root / name
        path.mkdir(exist_ok=True)
        return path


@pytest.fixture
def fake_system(tmp_path: Path) -> FakeSystem:
    """Return a fresh simulated host rooted under ``tmp_path``."""
    return FakeSystem(tmp_path / "host")


@pytest.fixture
def secret_factory():
    """Return a factory producing a fixed passphrase and counting calls."""

    class Factory:
        def __init__(self) -> None:
            self.calls = 0

        def __call__(self) -> Secret:
            self.calls += 1
            return Secret(b"x" * 40)

    return Factory()
