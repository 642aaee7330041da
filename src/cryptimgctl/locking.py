"""Advisory file locks serialising cryptimgctl invocations.

Slot allocation reads the process table and then starts an export on the
chosen slot. Two concurrent ``open`` calls could otherwise both pick the same
slot, so the allocation and activation sequence runs under a global lock. An
additional per-image lock keeps two operators from driving the same image in
opposite directions. External programs that use the NBD namespace without
going through this module are not covered.
"""
from __future__ import annotations

import fcntl
import hashlib
import json
import os
import time
from collections.abc import Iterator
from contextlib import ExitStack, contextmanager
from dataclasses import dataclass
from datetime import UTC, datetime
from pathlib import Path

GLOBAL_LOCK_NAME = "cryptimgctl.lock"
POLL_INTERVAL = 0.05


class LockTimeoutError(RuntimeError):
    """Raised when a lock cannot be acquired within the timeout."""


@dataclass(slots=True)
class LockHandle:
    """An acquired lock and the time spent waiting for it."""

    path: Path
    fd: int
    wait_ms: int


@dataclass(slots=True)
class LockBundle:
    """Several locks acquired together."""

    handles: list[LockHandle]

    @property
    def wait_ms(self) -> int:
        """Return the total wait time across all locks in the bundle."""
        return sum(handle.wait_ms for handle in self.handles)


class LockManager:
    """Acquire ``flock`` based locks under a runtime directory."""

    def __init__(self, runtime_dir: Path, default_timeout: float) -> None:
        """Store the lock root and default timeout."""
        self.root = Path(runtime_dir)
        self.default_timeout = default_timeout

    def image_lock_path(self, image: Path) -> Path:
        """Return the lock path for *image*."""
        resolved = str(Path(image).expanduser().resolve())
        digest = hashlib.sha256(resolved.encode("utf-8")).hexdigest()[:16]
        return self.root / "images" / f"{Path(image).name}-{digest}.lock"

    @contextmanager
    def global_lock(self, *, timeout: float | None = None) -> Iterator[LockHandle]:
        """Hold the lock guarding slot allocation and activation."""
        with self._lock(self.root / GLOBAL_LOCK_NAME, timeout) as handle:
            yield handle

    @contextmanager
    def image_lock(self, image: Path, *, timeout: float | None = None) -> Iterator[LockHandle]:
        """Hold the lock for a single image."""
        with self._lock(self.image_lock_path(image), timeout) as handle:
            yield handle

    @contextmanager
    def mutate_image(self, image: Path, *, timeout: float | None = None) -> Iterator[LockBundle]:
        """Acquire the global lock followed by the image lock."""
        with ExitStack() as stack:
            handles = [
                stack.enter_context(self.global_lock(timeout=timeout)),
                stack.enter_context(self.image_lock(image, timeout=timeout)),
            ]
            yield LockBundle(handles=handles)

    # ------------------------------------------------------------------
    @contextmanager
    def _lock(self, path: Path, timeout: float | None) -> Iterator[LockHandle]:
        effective = self.default_timeout if timeout is None else timeout
        path.parent.mkdir(parents=True, exist_ok=True)
        fd = os.open(path, os.O_RDWR | os.O_CREAT, 0o600)
        start = time.monotonic()
        try:
            while True:
                try:
                    fcntl.flock(fd, fcntl.LOCK_EX | fcntl.LOCK_NB)
                    break
                except BlockingIOError:
                    if time.monotonic() - start >= effective:
                        raise LockTimeoutError(
                            f"Timed out after {effective:.1f}s waiting for lock {path}."
                        ) from None
                    time.sleep(POLL_INTERVAL)
            wait_ms = int((time.monotonic() - start) * 1000)
            self._write_metadata(fd, path)
            try:
                yield LockHandle(path=path, fd=fd, wait_ms=wait_ms)
            finally:
                fcntl.flock(fd, fcntl.LOCK_UN)
        finally:
            os.close(fd)

    @staticmethod
    def _write_metadata(fd: int, path: Path) -> None:
        payload = {
            "pid": os.getpid(),
            "path": str(path),
            "acquired_at": datetime.now(UTC).isoformat(),
        }
        os.ftruncate(fd, 0)
        os.lseek(fd, 0, os.SEEK_SET)
        os.write(fd, json.dumps(payload).encode("utf-8"))


__all__ = ["LockBundle", "LockHandle", "LockManager", "LockTimeoutError"]
