"""Named, file-backed locks shared across divban invocations.

Each critical section maps to ``<lock_dir>/<name>.lock`` guarded by an
exclusive ``flock``. The kernel drops the lock when the holding process exits,
so a crashed run never wedges later ones. Lock files stay on disk after
release and carry JSON metadata about the last holder for diagnostics.

Locks are re-entrant within a process: nested holders of the same name share
the outermost acquisition.
"""
from __future__ import annotations

import fcntl
import json
import os
import time
from collections.abc import Callable, Iterator
from contextlib import contextmanager
from dataclasses import dataclass
from datetime import UTC, datetime
from pathlib import Path
from typing import TypeVar

from .errors import DivbanSystemError, ErrorCode, GeneralError

T = TypeVar("T")

UID_ALLOCATION_LOCK = "uid-allocation"
SUBID_CONFIG_LOCK = "subid-config"

_FORBIDDEN_NAME_PARTS = ("/", "\\", "..", "\0")


class LockTimeoutError(GeneralError):
    """Raised when a named lock cannot be acquired before the deadline."""


@dataclass(slots=True)
class LockHandle:
    """Information about an acquired lock."""

    name: str
    path: Path
    wait_ms: int


@dataclass(slots=True)
class _HeldLock:
    fd: int
    depth: int


class LockManager:
    """Acquire named exclusive locks under a shared directory."""

    def __init__(
        self,
        lock_dir: Path,
        default_timeout: float = 5.0,
        *,
        poll_interval: float = 0.05,
    ) -> None:
        """Initialise the manager rooted at *lock_dir*."""
        self.lock_dir = Path(lock_dir)
        self.default_timeout = default_timeout
        self.poll_interval = poll_interval
        self._held: dict[str, _HeldLock] = {}

    def lock_path(self, name: str) -> Path:
        """Return the lock file path for *name*."""
        _validate_lock_name(name)
        return self.lock_dir / f"{name}.lock"

    def is_held(self, name: str) -> bool:
        """Return ``True`` if this manager currently holds *name*."""
        return name in self._held

    @contextmanager
    def lock(self, name: str, *, timeout: float | None = None) -> Iterator[LockHandle]:
        """Hold the named lock for the duration of the ``with`` block."""
        path = self.lock_path(name)
        held = self._held.get(name)
        if held is not None:
            held.depth += 1
            try:
                yield LockHandle(name=name, path=path, wait_ms=0)
            finally:
                held.depth -= 1
            return

        fd, wait_ms = self._acquire(name, path, self.default_timeout if timeout is None else timeout)
        self._held[name] = _HeldLock(fd=fd, depth=1)
        try:
            yield LockHandle(name=name, path=path, wait_ms=wait_ms)
        finally:
            del self._held[name]
            try:
                fcntl.flock(fd, fcntl.LOCK_UN)
            finally:
                os.close(fd)

    def with_lock(self, name: str, action: Callable[[], T], *, timeout: float | None = None) -> T:
        """Run *action* while holding *name* and return its result."""
        with self.lock(name, timeout=timeout):
            return action()

    # ------------------------------------------------------------------
    def _acquire(self, name: str, path: Path, timeout: float) -> tuple[int, int]:
        try:
            self.lock_dir.mkdir(parents=True, exist_ok=True)
            fd = os.open(path, os.O_RDWR | os.O_CREAT, 0o644)
        except OSError as exc:
            raise DivbanSystemError(
                f"Unable to open lock file {path}: {exc}", ErrorCode.FILE_WRITE_FAILED
            ) from exc

        started = time.monotonic()
        deadline = started + max(timeout, 0.0)
        while True:
            try:
                fcntl.flock(fd, fcntl.LOCK_EX | fcntl.LOCK_NB)
                break
            except BlockingIOError:
                if time.monotonic() >= deadline:
                    os.close(fd)
                    raise LockTimeoutError(
                        f"Timed out after {timeout:.2f}s waiting for lock '{name}' ({path})."
                    ) from None
                time.sleep(self.poll_interval)

        wait_ms = int((time.monotonic() - started) * 1000)
        try:
            _write_metadata(fd, name, path)
        except OSError as exc:
            fcntl.flock(fd, fcntl.LOCK_UN)
            os.close(fd)
            raise DivbanSystemError(
                f"Unable to record holder of lock '{name}' in {path}: {exc}",
                ErrorCode.FILE_WRITE_FAILED,
            ) from exc
        return fd, wait_ms


def _validate_lock_name(name: str) -> None:
    if not name or any(part in name for part in _FORBIDDEN_NAME_PARTS):
        raise GeneralError(f"Invalid lock name: {name!r}", ErrorCode.INVALID_ARGS)


def _write_metadata(fd: int, name: str, path: Path) -> None:
    payload = {
        "pid": os.getpid(),
        "name": name,
        "path": str(path),
        "acquired_at": datetime.now(UTC).isoformat(),
    }
    data = json.dumps(payload).encode("utf-8")
    os.ftruncate(fd, 0)
    os.lseek(fd, 0, os.SEEK_SET)
    os.write(fd, data)


__all__ = [
    "LockHandle",
    "LockManager",
    "LockTimeoutError",
    "SUBID_CONFIG_LOCK",
    "UID_ALLOCATION_LOCK",
]
