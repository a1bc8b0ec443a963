"""Edits to ``/etc/subuid`` and ``/etc/subgid``.

Both files are rewritten whole via atomic replace while holding the
``subid-config`` lock. Lines are matched on the ``<user>:`` prefix so that
``divban-a`` never matches ``divban-ab``.
"""
from __future__ import annotations

from dataclasses import dataclass
from pathlib import Path

from ..errors import DivbanSystemError, ErrorCode
from ..locking import SUBID_CONFIG_LOCK, LockManager
from .fs import atomic_write, read_file_or_empty


def _owns_line(line: str, username: str) -> bool:
    return line.startswith(f"{username}:")


def append_entry(content: str, username: str, start: int, count: int) -> str | None:
    """Return *content* with the entry appended, or ``None`` if already present."""
    if any(_owns_line(line, username) for line in content.splitlines()):
        return None
    if content and not content.endswith("\n"):
        content += "\n"
    return f"{content}{username}:{start}:{count}\n"


def remove_entries(content: str, username: str) -> str | None:
    """Return *content* without *username*'s lines, or ``None`` if it had none."""
    lines = content.split("\n")
    kept = [line for line in lines if not _owns_line(line, username)]
    if len(kept) == len(lines):
        return None
    filtered = "\n".join(kept)
    return f"{filtered.rstrip()}\n" if filtered.strip() else ""


@dataclass(slots=True)
class SubidRegistry:
    """Idempotent add/remove of subordinate-ID delegations."""

    locks: LockManager
    subuid_path: Path = Path("/etc/subuid")
    subgid_path: Path = Path("/etc/subgid")

    @property
    def paths(self) -> tuple[Path, Path]:
        """Return the subuid and subgid registry paths."""
        return (self.subuid_path, self.subgid_path)

    def add_locked(self, username: str, start: int, count: int) -> bool:
        """Delegate ``[start, start + count)`` to *username* in both registries.

        The caller must hold ``subid-config``; allocation and the write share
        one critical section. Returns ``True`` if either file changed.
        """
        changed = False
        for path in self.paths:
            updated = append_entry(read_file_or_empty(path), username, start, count)
            if updated is None:
                continue
            self._write(path, updated, f"Failed to configure {path}")
            changed = True
        return changed

    def remove(self, username: str) -> bool:
        """Drop *username*'s lines from both registries; returns ``True`` if any changed."""
        with self.locks.lock(SUBID_CONFIG_LOCK):
            changed = False
            for path in self.paths:
                updated = remove_entries(read_file_or_empty(path), username)
                if updated is None:
                    continue
                self._write(path, updated, f"Failed to remove {username} from {path}")
                changed = True
            return changed

    @staticmethod
    def _write(path: Path, content: str, message: str) -> None:
        try:
            atomic_write(path, content)
        except DivbanSystemError as exc:
            raise DivbanSystemError(f"{message}: {exc}", ErrorCode.SUBUID_CONFIG_FAILED) from exc


__all__ = ["SubidRegistry", "append_entry", "remove_entries"]
