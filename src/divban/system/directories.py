"""Service directory creation with ownership and tracked rollback."""
from __future__ import annotations

import logging
import os
import shutil
from collections.abc import Callable, Iterable, Sequence
from dataclasses import dataclass
from pathlib import Path

from ..errors import DivbanSystemError, ErrorCode

LOGGER = logging.getLogger(__name__)


@dataclass(frozen=True)
class DirectoryOwner:
    """Numeric owner applied to created directories."""

    uid: int
    gid: int


def service_directories(data_dir: Path, home_dir: Path) -> list[Path]:
    """Return the directories a service needs, parents before children."""
    config_root = home_dir / ".config"
    return [
        data_dir,
        data_dir / "config",
        data_dir / "logs",
        config_root,
        config_root / "containers",
        config_root / "containers" / "systemd",
        config_root / "divban",
    ]


@dataclass(slots=True)
class DirectoryManager:
    """Create and remove directories, remembering which ones were new."""

    chown: Callable[[Path, int, int], None] = os.chown

    def ensure_directories_tracked(
        self,
        paths: Iterable[Path],
        owner: DirectoryOwner,
        mode: int = 0o755,
    ) -> list[Path]:
        """Create missing *paths* in order and return only those created here.

        If a later path fails, directories created by this call are removed
        before the error propagates.
        """
        created: list[Path] = []
        try:
            for path in paths:
                if path.is_dir():
                    continue
                for missing in _missing_ancestors(path):
                    missing.mkdir()
                    created.append(missing)
                path.mkdir()
                created.append(path)
                os.chmod(path, mode)
                self.chown(path, owner.uid, owner.gid)
        except OSError as exc:
            self.remove_directories_reverse(created)
            raise DivbanSystemError(
                f"Failed to create directory {path}: {exc}", ErrorCode.DIRECTORY_CREATE_FAILED
            ) from exc
        return created

    def remove_directories_reverse(self, paths: Sequence[Path]) -> None:
        """Remove *paths* last-created first, ignoring failures."""
        for path in reversed(paths):
            try:
                shutil.rmtree(path)
            except FileNotFoundError:
                continue
            except OSError as exc:
                LOGGER.warning("Failed to remove directory %s: %s", path, exc)


def _missing_ancestors(path: Path) -> list[Path]:
    missing: list[Path] = []
    parent = path.parent
    while parent != parent.parent and not parent.exists():
        missing.append(parent)
        parent = parent.parent
    return list(reversed(missing))


__all__ = ["DirectoryManager", "DirectoryOwner", "service_directories"]
