"""Install a service config file with a restorable backup."""
from __future__ import annotations

import logging
import os
import shutil
from collections.abc import Callable
from dataclasses import dataclass
from pathlib import Path

from ..errors import DivbanSystemError, ErrorCode
from ..system.directories import DirectoryOwner

LOGGER = logging.getLogger(__name__)


@dataclass(frozen=True)
class ConfigCopyResult:
    """Outcome of :func:`copy_config_tracked`."""

    destination: Path
    was_new_file: bool
    backup_path: Path | None


def config_destination(home_dir: Path, service_name: str, source: Path) -> Path:
    """Return where *service_name*'s config is installed under *home_dir*."""
    suffix = source.suffix or ".yml"
    return home_dir / ".config" / "divban" / f"{service_name}{suffix}"


def copy_config_tracked(
    source: Path,
    destination: Path,
    *,
    owner: DirectoryOwner | None = None,
    chown: Callable[[Path, int, int], None] = os.chown,
) -> ConfigCopyResult:
    """Copy *source* to *destination*, keeping ``<destination>.bak`` if one existed."""
    was_new = not destination.exists()
    backup_path: Path | None = None
    try:
        destination.parent.mkdir(parents=True, exist_ok=True)
        if not was_new:
            backup_path = destination.with_name(destination.name + ".bak")
            shutil.copy2(destination, backup_path)
        shutil.copy2(source, destination)
        os.chmod(destination, 0o644)
        if owner is not None:
            chown(destination, owner.uid, owner.gid)
    except OSError as exc:
        if backup_path is not None and backup_path.exists():
            os.replace(backup_path, destination)
        elif was_new:
            destination.unlink(missing_ok=True)
        raise DivbanSystemError(
            f"Failed to copy config {source} to {destination}: {exc}",
            ErrorCode.FILE_WRITE_FAILED,
        ) from exc
    return ConfigCopyResult(destination=destination, was_new_file=was_new, backup_path=backup_path)


def rollback_config_copy(result: ConfigCopyResult) -> None:
    """Restore the previous file, or delete the new one."""
    if result.was_new_file:
        result.destination.unlink(missing_ok=True)
        return
    if result.backup_path is not None and result.backup_path.exists():
        os.replace(result.backup_path, result.destination)


def cleanup_config_backup(result: ConfigCopyResult) -> None:
    """Drop the backup kept for rollback."""
    if result.backup_path is None:
        return
    try:
        result.backup_path.unlink(missing_ok=True)
    except OSError as exc:
        LOGGER.warning("Failed to remove config backup %s: %s", result.backup_path, exc)


__all__ = [
    "ConfigCopyResult",
    "cleanup_config_backup",
    "config_destination",
    "copy_config_tracked",
    "rollback_config_copy",
]
