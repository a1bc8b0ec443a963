"""Filesystem primitives used for registry and config edits."""
from __future__ import annotations

import os
import tempfile
from pathlib import Path

from ..errors import DivbanSystemError, ErrorCode


def read_file_or_empty(path: Path) -> str:
    """Return the text of *path*, or an empty string when it does not exist."""
    try:
        return path.read_text(encoding="utf-8")
    except FileNotFoundError:
        return ""
    except OSError as exc:
        raise DivbanSystemError(
            f"Failed to read {path}: {exc}", ErrorCode.FILE_READ_FAILED
        ) from exc


def atomic_write(path: Path, content: str, *, mode: int | None = None) -> None:
    """Replace *path* with *content* via a temp file in the same directory.

    The previous file mode is kept unless *mode* is given; new files default
    to ``0o644``.
    """
    if mode is None:
        try:
            mode = path.stat().st_mode & 0o7777
        except FileNotFoundError:
            mode = 0o644
    tmp_name: str | None = None
    try:
        path.parent.mkdir(parents=True, exist_ok=True)
        fd, tmp_name = tempfile.mkstemp(dir=path.parent, prefix=f".{path.name}.")
        with os.fdopen(fd, "w", encoding="utf-8") as handle:
            handle.write(content)
            handle.flush()
            os.fsync(handle.fileno())
        os.chmod(tmp_name, mode)
        os.replace(tmp_name, path)
        tmp_name = None
    except OSError as exc:
        raise DivbanSystemError(
            f"Failed to write {path}: {exc}", ErrorCode.FILE_WRITE_FAILED
        ) from exc
    finally:
        if tmp_name is not None:
            Path(tmp_name).unlink(missing_ok=True)


__all__ = ["atomic_write", "read_file_or_empty"]
