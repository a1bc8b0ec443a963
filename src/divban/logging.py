"""Structured operation logging for divban commands.

Every CLI operation appends a single JSON record to
``<logs_dir>/operations.jsonl`` describing the command, its arguments, the
steps it took and the final result. The logger never breaks a command: when
the log directory or file is unwritable it disables itself and carries on.

Library modules log human-oriented warnings through the standard ``logging``
hierarchy under ``divban.*``; :func:`configure_console_logging` routes those
to the terminal via Rich.
"""
from __future__ import annotations

import getpass
import json
import logging
import os
import time
import uuid
from collections.abc import Iterator, Mapping, Sequence
from contextlib import contextmanager
from datetime import UTC, datetime
from pathlib import Path

from rich.console import Console
from rich.logging import RichHandler

LOGGER = logging.getLogger(__name__)

_LEVELS = {
    "debug": logging.DEBUG,
    "info": logging.INFO,
    "warning": logging.WARNING,
    "error": logging.ERROR,
}


def configure_console_logging(level: str = "info", *, console: Console | None = None) -> None:
    """Attach a Rich handler to the ``divban`` logger hierarchy."""
    root = logging.getLogger("divban")
    root.setLevel(_LEVELS.get(level.lower(), logging.INFO))
    for handler in list(root.handlers):
        if isinstance(handler, RichHandler):
            root.removeHandler(handler)
    handler = RichHandler(
        console=console or Console(stderr=True),
        show_time=False,
        show_path=False,
        markup=False,
    )
    root.addHandler(handler)


class OperationScope:
    """Collects steps and the result for a single logged operation."""

    def __init__(
        self,
        logger: StructuredLogger,
        command: str,
        *,
        args: Mapping[str, object] | None,
        target: Mapping[str, object] | None,
    ) -> None:
        """Initialise the scope for *command*."""
        self._logger = logger
        self.command = command
        self.op_id = uuid.uuid4().hex
        self.args = dict(args or {})
        self.target = dict(target or {})
        self.steps: list[dict[str, object]] = []
        self.lock_wait_ms: int | None = None
        self.result: dict[str, object] | None = None
        self._started = time.monotonic()
        self._timestamp = datetime.now(UTC).isoformat()

    @property
    def actor(self) -> dict[str, object]:
        """Return who ran the operation."""
        try:
            user = getpass.getuser()
        except (KeyError, OSError):
            user = "unknown"
        return {"user": user, "euid": os.geteuid(), "pid": os.getpid()}

    def add_step(self, name: str, *, status: str = "success", detail: str | None = None) -> None:
        """Record a named step within the operation."""
        step: dict[str, object] = {"name": name, "status": status}
        if detail:
            step["detail"] = detail
        self.steps.append(step)

    def set_lock_wait_ms(self, wait_ms: int) -> None:
        """Record how long the operation waited for locks."""
        self.lock_wait_ms = wait_ms

    def success(
        self,
        message: str,
        *,
        changed: int = 0,
        context: Mapping[str, object] | None = None,
        backups: Sequence[str] | None = None,
    ) -> None:
        """Mark the operation as successful."""
        self._set_result(
            "success", message, changed=changed, context=context, backups=backups, rc=0
        )

    def warning(
        self,
        message: str,
        *,
        warnings: Sequence[str] | None = None,
        errors: Sequence[str] | None = None,
        changed: int = 0,
        backups: Sequence[str] | None = None,
        context: Mapping[str, object] | None = None,
    ) -> None:
        """Mark the operation as completed with warnings."""
        self._set_result(
            "warning",
            message,
            warnings=warnings,
            errors=errors,
            changed=changed,
            backups=backups,
            context=context,
            rc=0,
        )

    def error(
        self,
        message: str,
        *,
        errors: Sequence[str] | None = None,
        rc: int = 1,
        context: Mapping[str, object] | None = None,
    ) -> None:
        """Mark the operation as failed."""
        self._set_result(
            "error",
            message,
            errors=list(errors) if errors else [message],
            context=context,
            rc=rc,
        )

    # ------------------------------------------------------------------
    def _set_result(
        self,
        status: str,
        message: str,
        *,
        rc: int,
        changed: int = 0,
        warnings: Sequence[str] | None = None,
        errors: Sequence[str] | None = None,
        backups: Sequence[str] | None = None,
        context: Mapping[str, object] | None = None,
    ) -> None:
        self.result = {
            "status": status,
            "message": message,
            "rc": rc,
            "changed": changed,
            "warnings": list(warnings or []),
            "errors": list(errors or []),
            "backups": list(backups or []),
            "context": _sanitise(dict(context or {})),
        }

    def to_record(self) -> dict[str, object]:
        """Return the JSON record for this operation."""
        return {
            "timestamp": self._timestamp,
            "op_id": self.op_id,
            "command": self.command,
            "args": _sanitise(self.args),
            "target": _sanitise(self.target),
            "actor": self.actor,
            "steps": self.steps,
            "lock_wait_ms": self.lock_wait_ms,
            "duration_ms": int((time.monotonic() - self._started) * 1000),
            "result": self.result,
        }


class StructuredLogger:
    """Append-only JSONL operation log."""

    def __init__(self, logs_dir: Path) -> None:
        """Prepare the log directory, disabling the logger on failure."""
        self.logs_dir = Path(logs_dir)
        self._operations_log_path = self.logs_dir / "operations.jsonl"
        self._enabled = True
        try:
            self.logs_dir.mkdir(parents=True, exist_ok=True)
        except OSError as exc:
            LOGGER.debug("Operation log disabled: cannot create %s (%s)", self.logs_dir, exc)
            self._enabled = False

    @contextmanager
    def operation(
        self,
        command: str,
        *,
        args: Mapping[str, object] | None = None,
        target: Mapping[str, object] | None = None,
    ) -> Iterator[OperationScope]:
        """Yield an :class:`OperationScope` and persist it on exit."""
        scope = OperationScope(self, command, args=args, target=target)
        try:
            yield scope
        except Exception as exc:
            rc = getattr(exc, "exit_code", 1)
            if scope.result is None and rc != 0:
                scope.error(str(exc) or type(exc).__name__, rc=rc)
            raise
        finally:
            if scope.result is None:
                scope.success("Completed.")
            self._write(scope.to_record())

    def _write(self, record: Mapping[str, object]) -> None:
        if not self._enabled:
            return
        try:
            with self._operations_log_path.open("a", encoding="utf-8") as handle:
                handle.write(json.dumps(record, sort_keys=True) + "\n")
        except OSError as exc:
            LOGGER.debug("Operation log disabled after write failure: %s", exc)
            self._enabled = False


def _sanitise(value: object) -> object:
    if value is None or isinstance(value, (bool, int, float, str)):
        return value
    if isinstance(value, Mapping):
        return {str(key): _sanitise(item) for key, item in value.items()}
    if isinstance(value, (list, tuple)):
        return [_sanitise(item) for item in value]
    return str(value)


__all__ = ["OperationScope", "StructuredLogger", "configure_console_logging"]
