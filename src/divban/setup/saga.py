"""Ordered acquire/release steps with reverse-order compensation.

A setup saga is a list of :class:`SetupStep` objects run by
:func:`run_setup_saga`. Each step's ``acquire`` returns a partial state update
that is merged into a shared ``dict``. When a step fails, the ``release``
callbacks of the steps that already completed run newest first, each seeing
the state as it was when its own ``acquire`` finished. When every step
succeeds the releases still run (newest first) with
:attr:`SagaOutcome.SUCCESS` so steps can drop temporary artefacts.
"""
from __future__ import annotations

import logging
from collections.abc import Callable, Mapping, Sequence
from dataclasses import dataclass
from enum import Enum
from typing import Any

LOGGER = logging.getLogger(__name__)

State = dict[str, Any]
ProgressCallback = Callable[[int, int, str], None]


class SagaOutcome(Enum):
    """Overall result of the saga, passed to every release callback."""

    SUCCESS = "success"
    FAILURE = "failure"


@dataclass(frozen=True)
class SetupStep:
    """A named forward action paired with an optional compensation."""

    message: str
    acquire: Callable[[State], Mapping[str, Any] | None]
    release: Callable[[State, SagaOutcome], None] | None = None


@dataclass(frozen=True)
class ReleaseReport:
    """What happened when a completed step's release ran."""

    message: str
    error: Exception | None = None

    @property
    def ok(self) -> bool:
        """Return ``True`` when the release finished without error."""
        return self.error is None


def run_setup_saga(
    steps: Sequence[SetupStep],
    *,
    state: Mapping[str, Any] | None = None,
    progress: ProgressCallback | None = None,
) -> State:
    """Run *steps* in order and return the accumulated state.

    On failure the original exception is re-raised after compensation, with
    notes naming the failed step and each compensation attempted.
    """
    current: State = dict(state or {})
    completed: list[tuple[SetupStep, State]] = []
    total = len(steps)

    for index, step in enumerate(steps, start=1):
        if progress is not None:
            progress(index, total, step.message)
        try:
            update = step.acquire(dict(current))
        except BaseException as exc:
            reports = _release_all(completed, SagaOutcome.FAILURE)
            exc.add_note(f"Setup failed at step {index}/{total}: {step.message}")
            for report in reports:
                if report.ok:
                    exc.add_note(f"Rolled back: {report.message}")
                else:
                    exc.add_note(f"Rollback failed: {report.message}: {report.error}")
            raise
        if update:
            current.update(update)
        completed.append((step, dict(current)))

    _release_all(completed, SagaOutcome.SUCCESS)
    return current


def _release_all(
    completed: Sequence[tuple[SetupStep, State]],
    outcome: SagaOutcome,
) -> list[ReleaseReport]:
    reports: list[ReleaseReport] = []
    for step, snapshot in reversed(completed):
        if step.release is None:
            continue
        try:
            step.release(snapshot, outcome)
        except Exception as exc:  # noqa: BLE001 - a release must not mask the saga result
            LOGGER.warning("Release for '%s' failed (%s): %s", step.message, outcome.value, exc)
            reports.append(ReleaseReport(step.message, exc))
        else:
            reports.append(ReleaseReport(step.message))
    return reports


__all__ = ["ProgressCallback", "ReleaseReport", "SagaOutcome", "SetupStep", "State", "run_setup_saga"]
