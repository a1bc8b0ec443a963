"""Tests for the setup saga interpreter."""
from __future__ import annotations

from typing import Any

import pytest

from divban.errors import DivbanSystemError
from divban.setup.saga import SagaOutcome, SetupStep, State, run_setup_saga


class Recorder:
    """Builds steps that log their acquire/release calls."""

    def __init__(self) -> None:
        """Start with an empty event log."""
        self.events: list[str] = []

    def step(
        self,
        name: str,
        update: dict[str, Any] | None = None,
        *,
        fail: Exception | None = None,
        release_error: Exception | None = None,
        with_release: bool = True,
    ) -> SetupStep:
        def acquire(state: State) -> dict[str, Any] | None:
            self.events.append(f"acquire:{name}")
            if fail is not None:
                raise fail
            return update

        def release(state: State, outcome: SagaOutcome) -> None:
            self.events.append(f"release:{name}:{outcome.value}:{sorted(state)}")
            if release_error is not None:
                raise release_error

        return SetupStep(name, acquire, release if with_release else None)


def test_saga_merges_state_and_releases_on_success() -> None:
    """Every step sees earlier updates; releases run newest first."""
    recorder = Recorder()
    seen: list[State] = []

    def peek(state: State) -> None:
        seen.append(state)

    steps = [
        recorder.step("a", {"a": 1}),
        recorder.step("b", {"b": 2}),
        SetupStep("peek", peek),
    ]

    state = run_setup_saga(steps, state={"seed": 0})

    assert state == {"seed": 0, "a": 1, "b": 2}
    assert seen == [{"seed": 0, "a": 1, "b": 2}]
    assert recorder.events == [
        "acquire:a",
        "acquire:b",
        "release:b:success:['a', 'b', 'seed']",
        "release:a:success:['a', 'seed']",
    ]


def test_saga_rolls_back_completed_steps_in_reverse() -> None:
    """A failure compensates completed steps only, last first, then re-raises."""
    recorder = Recorder()
    failure = DivbanSystemError("disk full")
    steps = [
        recorder.step("user", {"user": "divban-caddy"}),
        recorder.step("linger", {"linger": True}),
        recorder.step("dirs", fail=failure),
        recorder.step("config", {"config": "x"}),
    ]

    with pytest.raises(DivbanSystemError) as excinfo:
        run_setup_saga(steps)

    assert excinfo.value is failure
    assert recorder.events == [
        "acquire:user",
        "acquire:linger",
        "acquire:dirs",
        "release:linger:failure:['linger', 'user']",
        "release:user:failure:['user']",
    ]
    assert excinfo.value.__notes__ == [
        "Setup failed at step 3/4: dirs",
        "Rolled back: linger",
        "Rolled back: user",
    ]


def test_saga_continues_rollback_after_release_error() -> None:
    """A failing release is reported but does not stop earlier releases."""
    recorder = Recorder()
    steps = [
        recorder.step("first", {"first": 1}),
        recorder.step("second", {"second": 2}, release_error=OSError("busy")),
        recorder.step("third", fail=DivbanSystemError("boom")),
    ]

    with pytest.raises(DivbanSystemError, match="boom") as excinfo:
        run_setup_saga(steps)

    assert recorder.events[-1] == "release:first:failure:['first']"
    assert "Rollback failed: second: busy" in excinfo.value.__notes__
    assert "Rolled back: first" in excinfo.value.__notes__


def test_saga_reports_progress_before_each_step() -> None:
    """Progress callbacks carry the 1-based index and total."""
    recorder = Recorder()
    progress: list[tuple[int, int, str]] = []

    run_setup_saga(
        [recorder.step("one"), recorder.step("two", with_release=False)],
        progress=lambda index, total, message: progress.append((index, total, message)),
    )

    assert progress == [(1, 2, "one"), (2, 2, "two")]


def test_saga_compensates_on_interrupt() -> None:
    """Interrupts also trigger compensation before propagating."""
    recorder = Recorder()
    steps = [recorder.step("user", {"user": 1}), recorder.step("wait", fail=KeyboardInterrupt())]

    with pytest.raises(KeyboardInterrupt):
        run_setup_saga(steps)

    assert recorder.events[-1] == "release:user:failure:['user']"
