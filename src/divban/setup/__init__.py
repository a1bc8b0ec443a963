"""Provisioning saga: step interpreter and the concrete setup steps."""
from __future__ import annotations

from .saga import SagaOutcome, SetupStep, run_setup_saga
from .steps import SetupContext, build_setup_steps, check_setup_privileges, run_setup

__all__ = [
    "SagaOutcome",
    "SetupContext",
    "SetupStep",
    "build_setup_steps",
    "check_setup_privileges",
    "run_setup",
    "run_setup_saga",
]
