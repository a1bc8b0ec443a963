"""Host-level primitives: command execution, files, users and sessions."""
from __future__ import annotations

from .exec import Runner, as_user_command, run_checked, run_command

__all__ = ["Runner", "as_user_command", "run_checked", "run_command"]
