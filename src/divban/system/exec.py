"""Process execution helpers shared by every host-facing component."""
from __future__ import annotations

import subprocess
from collections.abc import Callable, Sequence
from pathlib import Path

from ..errors import DivbanSystemError, ErrorCode

Runner = Callable[[list[str]], subprocess.CompletedProcess[str]]


def _default_runner(command: list[str]) -> subprocess.CompletedProcess[str]:
    return subprocess.run(command, check=False, capture_output=True, text=True)  # noqa: S603,S607


def run_command(
    command: Sequence[str],
    *,
    runner: Runner | None = None,
) -> subprocess.CompletedProcess[str]:
    """Run *command* and return the result without checking the exit status.

    A missing executable is reported as exit status 127, matching the shell.
    """
    runner = runner or _default_runner
    args = [str(part) for part in command]
    try:
        return runner(args)
    except FileNotFoundError as exc:
        return subprocess.CompletedProcess(args, returncode=127, stdout="", stderr=str(exc))


def run_checked(
    command: Sequence[str],
    *,
    runner: Runner | None = None,
    error_prefix: str | None = None,
    code: ErrorCode = ErrorCode.EXEC_FAILED,
) -> subprocess.CompletedProcess[str]:
    """Run *command* and raise :class:`DivbanSystemError` unless it exits 0."""
    result = run_command(command, runner=runner)
    if result.returncode != 0:
        prefix = error_prefix or " ".join(str(part) for part in command[:2])
        raise DivbanSystemError(
            f"{prefix} failed (exit {result.returncode}): {command_output(result)}", code
        )
    return result


def run_interactive(command: Sequence[str]) -> int:
    """Run *command* attached to the terminal and return its exit status."""
    args = [str(part) for part in command]
    try:
        completed = subprocess.run(args, check=False, text=True)  # noqa: S603,S607
    except FileNotFoundError as exc:
        raise DivbanSystemError(f"{args[0]} not found: {exc}") from exc
    return completed.returncode


def command_output(result: subprocess.CompletedProcess[str]) -> str:
    """Return the most useful diagnostic text from *result*."""
    stdout = getattr(result, "stdout", "") or ""
    stderr = getattr(result, "stderr", "") or ""
    return stderr.strip() or stdout.strip() or "no output"


def user_session_env(uid: int, runtime_root: Path = Path("/run/user")) -> dict[str, str]:
    """Return the environment needed to talk to *uid*'s systemd user manager."""
    runtime_dir = runtime_root / str(uid)
    return {
        "XDG_RUNTIME_DIR": str(runtime_dir),
        "DBUS_SESSION_BUS_ADDRESS": f"unix:path={runtime_dir / 'bus'}",
    }


def as_user_command(
    username: str,
    uid: int,
    command: Sequence[str],
    *,
    runtime_root: Path = Path("/run/user"),
) -> list[str]:
    """Wrap *command* so it runs as *username* inside its user session."""
    env_args = [f"{key}={value}" for key, value in user_session_env(uid, runtime_root).items()]
    return ["runuser", "-u", username, "--", "env", *env_args, *[str(part) for part in command]]


__all__ = [
    "Runner",
    "as_user_command",
    "command_output",
    "run_checked",
    "run_command",
    "run_interactive",
    "user_session_env",
]
