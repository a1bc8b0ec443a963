"""Systemd provider for a service user's ``--user`` manager."""
from __future__ import annotations

import subprocess
from collections.abc import Sequence
from dataclasses import dataclass
from pathlib import Path

from ..errors import DivbanError, ErrorCode, ServiceError
from ..system.exec import Runner, as_user_command, command_output, run_command, run_interactive
from ..system.users import ServiceUser


@dataclass(slots=True)
class UserSystemdProvider:
    """Drive ``systemctl --user`` and ``journalctl --user`` as a service user."""

    runner: Runner | None = None
    systemctl_bin: str = "systemctl"
    journalctl_bin: str = "journalctl"
    user_runtime_dir: Path = Path("/run/user")

    def daemon_reload(self, user: ServiceUser) -> subprocess.CompletedProcess[str]:
        """Reload unit files for *user*'s manager."""
        return self._systemctl(user, "daemon-reload")

    def enable(self, user: ServiceUser, unit: str) -> subprocess.CompletedProcess[str]:
        """Enable *unit*."""
        return self._systemctl(user, "enable", unit)

    def start(self, user: ServiceUser, unit: str) -> subprocess.CompletedProcess[str]:
        """Start *unit*."""
        return self._systemctl(user, "start", unit, code=ErrorCode.SERVICE_START_FAILED)

    def stop(self, user: ServiceUser, unit: str) -> subprocess.CompletedProcess[str]:
        """Stop *unit*."""
        return self._systemctl(user, "stop", unit, code=ErrorCode.SERVICE_STOP_FAILED)

    def restart(self, user: ServiceUser, unit: str) -> subprocess.CompletedProcess[str]:
        """Restart *unit*."""
        return self._systemctl(user, "restart", unit, code=ErrorCode.SERVICE_START_FAILED)

    def is_active(self, user: ServiceUser, unit: str) -> bool:
        """Return ``True`` if *unit* is active."""
        result = self._systemctl(user, "is-active", unit, check=False)
        return result.returncode == 0

    def status(self, user: ServiceUser, unit: str) -> subprocess.CompletedProcess[str]:
        """Return the status output for *unit*."""
        return self._systemctl(user, "status", unit, "--no-pager", check=False)

    def logs(
        self,
        user: ServiceUser,
        unit: str,
        *,
        lines: int | None = None,
        follow: bool = False,
    ) -> subprocess.CompletedProcess[str]:
        """Return journal output for *unit*, or stream it when *follow* is set."""
        args: list[str] = ["--unit", unit, "--no-pager"]
        if lines is not None:
            args.extend(["--lines", str(lines)])
        if follow:
            args.append("--follow")
        return self._journalctl(user, args, capture_output=not follow)

    def stop_user_manager(self, uid: int) -> subprocess.CompletedProcess[str]:
        """Stop ``user@<uid>.service`` from the system manager."""
        command = [self.systemctl_bin, "stop", f"user@{uid}.service"]
        return self._run_command(
            command,
            check=True,
            error_prefix=f"{self.systemctl_bin} stop user@{uid}.service",
            code=ErrorCode.SERVICE_STOP_FAILED,
        )

    # ------------------------------------------------------------------
    def _systemctl(
        self,
        user: ServiceUser,
        command: str,
        *args: str,
        check: bool = True,
        code: ErrorCode = ErrorCode.GENERAL_ERROR,
    ) -> subprocess.CompletedProcess[str]:
        inner = [self.systemctl_bin, "--user", command, *args]
        return self._run_command(
            self._as_user(user, inner),
            check=check,
            error_prefix=f"{self.systemctl_bin} --user {command} {' '.join(args)}".rstrip(),
            code=code,
        )

    def _journalctl(
        self,
        user: ServiceUser,
        args: Sequence[str],
        *,
        capture_output: bool = True,
    ) -> subprocess.CompletedProcess[str]:
        command = self._as_user(user, [self.journalctl_bin, "--user", *args])
        if not capture_output:
            try:
                returncode = run_interactive(command)
            except DivbanError as exc:
                raise ServiceError(str(exc), ErrorCode.GENERAL_ERROR) from exc
            return subprocess.CompletedProcess(command, returncode=returncode, stdout="", stderr="")
        joined = " ".join(args)
        return self._run_command(
            command,
            check=True,
            error_prefix=f"{self.journalctl_bin} --user {joined}".rstrip(),
            code=ErrorCode.GENERAL_ERROR,
        )

    def _as_user(self, user: ServiceUser, command: list[str]) -> list[str]:
        return as_user_command(user.username, user.uid, command, runtime_root=self.user_runtime_dir)

    def _run_command(
        self,
        args: Sequence[str],
        *,
        check: bool,
        error_prefix: str,
        code: ErrorCode,
    ) -> subprocess.CompletedProcess[str]:
        result = run_command(args, runner=self.runner)
        if check and result.returncode != 0:
            raise ServiceError(
                f"{error_prefix} failed (exit {result.returncode}): {command_output(result)}",
                code,
            )
        return result


__all__ = ["UserSystemdProvider"]
