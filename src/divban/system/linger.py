"""Persistent login sessions (systemd "linger") for service users.

Without linger a user's services stop when its last session ends. Enabling it
also starts ``user@<uid>.service`` explicitly, since some hosts (WSL among
them) do not start the user manager on their own.
"""
from __future__ import annotations

import logging
import time
from collections.abc import Callable
from dataclasses import dataclass
from pathlib import Path

from ..errors import DivbanError, DivbanSystemError, ErrorCode
from ..models import Acquired
from ..retry import RetryPolicy, is_transient_error, retry_call
from .exec import Runner, run_checked

LOGGER = logging.getLogger(__name__)

_TRANSIENT_POLICY = RetryPolicy(max_attempts=5, base_delay=0.5, max_delay=4.0)


@dataclass(slots=True)
class LingerManager:
    """Enable and disable linger for service accounts."""

    runner: Runner | None = None
    linger_dir: Path = Path("/var/lib/systemd/linger")
    user_runtime_dir: Path = Path("/run/user")
    loginctl_bin: str = "loginctl"
    systemctl_bin: str = "systemctl"
    session_timeout: float = 30.0
    poll_interval: float = 0.1
    sleep: Callable[[float], None] = time.sleep
    clock: Callable[[], float] = time.monotonic

    def linger_file(self, username: str) -> Path:
        """Return the marker file systemd creates for *username*."""
        return self.linger_dir / username

    def session_bus(self, uid: int) -> Path:
        """Return the user manager's D-Bus socket path."""
        return self.user_runtime_dir / str(uid) / "bus"

    def is_enabled(self, username: str) -> bool:
        """Return ``True`` if linger is enabled for *username*."""
        return self.linger_file(username).exists()

    def enable_tracked(self, username: str, uid: int) -> Acquired[None]:
        """Enable linger, reporting whether this call turned it on.

        If the user session never comes up, linger enabled by this call is
        turned off again before the error propagates.
        """
        was_created = False
        if not self.is_enabled(username):
            self._run_with_retry(
                [self.loginctl_bin, "enable-linger", username],
                f"Failed to enable linger for {username}",
            )
            if not self.is_enabled(username):
                raise DivbanSystemError(
                    f"Linger was not enabled for {username} despite successful command",
                    ErrorCode.LINGER_ENABLE_FAILED,
                )
            was_created = True
        try:
            self._ensure_session_ready(username, uid)
        except DivbanError:
            if was_created:
                self._disable_quietly(username)
            raise
        return Acquired(None, was_created=was_created)

    def disable(self, username: str) -> None:
        """Disable linger for *username* if it is enabled."""
        if not self.is_enabled(username):
            return
        self._run_with_retry(
            [self.loginctl_bin, "disable-linger", username],
            f"Failed to disable linger for {username}",
        )

    # ------------------------------------------------------------------
    def _disable_quietly(self, username: str) -> None:
        try:
            self.disable(username)
        except DivbanError as exc:
            LOGGER.warning("Failed to disable linger for %s: %s", username, exc)

    def _ensure_session_ready(self, username: str, uid: int) -> None:
        self._run_with_retry(
            [self.systemctl_bin, "start", f"user@{uid}.service"],
            f"Failed to start user service for uid {uid}",
        )
        if not self._wait_for_session(uid):
            raise DivbanSystemError(
                f"User session not ready for {username} after enabling linger",
                ErrorCode.LINGER_ENABLE_FAILED,
            )

    def _wait_for_session(self, uid: int) -> bool:
        bus = self.session_bus(uid)
        deadline = self.clock() + self.session_timeout
        while True:
            if bus.exists():
                return True
            if self.clock() >= deadline:
                return False
            self.sleep(self.poll_interval)

    def _run_with_retry(self, command: list[str], message: str) -> None:
        try:
            retry_call(
                lambda: run_checked(command, runner=self.runner),
                should_retry=is_transient_error,
                policy=_TRANSIENT_POLICY,
                sleep=self.sleep,
                label=command[0],
            )
        except DivbanError as exc:
            raise DivbanSystemError(f"{message}: {exc}", ErrorCode.LINGER_ENABLE_FAILED) from exc


__all__ = ["LingerManager"]
