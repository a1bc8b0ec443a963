"""Service user lifecycle: create, verify, look up and delete.

Each service runs as its own account ``divban-<service>`` with a nologin
shell, a UID from the divban range (GID equal to UID) and a delegated block
of subordinate IDs for rootless containers.
"""
from __future__ import annotations

import logging
import os
import re
import time
from collections.abc import Callable
from dataclasses import dataclass, field
from pathlib import Path

from ..config import UserAllocationSettings
from ..errors import (
    DivbanError,
    DivbanSystemError,
    ErrorCode,
    GeneralError,
    ServiceError,
    UidConflictError,
    UserVerificationError,
)
from ..locking import SUBID_CONFIG_LOCK, UID_ALLOCATION_LOCK, LockManager
from ..models import Acquired
from ..retry import RetryPolicy, retry_call
from .exec import Runner, command_output, run_checked, run_command
from .subids import SubidRegistry
from .uid_allocator import AllocationRange, UidAllocator

LOGGER = logging.getLogger(__name__)

USERNAME_PREFIX = "divban-"
USERNAME_PATTERN = re.compile(r"^[a-z_][a-z0-9_-]*$")
MAX_USERNAME_LENGTH = 32

# useradd(8): "UID already in use (and no -o)".
USERADD_EXIT_UID_IN_USE = 4
# "UID 10000 is not unique"; a bare "uid" inside a username does not count.
UID_CONFLICT_PATTERN = re.compile(
    r"(?<![\w-])uid\s.*\b(exists|already in use|not unique)\b", re.IGNORECASE
)


def service_username(service_name: str) -> str:
    """Return the account name for *service_name*, validating POSIX rules."""
    username = f"{USERNAME_PREFIX}{service_name}"
    if len(username) > MAX_USERNAME_LENGTH or not USERNAME_PATTERN.fullmatch(username):
        raise GeneralError(
            f"Invalid service name '{service_name}': '{username}' is not a valid "
            f"username (pattern [a-z_][a-z0-9_-]*, at most {MAX_USERNAME_LENGTH} characters).",
            ErrorCode.INVALID_ARGS,
        )
    return username


def is_uid_conflict(exc: Exception) -> bool:
    """Return ``True`` if *exc* reports that the chosen UID was taken."""
    if isinstance(exc, UidConflictError):
        return True
    if not isinstance(exc, DivbanError):
        return False
    return UID_CONFLICT_PATTERN.search(str(exc)) is not None


def is_root() -> bool:
    """Return ``True`` when running with an effective UID of 0."""
    return os.geteuid() == 0


def require_root(action: str) -> None:
    """Raise unless running as root."""
    if not is_root():
        raise GeneralError(f"Root privileges are required to {action}.", ErrorCode.ROOT_REQUIRED)


@dataclass(frozen=True)
class ServiceUser:
    """The provisioned identity for one service."""

    username: str
    uid: int
    gid: int
    subuid_start: int
    subuid_size: int
    home_dir: Path

    def to_dict(self) -> dict[str, object]:
        """Return a serialisable representation."""
        return {
            "username": self.username,
            "uid": self.uid,
            "gid": self.gid,
            "subuid_start": self.subuid_start,
            "subuid_size": self.subuid_size,
            "home_dir": str(self.home_dir),
        }


@dataclass(slots=True)
class ServiceUserManager:
    """Create, verify and delete per-service accounts."""

    allocator: UidAllocator
    subids: SubidRegistry
    locks: LockManager
    settings: UserAllocationSettings = field(default_factory=UserAllocationSettings)
    runner: Runner | None = None
    home_root: Path = Path("/home")
    sleep: Callable[[float], None] = time.sleep

    def home_dir(self, username: str) -> Path:
        """Return the expected home directory for *username*."""
        return self.home_root / username

    # ------------------------------------------------------------------
    def acquire_service_user(
        self,
        service_name: str,
        settings: UserAllocationSettings | None = None,
    ) -> Acquired[ServiceUser]:
        """Create the service account or verify the existing one."""
        settings = settings or self.settings
        username = service_username(service_name)
        if self.allocator.user_exists(username):
            return Acquired(self._verify_existing(username, settings), was_created=False)
        return Acquired(self._create(service_name, username, settings), was_created=True)

    def release_service_user(self, service_name: str, was_created: bool) -> None:
        """Delete the account if this run created it; never raises."""
        if not was_created:
            return
        try:
            self.delete_service_user(service_name)
        except Exception as exc:  # noqa: BLE001 - compensation must not mask the caller's error
            LOGGER.warning("Failed to delete service user for %s: %s", service_name, exc)

    def delete_service_user(self, service_name: str) -> None:
        """Delete the account and its home, then its subordinate-ID entries."""
        username = service_username(service_name)
        if not self.allocator.user_exists(username):
            self._remove_subids_quietly(username, "orphaned ")
            return
        run_checked(
            ["userdel", "--remove", username],
            runner=self.runner,
            error_prefix=f"userdel {username}",
        )
        self._remove_subids_quietly(username, "")

    def get_service_user(
        self,
        service_name: str,
        settings: UserAllocationSettings | None = None,
    ) -> ServiceUser | None:
        """Return the current identity for *service_name*, or ``None``."""
        settings = settings or self.settings
        username = service_username(service_name)
        if not self.allocator.user_exists(username):
            return None
        uid = self.allocator.get_uid_by_username(username)
        entry = self.allocator.find_subuid_entry(username)
        return ServiceUser(
            username=username,
            uid=uid,
            gid=uid,
            subuid_start=entry.start if entry else settings.subuid_range_start,
            subuid_size=entry.count if entry else settings.subuid_range_size,
            home_dir=self.home_dir(username),
        )

    def require_service_user(self, service_name: str) -> ServiceUser:
        """Return the identity for *service_name* or raise :class:`ServiceError`."""
        user = self.get_service_user(service_name)
        if user is None:
            raise ServiceError(
                f"Service user {service_username(service_name)} does not exist. "
                f"Run 'divban setup {service_name}' first.",
                ErrorCode.SERVICE_NOT_FOUND,
            )
        return user

    # ------------------------------------------------------------------
    def _verify_existing(self, username: str, settings: UserAllocationSettings) -> ServiceUser:
        uid = self.allocator.get_uid_by_username(username)
        entry = self.allocator.lookup_user(username)
        if entry is None:
            raise UserVerificationError(f"Invalid passwd entry for {username}")
        expected_home = self.home_dir(username)
        if entry.uid != uid:
            raise UserVerificationError(
                f"User {username} exists with UID {entry.uid}, expected {uid}"
            )
        if not settings.contains_uid(entry.uid):
            raise UserVerificationError(
                f"User {username} has UID {entry.uid} outside the divban range "
                f"{settings.uid_range_start}-{settings.uid_range_end}"
            )
        if entry.home != expected_home:
            raise UserVerificationError(
                f"User {username} has home {entry.home}, expected {expected_home}"
            )
        if "nologin" not in entry.shell and "false" not in entry.shell:
            raise UserVerificationError(
                f"User {username} has interactive shell {entry.shell}, expected nologin"
            )

        block = self._ensure_subids(username, settings)
        return ServiceUser(
            username=username,
            uid=uid,
            gid=uid,
            subuid_start=block.start,
            subuid_size=block.size,
            home_dir=expected_home,
        )

    def _create(
        self,
        service_name: str,
        username: str,
        settings: UserAllocationSettings,
    ) -> ServiceUser:
        home = self.home_dir(username)
        shell = self.allocator.get_nologin_shell()
        uid = self._create_account(service_name, username, home, shell, settings)

        # The account exists from here on; undo it if the subordinate IDs fail.
        try:
            block = self._ensure_subids(username, settings)
        except Exception:
            try:
                self.delete_service_user(service_name)
            except DivbanError as cleanup_exc:
                LOGGER.warning(
                    "Rollback warning (deleting user %s after subuid failure): %s",
                    username,
                    cleanup_exc,
                )
            raise

        return ServiceUser(
            username=username,
            uid=uid,
            gid=uid,
            subuid_start=block.start,
            subuid_size=block.size,
            home_dir=home,
        )

    def _create_account(
        self,
        service_name: str,
        username: str,
        home: Path,
        shell: str,
        settings: UserAllocationSettings,
    ) -> int:
        def attempt() -> int:
            with self.locks.lock(UID_ALLOCATION_LOCK):
                uid = self.allocator.allocate_uid(settings)
                self._useradd(service_name, username, uid, home, shell)
                return uid

        policy = RetryPolicy(
            max_attempts=settings.uid_conflict_attempts,
            base_delay=settings.uid_conflict_base_delay,
        )
        return retry_call(
            attempt,
            should_retry=is_uid_conflict,
            policy=policy,
            sleep=self.sleep,
            label=f"useradd {username}",
        )

    def _useradd(self, service_name: str, username: str, uid: int, home: Path, shell: str) -> None:
        command = [
            "useradd",
            "--uid",
            str(uid),
            "--home-dir",
            str(home),
            "--create-home",
            "--shell",
            shell,
            "--comment",
            f"divban service - {service_name}",
            username,
        ]
        result = run_command(command, runner=self.runner)
        if result.returncode == 0:
            return
        message = f"Failed to create user {username}: {command_output(result)}"
        if result.returncode == USERADD_EXIT_UID_IN_USE:
            raise UidConflictError(f"{message} (UID {uid} already in use)")
        raise DivbanSystemError(message, ErrorCode.USER_CREATE_FAILED)

    def _ensure_subids(self, username: str, settings: UserAllocationSettings) -> AllocationRange:
        with self.locks.lock(SUBID_CONFIG_LOCK):
            block = self._recorded_subids(username, settings)
            if block is None:
                block = self.allocator.allocate_subuid_range(settings.subuid_range_size, settings)
            self.subids.add_locked(username, block.start, block.size)
            return block

    def _recorded_subids(
        self, username: str, settings: UserAllocationSettings
    ) -> AllocationRange | None:
        try:
            start = self.allocator.get_existing_subuid_start(username)
        except GeneralError:
            # Reuse a delegation recorded only in subgid.
            entry = self.allocator.find_subgid_entry(username)
            return entry.as_range() if entry is not None else None
        return AllocationRange(start, settings.subuid_range_size)

    def _remove_subids_quietly(self, username: str, label: str) -> None:
        try:
            self.subids.remove(username)
        except DivbanError as exc:
            LOGGER.warning("Failed to clean up %ssubordinate IDs for %s: %s", label, username, exc)


__all__ = [
    "ServiceUser",
    "ServiceUserManager",
    "is_root",
    "is_uid_conflict",
    "require_root",
    "service_username",
]
