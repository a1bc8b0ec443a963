"""Shared fixtures: a fake host whose user database lives under ``tmp_path``."""

from __future__ import annotations

import shutil
import subprocess
from collections.abc import Callable
from pathlib import Path

import pytest

from divban.config import UserAllocationSettings
from divban.locking import LockManager
from divban.providers.systemd import UserSystemdProvider
from divban.setup.steps import SetupContext
from divban.system.directories import DirectoryManager
from divban.system.linger import LingerManager
from divban.system.subids import SubidRegistry
from divban.system.sysctl import SysctlManager
from divban.system.uid_allocator import UidAllocator
from divban.system.users import ServiceUserManager

Handler = Callable[[list[str]], "subprocess.CompletedProcess[str] | None"]


def completed(command: list[str], returncode: int = 0, stdout: str = "", stderr: str = "") -> subprocess.CompletedProcess[str]:
    """Build a ``CompletedProcess`` for *command*."""
    return subprocess.CompletedProcess(command, returncode=returncode, stdout=stdout, stderr=stderr)


class FakeHost:
    """In-memory stand-in for the commands divban runs against a Linux host."""

    def __init__(self, root: Path) -> None:
        """Lay out the host's files under *root*."""
        self.root = root
        root.mkdir(parents=True)
        self.etc = root / "etc"
        self.etc.mkdir()
        self.passwd = self.etc / "passwd"
        self.subuid = self.etc / "subuid"
        self.subgid = self.etc / "subgid"
        self.linger_dir = root / "linger"
        self.linger_dir.mkdir()
        self.run_dir = root / "run-user"
        self.run_dir.mkdir()
        self.home_root = root / "home"
        self.home_root.mkdir()
        self.data_root = root / "srv"
        self.lock_dir = root / "locks"
        self.sysctl_dir = root / "sysctl.d"
        self.nologin = root / "sbin" / "nologin"
        self.nologin.parent.mkdir()
        self.nologin.write_text("")

        self.accounts: dict[str, tuple[int, Path, str]] = {}
        self.calls: list[list[str]] = []
        self.useradd_returncodes: list[int] = []
        self.handlers: list[Handler] = []
        self.unprivileged_port_start = 1024
        self.start_user_manager = True

        self.add_account("root", 0, Path("/root"), "/bin/bash")

    # ------------------------------------------------------------------
    def add_account(self, name: str, uid: int, home: Path, shell: str) -> None:
        """Register an account and rewrite the passwd file."""
        self.accounts[name] = (uid, home, shell)
        self._write_passwd()

    def passwd_line(self, name: str) -> str:
        """Return the passwd record for *name*."""
        uid, home, shell = self.accounts[name]
        return f"{name}:x:{uid}:{uid}:{name}:{home}:{shell}"

    def commands(self, program: str) -> list[list[str]]:
        """Return recorded invocations whose first word is *program*."""
        return [call for call in self.calls if call[0] == program]

    def on(self, handler: Handler) -> None:
        """Install *handler*; it is consulted before the built-in behaviour."""
        self.handlers.append(handler)

    def _write_passwd(self) -> None:
        self.passwd.write_text("".join(f"{self.passwd_line(name)}\n" for name in self.accounts))

    # ------------------------------------------------------------------
    def run(self, command: list[str]) -> subprocess.CompletedProcess[str]:
        """Runner compatible with :data:`divban.system.exec.Runner`."""
        self.calls.append(list(command))
        for handler in self.handlers:
            result = handler(command)
            if result is not None:
                return result

        program = command[0]
        if program == "getent":
            return self._getent(command)
        if program == "id":
            return self._id(command)
        if program == "useradd":
            return self._useradd(command)
        if program == "userdel":
            return self._userdel(command)
        if program == "loginctl":
            return self._loginctl(command)
        if program == "systemctl":
            return self._systemctl(command)
        if program == "sysctl":
            return self._sysctl(command)
        if program == "pkill":
            return completed(command, 1)
        return completed(command)

    def _getent(self, command: list[str]) -> subprocess.CompletedProcess[str]:
        if len(command) == 2:
            return completed(command, stdout=self.passwd.read_text())
        name = command[2]
        if name not in self.accounts:
            return completed(command, 2)
        return completed(command, stdout=self.passwd_line(name) + "\n")

    def _id(self, command: list[str]) -> subprocess.CompletedProcess[str]:
        name = command[-1]
        if name not in self.accounts:
            return completed(command, 1, stderr=f"id: '{name}': no such user")
        uid = self.accounts[name][0]
        if "-u" in command:
            return completed(command, stdout=f"{uid}\n")
        return completed(command, stdout=f"uid={uid}({name}) gid={uid}({name})\n")

    def _useradd(self, command: list[str]) -> subprocess.CompletedProcess[str]:
        if self.useradd_returncodes:
            returncode = self.useradd_returncodes.pop(0)
            if returncode != 0:
                return completed(command, returncode, stderr="useradd: UID already in use")
        uid = int(command[command.index("--uid") + 1])
        home = Path(command[command.index("--home-dir") + 1])
        shell = command[command.index("--shell") + 1]
        name = command[-1]
        if name in self.accounts:
            return completed(command, 9, stderr=f"useradd: user '{name}' already exists")
        if "--create-home" in command:
            home.mkdir(parents=True, exist_ok=True)
        self.add_account(name, uid, home, shell)
        return completed(command)

    def _userdel(self, command: list[str]) -> subprocess.CompletedProcess[str]:
        name = command[-1]
        if name not in self.accounts:
            return completed(command, 6, stderr=f"userdel: user '{name}' does not exist")
        _, home, _ = self.accounts.pop(name)
        self._write_passwd()
        if "--remove" in command:
            shutil.rmtree(home, ignore_errors=True)
        return completed(command)

    def _loginctl(self, command: list[str]) -> subprocess.CompletedProcess[str]:
        action, name = command[1], command[2]
        marker = self.linger_dir / name
        if action == "enable-linger":
            marker.touch()
        elif action == "disable-linger":
            marker.unlink(missing_ok=True)
        return completed(command)

    def _systemctl(self, command: list[str]) -> subprocess.CompletedProcess[str]:
        unit = command[-1]
        if command[1] == "start" and unit.startswith("user@") and self.start_user_manager:
            uid = unit[len("user@") : -len(".service")]
            bus = self.run_dir / uid / "bus"
            bus.parent.mkdir(parents=True, exist_ok=True)
            bus.touch()
        return completed(command)

    def _sysctl(self, command: list[str]) -> subprocess.CompletedProcess[str]:
        if command[1] == "-n":
            return completed(command, stdout=f"{self.unprivileged_port_start}\n")
        value = command[2].split("=", 1)[1]
        self.unprivileged_port_start = int(value)
        return completed(command)

    # ------------------------------------------------------------------
    def locks(self) -> LockManager:
        """Return a lock manager rooted under the fake host."""
        return LockManager(self.lock_dir, default_timeout=1.0)

    def allocator(self) -> UidAllocator:
        """Return an allocator reading the fake host's files."""
        return UidAllocator(
            runner=self.run,
            passwd_path=self.passwd,
            subuid_path=self.subuid,
            subgid_path=self.subgid,
            nologin_paths=(self.nologin,),
        )

    def user_manager(self, settings: UserAllocationSettings | None = None) -> ServiceUserManager:
        """Return a user manager wired to the fake host."""
        locks = self.locks()
        return ServiceUserManager(
            allocator=self.allocator(),
            subids=SubidRegistry(locks, self.subuid, self.subgid),
            locks=locks,
            settings=settings or UserAllocationSettings(uid_conflict_base_delay=0.0),
            runner=self.run,
            home_root=self.home_root,
            sleep=lambda _seconds: None,
        )

    def linger(self) -> LingerManager:
        """Return a linger manager that never sleeps."""
        return LingerManager(
            runner=self.run,
            linger_dir=self.linger_dir,
            user_runtime_dir=self.run_dir,
            session_timeout=1.0,
            sleep=lambda _seconds: None,
        )

    def chown(self, path: Path, uid: int, gid: int) -> None:
        """Record ownership changes instead of applying them."""
        self.calls.append(["chown", f"{uid}:{gid}", str(path)])

    def setup_context(self, *, root: bool = True) -> SetupContext:
        """Return a provisioning context backed by the fake host."""
        users = self.user_manager()
        return SetupContext(
            users=users,
            linger=self.linger(),
            directories=DirectoryManager(chown=self.chown),
            sysctl=SysctlManager(runner=self.run, sysctl_dir=self.sysctl_dir),
            systemd=UserSystemdProvider(runner=self.run, user_runtime_dir=self.run_dir),
            base_data_dir=self.data_root,
            settings=users.settings,
            chown=self.chown,
            is_root=lambda: root,
        )


@pytest.fixture
def host(tmp_path: Path) -> FakeHost:
    """Return a fresh fake host."""
    return FakeHost(tmp_path / "host")
