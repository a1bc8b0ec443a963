"""Tear down a provisioned service: containers, session, account and data."""
from __future__ import annotations

import logging
import shutil
import time
from collections.abc import Callable
from dataclasses import dataclass, field
from pathlib import Path

from .errors import DivbanError
from .setup.saga import ProgressCallback
from .setup.steps import SetupContext
from .system.exec import as_user_command, run_command
from .system.users import ServiceUser

LOGGER = logging.getLogger(__name__)


@dataclass(slots=True)
class RemovalReport:
    """Warnings collected while removing a service."""

    user: ServiceUser
    data_dir: Path
    preserved_data: bool
    warnings: list[str] = field(default_factory=list)


def removal_plan(user: ServiceUser, data_dir: Path, *, preserve_data: bool) -> list[str]:
    """Return the human-readable removal steps, in execution order."""
    plan = [
        f"Stop all containers for {user.username}",
        "Remove all podman containers, volumes and networks",
        f"Disable linger for {user.username}",
        f"Stop systemd user service (user@{user.uid}.service)",
        f"Remove container storage for {user.username}",
        f"Kill all processes owned by {user.username}",
        f"Delete user {user.username} (and home directory)",
    ]
    if not preserve_data:
        plan.append(f"Remove data directory {data_dir}")
    return plan


def remove_service(
    ctx: SetupContext,
    service_name: str,
    user: ServiceUser,
    data_dir: Path,
    *,
    preserve_data: bool = False,
    progress: ProgressCallback | None = None,
    sleep: Callable[[float], None] = time.sleep,
) -> RemovalReport:
    """Remove *service_name*'s runtime state and account.

    Container and session cleanup is best-effort; only the account deletion
    is fatal.
    """
    report = RemovalReport(user=user, data_dir=data_dir, preserved_data=preserve_data)
    plan = removal_plan(user, data_dir, preserve_data=preserve_data)
    total = len(plan)
    runner = ctx.users.runner
    runtime_root = ctx.linger.user_runtime_dir

    def announce(index: int) -> None:
        if progress is not None:
            progress(index, total, plan[index - 1])

    def podman(*args: str) -> str:
        command = as_user_command(user.username, user.uid, ["podman", *args], runtime_root=runtime_root)
        result = run_command(command, runner=runner)
        if result.returncode != 0:
            return ""
        return result.stdout or ""

    announce(1)
    podman("stop", "--all", "-t", "10")

    announce(2)
    podman("rm", "--all", "--force")
    podman("volume", "rm", "--all", "--force")
    for network in podman("network", "ls", "--format", "{{.Name}}").splitlines():
        network = network.strip()
        if network and network != "podman":
            podman("network", "rm", network)

    announce(3)
    try:
        ctx.linger.disable(user.username)
    except DivbanError as exc:
        report.warnings.append(f"Failed to disable linger: {exc}")

    announce(4)
    try:
        ctx.systemd.stop_user_manager(user.uid)
    except DivbanError as exc:
        LOGGER.debug("Stopping user@%s.service failed: %s", user.uid, exc)
    sleep(0.5)

    announce(5)
    storage = user.home_dir / ".local" / "share" / "containers" / "storage"
    if storage.is_dir():
        try:
            shutil.rmtree(storage)
        except OSError as exc:
            report.warnings.append(f"Failed to remove container storage: {exc}")

    announce(6)
    # pkill exits 1 when nothing matched.
    run_command(["pkill", "-U", str(user.uid)], runner=runner)
    sleep(0.5)
    run_command(["pkill", "-9", "-U", str(user.uid)], runner=runner)
    sleep(0.2)

    announce(7)
    ctx.users.delete_service_user(service_name)

    if not preserve_data:
        announce(8)
        try:
            shutil.rmtree(data_dir)
        except FileNotFoundError:
            pass
        except OSError as exc:
            report.warnings.append(f"Failed to remove data directory: {exc}")

    for warning in report.warnings:
        LOGGER.warning(warning)
    return report


__all__ = ["RemovalReport", "remove_service", "removal_plan"]
