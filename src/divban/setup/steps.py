"""The provisioning saga behind ``divban setup``."""
from __future__ import annotations

import os
from collections.abc import Callable
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any

from ..config import UserAllocationSettings
from ..errors import ErrorCode, GeneralError
from ..providers.systemd import UserSystemdProvider
from ..service_config import ServiceConfig
from ..services import ServiceDefinition, ServiceSetupContext
from ..system.directories import DirectoryManager, DirectoryOwner, service_directories
from ..system.linger import LingerManager
from ..system.sysctl import SysctlManager
from ..system.users import ServiceUser, ServiceUserManager, is_root, service_username
from .config_copy import (
    cleanup_config_backup,
    config_destination,
    copy_config_tracked,
    rollback_config_copy,
)
from .saga import ProgressCallback, SagaOutcome, SetupStep, State, run_setup_saga


@dataclass(slots=True)
class SetupContext:
    """Collaborators shared by every provisioning step."""

    users: ServiceUserManager
    linger: LingerManager
    directories: DirectoryManager
    sysctl: SysctlManager
    systemd: UserSystemdProvider
    base_data_dir: Path = Path("/srv")
    settings: UserAllocationSettings = field(default_factory=UserAllocationSettings)
    chown: Callable[[Path, int, int], None] = os.chown
    is_root: Callable[[], bool] = is_root


def check_setup_privileges(ctx: SetupContext, service: ServiceDefinition) -> None:
    """Fail with ``ROOT_REQUIRED`` before any change if setup needs root."""
    if ctx.is_root():
        return
    username = service_username(service.name)
    reasons: list[str] = []
    if not ctx.users.allocator.user_exists(username):
        reasons.append(f"user {username} does not exist yet")
    if service.privileged_ports and not ctx.sysctl.is_unprivileged_port_enabled():
        reasons.append("privileged port binding is not configured")
    if reasons:
        raise GeneralError(
            f"Root privileges are required to set up {service.name}: {'; '.join(reasons)}.",
            ErrorCode.ROOT_REQUIRED,
        )


def build_setup_steps(
    ctx: SetupContext,
    service: ServiceDefinition,
    config: ServiceConfig,
) -> list[SetupStep]:
    """Return the ordered steps that provision *service*."""
    steps: list[SetupStep] = []

    if service.privileged_ports:

        def configure_ports(state: State) -> dict[str, Any]:
            return {"sysctl_changed": ctx.sysctl.ensure_unprivileged_ports()}

        steps.append(SetupStep("Configuring privileged port binding", configure_ports))

    def acquire_user(state: State) -> dict[str, Any]:
        acquired = ctx.users.acquire_service_user(service.name, ctx.settings)
        return {"user": acquired.value, "user_created": acquired.was_created}

    def release_user(state: State, outcome: SagaOutcome) -> None:
        if outcome is SagaOutcome.FAILURE:
            ctx.users.release_service_user(service.name, state["user_created"])

    steps.append(SetupStep("Creating service user", acquire_user, release_user))

    def enable_linger(state: State) -> dict[str, Any]:
        user: ServiceUser = state["user"]
        acquired = ctx.linger.enable_tracked(user.username, user.uid)
        return {"linger_enabled": acquired.was_created}

    def release_linger(state: State, outcome: SagaOutcome) -> None:
        if outcome is SagaOutcome.FAILURE and state["linger_enabled"]:
            ctx.linger.disable(state["user"].username)

    steps.append(SetupStep("Enabling user linger", enable_linger, release_linger))

    def create_directories(state: State) -> dict[str, Any]:
        user: ServiceUser = state["user"]
        data_dir = config.resolve_data_dir(ctx.base_data_dir, user.username)
        created = ctx.directories.ensure_directories_tracked(
            service_directories(data_dir, user.home_dir),
            DirectoryOwner(user.uid, user.gid),
        )
        return {"data_dir": data_dir, "created_dirs": created}

    def release_directories(state: State, outcome: SagaOutcome) -> None:
        if outcome is SagaOutcome.FAILURE:
            ctx.directories.remove_directories_reverse(state["created_dirs"])

    steps.append(SetupStep("Creating service directories", create_directories, release_directories))

    def copy_config(state: State) -> dict[str, Any]:
        user: ServiceUser = state["user"]
        result = copy_config_tracked(
            config.path,
            config_destination(user.home_dir, service.name, config.path),
            owner=DirectoryOwner(user.uid, user.gid),
            chown=ctx.chown,
        )
        return {"config_copy": result}

    def release_config(state: State, outcome: SagaOutcome) -> None:
        if outcome is SagaOutcome.FAILURE:
            rollback_config_copy(state["config_copy"])
        else:
            cleanup_config_backup(state["config_copy"])

    steps.append(SetupStep("Copying configuration", copy_config, release_config))

    def run_service_setup(state: State) -> None:
        service.setup(
            ServiceSetupContext(
                service=service,
                user=state["user"],
                config=config,
                data_dir=state["data_dir"],
                installed_config=state["config_copy"].destination,
                systemd=ctx.systemd,
            )
        )

    steps.append(SetupStep(f"Running {service.name} setup", run_service_setup))
    return steps


def run_setup(
    ctx: SetupContext,
    service: ServiceDefinition,
    config: ServiceConfig,
    *,
    progress: ProgressCallback | None = None,
) -> State:
    """Check privileges, then run the provisioning saga for *service*."""
    check_setup_privileges(ctx, service)
    return run_setup_saga(build_setup_steps(ctx, service, config), progress=progress)


__all__ = ["SetupContext", "build_setup_steps", "check_setup_privileges", "run_setup"]
