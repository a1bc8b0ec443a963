"""Typer-powered command line interface for ``divban``.

Commands resolve a :class:`RuntimeContext` once per invocation and record
each operation in the structured operations log. Failures surface as
:class:`~divban.errors.DivbanError` and map to the error's exit code.
"""
from __future__ import annotations

import json
import textwrap
from collections.abc import Sequence
from dataclasses import dataclass
from pathlib import Path
from typing import NoReturn

import typer
from rich.console import Console
from rich.markup import escape
from rich.table import Table

from . import __version__
from .config import AppConfig, load_config
from .errors import DivbanError, ErrorCode
from .locking import LockManager
from .logging import OperationScope, StructuredLogger, configure_console_logging
from .providers.systemd import UserSystemdProvider
from .removal import remove_service, removal_plan
from .service_config import load_service_config
from .services import ServiceDefinition, get_service
from .setup.steps import SetupContext, build_setup_steps, check_setup_privileges
from .setup.saga import run_setup_saga
from .system.directories import DirectoryManager
from .system.linger import LingerManager
from .system.subids import SubidRegistry
from .system.sysctl import SysctlManager
from .system.uid_allocator import UidAllocator
from .system.users import ServiceUser, ServiceUserManager, require_root, service_username

console = Console()

CONFIG_FILE_OPTION = typer.Option(
    None,
    "--config-file",
    dir_okay=False,
    help="Override the path to divban's global YAML config file.",
)

DRY_RUN_OPTION = typer.Option(
    False,
    "--dry-run",
    help="Report the actions that would be taken without applying changes.",
)

JSON_OPTION = typer.Option(
    False,
    "--json",
    help="Emit JSON instead of a table.",
)

SERVICE_ARGUMENT = typer.Argument(..., help="Name of the service (e.g. caddy, immich).")

app = typer.Typer(
    add_completion=False,
    help=textwrap.dedent(
        """
        Provision rootless, per-service users and run their containers under
        systemd.
        """
    ).strip(),
)
user_app = typer.Typer(help="Inspect service users.")
config_app = typer.Typer(help="Inspect global configuration.")

app.add_typer(user_app, name="user")
app.add_typer(config_app, name="config")


@dataclass
class RuntimeContext:
    """Aggregated runtime objects shared by commands."""

    config: AppConfig
    locks: LockManager
    logger: StructuredLogger
    users: ServiceUserManager
    linger: LingerManager
    systemd: UserSystemdProvider
    setup: SetupContext


def _ensure_runtime(
    ctx: typer.Context,
    config_file: Path | None,
    lock_timeout_override: float | None = None,
) -> RuntimeContext:
    runtime = ctx.obj
    if isinstance(runtime, RuntimeContext):
        return runtime

    overrides: dict[str, object] = {}
    if lock_timeout_override is not None:
        overrides["lock_timeout"] = lock_timeout_override

    config = load_config(config_file=config_file, overrides=overrides)
    configure_console_logging(config.logging.level)

    system = config.system
    locks = LockManager(config.lock_dir, config.lock_timeout)
    logger = StructuredLogger(config.logs_dir)
    allocator = UidAllocator(
        passwd_path=system.passwd,
        subuid_path=system.subuid,
        subgid_path=system.subgid,
        nologin_paths=system.nologin_paths,
    )
    users = ServiceUserManager(
        allocator=allocator,
        subids=SubidRegistry(locks, system.subuid, system.subgid),
        locks=locks,
        settings=config.users,
        home_root=config.home_root,
    )
    linger = LingerManager(
        linger_dir=system.linger_dir,
        user_runtime_dir=system.user_runtime_dir,
        loginctl_bin=config.systemd.loginctl_bin,
        systemctl_bin=config.systemd.systemctl_bin,
        session_timeout=config.systemd.session_timeout,
    )
    systemd = UserSystemdProvider(
        systemctl_bin=config.systemd.systemctl_bin,
        journalctl_bin=config.systemd.journalctl_bin,
        user_runtime_dir=system.user_runtime_dir,
    )
    setup = SetupContext(
        users=users,
        linger=linger,
        directories=DirectoryManager(),
        sysctl=SysctlManager(sysctl_dir=system.sysctl_dir),
        systemd=systemd,
        base_data_dir=config.base_data_dir,
        settings=config.users,
    )
    runtime = RuntimeContext(
        config=config,
        locks=locks,
        logger=logger,
        users=users,
        linger=linger,
        systemd=systemd,
        setup=setup,
    )
    ctx.obj = runtime
    return runtime


def _get_runtime(ctx: typer.Context) -> RuntimeContext:
    runtime = ctx.obj
    if isinstance(runtime, RuntimeContext):
        return runtime
    return _ensure_runtime(ctx, None, None)


@app.callback(invoke_without_command=True)
def _root(  # noqa: D401 - Typer displays help for us, docstring optional.
    ctx: typer.Context,
    version: bool = typer.Option(
        False,
        "--version",
        "-V",
        help="Show the divban version and exit.",
    ),
    config_file: Path | None = CONFIG_FILE_OPTION,
    lock_timeout: float | None = typer.Option(
        None,
        "--lock-timeout",
        help="Override lock acquisition timeout in seconds.",
    ),
) -> None:
    """Entry point callback invoked for every CLI execution."""
    if version:
        console.print(f"divban {__version__}")
        raise typer.Exit(code=0)

    try:
        _ensure_runtime(ctx, config_file, lock_timeout)
    except DivbanError as exc:
        console.print(f"[red]{escape(str(exc))}[/red]")
        raise typer.Exit(code=exc.exit_code) from exc

    if ctx.invoked_subcommand is None:
        console.print(ctx.get_help())
        raise typer.Exit(code=0)


def _command_error(
    op: OperationScope,
    message: str,
    *,
    rc: int = 2,
    errors: Sequence[str] | None = None,
) -> NoReturn:
    """Emit a structured error and terminate the command."""
    console.print(f"[red]{escape(message)}[/red]")
    op.error(message, errors=list(errors or [message]), rc=rc)
    raise typer.Exit(code=rc)


def _divban_error(op: OperationScope, exc: DivbanError) -> NoReturn:
    notes = list(getattr(exc, "__notes__", []))
    for note in notes:
        console.print(f"  [dim]{escape(note)}[/dim]")
    _command_error(op, str(exc), rc=exc.exit_code, errors=[str(exc), *notes])


def _print_progress(index: int, total: int, message: str) -> None:
    console.print(f"[cyan][{index}/{total}][/cyan] {message}...")


def _resolve_service(op: OperationScope, name: str) -> ServiceDefinition:
    try:
        return get_service(name)
    except DivbanError as exc:
        _divban_error(op, exc)


def _require_user(runtime: RuntimeContext, op: OperationScope, name: str) -> ServiceUser:
    try:
        return runtime.users.require_service_user(name)
    except DivbanError as exc:
        _divban_error(op, exc)


@app.command()
def setup(
    ctx: typer.Context,
    service: str = SERVICE_ARGUMENT,
    config_path: Path = typer.Argument(
        ...,
        help="Path to the service's YAML config file.",
        dir_okay=False,
    ),
    dry_run: bool = DRY_RUN_OPTION,
) -> None:
    """Provision the user, session, directories and config for a service."""
    runtime = _get_runtime(ctx)
    with runtime.logger.operation(
        "setup",
        args={"service": service, "config": config_path, "dry_run": dry_run},
        target={"kind": "service", "name": service},
    ) as op:
        definition = _resolve_service(op, service)
        try:
            service_config = load_service_config(config_path)
            op.add_step("config.load", detail=str(config_path))
            steps = build_setup_steps(runtime.setup, definition, service_config)

            if dry_run:
                console.print(f"[yellow]Dry run[/yellow]: setup of '{service}' would run:")
                for index, step in enumerate(steps, start=1):
                    console.print(f"  {index}. {step.message}")
                    op.add_step(step.message, status="skipped", detail="dry-run")
                op.success("Setup dry-run complete.", changed=0)
                return

            check_setup_privileges(runtime.setup, definition)
            state = run_setup_saga(steps, progress=_print_progress)
        except DivbanError as exc:
            _divban_error(op, exc)

        for step in steps:
            op.add_step(step.message)
        user: ServiceUser = state["user"]
        verb = "created" if state["user_created"] else "verified"
        console.print(
            f"[green]Service '{service}' set up.[/green] User {user.username} "
            f"(uid {user.uid}) {verb}."
        )
        op.success(
            "Service set up.",
            changed=len(steps),
            context={"user": user.to_dict(), "user_created": state["user_created"]},
        )


@app.command()
def remove(
    ctx: typer.Context,
    service: str = SERVICE_ARGUMENT,
    config_path: Path | None = typer.Option(
        None,
        "--config",
        dir_okay=False,
        help="Service config used to locate a custom data directory.",
    ),
    force: bool = typer.Option(False, "--force", help="Confirm the removal."),
    preserve_data: bool = typer.Option(
        False,
        "--preserve-data",
        help="Keep the service's data directory.",
    ),
    dry_run: bool = DRY_RUN_OPTION,
) -> None:
    """Stop a service and delete its user, session and (optionally) data."""
    runtime = _get_runtime(ctx)
    with runtime.logger.operation(
        "remove",
        args={"service": service, "force": force, "preserve_data": preserve_data, "dry_run": dry_run},
        target={"kind": "service", "name": service},
    ) as op:
        _resolve_service(op, service)
        try:
            require_root(f"remove {service}")
            user = runtime.users.get_service_user(service)
            if user is None:
                if force and not dry_run:
                    # Clears subuid/subgid entries left by an interrupted setup.
                    runtime.users.delete_service_user(service)
                message = f"Service user '{service_username(service)}' does not exist. Nothing to remove."
                console.print(f"[yellow]{escape(message)}[/yellow]")
                op.warning(message, warnings=[message], changed=0)
                return
            data_dir = runtime.config.base_data_dir / user.username
            if config_path is not None:
                data_dir = load_service_config(config_path).resolve_data_dir(
                    runtime.config.base_data_dir, user.username
                )

            if dry_run:
                console.print("[yellow]Dry run[/yellow]: removal would:")
                for index, line in enumerate(
                    removal_plan(user, data_dir, preserve_data=preserve_data), start=1
                ):
                    console.print(f"  {index}. {line}")
                op.success("Remove dry-run complete.", changed=0)
                return

            if not force:
                console.print(
                    f"[yellow]This will permanently remove {service} and delete user "
                    f"{user.username}.[/yellow]"
                )
                _command_error(op, "Use --force to confirm removal.", rc=int(ErrorCode.GENERAL_ERROR))

            report = remove_service(
                runtime.setup,
                service,
                user,
                data_dir,
                preserve_data=preserve_data,
                progress=_print_progress,
            )
        except DivbanError as exc:
            _divban_error(op, exc)

        for warning in report.warnings:
            console.print(f"[yellow]{escape(warning)}[/yellow]")
        console.print(f"[green]Service '{service}' removed.[/green]")
        context = {"user": user.to_dict(), "data_dir": data_dir, "preserved_data": preserve_data}
        if report.warnings:
            op.warning(
                "Service removed with warnings.",
                warnings=report.warnings,
                changed=1,
                context=context,
            )
        else:
            op.success("Service removed.", changed=1, context=context)


def _unit_action(ctx: typer.Context, service: str, action: str) -> None:
    runtime = _get_runtime(ctx)
    with runtime.logger.operation(
        action,
        args={"service": service},
        target={"kind": "service", "name": service},
    ) as op:
        definition = _resolve_service(op, service)
        user = _require_user(runtime, op, service)
        handler = getattr(runtime.systemd, action)
        for unit in definition.units:
            try:
                handler(user, unit)
            except DivbanError as exc:
                _divban_error(op, exc)
            op.add_step(f"systemd.{action}", detail=unit)
        console.print(f"[green]Service '{service}': {action} complete.[/green]")
        op.success(f"Service {action} complete.", changed=len(definition.units))


@app.command()
def start(ctx: typer.Context, service: str = SERVICE_ARGUMENT) -> None:
    """Start a service's units."""
    _unit_action(ctx, service, "start")


@app.command()
def stop(ctx: typer.Context, service: str = SERVICE_ARGUMENT) -> None:
    """Stop a service's units."""
    _unit_action(ctx, service, "stop")


@app.command()
def restart(ctx: typer.Context, service: str = SERVICE_ARGUMENT) -> None:
    """Restart a service's units."""
    _unit_action(ctx, service, "restart")


@app.command()
def status(
    ctx: typer.Context,
    service: str = SERVICE_ARGUMENT,
    json_output: bool = JSON_OPTION,
) -> None:
    """Show whether each of a service's units is active."""
    runtime = _get_runtime(ctx)
    with runtime.logger.operation(
        "status",
        args={"service": service, "json": json_output},
        target={"kind": "service", "name": service},
    ) as op:
        definition = _resolve_service(op, service)
        user = _require_user(runtime, op, service)
        states = {
            unit: "active" if runtime.systemd.is_active(user, unit) else "inactive"
            for unit in definition.units
        }
        if json_output:
            console.print_json(data={"service": service, "user": user.to_dict(), "units": states})
        else:
            table = Table(show_header=True, header_style="bold magenta")
            table.add_column("Unit", style="bold")
            table.add_column("State")
            for unit, state in states.items():
                colour = "green" if state == "active" else "red"
                table.add_row(unit, f"[{colour}]{state}[/{colour}]")
            console.print(table)
        op.success("Reported service status.", changed=0, context={"units": states})


@app.command()
def logs(
    ctx: typer.Context,
    service: str = SERVICE_ARGUMENT,
    lines: int = typer.Option(100, "--lines", "-n", min=1, help="Number of lines to show."),
    follow: bool = typer.Option(False, "--follow", "-f", help="Stream new entries."),
    unit: str | None = typer.Option(None, "--unit", "-u", help="Limit output to one unit."),
) -> None:
    """Show journal output for a service's units."""
    runtime = _get_runtime(ctx)
    with runtime.logger.operation(
        "logs",
        args={"service": service, "lines": lines, "follow": follow, "unit": unit},
        target={"kind": "service", "name": service},
    ) as op:
        definition = _resolve_service(op, service)
        units = [unit] if unit else list(definition.units)
        if follow and len(units) > 1:
            _command_error(op, f"{service} has several units; pick one with --unit to follow.")
        user = _require_user(runtime, op, service)
        try:
            if follow:
                runtime.systemd.logs(user, units[0], lines=lines, follow=True)
            else:
                for name in units:
                    result = runtime.systemd.logs(user, name, lines=lines)
                    console.print(f"[bold]== {escape(name)} ==[/bold]")
                    console.print(result.stdout or "", markup=False, highlight=False)
        except DivbanError as exc:
            _divban_error(op, exc)
        op.success("Displayed logs.", changed=0)


@user_app.command("show")
def user_show(
    ctx: typer.Context,
    service: str = SERVICE_ARGUMENT,
    json_output: bool = JSON_OPTION,
) -> None:
    """Display the provisioned identity for a service."""
    runtime = _get_runtime(ctx)
    with runtime.logger.operation(
        "user show",
        args={"service": service, "json": json_output},
        target={"kind": "service", "name": service},
    ) as op:
        user = _require_user(runtime, op, service)
        data = user.to_dict()
        data["linger"] = runtime.linger.is_enabled(user.username)
        if json_output:
            console.print_json(data=data)
        else:
            table = Table(show_header=True, header_style="bold magenta")
            table.add_column("Field", style="bold")
            table.add_column("Value")
            for key, value in data.items():
                table.add_row(key, str(value))
            console.print(table)
        op.success("Rendered service user.", changed=0)


@config_app.command("show")
def config_show(
    ctx: typer.Context,
    json_output: bool = JSON_OPTION,
) -> None:
    """Display the effective configuration after merges."""
    runtime = _get_runtime(ctx)
    data = runtime.config.to_dict()

    with runtime.logger.operation(
        "config show",
        args={"json": json_output},
        target={"kind": "config"},
    ) as op:
        if json_output:
            console.print_json(data=data)
            op.success("Rendered configuration as JSON.", changed=0)
            return

        table = Table(show_header=True, header_style="bold magenta")
        table.add_column("Key", style="bold")
        table.add_column("Value")

        for key, value in data.items():
            if isinstance(value, dict):
                rendered = json.dumps(value, indent=2, sort_keys=True)
            else:
                rendered = str(value)
            table.add_row(key, rendered)

        console.print(table)
        op.success("Rendered configuration table.", changed=0)


def main() -> None:
    """Console script entry point."""
    app()


__all__ = ["app", "main"]
