"""Catalogue of services divban knows how to provision."""
from __future__ import annotations

from collections.abc import Callable
from dataclasses import dataclass
from pathlib import Path

from .errors import ErrorCode, ServiceError
from .providers.systemd import UserSystemdProvider
from .service_config import ServiceConfig
from .system.users import ServiceUser


@dataclass(frozen=True)
class ServiceSetupContext:
    """Everything a service-specific setup callback may touch."""

    service: ServiceDefinition
    user: ServiceUser
    config: ServiceConfig
    data_dir: Path
    installed_config: Path
    systemd: UserSystemdProvider

    @property
    def units(self) -> tuple[str, ...]:
        """Return the units to manage, preferring those named in the config."""
        return self.config.units or self.service.units


ServiceSetup = Callable[[ServiceSetupContext], None]


def default_service_setup(ctx: ServiceSetupContext) -> None:
    """Reload the user's manager and enable the service's units."""
    ctx.systemd.daemon_reload(ctx.user)
    for unit in ctx.units:
        ctx.systemd.enable(ctx.user, unit)


@dataclass(frozen=True)
class ServiceDefinition:
    """Static description of a provisionable service."""

    name: str
    description: str
    units: tuple[str, ...]
    privileged_ports: bool = False
    setup: ServiceSetup = default_service_setup


SERVICES: dict[str, ServiceDefinition] = {
    definition.name: definition
    for definition in (
        ServiceDefinition(
            name="caddy",
            description="Caddy reverse proxy server with automatic HTTPS",
            units=("caddy.service",),
            privileged_ports=True,
        ),
        ServiceDefinition(
            name="immich",
            description="Self-hosted photo and video management",
            units=(
                "immich-redis.service",
                "immich-postgres.service",
                "immich-server.service",
                "immich-machine-learning.service",
            ),
        ),
        ServiceDefinition(
            name="actual",
            description="Self-hosted personal finance management",
            units=("actual.service",),
        ),
        ServiceDefinition(
            name="freshrss",
            description="Self-hosted RSS feed aggregator",
            units=("freshrss.service",),
        ),
    )
}


def get_service(name: str) -> ServiceDefinition:
    """Return the definition for *name* or raise :class:`ServiceError`."""
    try:
        return SERVICES[name]
    except KeyError:
        known = ", ".join(sorted(SERVICES))
        raise ServiceError(
            f"Unknown service '{name}'. Available: {known}.", ErrorCode.SERVICE_NOT_FOUND
        ) from None


def list_services() -> list[ServiceDefinition]:
    """Return all known services sorted by name."""
    return [SERVICES[name] for name in sorted(SERVICES)]


__all__ = [
    "SERVICES",
    "ServiceDefinition",
    "ServiceSetup",
    "ServiceSetupContext",
    "default_service_setup",
    "get_service",
    "list_services",
]
