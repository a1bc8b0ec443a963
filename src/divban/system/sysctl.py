"""Kernel setting that lets rootless containers bind low ports."""
from __future__ import annotations

from dataclasses import dataclass
from pathlib import Path

from ..errors import DivbanError, DivbanSystemError, ErrorCode
from .exec import Runner, run_checked
from .fs import atomic_write

UNPRIVILEGED_PORT_KEY = "net.ipv4.ip_unprivileged_port_start"
DEFAULT_UNPRIVILEGED_PORT_START = 70
SYSCTL_FILE_NAME = "50-divban-unprivileged-ports.conf"


@dataclass(slots=True)
class SysctlManager:
    """Read and persist ``net.ipv4.ip_unprivileged_port_start``."""

    runner: Runner | None = None
    sysctl_dir: Path = Path("/etc/sysctl.d")

    @property
    def config_path(self) -> Path:
        """Return the drop-in file divban manages."""
        return self.sysctl_dir / SYSCTL_FILE_NAME

    def unprivileged_port_start(self) -> int:
        """Return the live kernel value."""
        result = run_checked(
            ["sysctl", "-n", UNPRIVILEGED_PORT_KEY],
            runner=self.runner,
            error_prefix=f"Failed to read sysctl {UNPRIVILEGED_PORT_KEY}",
        )
        raw = (result.stdout or "").strip()
        try:
            return int(raw)
        except ValueError as exc:
            raise DivbanSystemError(
                f"Invalid sysctl value for {UNPRIVILEGED_PORT_KEY}: {raw!r}"
            ) from exc

    def is_unprivileged_port_enabled(self, threshold: int = DEFAULT_UNPRIVILEGED_PORT_START) -> bool:
        """Return ``True`` if ports at or above *threshold* are unprivileged."""
        try:
            return self.unprivileged_port_start() <= threshold
        except DivbanError:
            return False

    def ensure_unprivileged_ports(self, threshold: int = DEFAULT_UNPRIVILEGED_PORT_START) -> bool:
        """Persist and apply *threshold*; returns ``False`` if already in effect."""
        if self.is_unprivileged_port_enabled(threshold):
            return False
        content = (
            "# Configured by divban for rootless container privileged port binding\n"
            f"# Allows unprivileged users to bind to ports >= {threshold}\n"
            f"{UNPRIVILEGED_PORT_KEY} = {threshold}\n"
        )
        atomic_write(self.config_path, content, mode=0o644)
        run_checked(
            ["sysctl", "-w", f"{UNPRIVILEGED_PORT_KEY}={threshold}"],
            runner=self.runner,
            error_prefix=f"Failed to apply sysctl {UNPRIVILEGED_PORT_KEY}={threshold}",
            code=ErrorCode.EXEC_FAILED,
        )
        return True


__all__ = ["DEFAULT_UNPRIVILEGED_PORT_START", "SysctlManager", "UNPRIVILEGED_PORT_KEY"]
