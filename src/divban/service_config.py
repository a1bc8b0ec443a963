"""Per-service YAML configuration consumed by ``divban setup``.

Only the fields the provisioning core needs are interpreted here; everything
else is carried through untouched for the service's own setup callback::

    paths:
      data_dir: /srv/caddy
    units:
      - caddy.service
"""
from __future__ import annotations

from collections.abc import Mapping, Sequence
from dataclasses import dataclass, field
from pathlib import Path

import yaml

from .errors import ConfigError, ErrorCode


@dataclass(frozen=True)
class ServiceConfig:
    """Validated view of a service config file."""

    path: Path
    data_dir: Path | None = None
    units: tuple[str, ...] = ()
    raw: Mapping[str, object] = field(default_factory=dict)

    def resolve_data_dir(self, base_data_dir: Path, username: str) -> Path:
        """Return the configured data directory or ``<base>/<username>``."""
        return self.data_dir if self.data_dir is not None else base_data_dir / username


def load_service_config(path: Path) -> ServiceConfig:
    """Read and validate the service config at *path*."""
    if not path.is_file():
        raise ConfigError(f"Config file not found: {path}", ErrorCode.CONFIG_NOT_FOUND)
    try:
        data = yaml.safe_load(path.read_text(encoding="utf-8")) or {}
    except yaml.YAMLError as exc:
        raise ConfigError(f"Failed to parse {path}: {exc}", ErrorCode.CONFIG_PARSE_ERROR) from exc
    except OSError as exc:
        raise ConfigError(f"Failed to read {path}: {exc}", ErrorCode.CONFIG_NOT_FOUND) from exc
    if not isinstance(data, Mapping):
        raise ConfigError(f"Config file {path} must contain a mapping at the top level.")

    data_dir: Path | None = None
    paths = data.get("paths")
    if paths is not None:
        if not isinstance(paths, Mapping):
            raise ConfigError(f"{path}: 'paths' must be a mapping.")
        raw_dir = paths.get("data_dir")
        if raw_dir is not None:
            if not isinstance(raw_dir, str) or not raw_dir.startswith("/"):
                raise ConfigError(f"{path}: paths.data_dir must be an absolute path.")
            data_dir = Path(raw_dir)

    units: tuple[str, ...] = ()
    raw_units = data.get("units")
    if raw_units is not None:
        if isinstance(raw_units, str) or not isinstance(raw_units, Sequence):
            raise ConfigError(f"{path}: 'units' must be a list of unit names.")
        if not all(isinstance(unit, str) and unit.strip() for unit in raw_units):
            raise ConfigError(f"{path}: 'units' entries must be non-empty strings.")
        units = tuple(unit.strip() for unit in raw_units)

    return ServiceConfig(path=path, data_dir=data_dir, units=units, raw=dict(data))


__all__ = ["ServiceConfig", "load_service_config"]
