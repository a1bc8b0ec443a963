"""Configuration loader for divban.

Global settings are resolved from multiple sources, later entries winning:

1. Built-in defaults.
2. ``/etc/divban/config.yml`` (or an override path).
3. Environment variables prefixed with ``DIVBAN_``.
4. Explicit overrides supplied programmatically (reserved for CLI flags).

Environment keys use double underscores to express nesting, e.g.::

    export DIVBAN_USERS__UID_RANGE_START=20000
    export DIVBAN_LOCK_TIMEOUT=10

Values are coerced via PyYAML's ``safe_load`` so that booleans and numbers are
parsed naturally. The resulting configuration is exposed as immutable
``dataclasses``.
"""
from __future__ import annotations

import os
from collections.abc import Mapping, MutableMapping, Sequence
from dataclasses import dataclass
from pathlib import Path
from typing import cast

import yaml

from .errors import ConfigError, ErrorCode

ENV_PREFIX = "DIVBAN_"
CONFIG_ENV_VAR = f"{ENV_PREFIX}CONFIG_FILE"
RESERVED_ENV_KEYS = {CONFIG_ENV_VAR}

UID_MIN = 10000
UID_MAX = 59999
SUBUID_MIN = 100000
SUBUID_MIN_SIZE = 65536
SUBUID_MAX_END = 4294967294

ALLOWED_LOG_LEVELS = ("debug", "info", "warning", "error")


@dataclass(frozen=True)
class UserAllocationSettings:
    """Bounds and retry policy for UID and subordinate-ID allocation."""

    uid_range_start: int = UID_MIN
    uid_range_end: int = UID_MAX
    subuid_range_start: int = SUBUID_MIN
    subuid_range_size: int = SUBUID_MIN_SIZE
    subuid_range_max_end: int = SUBUID_MAX_END
    uid_conflict_attempts: int = 3
    uid_conflict_base_delay: float = 0.05

    def contains_uid(self, uid: int) -> bool:
        """Return ``True`` when *uid* lies within the primary UID range."""
        return self.uid_range_start <= uid <= self.uid_range_end

    def to_dict(self) -> dict[str, object]:
        """Return a serialisable representation."""
        return {
            "uid_range_start": self.uid_range_start,
            "uid_range_end": self.uid_range_end,
            "subuid_range_start": self.subuid_range_start,
            "subuid_range_size": self.subuid_range_size,
            "uid_conflict_attempts": self.uid_conflict_attempts,
            "uid_conflict_base_delay": self.uid_conflict_base_delay,
        }


@dataclass(frozen=True)
class SystemPaths:
    """Host files and directories divban reads or mutates."""

    passwd: Path = Path("/etc/passwd")
    subuid: Path = Path("/etc/subuid")
    subgid: Path = Path("/etc/subgid")
    linger_dir: Path = Path("/var/lib/systemd/linger")
    user_runtime_dir: Path = Path("/run/user")
    sysctl_dir: Path = Path("/etc/sysctl.d")
    nologin_paths: tuple[Path, ...] = (Path("/usr/sbin/nologin"), Path("/sbin/nologin"))

    def to_dict(self) -> dict[str, object]:
        """Return a serialisable representation."""
        return {
            "passwd": str(self.passwd),
            "subuid": str(self.subuid),
            "subgid": str(self.subgid),
            "linger_dir": str(self.linger_dir),
            "user_runtime_dir": str(self.user_runtime_dir),
            "sysctl_dir": str(self.sysctl_dir),
            "nologin_paths": [str(path) for path in self.nologin_paths],
        }


@dataclass(frozen=True)
class SystemdConfig:
    """Systemd integration configuration values."""

    systemctl_bin: str = "systemctl"
    journalctl_bin: str = "journalctl"
    loginctl_bin: str = "loginctl"
    session_timeout: float = 30.0

    def to_dict(self) -> dict[str, object]:
        """Return a serialisable representation."""
        return {
            "systemctl_bin": self.systemctl_bin,
            "journalctl_bin": self.journalctl_bin,
            "loginctl_bin": self.loginctl_bin,
            "session_timeout": self.session_timeout,
        }


@dataclass(frozen=True)
class LoggingConfig:
    """Console logging preferences."""

    level: str = "info"

    def to_dict(self) -> dict[str, object]:
        """Return a serialisable representation."""
        return {"level": self.level}


@dataclass(frozen=True)
class AppConfig:
    """Resolved configuration values for divban."""

    config_file: Path
    home_root: Path
    base_data_dir: Path
    lock_dir: Path
    logs_dir: Path
    lock_timeout: float
    users: UserAllocationSettings
    system: SystemPaths
    systemd: SystemdConfig
    logging: LoggingConfig

    def to_dict(self) -> dict[str, object]:
        """Return a JSON-serialisable representation of the config."""
        return {
            "config_file": str(self.config_file),
            "home_root": str(self.home_root),
            "base_data_dir": str(self.base_data_dir),
            "lock_dir": str(self.lock_dir),
            "logs_dir": str(self.logs_dir),
            "lock_timeout": self.lock_timeout,
            "users": self.users.to_dict(),
            "system": self.system.to_dict(),
            "systemd": self.systemd.to_dict(),
            "logging": self.logging.to_dict(),
        }


DEFAULTS: dict[str, object] = {
    "config_file": "/etc/divban/config.yml",
    "home_root": "/home",
    "base_data_dir": "/srv",
    "lock_dir": "/var/lock/divban",
    "logs_dir": "/var/log/divban",
    "lock_timeout": 5.0,
    "users": {
        "uid_range_start": UID_MIN,
        "uid_range_end": UID_MAX,
        "subuid_range_start": SUBUID_MIN,
        "subuid_range_size": SUBUID_MIN_SIZE,
        "uid_conflict_attempts": 3,
        "uid_conflict_base_delay": 0.05,
    },
    "system": {
        "passwd": "/etc/passwd",
        "subuid": "/etc/subuid",
        "subgid": "/etc/subgid",
        "linger_dir": "/var/lib/systemd/linger",
        "user_runtime_dir": "/run/user",
        "sysctl_dir": "/etc/sysctl.d",
        "nologin_paths": ["/usr/sbin/nologin", "/sbin/nologin"],
    },
    "systemd": {
        "systemctl_bin": "systemctl",
        "journalctl_bin": "journalctl",
        "loginctl_bin": "loginctl",
        "session_timeout": 30.0,
    },
    "logging": {
        "level": "info",
    },
}

ALLOWED_TOP_LEVEL_KEYS = set(DEFAULTS.keys())
_SECTION_KEYS: dict[str, set[str]] = {
    section: set(cast(Mapping[str, object], DEFAULTS[section]).keys())
    for section in ("users", "system", "systemd", "logging")
}


def load_config(
    config_file: str | os.PathLike[str] | None = None,
    *,
    env: Mapping[str, str] | None = None,
    overrides: Mapping[str, object] | None = None,
) -> AppConfig:
    """Load and merge configuration sources into an :class:`AppConfig`."""
    merged: dict[str, object] = _deep_copy(DEFAULTS)
    resolved_env = dict(os.environ if env is None else env)

    config_path = _determine_config_path(str(DEFAULTS["config_file"]), config_file, resolved_env)

    file_values = _load_yaml_file(config_path)
    if file_values:
        _deep_merge(merged, file_values)

    env_values = _build_env_overrides(resolved_env)
    if env_values:
        _deep_merge(merged, env_values)

    if overrides:
        _deep_merge(merged, dict(overrides))

    merged["config_file"] = str(config_path)

    _validate_structure(merged)

    return _build_app_config(merged)


def _determine_config_path(
    default_path: str,
    cli_override: str | os.PathLike[str] | None,
    env: Mapping[str, str],
) -> Path:
    if cli_override:
        return Path(cli_override)
    if CONFIG_ENV_VAR in env:
        return Path(env[CONFIG_ENV_VAR])
    return Path(default_path)


def _load_yaml_file(path: Path) -> dict[str, object]:
    if not path.exists():
        return {}
    try:
        data = yaml.safe_load(path.read_text(encoding="utf-8")) or {}
    except yaml.YAMLError as exc:  # pragma: no cover - PyYAML owns detailed error
        raise ConfigError(
            f"Failed to parse config file {path}: {exc}", ErrorCode.CONFIG_PARSE_ERROR
        ) from exc
    if not isinstance(data, Mapping):
        raise ConfigError(f"Config file {path} must contain a mapping at the top level.")
    return _as_dict(data, f"file:{path}")


def _validate_structure(raw: Mapping[str, object]) -> None:
    unknown_keys = set(raw.keys()) - ALLOWED_TOP_LEVEL_KEYS
    if unknown_keys:
        joined = ", ".join(sorted(unknown_keys))
        raise ConfigError(f"Unknown configuration keys: {joined}.")

    for section, allowed in _SECTION_KEYS.items():
        section_map = _as_dict(raw.get(section), section)
        unknown = set(section_map.keys()) - allowed
        if unknown:
            joined = ", ".join(sorted(unknown))
            raise ConfigError(f"Unknown {section} configuration keys: {joined}.")

    lock_timeout = raw.get("lock_timeout")
    if lock_timeout is not None:
        _expect_positive_float(lock_timeout, "lock_timeout", default=5.0)

    logging_map = _as_dict(raw.get("logging"), "logging")
    level = str(logging_map.get("level", "info")).lower()
    if level not in ALLOWED_LOG_LEVELS:
        allowed = ", ".join(ALLOWED_LOG_LEVELS)
        raise ConfigError(f"Unsupported logging.level '{level}'. Allowed: {allowed}.")


def _build_users(raw: Mapping[str, object]) -> UserAllocationSettings:
    users_map = _as_dict(raw.get("users"), "users")
    defaults = UserAllocationSettings()

    uid_start = _expect_int(
        users_map.get("uid_range_start"), "users.uid_range_start", default=defaults.uid_range_start
    )
    uid_end = _expect_int(
        users_map.get("uid_range_end"), "users.uid_range_end", default=defaults.uid_range_end
    )
    for label, value in (("users.uid_range_start", uid_start), ("users.uid_range_end", uid_end)):
        if not UID_MIN <= value <= UID_MAX:
            raise ConfigError(f"{label} must be between {UID_MIN} and {UID_MAX}. Got {value}.")
    if uid_start > uid_end:
        raise ConfigError(
            f"users.uid_range_start ({uid_start}) must not exceed "
            f"users.uid_range_end ({uid_end})."
        )

    subuid_start = _expect_int(
        users_map.get("subuid_range_start"),
        "users.subuid_range_start",
        default=defaults.subuid_range_start,
    )
    if subuid_start < SUBUID_MIN:
        raise ConfigError(f"users.subuid_range_start must be at least {SUBUID_MIN}.")
    subuid_size = _expect_int(
        users_map.get("subuid_range_size"),
        "users.subuid_range_size",
        default=defaults.subuid_range_size,
    )
    if subuid_size < SUBUID_MIN_SIZE:
        raise ConfigError(f"users.subuid_range_size must be at least {SUBUID_MIN_SIZE}.")

    attempts = _expect_int(
        users_map.get("uid_conflict_attempts"),
        "users.uid_conflict_attempts",
        default=defaults.uid_conflict_attempts,
    )
    if attempts < 1:
        raise ConfigError("users.uid_conflict_attempts must be at least 1.")
    base_delay = _expect_positive_float(
        users_map.get("uid_conflict_base_delay"),
        "users.uid_conflict_base_delay",
        default=defaults.uid_conflict_base_delay,
    )

    return UserAllocationSettings(
        uid_range_start=uid_start,
        uid_range_end=uid_end,
        subuid_range_start=subuid_start,
        subuid_range_size=subuid_size,
        uid_conflict_attempts=attempts,
        uid_conflict_base_delay=base_delay,
    )


def _build_app_config(raw: Mapping[str, object]) -> AppConfig:
    system_map = _as_dict(raw.get("system"), "system")
    nologin_raw = _as_sequence(system_map.get("nologin_paths", ()), "system.nologin_paths")
    system = SystemPaths(
        passwd=_to_path(system_map.get("passwd")),
        subuid=_to_path(system_map.get("subuid")),
        subgid=_to_path(system_map.get("subgid")),
        linger_dir=_to_path(system_map.get("linger_dir")),
        user_runtime_dir=_to_path(system_map.get("user_runtime_dir")),
        sysctl_dir=_to_path(system_map.get("sysctl_dir")),
        nologin_paths=tuple(_to_path(entry) for entry in nologin_raw),
    )

    systemd_map = _as_dict(raw.get("systemd"), "systemd")
    systemd = SystemdConfig(
        systemctl_bin=str(systemd_map.get("systemctl_bin", "systemctl")),
        journalctl_bin=str(systemd_map.get("journalctl_bin", "journalctl")),
        loginctl_bin=str(systemd_map.get("loginctl_bin", "loginctl")),
        session_timeout=_expect_positive_float(
            systemd_map.get("session_timeout"), "systemd.session_timeout", default=30.0
        ),
    )

    logging_map = _as_dict(raw.get("logging"), "logging")

    return AppConfig(
        config_file=_to_path(raw.get("config_file")),
        home_root=_to_path(raw.get("home_root")),
        base_data_dir=_to_path(raw.get("base_data_dir")),
        lock_dir=_to_path(raw.get("lock_dir")),
        logs_dir=_to_path(raw.get("logs_dir")),
        lock_timeout=_expect_positive_float(raw.get("lock_timeout"), "lock_timeout", default=5.0),
        users=_build_users(raw),
        system=system,
        systemd=systemd,
        logging=LoggingConfig(level=str(logging_map.get("level", "info")).lower()),
    )


def _build_env_overrides(env: Mapping[str, str]) -> dict[str, object]:
    overrides: dict[str, object] = {}
    for key, value in env.items():
        if key in RESERVED_ENV_KEYS:
            continue
        if not key.startswith(ENV_PREFIX):
            continue
        suffix = key[len(ENV_PREFIX) :]
        path_segments = [segment.lower() for segment in suffix.split("__") if segment]
        if not path_segments:
            continue
        _assign_nested(overrides, path_segments, _coerce_value(value))
    return overrides


def _assign_nested(tree: MutableMapping[str, object], path: list[str], value: object) -> None:
    current: MutableMapping[str, object] = tree
    for segment in path[:-1]:
        existing = current.get(segment)
        if existing is None:
            new_child: MutableMapping[str, object] = {}
            current[segment] = new_child
            current = new_child
            continue
        if isinstance(existing, MutableMapping):
            current = cast(MutableMapping[str, object], existing)
            continue
        raise ConfigError(
            "Environment overrides conflict with existing scalar value at "
            f"{'.'.join(path)}",
            ErrorCode.CONFIG_MERGE_ERROR,
        )
    current[path[-1]] = value


def _deep_merge(target: MutableMapping[str, object], overrides: Mapping[str, object]) -> None:
    for key, value in overrides.items():
        existing = target.get(key)
        if isinstance(existing, MutableMapping) and isinstance(value, Mapping):
            _deep_merge(existing, _as_dict(value, f"merge.{key}"))
            continue
        target[key] = value


def _deep_copy(source: Mapping[str, object]) -> dict[str, object]:
    result: dict[str, object] = {}
    for key, value in source.items():
        if isinstance(value, Mapping):
            result[key] = _deep_copy(_as_dict(value, f"copy.{key}"))
        elif isinstance(value, list):
            result[key] = list(value)
        else:
            result[key] = value
    return result


def _as_sequence(value: object, label: str) -> Sequence[object]:
    if isinstance(value, (str, bytes)) or not isinstance(value, Sequence):
        raise ConfigError(f"Expected {label} to be a sequence. Got {type(value).__name__}.")
    return value


def _coerce_value(raw: str) -> object:
    raw = raw.strip()
    try:
        parsed = yaml.safe_load(raw)
    except yaml.YAMLError:  # pragma: no cover - treat as string if parsing fails
        return raw
    return parsed


def _to_path(value: object) -> Path:
    if value is None:
        raise ConfigError("Expected a filesystem path, received None.")
    if isinstance(value, Path):
        return value.expanduser()
    if isinstance(value, str):
        return Path(value).expanduser()
    raise ConfigError(f"Cannot convert value {value!r} to Path.")


def _expect_int(value: object | None, label: str, *, default: int) -> int:
    if value is None:
        return default
    if isinstance(value, bool):
        raise ConfigError(f"Expected {label} to be an integer. Got boolean {value!r}.")
    if isinstance(value, int):
        return value
    if isinstance(value, str):
        try:
            return int(value, 0)
        except ValueError as exc:
            raise ConfigError(f"Invalid integer for {label}: {value!r}.") from exc
    raise ConfigError(f"Expected {label} to be an integer. Got {type(value).__name__}.")


def _expect_positive_float(
    value: object | None,
    label: str,
    *,
    default: float,
) -> float:
    if value is None:
        return float(default)
    if isinstance(value, bool):
        raise ConfigError(f"Expected {label} to be a number. Got boolean {value!r}.")
    if isinstance(value, (int, float)):
        numeric = float(value)
    elif isinstance(value, str):
        try:
            numeric = float(value)
        except ValueError as exc:
            raise ConfigError(f"Invalid number for {label}: {value!r}.") from exc
    else:
        raise ConfigError(
            f"Expected {label} to be numeric. Got {type(value).__name__}."
        )
    if numeric <= 0:
        raise ConfigError(f"{label} must be greater than zero. Got {numeric}.")
    return numeric


def _as_dict(value: object | None, label: str) -> dict[str, object]:
    if value is None:
        return {}
    if not isinstance(value, Mapping):
        raise ConfigError(f"Expected {label} to be a mapping. Got {type(value).__name__}.")
    result: dict[str, object] = {}
    for key, item in value.items():
        if not isinstance(key, str):
            raise ConfigError(f"Mapping {label} must use string keys. Got {key!r}.")
        result[key] = item
    return result


__all__ = [
    "AppConfig",
    "ConfigError",
    "LoggingConfig",
    "SUBUID_MAX_END",
    "SystemPaths",
    "SystemdConfig",
    "UserAllocationSettings",
    "load_config",
]
