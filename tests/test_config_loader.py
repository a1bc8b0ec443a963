"""Configuration loader tests."""
from __future__ import annotations

from pathlib import Path

import pytest

from divban.config import AppConfig, ConfigError, load_config
from divban.errors import ErrorCode


def test_load_config_defaults_when_file_missing(tmp_path: Path) -> None:
    """Defaults apply when no config file is present."""
    config = load_config(tmp_path / "missing.yml", env={})

    assert isinstance(config, AppConfig)
    assert config.home_root == Path("/home")
    assert config.base_data_dir == Path("/srv")
    assert config.lock_dir == Path("/var/lock/divban")
    assert config.users.uid_range_start == 10000
    assert config.users.uid_range_end == 59999
    assert config.users.subuid_range_start == 100000
    assert config.users.subuid_range_size == 65536
    assert config.users.uid_conflict_attempts == 3
    assert config.system.subuid == Path("/etc/subuid")
    assert config.systemd.loginctl_bin == "loginctl"
    assert config.logging.level == "info"


def test_load_config_reads_yaml_file(tmp_path: Path) -> None:
    """Values are loaded from the YAML config file."""
    cfg = tmp_path / "config.yml"
    cfg.write_text(
        "base_data_dir: /data\n"
        "users:\n"
        "  uid_range_start: 20000\n"
        "  uid_range_end: 20999\n"
        "system:\n"
        "  nologin_paths: [/usr/bin/nologin]\n"
        "logging:\n"
        "  level: DEBUG\n"
    )

    config = load_config(cfg, env={})

    assert config.config_file == cfg
    assert config.base_data_dir == Path("/data")
    assert config.users.uid_range_start == 20000
    assert config.users.uid_range_end == 20999
    assert config.system.nologin_paths == (Path("/usr/bin/nologin"),)
    assert config.logging.level == "debug"


def test_env_overrides_file_and_overrides_win(tmp_path: Path) -> None:
    """Environment values beat the file; programmatic overrides beat both."""
    cfg = tmp_path / "config.yml"
    cfg.write_text("lock_timeout: 2\nusers:\n  uid_conflict_attempts: 2\n")

    config = load_config(
        env={
            "DIVBAN_CONFIG_FILE": str(cfg),
            "DIVBAN_USERS__UID_CONFLICT_ATTEMPTS": "5",
            "DIVBAN_LOCK_TIMEOUT": "7.5",
        },
        overrides={"lock_timeout": 9},
    )

    assert config.config_file == cfg
    assert config.users.uid_conflict_attempts == 5
    assert config.lock_timeout == 9.0


@pytest.mark.parametrize(
    ("body", "message"),
    [
        ("unknown: 1\n", "Unknown configuration keys"),
        ("users:\n  colour: red\n", "Unknown users configuration keys"),
        ("users:\n  uid_range_start: 500\n", "between 10000 and 59999"),
        ("users:\n  uid_range_start: 30000\n  uid_range_end: 20000\n", "must not exceed"),
        ("users:\n  subuid_range_size: 1000\n", "at least 65536"),
        ("users:\n  subuid_range_start: 5000\n", "at least 100000"),
        ("users:\n  uid_conflict_attempts: 0\n", "at least 1"),
        ("logging:\n  level: trace\n", "Unsupported logging.level"),
        ("lock_timeout: -1\n", "lock_timeout"),
    ],
)
def test_invalid_values_are_rejected(tmp_path: Path, body: str, message: str) -> None:
    """Validation errors name the offending key."""
    cfg = tmp_path / "config.yml"
    cfg.write_text(body)

    with pytest.raises(ConfigError, match=message) as excinfo:
        load_config(cfg, env={})

    assert excinfo.value.code is ErrorCode.CONFIG_VALIDATION_ERROR


def test_parse_errors_use_parse_code(tmp_path: Path) -> None:
    """Malformed YAML is reported as a parse error."""
    cfg = tmp_path / "config.yml"
    cfg.write_text("users: [unclosed\n")

    with pytest.raises(ConfigError) as excinfo:
        load_config(cfg, env={})

    assert excinfo.value.code is ErrorCode.CONFIG_PARSE_ERROR


def test_env_conflict_is_a_merge_error() -> None:
    """Nesting below a scalar environment value is a merge error."""
    with pytest.raises(ConfigError) as excinfo:
        load_config(env={"DIVBAN_LOCK_TIMEOUT": "3", "DIVBAN_LOCK_TIMEOUT__X": "1"})

    assert excinfo.value.code is ErrorCode.CONFIG_MERGE_ERROR


def test_to_dict_is_serialisable(tmp_path: Path) -> None:
    """``to_dict`` renders paths as strings."""
    data = load_config(tmp_path / "missing.yml", env={}).to_dict()

    assert data["lock_dir"] == "/var/lock/divban"
    assert data["users"]["subuid_range_size"] == 65536
    assert data["system"]["nologin_paths"] == ["/usr/sbin/nologin", "/sbin/nologin"]
