"""Tests for the divban CLI."""
from __future__ import annotations

import json
import os
from pathlib import Path

import pytest
import yaml
from conftest import FakeHost, completed
from typer.testing import CliRunner, Result

from divban import __version__
from divban.cli import app
from divban.system import exec as exec_module

runner = CliRunner()


@pytest.fixture
def cli_env(host: FakeHost, tmp_path: Path, monkeypatch: pytest.MonkeyPatch) -> dict[str, str]:
    """Write a global config pointing at the fake host and route commands to it."""
    config = {
        "home_root": str(host.home_root),
        "base_data_dir": str(host.data_root),
        "lock_dir": str(host.lock_dir),
        "logs_dir": str(tmp_path / "logs"),
        "lock_timeout": 1,
        "system": {
            "passwd": str(host.passwd),
            "subuid": str(host.subuid),
            "subgid": str(host.subgid),
            "linger_dir": str(host.linger_dir),
            "user_runtime_dir": str(host.run_dir),
            "sysctl_dir": str(host.sysctl_dir),
            "nologin_paths": [str(host.nologin)],
        },
        "systemd": {"session_timeout": 1},
    }
    config_path = tmp_path / "config.yml"
    config_path.write_text(yaml.safe_dump(config), encoding="utf-8")
    monkeypatch.setattr(exec_module, "_default_runner", host.run)
    return {"DIVBAN_CONFIG_FILE": str(config_path)}


def _as_root(monkeypatch: pytest.MonkeyPatch, root: bool = True) -> None:
    monkeypatch.setattr(os, "geteuid", lambda: 0 if root else 1000)


def _invoke(args: list[str], env: dict[str, str]) -> Result:
    return runner.invoke(app, args, env=env)


def _last_operation(tmp_path: Path) -> dict[str, object]:
    lines = (tmp_path / "logs" / "operations.jsonl").read_text(encoding="utf-8").splitlines()
    return json.loads(lines[-1])


def _service_config(tmp_path: Path) -> Path:
    path = tmp_path / "actual.yml"
    path.write_text("units:\n  - actual.service\n", encoding="utf-8")
    return path


def _add_service_user(host: FakeHost, name: str = "divban-actual") -> None:
    host.add_account(name, 10000, host.home_root / name, str(host.nologin))


def test_version_flag() -> None:
    """``--version`` prints the package version."""
    result = runner.invoke(app, ["--version"])

    assert result.exit_code == 0
    assert __version__ in result.stdout


def test_config_show_json(cli_env: dict[str, str], host: FakeHost) -> None:
    """The effective configuration renders as JSON."""
    result = _invoke(["config", "show", "--json"], cli_env)

    assert result.exit_code == 0
    data = json.loads(result.stdout)
    assert data["home_root"] == str(host.home_root)
    assert data["users"]["uid_range_start"] == 10000


def test_invalid_global_config_exits_with_code(tmp_path: Path) -> None:
    """Config validation failures map to their exit code."""
    config_path = tmp_path / "config.yml"
    config_path.write_text("bogus: true\n", encoding="utf-8")

    result = _invoke(["config", "show"], {"DIVBAN_CONFIG_FILE": str(config_path)})

    assert result.exit_code == 12
    assert "Unknown configuration keys" in result.stdout


def test_setup_dry_run_lists_steps(
    cli_env: dict[str, str], host: FakeHost, tmp_path: Path
) -> None:
    """A dry run shows the plan without touching the host."""
    result = _invoke(["setup", "caddy", str(_service_config(tmp_path)), "--dry-run"], cli_env)

    assert result.exit_code == 0
    assert "Configuring privileged port binding" in result.stdout
    assert "Running caddy setup" in result.stdout
    assert host.commands("useradd") == []
    assert _last_operation(tmp_path)["result"]["message"] == "Setup dry-run complete."


def test_setup_unknown_service(cli_env: dict[str, str], tmp_path: Path) -> None:
    """Unknown services exit with ``SERVICE_NOT_FOUND``."""
    result = _invoke(["setup", "nextcloud", str(_service_config(tmp_path))], cli_env)

    assert result.exit_code == 30
    assert "Unknown service" in result.stdout


def test_setup_requires_root_for_new_user(
    cli_env: dict[str, str], host: FakeHost, tmp_path: Path, monkeypatch: pytest.MonkeyPatch
) -> None:
    """Without root, setup of a new service stops before any change."""
    _as_root(monkeypatch, False)

    result = _invoke(["setup", "actual", str(_service_config(tmp_path))], cli_env)

    assert result.exit_code == 3
    assert host.commands("useradd") == []
    record = _last_operation(tmp_path)
    assert record["command"] == "setup"
    assert record["result"]["rc"] == 3


def test_setup_failure_reports_step_and_exit_code(
    cli_env: dict[str, str], host: FakeHost, tmp_path: Path, monkeypatch: pytest.MonkeyPatch
) -> None:
    """Saga failures print the failed step and exit with the error's code."""
    _as_root(monkeypatch)
    host.on(
        lambda command: completed(command, 1, stderr="cannot lock /etc/passwd")
        if command[0] == "useradd"
        else None
    )

    result = _invoke(["setup", "actual", str(_service_config(tmp_path))], cli_env)

    assert result.exit_code == 20
    assert "[1/5] Creating service user" in result.stdout
    assert "Setup failed at step 1/5" in result.stdout
    assert _last_operation(tmp_path)["result"]["status"] == "error"


def test_user_show_missing_user(cli_env: dict[str, str]) -> None:
    """Inspecting an unprovisioned service exits with ``SERVICE_NOT_FOUND``."""
    result = _invoke(["user", "show", "actual"], cli_env)

    assert result.exit_code == 30
    assert "does not exist" in result.stdout


def test_user_show_json(cli_env: dict[str, str], host: FakeHost) -> None:
    """An existing identity renders as JSON, including linger state."""
    _add_service_user(host)
    host.subuid.write_text("divban-actual:100000:65536\n")
    (host.linger_dir / "divban-actual").touch()

    result = _invoke(["user", "show", "actual", "--json"], cli_env)

    assert result.exit_code == 0
    data = json.loads(result.stdout)
    assert data["uid"] == 10000
    assert data["subuid_start"] == 100000
    assert data["linger"] is True


def test_status_reports_unit_states(cli_env: dict[str, str], host: FakeHost) -> None:
    """Status asks the user manager about each unit."""
    _add_service_user(host)
    host.on(lambda command: completed(command, 3) if "is-active" in command else None)

    result = _invoke(["status", "actual", "--json"], cli_env)

    assert result.exit_code == 0
    assert json.loads(result.stdout)["units"] == {"actual.service": "inactive"}


def test_start_runs_each_unit(cli_env: dict[str, str], host: FakeHost, tmp_path: Path) -> None:
    """``start`` starts every unit as the service user."""
    _add_service_user(host, "divban-immich")

    result = _invoke(["start", "immich"], cli_env)

    assert result.exit_code == 0
    started = [call[-1] for call in host.commands("runuser") if "start" in call]
    assert started == [
        "immich-redis.service",
        "immich-postgres.service",
        "immich-server.service",
        "immich-machine-learning.service",
    ]
    assert _last_operation(tmp_path)["result"]["changed"] == 4


def test_stop_failure_exit_code(cli_env: dict[str, str], host: FakeHost) -> None:
    """Unit failures exit with the service error code."""
    _add_service_user(host)
    host.on(lambda command: completed(command, 1, stderr="failed") if "stop" in command else None)

    result = _invoke(["stop", "actual"], cli_env)

    assert result.exit_code == 32


def test_remove_requires_root(
    cli_env: dict[str, str], host: FakeHost, monkeypatch: pytest.MonkeyPatch
) -> None:
    """Removal refuses to run without root."""
    _as_root(monkeypatch, False)
    _add_service_user(host)

    result = _invoke(["remove", "actual", "--force"], cli_env)

    assert result.exit_code == 3
    assert "divban-actual" in host.accounts


def test_remove_missing_user_is_a_warning(
    cli_env: dict[str, str], tmp_path: Path, monkeypatch: pytest.MonkeyPatch
) -> None:
    """Removing an absent service succeeds with a warning."""
    _as_root(monkeypatch)

    result = _invoke(["remove", "actual", "--force"], cli_env)

    assert result.exit_code == 0
    assert "Nothing to remove" in result.stdout
    assert _last_operation(tmp_path)["result"]["status"] == "warning"


def test_remove_missing_user_clears_orphaned_subids(
    cli_env: dict[str, str], host: FakeHost, monkeypatch: pytest.MonkeyPatch
) -> None:
    """A forced removal cleans delegations left without an account."""
    _as_root(monkeypatch)
    host.subuid.write_text("divban-actual:100000:65536\nalice:200000:65536\n")
    host.subgid.write_text("divban-actual:100000:65536\n")

    result = _invoke(["remove", "actual", "--force"], cli_env)

    assert result.exit_code == 0
    assert "Nothing to remove" in result.stdout
    assert host.subuid.read_text() == "alice:200000:65536\n"
    assert host.subgid.read_text() == ""
    assert host.commands("userdel") == []


def test_remove_needs_force(
    cli_env: dict[str, str], host: FakeHost, monkeypatch: pytest.MonkeyPatch
) -> None:
    """Without ``--force`` nothing is removed."""
    _as_root(monkeypatch)
    _add_service_user(host)

    result = _invoke(["remove", "actual"], cli_env)

    assert result.exit_code == 1
    assert "--force" in result.stdout
    assert host.commands("userdel") == []


def test_remove_dry_run(
    cli_env: dict[str, str], host: FakeHost, monkeypatch: pytest.MonkeyPatch
) -> None:
    """A dry run lists the removal plan."""
    _as_root(monkeypatch)
    _add_service_user(host)

    result = _invoke(["remove", "actual", "--dry-run", "--preserve-data"], cli_env)

    assert result.exit_code == 0
    assert "Delete user divban-actual" in result.stdout
    assert "Remove data directory" not in result.stdout
    assert host.commands("userdel") == []


def test_remove_force_deletes_user(
    cli_env: dict[str, str], host: FakeHost, tmp_path: Path, monkeypatch: pytest.MonkeyPatch
) -> None:
    """A forced removal deletes the account and its delegations."""
    _as_root(monkeypatch)
    _add_service_user(host)
    host.subuid.write_text("divban-actual:100000:65536\n")
    host.subgid.write_text("divban-actual:100000:65536\n")

    result = _invoke(["remove", "actual", "--force"], cli_env)

    assert result.exit_code == 0
    assert "divban-actual" not in host.accounts
    assert host.subuid.read_text() == ""
    record = _last_operation(tmp_path)
    assert record["command"] == "remove"
    assert record["result"]["status"] == "success"


def test_logs_prints_each_unit(cli_env: dict[str, str], host: FakeHost) -> None:
    """Captured journal output is printed per unit."""
    _add_service_user(host)
    host.on(
        lambda command: completed(command, stdout="started actual\n")
        if "journalctl" in command
        else None
    )

    result = _invoke(["logs", "actual", "--lines", "5"], cli_env)

    assert result.exit_code == 0
    assert "== actual.service ==" in result.stdout
    assert "started actual" in result.stdout
    journal = [call for call in host.commands("runuser") if "journalctl" in call][0]
    assert journal[-2:] == ["--lines", "5"]


def test_logs_follow_needs_single_unit(cli_env: dict[str, str], host: FakeHost) -> None:
    """Following a multi-unit service requires ``--unit``."""
    _add_service_user(host, "divban-immich")

    result = _invoke(["logs", "immich", "--follow"], cli_env)

    assert result.exit_code == 2
    assert "--unit" in result.stdout
