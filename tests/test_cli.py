"""Tests for the pgforge CLI."""
from __future__ import annotations

import json
import logging
from collections.abc import Iterator
from dataclasses import replace
from pathlib import Path
from typing import Any

import pytest
import yaml
from typer.testing import CliRunner

from pgforge import __version__, get_version
from pgforge.bootstrap import BootstrapSequencer
from pgforge.cli import app
from pgforge.models import InstanceRecord, InstanceState, ServiceSpec
from pgforge.state import StateRegistry

runner = CliRunner()


@pytest.fixture(autouse=True)
def _reset_logging() -> Iterator[None]:
    """Detach the console handler the CLI installs on the pgforge logger."""
    yield
    root = logging.getLogger("pgforge")
    for handler in list(root.handlers):
        if getattr(handler, "_pgforge_handler", False):
            root.removeHandler(handler)
    root.setLevel(logging.NOTSET)


def _extract_json(output: str) -> Any:
    """Extract the JSON document embedded in *output*."""
    starts = [index for index in (output.find("{"), output.find("[")) if index != -1]
    assert starts, f"No JSON payload found in output: {output}"
    start = min(starts)
    end = max(output.rfind("}"), output.rfind("]"))
    return json.loads(output[start : end + 1])


def _prepare_environment(
    tmp_path: Path,
    config_overrides: dict[str, object],
    *,
    extra: dict[str, object] | None = None,
) -> dict[str, str]:
    """Write a config file confined to *tmp_path* and return the CLI environment."""
    config = dict(config_overrides)
    if extra:
        for key, value in extra.items():
            if isinstance(value, dict) and isinstance(config.get(key), dict):
                config[key] = {**config[key], **value}  # type: ignore[dict-item]
            else:
                config[key] = value
    config_file = tmp_path / "pgforge.yaml"
    config_file.write_text(yaml.safe_dump(config), encoding="utf-8")
    return {"PGFORGE_CONFIG_FILE": str(config_file)}


@pytest.fixture
def env(tmp_path: Path, config_overrides: dict[str, object]) -> dict[str, str]:
    """Return the environment pointing the CLI at a temporary config."""
    return _prepare_environment(tmp_path, config_overrides)


@pytest.fixture
def registry(tmp_path: Path) -> StateRegistry:
    """Return the record store the CLI environment uses."""
    return StateRegistry(tmp_path / "state" / "instances")


@pytest.fixture
def fake_bootstrap(monkeypatch: pytest.MonkeyPatch) -> list[str]:
    """Replace the bootstrap sequence with one that only fills in the password."""
    created: list[str] = []

    def run(self: BootstrapSequencer, record: InstanceRecord, **_kwargs: object) -> InstanceRecord:
        created.append(record.name)
        database = replace(record.spec.database, password="generated-pw")
        return replace(record, spec=replace(record.spec, database=database))

    monkeypatch.setattr(BootstrapSequencer, "run", run)
    return created


def _operations(tmp_path: Path) -> list[dict[str, Any]]:
    path = tmp_path / "state" / "logs" / "operations.jsonl"
    return [json.loads(line) for line in path.read_text(encoding="utf-8").splitlines()]


# ---------------------------------------------------------------------------
# Meta commands
# ---------------------------------------------------------------------------


def test_version_option_outputs_package_version(env: dict[str, str]) -> None:
    """CLI ``--version`` flag emits the package version."""
    result = runner.invoke(app, ["--version"], env=env)

    assert result.exit_code == 0
    assert f"pgforge {__version__}" in result.stdout
    assert get_version() == __version__


def test_invocation_without_subcommand_shows_help(env: dict[str, str]) -> None:
    """Calling the CLI without a subcommand shows help output."""
    result = runner.invoke(app, env=env)

    assert result.exit_code == 0
    assert "manage multiple PostgreSQL instances" in result.stdout


def test_config_json(env: dict[str, str], tmp_path: Path) -> None:
    """``config --json`` emits the resolved configuration."""
    result = runner.invoke(app, ["config", "--json"], env=env)

    assert result.exit_code == 0
    payload = _extract_json(result.stdout)
    assert payload["state_dir"] == str(tmp_path / "state")
    assert payload["instances_dir"] == str(tmp_path / "state" / "instances")
    assert payload["ports"] == {"base": 5440, "probe_listening": False}


def test_config_yaml(env: dict[str, str]) -> None:
    """``config`` without flags renders YAML."""
    result = runner.invoke(app, ["config"], env=env)

    assert result.exit_code == 0
    assert "lock_timeout: 2.0" in result.stdout


def test_invalid_config_exits_with_validation_code(
    tmp_path: Path, config_overrides: dict[str, object]
) -> None:
    """A broken config file is reported before any command runs."""
    env = _prepare_environment(tmp_path, config_overrides, extra={"lock_timeout": 0})

    result = runner.invoke(app, ["list"], env=env)

    assert result.exit_code == 2
    assert "Configuration error" in result.stdout


def test_init_writes_config_and_directories(tmp_path: Path) -> None:
    """``init`` creates the state layout and a default config file."""
    config_file = tmp_path / "etc" / "pgforge.yaml"
    env = {
        "PGFORGE_CONFIG_FILE": str(config_file),
        "PGFORGE_STATE_DIR": str(tmp_path / "state"),
    }

    result = runner.invoke(app, ["init"], env=env)

    assert result.exit_code == 0, result.stdout
    assert config_file.exists()
    assert yaml.safe_load(config_file.read_text(encoding="utf-8"))["ports"]["base"] == 5432
    for name in ("instances", "run", "logs", "templates"):
        assert (tmp_path / "state" / name).is_dir()

    again = runner.invoke(app, ["init"], env=env)
    assert again.exit_code == 0
    assert "already exists" in again.stdout


def test_check_reports_requirements(env: dict[str, str], tmp_path: Path) -> None:
    """``check`` succeeds when every executable is present and recent."""
    result = runner.invoke(app, ["check"], env=env)

    assert result.exit_code == 0, result.stdout
    assert "All requirements satisfied." in result.stdout
    (record,) = _operations(tmp_path)
    assert record["command"] == "check"
    assert record["result"]["status"] == "success"


def test_check_failure_prints_install_hints(
    tmp_path: Path, config_overrides: dict[str, object]
) -> None:
    """An outdated server fails the check with installation hints."""
    env = _prepare_environment(
        tmp_path,
        config_overrides,
        extra={"postgresql": {"min_version": "99.0", "package_manager": "brew"}},
    )

    result = runner.invoke(app, ["check"], env=env)

    assert result.exit_code == 3
    assert "brew install postgresql@99" in result.stdout
    assert "System requirements not met." in result.stdout


# ---------------------------------------------------------------------------
# Instance commands
# ---------------------------------------------------------------------------


def test_list_empty(env: dict[str, str]) -> None:
    """Listing with no records renders a placeholder row."""
    result = runner.invoke(app, ["list"], env=env)

    assert result.exit_code == 0
    assert "(none)" in result.stdout


def test_create_then_list_and_show(
    env: dict[str, str], registry: StateRegistry, fake_bootstrap: list[str]
) -> None:
    """``create`` stores a record whose password is masked in listings."""
    result = runner.invoke(app, ["create", "demo", "--port", "5444"], env=env)

    assert result.exit_code == 0, result.stdout
    assert fake_bootstrap == ["demo"]
    assert "Instance 'demo' created." in result.stdout
    assert "generated-pw" in result.stdout
    stored = registry.get("demo")
    assert stored is not None
    assert stored.spec.network.port == 5444
    assert stored.status.state is InstanceState.STOPPED

    listed = runner.invoke(app, ["list", "--format", "json"], env=env)
    assert listed.exit_code == 0
    (document,) = _extract_json(listed.stdout)
    assert document["metadata"]["name"] == "demo"
    assert document["spec"]["database"]["password"] == "********"

    shown = runner.invoke(app, ["show", "demo", "--json"], env=env)
    assert shown.exit_code == 0
    assert _extract_json(shown.stdout)["spec"]["network"]["port"] == 5444
    assert "generated-pw" not in shown.stdout


def test_create_rejects_invalid_name(env: dict[str, str], fake_bootstrap: list[str]) -> None:
    """Invalid names exit with the validation code and never bootstrap."""
    result = runner.invoke(app, ["create", "Bad_Name"], env=env)

    assert result.exit_code == 2
    assert "Invalid instance name" in result.stdout
    assert fake_bootstrap == []


def test_create_reports_port_conflict(
    env: dict[str, str],
    registry: StateRegistry,
    make_record: Any,
    fake_bootstrap: list[str],
) -> None:
    """A port owned by another instance is a validation failure."""
    registry.save(make_record("alpha", port=5450))

    result = runner.invoke(app, ["create", "demo", "--port", "5450"], env=env)

    assert result.exit_code == 2
    assert "alpha" in result.stdout
    assert fake_bootstrap == []


def test_list_filters_and_validates_status(
    env: dict[str, str], registry: StateRegistry, make_record: Any
) -> None:
    """``--status`` filters records; unknown values are rejected."""
    registry.save(make_record("alpha", port=5441))
    registry.save(make_record("beta", port=5442, state=InstanceState.ERROR))

    result = runner.invoke(app, ["list", "--status", "error", "--format", "json"], env=env)
    assert result.exit_code == 0
    assert [item["metadata"]["name"] for item in _extract_json(result.stdout)] == ["beta"]

    table = runner.invoke(app, ["list"], env=env)
    assert "alpha" in table.stdout
    assert "beta" in table.stdout

    bad = runner.invoke(app, ["list", "--status", "sleeping"], env=env)
    assert bad.exit_code == 2
    assert "Unsupported status" in bad.stdout


def test_unknown_instance_exit_code(env: dict[str, str], tmp_path: Path) -> None:
    """Unknown instances exit with the validation code and are logged as errors."""
    for command in (["show", "ghost"], ["start", "ghost"], ["status", "ghost"]):
        result = runner.invoke(app, command, env=env)
        assert result.exit_code == 2
        assert "Instance 'ghost' not found" in result.stdout

    last = _operations(tmp_path)[-1]
    assert last["result"]["status"] == "error"
    assert last["result"]["context"]["error"] == "InstanceNotFoundError"


def test_start_status_stop(env: dict[str, str], registry: StateRegistry, make_record: Any) -> None:
    """Instances start, report running, and stop through the CLI."""
    registry.save(make_record())

    started = runner.invoke(app, ["start", "demo"], env=env)
    record = registry.get("demo")
    assert record is not None
    try:
        assert started.exit_code == 0, started.stdout
        assert "Instance 'demo' started" in started.stdout
        assert record.status.state is InstanceState.RUNNING

        status = runner.invoke(app, ["status", "demo"], env=env)
        assert status.exit_code == 0
        assert "running" in status.stdout

        again = runner.invoke(app, ["start", "demo"], env=env)
        assert again.exit_code == 2
        assert "already running" in again.stdout
    finally:
        stopped = runner.invoke(app, ["stop", "demo"], env=env)

    assert stopped.exit_code == 0
    assert "Instance 'demo' stopped." in stopped.stdout
    final = registry.get("demo")
    assert final is not None
    assert final.status.state is InstanceState.STOPPED


def test_status_all_corrects_stale_records(
    env: dict[str, str], registry: StateRegistry, make_record: Any
) -> None:
    """``status`` with no name reconciles every record."""
    registry.save(make_record("alpha", port=5441, state=InstanceState.RUNNING, pid=2**22 + 99))
    registry.save(make_record("beta", port=5442))

    result = runner.invoke(app, ["status"], env=env)

    assert result.exit_code == 0
    alpha = registry.get("alpha")
    assert alpha is not None
    assert alpha.status.state is InstanceState.STOPPED


def test_list_and_show_report_reconciled_state(
    env: dict[str, str], registry: StateRegistry, make_record: Any
) -> None:
    """``list --status running`` and ``show`` never report a dead process as running."""
    registry.save(make_record("alpha", port=5441, state=InstanceState.RUNNING, pid=2**22 + 31))

    listed = runner.invoke(app, ["list", "--status", "running", "--format", "json"], env=env)
    assert listed.exit_code == 0, listed.stdout
    assert _extract_json(listed.stdout) == []

    registry.save(make_record("alpha", port=5441, state=InstanceState.RUNNING, pid=2**22 + 31))
    shown = runner.invoke(app, ["show", "alpha", "--json"], env=env)
    assert shown.exit_code == 0, shown.stdout
    assert _extract_json(shown.stdout)["status"]["state"] == "stopped"


def test_remove_running_requires_force(
    env: dict[str, str], registry: StateRegistry, make_record: Any
) -> None:
    """Removing a running instance without ``--force`` is a conflict."""
    registry.save(make_record(state=InstanceState.RUNNING, pid=2**22 + 7))

    result = runner.invoke(app, ["remove", "demo"], env=env)

    assert result.exit_code == 2
    assert "is running" in result.stdout
    assert registry.get("demo") is not None


def test_remove_with_backup_warns(
    env: dict[str, str], registry: StateRegistry, make_record: Any, tmp_path: Path
) -> None:
    """``remove --backup`` removes the record and warns that no backup was taken."""
    registry.save(make_record())

    result = runner.invoke(app, ["remove", "demo", "--backup"], env=env)

    assert result.exit_code == 0, result.stdout
    assert "Instance 'demo' removed." in result.stdout
    assert "Backups are not implemented" in result.stdout
    assert registry.get("demo") is None
    last = _operations(tmp_path)[-1]
    assert last["result"]["status"] == "warning"


@pytest.mark.parametrize(
    ("args", "expected"),
    [
        ([], "postgresql://demo_user@127.0.0.1:5440/demo_db"),
        (["--format", "env"], "PGDATABASE=demo_db"),
        (["--format", "env", "--show-password"], "PGPASSWORD=s3cret"),
    ],
)
def test_connection_string_formats(
    env: dict[str, str],
    registry: StateRegistry,
    make_record: Any,
    args: list[str],
    expected: str,
) -> None:
    """Connection parameters are printed as a URI or libpq variables."""
    registry.save(make_record())

    result = runner.invoke(app, ["connection-string", "demo", *args], env=env)

    assert result.exit_code == 0
    assert expected in result.stdout
    if "--show-password" not in args:
        assert "s3cret" not in result.stdout


def test_connection_string_json(
    env: dict[str, str], registry: StateRegistry, make_record: Any
) -> None:
    """JSON output includes the password only on request."""
    registry.save(make_record())

    hidden = runner.invoke(app, ["connection-string", "demo", "--format", "json"], env=env)
    shown = runner.invoke(
        app, ["connection-string", "demo", "--format", "json", "--show-password"], env=env
    )
    bad = runner.invoke(app, ["connection-string", "demo", "--format", "xml"], env=env)

    assert "password" not in _extract_json(hidden.stdout)
    assert _extract_json(shown.stdout)["password"] == "s3cret"
    assert bad.exit_code == 2


# ---------------------------------------------------------------------------
# Service commands
# ---------------------------------------------------------------------------


def test_service_enable_and_disable(
    env: dict[str, str],
    registry: StateRegistry,
    make_record: Any,
    systemctl: Any,
    tmp_path: Path,
) -> None:
    """Enabling installs the unit; disabling removes it again."""
    registry.save(make_record())
    unit_path = tmp_path / "units" / "pgforge-demo.service"

    enabled = runner.invoke(
        app, ["service", "enable", "demo", "--restart-policy", "always"], env=env
    )

    assert enabled.exit_code == 0, enabled.stdout
    assert "Service enabled for 'demo'." in enabled.stdout
    assert unit_path.exists()
    record = registry.get("demo")
    assert record is not None
    assert record.spec.service == ServiceSpec(restart_policy="always")

    disabled = runner.invoke(app, ["service", "disable", "demo"], env=env)

    assert disabled.exit_code == 0, disabled.stdout
    assert not unit_path.exists()
    record = registry.get("demo")
    assert record is not None
    assert record.service_mode is False

    again = runner.invoke(app, ["service", "disable", "demo"], env=env)
    assert again.exit_code == 2
