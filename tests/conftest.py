"""Pytest configuration helpers for the test suite."""

from __future__ import annotations

import os
import subprocess
from collections.abc import Callable
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any

import psycopg
import pytest

from pgforge.config import AppConfig, load_config
from pgforge.models import (
    DatabaseSpec,
    InstanceMetadata,
    InstanceRecord,
    InstanceSpec,
    InstanceState,
    InstanceStatus,
    NetworkSpec,
    ServiceSpec,
    StorageSpec,
)
from pgforge.orchestrator import InstanceOrchestrator
from pgforge.providers.systemd import SystemdProvider

FAKE_INITDB = """#!/bin/sh
if [ "$1" = "--version" ]; then
    echo "initdb (PostgreSQL) 15.4"
    exit 0
fi
mkdir -p "$2/base" "$2/global"
echo 15 > "$2/PG_VERSION"
exit 0
"""

FAKE_POSTGRES = """#!/bin/sh
if [ "$1" = "--version" ]; then
    echo "postgres (PostgreSQL) 15.4"
    exit 0
fi
exec sleep 30
"""

FAKE_CLIENT = """#!/bin/sh
echo "{name} (PostgreSQL) 15.4"
"""


def pytest_collection_modifyitems(config: pytest.Config, items: list[pytest.Item]) -> None:
    """Skip expensive tests during mutation runs."""
    if not os.environ.get("MUTANT_UNDER_TEST"):
        return
    skip_marker = pytest.mark.skip(reason="Skipped during mutation run to avoid timeouts.")
    for item in items:
        if "mutation_timeout" in item.keywords:
            item.add_marker(skip_marker)


def write_script(path: Path, content: str) -> Path:
    """Write an executable shell script."""
    path.parent.mkdir(parents=True, exist_ok=True)
    path.write_text(content, encoding="utf-8")
    path.chmod(0o755)
    return path


class FakeConnection:
    """Connection double recording every executed statement."""

    def __init__(self, owner: FakeConnect, dbname: str | None) -> None:
        """Bind the connection to the recording factory."""
        self.owner = owner
        self.dbname = dbname

    def __enter__(self) -> FakeConnection:
        """Return the connection itself."""
        return self

    def __exit__(self, *exc_info: object) -> bool:
        """Never suppress exceptions."""
        return False

    def execute(self, query: Any, params: Any = None) -> FakeConnection:
        """Record *query* unless it matches the configured failure."""
        text = repr(query)
        if self.owner.fail_on and self.owner.fail_on in text:
            raise psycopg.ProgrammingError(f"statement rejected: {self.owner.fail_on}")
        self.owner.statements.append((self.dbname, text))
        return self


@dataclass
class FakeConnect:
    """Stand-in for :func:`psycopg.connect`."""

    failures: int = 0
    fail_on: str | None = None
    calls: list[dict[str, Any]] = field(default_factory=list)
    statements: list[tuple[str | None, str]] = field(default_factory=list)

    def __call__(self, **kwargs: Any) -> FakeConnection:
        """Return a connection, failing first when asked to."""
        self.calls.append(kwargs)
        if self.failures > 0:
            self.failures -= 1
            raise psycopg.OperationalError("connection refused")
        return FakeConnection(self, kwargs.get("dbname"))


@dataclass
class SystemctlState:
    """In-memory view of what the fake systemctl was asked to do."""

    calls: list[tuple[str, str | None, bool]] = field(default_factory=list)
    active: dict[str, str] = field(default_factory=dict)
    enabled: set[str] = field(default_factory=set)
    state_after_start: str = "active"


@pytest.fixture
def fake_bin(tmp_path: Path) -> Path:
    """Return a directory holding stand-ins for the PostgreSQL executables."""
    directory = tmp_path / "pgbin"
    write_script(directory / "initdb", FAKE_INITDB)
    write_script(directory / "postgres", FAKE_POSTGRES)
    for name in ("psql", "pg_dump", "pg_restore"):
        write_script(directory / name, FAKE_CLIENT.format(name=name))
    return directory


@pytest.fixture
def config_overrides(tmp_path: Path, fake_bin: Path) -> dict[str, object]:
    """Return overrides confining pgforge to the temporary directory."""
    return {
        "state_dir": str(tmp_path / "state"),
        "data_root": str(tmp_path / "data"),
        "log_root": str(tmp_path / "pglogs"),
        "backup_root": str(tmp_path / "backups"),
        "lock_timeout": 2.0,
        "ports": {"base": 5440, "probe_listening": False},
        "postgresql": {
            "default_version": "15.4",
            "min_version": "15.0",
            "search_paths": [str(fake_bin)],
        },
        "supervision": {
            "settle_seconds": 0.05,
            "poll_interval": 0.01,
            "stop_attempts": 300,
            "readiness_attempts": 3,
            "restart_cooldown": 0,
        },
        "systemd": {"unit_dir": str(tmp_path / "units")},
    }


@pytest.fixture
def app_config(tmp_path: Path, config_overrides: dict[str, object]) -> AppConfig:
    """Return a configuration rooted in the temporary directory."""
    return load_config(tmp_path / "config.yaml", env={}, overrides=config_overrides)


@pytest.fixture
def fake_connect() -> FakeConnect:
    """Return a recording connection factory."""
    return FakeConnect()


@pytest.fixture
def orchestrator(app_config: AppConfig, fake_connect: FakeConnect) -> InstanceOrchestrator:
    """Return an orchestrator wired to the fake executables and connection."""
    instance = InstanceOrchestrator.from_config(app_config, connect=fake_connect)
    instance.sleep = lambda _seconds: None
    return instance


@pytest.fixture
def make_record(app_config: AppConfig) -> Callable[..., InstanceRecord]:
    """Return a factory building records under the configured roots."""

    def factory(
        name: str = "demo",
        *,
        port: int = 5440,
        state: InstanceState = InstanceState.STOPPED,
        pid: int | None = None,
        service: ServiceSpec | None = None,
        password: str | None = "s3cret",
    ) -> InstanceRecord:
        underscored = name.replace("-", "_")
        return InstanceRecord(
            metadata=InstanceMetadata(name=name, labels={"environment": "custom"}),
            spec=InstanceSpec(
                version="15.4",
                network=NetworkSpec(port=port),
                storage=StorageSpec(
                    data_directory=app_config.data_root / name,
                    log_directory=app_config.log_root / name,
                ),
                database=DatabaseSpec(
                    name=f"{underscored}_db", owner=f"{underscored}_user", password=password
                ),
                service=service,
            ),
            status=InstanceStatus(state=state, pid=pid, version="15.4"),
        )

    return factory


@pytest.fixture
def systemctl(monkeypatch: pytest.MonkeyPatch) -> SystemctlState:
    """Replace ``systemctl`` invocations with an in-memory service manager."""
    state = SystemctlState()

    def fake_systemctl(
        self: SystemdProvider,
        command: str,
        unit: str | None = None,
        *,
        check: bool = True,
    ) -> subprocess.CompletedProcess[str]:
        state.calls.append((command, unit, self.user_mode))
        stdout = ""
        if command == "start" and unit:
            state.active[unit] = state.state_after_start
        elif command == "stop" and unit:
            state.active[unit] = "inactive"
        elif command == "enable" and unit:
            state.enabled.add(unit)
        elif command == "disable" and unit:
            state.enabled.discard(unit)
        elif command == "is-active" and unit:
            stdout = state.active.get(unit, "inactive") + "\n"
        elif command == "is-enabled" and unit:
            stdout = "enabled\n" if unit in state.enabled else "disabled\n"
        return subprocess.CompletedProcess([command], 0, stdout=stdout, stderr="")

    monkeypatch.setattr(SystemdProvider, "_systemctl", fake_systemctl)
    return state
