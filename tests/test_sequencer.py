"""Tests for the create-time bootstrap sequencer."""
from __future__ import annotations

import os
from collections.abc import Callable
from dataclasses import replace
from pathlib import Path
from typing import Any

import pytest

from pgforge.binaries import BinaryLocator
from pgforge.bootstrap import BOOTSTRAP_LOG_NAME, BootstrapSequencer
from pgforge.errors import BootstrapError, ExternalToolMissingError, SupervisionError
from pgforge.models import InstanceRecord
from pgforge.pgconf import GENERATED_MARKER
from pgforge.providers.process import DirectProcessProvider

FAILING_INITDB = """#!/bin/sh
echo "initdb: error: invalid locale settings" >&2
exit 1
"""

CRASHING_POSTGRES = """#!/bin/sh
echo "FATAL:  could not create lock file" >&2
exit 1
"""


def _write(path: Path, content: str) -> None:
    path.write_text(content, encoding="utf-8")
    path.chmod(0o755)


@pytest.fixture
def sequencer(fake_bin: Path, fake_connect: Any) -> BootstrapSequencer:
    """Return a sequencer using the fake executables and connection."""
    processes = DirectProcessProvider(settle_seconds=0.05, poll_interval=0.01, stop_attempts=300)
    return BootstrapSequencer(
        locator=BinaryLocator(search_paths=[str(fake_bin)], path_env=""),
        processes=processes,
        readiness_attempts=3,
        poll_interval=0.01,
        connect=fake_connect,
        password_factory=lambda: "generated-pw",
    )


def test_run_bootstraps_cluster(
    sequencer: BootstrapSequencer,
    make_record: Callable[..., InstanceRecord],
    fake_connect: Any,
) -> None:
    """A successful run provisions the database and writes the config files."""
    record = make_record(password=None)
    steps: list[str] = []

    result = sequencer.run(record, on_step=steps.append)

    assert steps == [
        "directories",
        "initdb",
        "temporary-server",
        "readiness",
        "provision",
        "teardown",
        "configure",
    ]
    assert result.spec.database.password == "generated-pw"
    assert record.spec.database.password is None
    data = record.spec.storage.data_directory
    assert (data / "PG_VERSION").exists()
    assert record.socket_directory.is_dir()
    assert (data / "postgresql.conf").read_text(encoding="utf-8").startswith(GENERATED_MARKER)
    assert (data / "pg_hba.conf").exists()
    assert (record.spec.storage.log_directory / BOOTSTRAP_LOG_NAME).exists()

    first = fake_connect.calls[0]
    assert first["host"] == str(record.socket_directory)
    assert first["port"] == 5440
    assert first["user"] == "postgres"
    assert first["autocommit"] is True

    statements = [text for _db, text in fake_connect.statements]
    assert "SELECT 1" in statements[0]
    assert "ALTER ROLE" in statements[1]
    assert "CREATE ROLE" in statements[2] and "demo_user" in statements[2]
    assert "CREATE DATABASE" in statements[3]
    assert "GRANT ALL PRIVILEGES" in statements[4]
    assert "OWNER TO" in statements[5]
    assert fake_connect.statements[6][0] == "demo_db"
    assert "ON SCHEMA" in statements[6]


def test_run_keeps_supplied_password(
    sequencer: BootstrapSequencer, make_record: Callable[..., InstanceRecord], fake_connect: Any
) -> None:
    """A password already set on the record is used for the owner role."""
    record = make_record(password="chosen-pw")

    result = sequencer.run(record)

    assert result.spec.database.password == "chosen-pw"
    create_role = next(text for _db, text in fake_connect.statements if "CREATE ROLE" in text)
    assert "chosen-pw" in create_role


def test_readiness_retries_until_connection_succeeds(
    sequencer: BootstrapSequencer, make_record: Callable[..., InstanceRecord], fake_connect: Any
) -> None:
    """Refused connections are retried within the attempt budget."""
    fake_connect.failures = 2

    sequencer.run(make_record())

    assert len(fake_connect.calls) >= 3


def test_readiness_exhaustion_stops_temporary_server(
    sequencer: BootstrapSequencer,
    make_record: Callable[..., InstanceRecord],
    fake_connect: Any,
    monkeypatch: pytest.MonkeyPatch,
) -> None:
    """When the server never answers the step fails and teardown still runs."""
    fake_connect.failures = 10
    terminated: list[int] = []
    original = DirectProcessProvider.terminate

    def tracking_terminate(self: DirectProcessProvider, pid: int) -> bool:
        terminated.append(pid)
        return original(self, pid)

    monkeypatch.setattr(DirectProcessProvider, "terminate", tracking_terminate)

    with pytest.raises(BootstrapError) as excinfo:
        sequencer.run(make_record())

    assert excinfo.value.step == "readiness"
    assert "connection refused" in (excinfo.value.detail or "")
    assert len(terminated) == 1
    assert sequencer.processes.is_alive(terminated[0]) is False


def test_provisioning_failure_reports_step(
    sequencer: BootstrapSequencer, make_record: Callable[..., InstanceRecord], fake_connect: Any
) -> None:
    """SQL errors surface as BootstrapError(step='provision')."""
    fake_connect.fail_on = "CREATE DATABASE"

    with pytest.raises(BootstrapError) as excinfo:
        sequencer.run(make_record())

    assert excinfo.value.step == "provision"
    assert "CREATE DATABASE" in (excinfo.value.detail or "")


def test_initdb_failure_reports_output(
    sequencer: BootstrapSequencer,
    make_record: Callable[..., InstanceRecord],
    fake_bin: Path,
) -> None:
    """A failing initdb is reported with its stderr."""
    _write(fake_bin / "initdb", FAILING_INITDB)

    with pytest.raises(BootstrapError) as excinfo:
        sequencer.run(make_record())

    assert excinfo.value.step == "initdb"
    assert "invalid locale" in (excinfo.value.detail or "")


def test_temporary_server_early_exit(
    sequencer: BootstrapSequencer,
    make_record: Callable[..., InstanceRecord],
    fake_bin: Path,
    fake_connect: Any,
) -> None:
    """A server that dies immediately fails fast with its log tail."""
    _write(fake_bin / "postgres", CRASHING_POSTGRES)
    fake_connect.failures = 1000
    sequencer = replace(sequencer, readiness_attempts=200)

    with pytest.raises(BootstrapError) as excinfo:
        sequencer.run(make_record())

    assert excinfo.value.step == "temporary-server"
    assert "could not create lock file" in (excinfo.value.detail or "")


def test_retry_after_partial_failure(
    sequencer: BootstrapSequencer,
    make_record: Callable[..., InstanceRecord],
    fake_connect: Any,
) -> None:
    """A failed attempt leaves a partial install that the next attempt clears."""
    fake_connect.fail_on = "CREATE ROLE"
    record = make_record()
    with pytest.raises(BootstrapError):
        sequencer.run(record)
    assert record.socket_directory.is_dir()

    fake_connect.fail_on = None
    result = sequencer.run(record)

    assert result.spec.database.password == "s3cret"
    assert (record.spec.storage.data_directory / "postgresql.conf").exists()


def test_missing_binary_fails_before_touching_disk(
    make_record: Callable[..., InstanceRecord], tmp_path: Path, fake_connect: Any
) -> None:
    """Without initdb the run stops before creating directories."""
    sequencer = BootstrapSequencer(
        locator=BinaryLocator(search_paths=[str(tmp_path / "nowhere")], path_env=""),
        processes=DirectProcessProvider(),
        connect=fake_connect,
    )
    record = make_record()

    with pytest.raises(ExternalToolMissingError):
        sequencer.run(record)
    assert not record.spec.storage.data_directory.exists()


def test_teardown_failure_after_success_raises(
    sequencer: BootstrapSequencer,
    make_record: Callable[..., InstanceRecord],
    monkeypatch: pytest.MonkeyPatch,
) -> None:
    """A temporary server that cannot be stopped fails the teardown step."""
    pids: list[int] = []

    def refuse(self: DirectProcessProvider, pid: int) -> bool:
        pids.append(pid)
        raise SupervisionError(f"Process {pid} is still running after SIGKILL")

    monkeypatch.setattr(DirectProcessProvider, "terminate", refuse)

    try:
        with pytest.raises(BootstrapError) as excinfo:
            sequencer.run(make_record())
    finally:
        for pid in pids:
            os.kill(pid, 15)
            os.waitpid(pid, 0)

    assert excinfo.value.step == "teardown"
