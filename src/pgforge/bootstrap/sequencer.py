"""Create-time bootstrap of a new PostgreSQL cluster.

Steps, in order (each failure is reported as :class:`BootstrapError` with
``step`` set to the step name):

``directories``
    Create data/log/archive directories, clearing a partial prior attempt.
``initdb``
    Initialise the cluster as the fixed bootstrap superuser.
``temporary-server``
    Start a server that listens only on the instance socket directory.
``readiness``
    Poll until the server accepts connections (bounded).
``provision``
    Set the superuser password, create the owner role and the database.
``teardown``
    Stop the temporary server. Always runs once the server was started.
``configure``
    Write the generated ``postgresql.conf`` and ``pg_hba.conf``.

The caller persists the returned record; the sequencer never touches the
record store.
"""
from __future__ import annotations

import logging
import subprocess
from collections.abc import Callable
from dataclasses import dataclass, field, replace
from pathlib import Path
from typing import IO, Any

import psycopg

from ..binaries import BinaryLocator
from ..errors import BootstrapError, SupervisionError
from ..models import InstanceRecord
from ..pgconf import write_generated_files
from ..providers.process import DirectProcessProvider
from .datadir import prepare_directories
from .provisioning import ProvisioningSession, generate_password

logger = logging.getLogger(__name__)

BOOTSTRAP_LOG_NAME = "bootstrap.log"
HOST_AUTH_METHODS = {"md5", "scram-sha-256", "trust"}
_LOG_TAIL_LINES = 20

StepCallback = Callable[[str], None]


@dataclass(slots=True)
class BootstrapSequencer:
    """Run the bootstrap steps for one instance record."""

    locator: BinaryLocator
    processes: DirectProcessProvider
    superuser: str = "postgres"
    readiness_attempts: int = 30
    poll_interval: float = 1.0
    connect: Callable[..., Any] = field(default=psycopg.connect)
    password_factory: Callable[[], str] = field(default=generate_password)

    def run(
        self,
        record: InstanceRecord,
        *,
        on_step: StepCallback | None = None,
    ) -> InstanceRecord:
        """Bootstrap *record* and return it with the owner password filled in."""
        notify = on_step or (lambda _name: None)
        version = record.spec.version
        initdb = self.locator.require("initdb", version)
        postgres = self.locator.require("postgres", version)

        try:
            prepare_directories(record)
        except OSError as exc:
            raise BootstrapError(
                "Failed to prepare instance directories",
                instance=record.name,
                step="directories",
                detail=str(exc),
                hint="Check that pgforge can write to the data and log roots.",
            ) from exc
        notify("directories")

        self._run_initdb(record, initdb)
        notify("initdb")

        process, log_path = self._start_temporary_server(record, postgres)
        notify("temporary-server")
        try:
            self._wait_until_ready(record, process, log_path)
            notify("readiness")
            password = self._provision(record)
            notify("provision")
        except BaseException:
            self._teardown(record, process, primary_failed=True)
            raise
        self._teardown(record, process, primary_failed=False)
        notify("teardown")

        database = replace(record.spec.database, password=password)
        provisioned = replace(record, spec=replace(record.spec, database=database))
        try:
            write_generated_files(provisioned)
        except OSError as exc:
            raise BootstrapError(
                "Failed to write server configuration",
                instance=record.name,
                step="configure",
                detail=str(exc),
            ) from exc
        notify("configure")
        return provisioned

    # ------------------------------------------------------------------
    def _run_initdb(self, record: InstanceRecord, initdb: Path) -> None:
        database = record.spec.database
        method = record.spec.security.authentication.method
        args = [
            str(initdb),
            "-D",
            str(record.spec.storage.data_directory),
            f"--username={self.superuser}",
            f"--encoding={database.encoding}",
            f"--locale={database.locale}",
            "--auth-local=trust",
            f"--auth-host={method if method in HOST_AUTH_METHODS else 'md5'}",
        ]
        try:
            result = subprocess.run(  # noqa: S603
                args,
                capture_output=True,
                text=True,
                check=False,
            )
        except OSError as exc:
            raise BootstrapError(
                "Failed to execute initdb",
                instance=record.name,
                step="initdb",
                detail=str(exc),
            ) from exc
        if result.returncode != 0:
            output = (result.stderr or "").strip() or (result.stdout or "").strip() or "no output"
            raise BootstrapError(
                f"initdb failed (exit {result.returncode})",
                instance=record.name,
                step="initdb",
                detail=output,
                hint="Check the locale and encoding are available on this system.",
            )
        try:
            record.socket_directory.mkdir(mode=0o700, exist_ok=True)
        except OSError as exc:
            raise BootstrapError(
                "Failed to create the socket directory",
                instance=record.name,
                step="initdb",
                detail=str(exc),
            ) from exc

    def _start_temporary_server(
        self, record: InstanceRecord, postgres: Path
    ) -> tuple[subprocess.Popen[bytes], Path]:
        log_path = record.spec.storage.log_directory / BOOTSTRAP_LOG_NAME
        args = [
            str(postgres),
            "-D",
            str(record.spec.storage.data_directory),
            "-p",
            str(record.spec.network.port),
            "-c",
            "listen_addresses=",
            "-k",
            str(record.socket_directory),
        ]
        handle: IO[bytes] | None = None
        try:
            handle = log_path.open("ab")
            process = subprocess.Popen(  # noqa: S603
                args,
                stdin=subprocess.DEVNULL,
                stdout=handle,
                stderr=subprocess.STDOUT,
                start_new_session=True,
            )
        except OSError as exc:
            raise BootstrapError(
                "Failed to start the temporary server",
                instance=record.name,
                step="temporary-server",
                detail=str(exc),
            ) from exc
        finally:
            if handle is not None:
                handle.close()
        logger.debug("Temporary server for %s started with pid %s", record.name, process.pid)
        return process, log_path

    def _connect(self, record: InstanceRecord, dbname: str) -> Any:
        return self.connect(
            host=str(record.socket_directory),
            port=record.spec.network.port,
            user=self.superuser,
            dbname=dbname,
            connect_timeout=2,
            autocommit=True,
        )

    def _wait_until_ready(
        self, record: InstanceRecord, process: subprocess.Popen[bytes], log_path: Path
    ) -> None:
        last_error = "no connection attempt made"
        for attempt in range(1, self.readiness_attempts + 1):
            returncode = process.poll()
            if returncode is not None:
                raise BootstrapError(
                    f"Temporary server exited early (exit {returncode})",
                    instance=record.name,
                    step="temporary-server",
                    detail=_log_tail(log_path),
                    hint="The port may be in use or the data directory may be unusable.",
                )
            try:
                with self._connect(record, "postgres") as connection:
                    connection.execute("SELECT 1")
                return
            except psycopg.Error as exc:
                last_error = str(exc).strip() or type(exc).__name__
                logger.debug("Readiness attempt %s for %s failed: %s", attempt, record.name, exc)
            if attempt < self.readiness_attempts:
                self.processes.sleep(self.poll_interval)

        tail = _log_tail(log_path)
        raise BootstrapError(
            f"Server did not accept connections after {self.readiness_attempts} attempts",
            instance=record.name,
            step="readiness",
            detail=f"{last_error}\n{tail}".strip(),
            hint=(
                "Check that the port is free, that the socket directory is writable, "
                f"and review {log_path}."
            ),
        )

    def _provision(self, record: InstanceRecord) -> str:
        database = record.spec.database
        password = database.password or self.password_factory()
        try:
            with self._connect(record, "postgres") as connection:
                session = ProvisioningSession(connection)
                session.set_password(self.superuser, self.password_factory())
                session.create_role(database.owner, password)
                session.create_database(
                    database.name, encoding=database.encoding, locale=database.locale
                )
                session.grant_database(database.name, database.owner)
                session.transfer_database_ownership(database.name, database.owner)
            with self._connect(record, database.name) as connection:
                ProvisioningSession(connection).grant_schema_create(database.owner)
        except psycopg.Error as exc:
            raise BootstrapError(
                "Provisioning SQL failed",
                instance=record.name,
                step="provision",
                detail=str(exc).strip() or type(exc).__name__,
            ) from exc
        return password

    def _teardown(
        self,
        record: InstanceRecord,
        process: subprocess.Popen[bytes],
        *,
        primary_failed: bool,
    ) -> None:
        try:
            self.processes.terminate(process.pid)
            process.poll()
        except SupervisionError as exc:
            if primary_failed:
                logger.error(
                    "Could not stop temporary server %s for %s: %s", process.pid, record.name, exc
                )
                return
            raise BootstrapError(
                "Failed to stop the temporary server",
                instance=record.name,
                step="teardown",
                detail=str(exc),
                hint=f"Stop process {process.pid} manually before retrying.",
            ) from exc


def _log_tail(path: Path) -> str:
    try:
        lines = path.read_text(encoding="utf-8", errors="replace").splitlines()
    except OSError:
        return ""
    return "\n".join(lines[-_LOG_TAIL_LINES:])


__all__ = ["BOOTSTRAP_LOG_NAME", "BootstrapSequencer"]
