"""Instance lifecycle orchestration.

:class:`InstanceOrchestrator` is the single entry point for lifecycle
operations. It validates requests, takes the advisory locks, delegates to the
bootstrap sequencer and the process supervisor, and persists the resulting
records. Failures from the lower layers are annotated with the instance name
and step and re-raised unchanged in kind.
"""
from __future__ import annotations

import logging
import time
from collections.abc import Callable, Mapping
from dataclasses import dataclass, field, replace
from datetime import UTC, datetime
from pathlib import Path
from typing import Any

try:  # PyYAML is a runtime dependency declared in pyproject.toml
    import yaml
except Exception as exc:  # pragma: no cover - import failure handled in tests
    raise RuntimeError(
        "PyYAML is required to read instance files. Install with `pip install pgforge`."
    ) from exc

import psycopg

from .backups import BackupProvider, BackupResult, PlaceholderBackupProvider
from .binaries import BinaryLocator
from .bootstrap import BootstrapSequencer
from .config import AppConfig
from .errors import ConflictError, InstanceNotFoundError, InvalidSpecError, PgForgeError
from .locking import LockManager
from .logging import OperationScope
from .models import (
    InstanceRecord,
    InstanceState,
    InstanceStatus,
    RecordFormatError,
    ServiceSpec,
)
from .ports import PortsRegistry
from .providers import DirectProcessProvider, ProcessSupervisor, SystemdProvider
from .state import StateRegistry
from .system_check import detect_server_version
from .templates import TemplateEngine
from .validation import is_valid_instance_name, validate_instance_spec

logger = logging.getLogger(__name__)

LOCAL_BIND_ADDRESSES = frozenset({"0.0.0.0", "*", "::", ""})  # noqa: S104
REQUIRED_BINARIES = ("initdb", "postgres")


def _utcnow() -> str:
    return datetime.now(UTC).isoformat()


@dataclass(slots=True)
class CreateOptions:
    """Inputs accepted by :meth:`InstanceOrchestrator.create`."""

    port: int | None = None
    version: str | None = None
    template: str | None = None
    file: Path | None = None


@dataclass(frozen=True, slots=True)
class RemovalResult:
    """What ``remove`` did, for reporting."""

    name: str
    data_directory: Path
    log_directory: Path
    stopped: bool = False
    service_removed: bool = False
    backup: BackupResult | None = None
    warnings: tuple[str, ...] = ()


@dataclass(frozen=True, slots=True)
class ServiceChange:
    """Outcome of enabling or disabling service supervision."""

    record: InstanceRecord
    unit_path: Path
    unit_changed: bool
    started: bool = False


@dataclass(frozen=True, slots=True)
class ConnectionInfo:
    """Client connection parameters for an instance's application database."""

    host: str
    port: int
    database: str
    user: str
    password: str | None = None

    @property
    def uri(self) -> str:
        """Return a ``postgresql://`` URI without the password."""
        host = f"[{self.host}]" if ":" in self.host else self.host
        return f"postgresql://{self.user}@{host}:{self.port}/{self.database}"

    def to_env(self) -> dict[str, str]:
        """Return libpq environment variables."""
        env = {
            "PGHOST": self.host,
            "PGPORT": str(self.port),
            "PGDATABASE": self.database,
            "PGUSER": self.user,
        }
        if self.password:
            env["PGPASSWORD"] = self.password
        return env

    def to_dict(self, *, include_password: bool = False) -> dict[str, object]:
        """Return a JSON-friendly mapping."""
        payload: dict[str, object] = {
            "host": self.host,
            "port": self.port,
            "database": self.database,
            "user": self.user,
            "uri": self.uri,
        }
        if include_password and self.password:
            payload["password"] = self.password
        return payload


def _note(
    op: OperationScope | None,
    name: str,
    *,
    status: str = "success",
    detail: object = None,
) -> None:
    if op is not None:
        op.add_step(name, status=status, detail=detail)


def _normalise(path: Path) -> Path:
    return Path(path).expanduser().resolve(strict=False)


def _overlaps(first: Path, second: Path) -> bool:
    """Return ``True`` when the paths are equal or one contains the other."""
    return first == second or first in second.parents or second in first.parents


def _merge_fragment(target: dict[str, Any], fragment: Mapping[str, Any]) -> None:
    for key, value in fragment.items():
        current = target.get(key)
        if isinstance(value, Mapping) and isinstance(current, dict):
            _merge_fragment(current, value)
        elif isinstance(value, Mapping):
            target[key] = {}
            _merge_fragment(target[key], value)
        elif isinstance(value, list):
            target[key] = list(value)
        else:
            target[key] = value


@dataclass(slots=True)
class InstanceOrchestrator:
    """Coordinate create/start/stop/restart/status/remove for instances."""

    config: AppConfig
    registry: StateRegistry
    ports: PortsRegistry
    locks: LockManager
    locator: BinaryLocator
    sequencer: BootstrapSequencer
    supervisor: ProcessSupervisor
    backups: BackupProvider = field(default_factory=PlaceholderBackupProvider)
    sleep: Callable[[float], None] = field(default=time.sleep)

    @classmethod
    def from_config(
        cls,
        config: AppConfig,
        *,
        templates: TemplateEngine | None = None,
        connect: Callable[..., Any] = psycopg.connect,
    ) -> InstanceOrchestrator:
        """Wire every collaborator from *config*."""
        registry = StateRegistry(config.instances_dir)
        ports = PortsRegistry(
            registry=registry,
            base_port=config.ports.base,
            probe_listening=config.ports.probe_listening,
        )
        locks = LockManager(config.runtime_dir, config.lock_timeout)
        locator = BinaryLocator(search_paths=config.postgresql.search_paths)
        supervision = config.supervision
        processes = DirectProcessProvider(
            settle_seconds=supervision.settle_seconds,
            poll_interval=supervision.poll_interval,
            stop_attempts=supervision.stop_attempts,
        )
        engine = templates or TemplateEngine.with_overrides(config.templates_dir)
        systemd_config = config.systemd
        systemd = SystemdProvider(templates=engine, systemctl_bin=systemd_config.systemctl_bin)
        if systemd_config.unit_dir is not None:
            systemd = replace(
                systemd,
                systemd_dir=systemd_config.unit_dir,
                user_systemd_dir=systemd_config.unit_dir,
            )
        supervisor = ProcessSupervisor(
            locator=locator,
            processes=processes,
            systemd=systemd,
            service_user=systemd_config.service_user,
        )
        sequencer = BootstrapSequencer(
            locator=locator,
            processes=processes,
            superuser=config.postgresql.superuser,
            readiness_attempts=supervision.readiness_attempts,
            poll_interval=supervision.poll_interval,
            connect=connect,
        )
        return cls(
            config=config,
            registry=registry,
            ports=ports,
            locks=locks,
            locator=locator,
            sequencer=sequencer,
            supervisor=supervisor,
            backups=PlaceholderBackupProvider(backup_root=config.backup_root),
        )

    # ------------------------------------------------------------------
    # Record construction
    # ------------------------------------------------------------------
    def build_record(self, name: str, options: CreateOptions | None = None) -> InstanceRecord:
        """Return the record ``create`` would provision for *name*.

        Layers, lowest precedence first: built-in defaults, the named config
        template, the ``--file`` document, then explicit port/version.
        """
        options = options or CreateOptions()
        if not is_valid_instance_name(name):
            raise InvalidSpecError(
                f"Invalid instance name '{name}'",
                instance=name,
                hint="Use lowercase letters, digits and hyphens, starting with a letter.",
            )

        document = self._default_document(name, options)
        if options.template:
            fragment = self.config.templates.get(options.template)
            if fragment is None:
                available = ", ".join(sorted(self.config.templates)) or "none"
                raise InvalidSpecError(
                    f"Unknown template '{options.template}'",
                    instance=name,
                    hint=f"Available templates: {available}.",
                )
            _merge_fragment(document["spec"], fragment)
        if options.file is not None:
            self._merge_file(document, options.file, name)

        document["metadata"]["name"] = name
        if options.port is not None:
            document["spec"]["network"]["port"] = options.port
        if options.version:
            document["spec"]["version"] = options.version
        document["status"] = {"state": InstanceState.STOPPED.value}

        try:
            return InstanceRecord.from_dict(document)
        except RecordFormatError as exc:
            raise InvalidSpecError(
                "Instance specification is malformed",
                instance=name,
                detail=str(exc),
            ) from exc

    def _default_document(self, name: str, options: CreateOptions) -> dict[str, Any]:
        postgres = self.config.postgresql
        version = options.version or (
            detect_server_version(self.locator, postgres.default_version)
            or postgres.default_version
        )
        port = options.port if options.port is not None else self.ports.next_available()
        return {
            "apiVersion": "v1",
            "kind": "PostgreSQLInstance",
            "metadata": {
                "name": name,
                "labels": {"environment": options.template or "custom"},
                "annotations": {
                    "description": f"PostgreSQL instance: {name}",
                    "created": _utcnow(),
                },
            },
            "spec": {
                "version": version,
                "network": {
                    "port": port,
                    "bindAddress": "127.0.0.1",
                    "maxConnections": 100,
                },
                "storage": {
                    "dataDirectory": str(self.config.data_root / name),
                    "logDirectory": str(self.config.log_root / name),
                },
                "database": {
                    "name": f"{name.replace('-', '_')}_db",
                    "owner": f"{name.replace('-', '_')}_user",
                    "encoding": "UTF8",
                    "locale": "en_US.UTF-8",
                    "timezone": "UTC",
                },
                "security": {
                    "ssl": {"enabled": False},
                    "authentication": {
                        "method": "md5",
                        "allowedHosts": ["127.0.0.1/32", "::1/128"],
                    },
                    "audit": {"enabled": False},
                },
                "performance": {
                    "sharedBuffers": "128MB",
                    "effectiveCacheSize": "512MB",
                    "workMem": "4MB",
                    "maintenanceWorkMem": "64MB",
                },
                "backup": {"enabled": False},
            },
        }

    def _merge_file(self, document: dict[str, Any], path: Path, name: str) -> None:
        try:
            loaded = yaml.safe_load(Path(path).expanduser().read_text(encoding="utf-8"))
        except OSError as exc:
            raise InvalidSpecError(
                f"Cannot read instance file {path}", instance=name, detail=str(exc)
            ) from exc
        except yaml.YAMLError as exc:
            raise InvalidSpecError(
                f"Instance file {path} is not valid YAML", instance=name, detail=str(exc)
            ) from exc
        if loaded is None:
            return
        if not isinstance(loaded, Mapping):
            raise InvalidSpecError(
                f"Instance file {path} must contain a mapping", instance=name
            )
        if "spec" not in loaded:
            _merge_fragment(document["spec"], loaded)
            return
        spec = loaded["spec"]
        if not isinstance(spec, Mapping):
            raise InvalidSpecError(f"'spec' in {path} must be a mapping", instance=name)
        _merge_fragment(document["spec"], spec)
        metadata = loaded.get("metadata")
        if isinstance(metadata, Mapping):
            for key in ("labels", "annotations"):
                extra = metadata.get(key)
                if isinstance(extra, Mapping):
                    document["metadata"][key].update({str(k): str(v) for k, v in extra.items()})

    # ------------------------------------------------------------------
    # Lifecycle operations
    # ------------------------------------------------------------------
    def create(
        self,
        name: str,
        options: CreateOptions | None = None,
        *,
        op: OperationScope | None = None,
    ) -> InstanceRecord:
        """Provision a new instance and return its record (owner password included)."""
        record = self.build_record(name, options)
        issues = validate_instance_spec(record)
        if issues:
            raise InvalidSpecError(
                "Instance specification is invalid", issues, instance=name, step="validate"
            )
        _note(op, "spec.validate")

        with self.locks.mutate_instances([name]) as bundle:
            if op is not None:
                op.set_lock_wait_ms(bundle.wait_ms)
            if self.registry.get(name) is not None:
                raise ConflictError(
                    f"Instance '{name}' already exists",
                    instance=name,
                    step="create",
                    hint="Choose another name or remove the existing instance first.",
                )
            try:
                self._ensure_directories_unclaimed(record)
                _note(op, "storage.check")
                self.ports.ensure_available(name, record.spec.network.port)
                _note(op, "ports.check", detail=record.spec.network.port)
                for binary in REQUIRED_BINARIES:
                    self.locator.require(binary, record.spec.version)
                _note(op, "binaries.resolve", detail=record.spec.version)
                provisioned = self.sequencer.run(
                    record, on_step=lambda step: _note(op, f"bootstrap.{step}")
                )
                saved = replace(
                    provisioned,
                    status=InstanceStatus(
                        state=InstanceState.STOPPED, version=provisioned.spec.version
                    ),
                )
                self.registry.save(saved)
            except PgForgeError as exc:
                exc.annotate(instance=name, step="create")
                raise
            _note(op, "registry.save")
        logger.info("Created instance %s on port %s", name, saved.spec.network.port)
        return saved

    def start(self, name: str, *, op: OperationScope | None = None) -> InstanceRecord:
        """Start a stopped instance."""
        with self.locks.instance_lock(name) as handle:
            if op is not None:
                op.set_lock_wait_ms(handle.wait_ms)
            record = self._require(name)
            return self._start_locked(record, op)

    def stop(self, name: str, *, op: OperationScope | None = None) -> InstanceRecord:
        """Stop a running instance."""
        with self.locks.instance_lock(name) as handle:
            if op is not None:
                op.set_lock_wait_ms(handle.wait_ms)
            record = self._require(name)
            return self._stop_locked(record, op)

    def restart(self, name: str, *, op: OperationScope | None = None) -> InstanceRecord:
        """Stop (when running), pause for the cooldown, then start."""
        with self.locks.instance_lock(name) as handle:
            if op is not None:
                op.set_lock_wait_ms(handle.wait_ms)
            record = self._require(name)
            if record.is_running:
                record = self._stop_locked(record, op)
                self.sleep(self.config.supervision.restart_cooldown)
                _note(op, "restart.cooldown", detail=self.config.supervision.restart_cooldown)
            record = replace(record, status=replace(record.status, last_restart=_utcnow()))
            return self._start_locked(record, op)

    def status(self, name: str, *, op: OperationScope | None = None) -> InstanceRecord:
        """Return the record of *name* with its status reconciled against reality.

        A stale ``running`` record whose process is gone is rewritten to
        ``stopped``; the correction is logged and saved.
        """
        with self.locks.instance_lock(name) as handle:
            if op is not None:
                op.set_lock_wait_ms(handle.wait_ms)
            return self._reconcile_locked(self._require(name), op)

    def list(
        self, *, state: InstanceState | None = None, op: OperationScope | None = None
    ) -> list[InstanceRecord]:
        """Return every record reconciled like :meth:`status`, optionally filtered by state."""
        records: list[InstanceRecord] = []
        for name in self.registry.list():
            with self.locks.instance_lock(name):
                stored = self.registry.get(name)
                if stored is None:
                    continue
                records.append(self._reconcile_locked(stored, op))
        if state is None:
            return records
        return [record for record in records if record.status.state is state]

    def remove(
        self,
        name: str,
        *,
        backup: bool = False,
        force: bool = False,
        op: OperationScope | None = None,
    ) -> RemovalResult:
        """Delete the record of *name*; data and log directories are kept."""
        warnings: list[str] = []
        with self.locks.mutate_instances([name]) as bundle:
            if op is not None:
                op.set_lock_wait_ms(bundle.wait_ms)
            record = self._require(name)

            stopped = False
            if record.is_running:
                if not force:
                    raise ConflictError(
                        f"Instance '{name}' is running",
                        instance=name,
                        step="remove",
                        hint="Stop it first or pass --force.",
                    )
                try:
                    self.supervisor.stop(record)
                    stopped = True
                    _note(op, "instance.stop")
                except PgForgeError as exc:
                    message = f"Stopping '{name}' before removal failed: {exc}"
                    logger.warning(message)
                    warnings.append(message)
                    _note(op, "instance.stop", status="warning", detail=str(exc))

            backup_result: BackupResult | None = None
            if backup:
                backup_result = self.backups.create(record)
                if not backup_result.performed:
                    warnings.append(backup_result.detail)
                _note(
                    op,
                    "backup.create",
                    status="success" if backup_result.performed else "skipped",
                    detail=backup_result.detail,
                )

            service_removed = False
            if record.spec.service is not None:
                try:
                    service_removed = self.supervisor.uninstall_service(record)
                except PgForgeError as exc:
                    exc.annotate(instance=name, step="remove")
                    raise
                _note(op, "service.remove", detail=service_removed)

            self.registry.delete(name)
            _note(op, "registry.delete")

        logger.info("Removed record of instance %s", name)
        return RemovalResult(
            name=name,
            data_directory=record.spec.storage.data_directory,
            log_directory=record.spec.storage.log_directory,
            stopped=stopped,
            service_removed=service_removed,
            backup=backup_result,
            warnings=tuple(warnings),
        )

    # ------------------------------------------------------------------
    # Service supervision
    # ------------------------------------------------------------------
    def enable_service(
        self,
        name: str,
        *,
        restart_policy: str = "on-failure",
        restart_sec: int = 5,
        auto_start: bool = False,
        user_mode: bool = False,
        op: OperationScope | None = None,
    ) -> ServiceChange:
        """Switch *name* to service supervision and install its unit."""
        with self.locks.instance_lock(name) as handle:
            if op is not None:
                op.set_lock_wait_ms(handle.wait_ms)
            record = self._require(name)
            self._require_stopped(record, "enabling its service")

            service = ServiceSpec(
                enabled=True,
                auto_start=auto_start,
                restart_policy=restart_policy,
                restart_sec=restart_sec,
                user_mode=user_mode,
            )
            updated = replace(record, spec=replace(record.spec, service=service))
            issues = validate_instance_spec(updated)
            if issues:
                raise InvalidSpecError(
                    "Service settings are invalid", issues, instance=name, step="service-enable"
                )
            self._save(updated)
            _note(op, "registry.save", detail="spec.service")

            try:
                changed = self.supervisor.install_service(updated)
                _note(op, "service.install", detail={"changed": changed})
                started = False
                if auto_start:
                    status = self.supervisor.start(updated)
                    updated = replace(updated, status=status)
                    self._save(updated)
                    started = True
                    _note(op, "service.start")
                else:
                    updated = self._refresh_service_status(updated)
            except PgForgeError as exc:
                exc.annotate(instance=name, step="service-enable")
                raise

            unit_path = self.supervisor.systemd.scoped(user_mode).unit_path(name)
            return ServiceChange(
                record=updated, unit_path=unit_path, unit_changed=changed, started=started
            )

    def disable_service(self, name: str, *, op: OperationScope | None = None) -> ServiceChange:
        """Remove the unit of *name* and return it to direct supervision."""
        with self.locks.instance_lock(name) as handle:
            if op is not None:
                op.set_lock_wait_ms(handle.wait_ms)
            record = self._require(name)
            if not record.service_mode or record.spec.service is None:
                raise ConflictError(
                    f"Instance '{name}' is not managed by a service",
                    instance=name,
                    step="service-disable",
                )
            self._require_stopped(record, "disabling its service")

            service = record.spec.service
            unit_path = self.supervisor.systemd.scoped(service.user_mode).unit_path(name)
            try:
                removed = self.supervisor.uninstall_service(record)
            except PgForgeError as exc:
                exc.annotate(instance=name, step="service-disable")
                raise
            _note(op, "service.remove", detail={"removed": removed})

            updated = replace(
                record,
                spec=replace(record.spec, service=replace(service, enabled=False)),
                status=replace(record.status, service=None),
            )
            self._save(updated)
            _note(op, "registry.save", detail="spec.service")
            return ServiceChange(record=updated, unit_path=unit_path, unit_changed=removed)

    # ------------------------------------------------------------------
    def connection_info(self, name: str) -> ConnectionInfo:
        """Return client connection parameters for *name*."""
        record = self._require(name)
        bind = record.spec.network.bind_address.strip()
        host = "localhost" if bind in LOCAL_BIND_ADDRESSES else bind
        database = record.spec.database
        return ConnectionInfo(
            host=host,
            port=record.spec.network.port,
            database=database.name,
            user=database.owner,
            password=database.password,
        )

    # ------------------------------------------------------------------
    # Internal helpers
    # ------------------------------------------------------------------
    def _require(self, name: str) -> InstanceRecord:
        record = self.registry.get(name)
        if record is None:
            raise InstanceNotFoundError(
                f"Instance '{name}' not found",
                instance=name,
                hint="Run 'pgforge list' to see known instances.",
            )
        return record

    def _ensure_directories_unclaimed(self, record: InstanceRecord) -> None:
        """Refuse data or log directories overlapping those of another instance.

        Bootstrap may erase a directory it takes for a partial attempt, so a
        directory owned by another record must be rejected before anything is
        written.
        """
        wanted = {
            "data": _normalise(record.spec.storage.data_directory),
            "log": _normalise(record.spec.storage.log_directory),
        }
        for other in self.registry.load_all():
            if other.name == record.name:
                continue
            owned = (
                _normalise(other.spec.storage.data_directory),
                _normalise(other.spec.storage.log_directory),
            )
            for kind, path in wanted.items():
                clash = next((o for o in owned if _overlaps(path, o)), None)
                if clash is not None:
                    raise ConflictError(
                        f"The {kind} directory {path} overlaps {clash} "
                        f"of instance '{other.name}'",
                        instance=record.name,
                        hint="Each instance needs its own data and log directories.",
                    )

    def _reconcile_locked(
        self, record: InstanceRecord, op: OperationScope | None
    ) -> InstanceRecord:
        name = record.name
        try:
            reconciliation = self.supervisor.reconcile(record)
        except PgForgeError as exc:
            exc.annotate(instance=name, step="status")
            raise
        if reconciliation.status == record.status:
            return record
        updated = replace(record, status=reconciliation.status)
        if reconciliation.corrected:
            logger.warning(
                "Corrected state of %s from %s to %s (%s)",
                name,
                record.status.state.value,
                reconciliation.status.state.value,
                reconciliation.reason,
            )
            _note(
                op,
                "status.reconcile",
                status="warning",
                detail={
                    "instance": name,
                    "from": record.status.state.value,
                    "to": reconciliation.status.state.value,
                    "reason": reconciliation.reason,
                },
            )
        self._save(updated)
        return updated

    def _require_stopped(self, record: InstanceRecord, action: str) -> None:
        if record.status.state in (
            InstanceState.RUNNING,
            InstanceState.STARTING,
            InstanceState.STOPPING,
        ):
            raise ConflictError(
                f"Instance '{record.name}' is {record.status.state.value}",
                instance=record.name,
                hint=f"Stop the instance before {action}.",
            )

    def _start_locked(self, record: InstanceRecord, op: OperationScope | None) -> InstanceRecord:
        if record.is_running:
            raise ConflictError(
                f"Instance '{record.name}' is already running",
                instance=record.name,
                step="start",
                hint="Run 'pgforge status' to confirm the current state.",
            )
        try:
            status = self.supervisor.start(record)
        except PgForgeError as exc:
            self._record_failure(record, exc)
            exc.annotate(instance=record.name, step="start")
            raise
        updated = replace(record, status=status)
        self._save(updated)
        _note(op, "instance.start", detail={"pid": status.pid})
        logger.info("Started instance %s", record.name)
        return updated

    def _stop_locked(self, record: InstanceRecord, op: OperationScope | None) -> InstanceRecord:
        if record.status.state is InstanceState.STOPPED:
            raise ConflictError(
                f"Instance '{record.name}' is already stopped",
                instance=record.name,
                step="stop",
            )
        try:
            status = self.supervisor.stop(record)
        except PgForgeError as exc:
            self._record_failure(record, exc)
            exc.annotate(instance=record.name, step="stop")
            raise
        updated = replace(record, status=status)
        self._save(updated)
        _note(op, "instance.stop")
        logger.info("Stopped instance %s", record.name)
        return updated

    def _record_failure(self, record: InstanceRecord, exc: PgForgeError) -> None:
        failed = replace(
            record,
            status=replace(record.status, state=InstanceState.ERROR, detail=str(exc)),
        )
        try:
            self.registry.save(failed)
        except PgForgeError as save_exc:
            logger.error("Could not persist error state for %s: %s", record.name, save_exc)

    def _refresh_service_status(self, record: InstanceRecord) -> InstanceRecord:
        reconciliation = self.supervisor.reconcile(record)
        if reconciliation.status == record.status:
            return record
        updated = replace(record, status=reconciliation.status)
        self._save(updated)
        return updated

    def _save(self, record: InstanceRecord) -> None:
        try:
            self.registry.save(record)
        except PgForgeError as exc:
            exc.annotate(instance=record.name)
            raise


__all__ = [
    "ConnectionInfo",
    "CreateOptions",
    "InstanceOrchestrator",
    "RemovalResult",
    "ServiceChange",
]
