"""Start, stop and observe instance servers in either supervision mode.

The mode is derived from the record: ``spec.service.enabled`` selects
:class:`~pgforge.models.ServiceSupervision` (systemd owns the process),
otherwise :class:`~pgforge.models.DirectSupervision` (pgforge spawns the
server and tracks its pid). Every method returns a fresh
:class:`~pgforge.models.InstanceStatus`; persisting it is the caller's job.
"""
from __future__ import annotations

import logging
from dataclasses import dataclass
from datetime import UTC, datetime
from pathlib import Path

from ..binaries import BinaryLocator
from ..errors import SupervisionError
from ..models import (
    DirectSupervision,
    InstanceRecord,
    InstanceState,
    InstanceStatus,
    ServiceStatus,
    ServiceSupervision,
    Supervision,
    UnitDescriptor,
)
from .process import DirectProcessProvider
from .systemd import RUNNING_UNIT_STATES, SystemdError, SystemdProvider, UnitState

logger = logging.getLogger(__name__)

_SERVICE_STATES = {
    **{state: InstanceState.RUNNING for state in RUNNING_UNIT_STATES},
    "activating": InstanceState.STARTING,
    "deactivating": InstanceState.STOPPING,
    "failed": InstanceState.ERROR,
}


def utcnow() -> str:
    """Return the current UTC time as an ISO-8601 string."""
    return datetime.now(UTC).isoformat()


def _service_status(unit_state: UnitState) -> ServiceStatus:
    return ServiceStatus(
        enabled=unit_state.enabled, active=unit_state.running, status=unit_state.active
    )


@dataclass(frozen=True, slots=True)
class Reconciliation:
    """Observed status of an instance and whether it differs from the record."""

    status: InstanceStatus
    corrected: bool
    reason: str | None = None


@dataclass(slots=True)
class ProcessSupervisor:
    """Dispatch lifecycle actions to the direct or systemd provider."""

    locator: BinaryLocator
    processes: DirectProcessProvider
    systemd: SystemdProvider
    service_user: str | None = "postgres"

    # ------------------------------------------------------------------
    def supervision_for(self, record: InstanceRecord) -> Supervision:
        """Return the supervision variant selected by *record*."""
        if record.service_mode:
            return ServiceSupervision(unit=self.unit_descriptor(record))
        return DirectSupervision()

    def unit_descriptor(
        self, record: InstanceRecord, *, binary: Path | None = None
    ) -> UnitDescriptor:
        """Describe the service unit for *record* (resolves the server binary)."""
        service = record.spec.service
        user_mode = bool(service and service.user_mode)
        if binary is None:
            binary = self.locator.require("postgres", record.spec.version)
        return UnitDescriptor(
            unit_name=self.systemd.unit_name(record.name),
            binary=binary,
            data_directory=record.spec.storage.data_directory,
            log_directory=record.spec.storage.log_directory,
            socket_directory=record.socket_directory,
            port=record.spec.network.port,
            restart_policy=service.restart_policy if service else "on-failure",
            restart_sec=service.restart_sec if service else 5,
            user_mode=user_mode,
            archive_directory=record.spec.storage.archive_directory,
        )

    # ------------------------------------------------------------------
    def start(self, record: InstanceRecord) -> InstanceStatus:
        """Start the server and return the resulting status."""
        supervision = self.supervision_for(record)
        if isinstance(supervision, ServiceSupervision):
            systemd = self.systemd.scoped(supervision.unit.user_mode)
            systemd.start(record.name)
            unit_state = systemd.unit_state(record.name)
            if not unit_state.running:
                raise SupervisionError(
                    f"Service {supervision.unit.unit_name} is '{unit_state.active}' after start",
                    instance=record.name,
                    hint=f"Inspect 'journalctl -u {supervision.unit.unit_name}'.",
                )
            return InstanceStatus(
                state=InstanceState.RUNNING,
                start_time=utcnow(),
                last_restart=record.status.last_restart,
                version=record.spec.version,
                service=_service_status(unit_state),
            )

        binary = self.locator.require("postgres", record.spec.version)
        pid = self.processes.start_server(binary, record.spec.storage.data_directory)
        return InstanceStatus(
            state=InstanceState.RUNNING,
            pid=pid,
            start_time=utcnow(),
            last_restart=record.status.last_restart,
            version=record.spec.version,
        )

    def stop(self, record: InstanceRecord) -> InstanceStatus:
        """Stop the server and return the resulting status."""
        supervision = self.supervision_for(record)
        if isinstance(supervision, ServiceSupervision):
            systemd = self.systemd.scoped(supervision.unit.user_mode)
            systemd.stop(record.name)
            return InstanceStatus(
                state=InstanceState.STOPPED,
                last_restart=record.status.last_restart,
                version=record.status.version,
                service=_service_status(systemd.unit_state(record.name)),
            )

        pid = record.status.pid
        if pid is not None and self.processes.is_alive(pid):
            if self.processes.terminate(pid):
                logger.warning("Instance %s required SIGKILL to stop", record.name)
        return InstanceStatus(
            state=InstanceState.STOPPED,
            last_restart=record.status.last_restart,
            version=record.status.version,
        )

    def reconcile(self, record: InstanceRecord) -> Reconciliation:
        """Compare the persisted status with reality."""
        current = record.status
        supervision = self.supervision_for_status(record)
        if isinstance(supervision, ServiceSupervision):
            systemd = self.systemd.scoped(supervision.unit.user_mode)
            service_status = _service_status(systemd.unit_state(record.name))
            observed = _SERVICE_STATES.get(service_status.status, InstanceState.STOPPED)
            status = InstanceStatus(
                state=observed,
                start_time=current.start_time if observed is InstanceState.RUNNING else None,
                last_restart=current.last_restart,
                version=current.version,
                detail=current.detail if observed is InstanceState.ERROR else None,
                service=service_status,
            )
            if observed is current.state:
                return Reconciliation(status=status, corrected=False)
            return Reconciliation(
                status=status,
                corrected=True,
                reason=f"service reports '{service_status.status}'",
            )

        if current.state in (InstanceState.STOPPED, InstanceState.ERROR):
            return Reconciliation(status=current, corrected=False)

        pid = current.pid
        if pid is not None and self.processes.is_alive(pid):
            if current.state is InstanceState.RUNNING:
                return Reconciliation(status=current, corrected=False)
            status = InstanceStatus(
                state=InstanceState.RUNNING,
                pid=pid,
                start_time=current.start_time,
                last_restart=current.last_restart,
                version=current.version,
            )
            return Reconciliation(
                status=status, corrected=True, reason=f"process {pid} is alive"
            )

        reason = "no pid recorded" if pid is None else f"process {pid} is not running"
        status = InstanceStatus(
            state=InstanceState.STOPPED,
            last_restart=current.last_restart,
            version=current.version,
        )
        return Reconciliation(status=status, corrected=True, reason=reason)

    def supervision_for_status(self, record: InstanceRecord) -> Supervision:
        """Return the supervision variant without requiring the server binary."""
        if not record.service_mode:
            return DirectSupervision()
        binary = self.locator.locate("postgres", record.spec.version) or Path("postgres")
        return ServiceSupervision(unit=self.unit_descriptor(record, binary=binary))

    # ------------------------------------------------------------------
    def install_service(self, record: InstanceRecord) -> bool:
        """Render and enable the unit for *record*; return whether the file changed."""
        unit = self.unit_descriptor(record)
        systemd = self.systemd.scoped(unit.user_mode)
        changed = systemd.install_unit(record.name, self.unit_context(record, unit))
        systemd.enable(record.name)
        return changed

    def uninstall_service(self, record: InstanceRecord) -> bool:
        """Disable and remove the unit for *record*; return whether a unit existed."""
        service = record.spec.service
        systemd = self.systemd.scoped(bool(service and service.user_mode))
        if not systemd.unit_path(record.name).exists():
            return False
        try:
            systemd.disable(record.name)
        except SystemdError as exc:
            logger.warning("Disabling %s failed: %s", systemd.unit_name(record.name), exc)
        systemd.remove_unit(record.name)
        return True

    def unit_context(self, record: InstanceRecord, unit: UnitDescriptor) -> dict[str, object]:
        """Return the template context for the unit file of *record*."""
        return {
            "instance_name": record.name,
            "version": record.spec.version,
            "binary": str(unit.binary),
            "data_directory": str(unit.data_directory),
            "socket_directory": str(unit.socket_directory),
            "port": unit.port,
            "restart_policy": unit.restart_policy,
            "restart_sec": unit.restart_sec,
            "write_paths": [str(path) for path in unit.write_paths],
            "wanted_by": "default.target" if unit.user_mode else "multi-user.target",
            "service_user": None if unit.user_mode else self.service_user,
        }


__all__ = ["ProcessSupervisor", "Reconciliation", "utcnow"]
