"""Provider interfaces for pgforge."""
from __future__ import annotations

from .instance_status_provider import InstanceStatusProvider, StatusSummary
from .process import DirectProcessProvider
from .supervisor import ProcessSupervisor, Reconciliation
from .systemd import SystemdError, SystemdProvider

__all__ = [
    "DirectProcessProvider",
    "InstanceStatusProvider",
    "ProcessSupervisor",
    "Reconciliation",
    "StatusSummary",
    "SystemdError",
    "SystemdProvider",
]
