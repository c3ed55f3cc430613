"""Summarise instance records for ``list`` and ``show`` output."""
from __future__ import annotations

from dataclasses import dataclass

from ..models import InstanceRecord, InstanceState


@dataclass(frozen=True)
class StatusSummary:
    """Represents the displayed status of a PostgreSQL instance."""

    state: str
    detail: str = ""


class InstanceStatusProvider:
    """Return display status information for instance records.

    Only the persisted record is consulted; callers that need the truth run
    the orchestrator's ``status`` first so the record is reconciled.
    """

    def status(self, record: InstanceRecord) -> StatusSummary:
        """Return the status summary for *record*."""
        status = record.status
        state = status.state.value
        detail_text = (status.detail or "").strip()

        if status.service is not None:
            service = status.service
            enabled = "enabled" if service.enabled else "disabled"
            service_text = f"service {service.status} ({enabled})"
            detail_text = f"{service_text}; {detail_text}" if detail_text else service_text
        elif status.state is InstanceState.RUNNING and status.pid is not None:
            detail_text = detail_text or f"pid {status.pid}"

        if not detail_text:
            if status.state is InstanceState.RUNNING and status.start_time:
                detail_text = f"since {status.start_time}"
            elif record.service_mode:
                detail_text = "managed by systemd"
            else:
                detail_text = "direct supervision"
        return StatusSummary(state=state, detail=detail_text)


__all__ = ["InstanceStatusProvider", "StatusSummary"]
