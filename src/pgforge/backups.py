"""Pre-removal backup collaborator.

Only the interface exists: :class:`PlaceholderBackupProvider` records that a
backup was requested and reports that nothing was written. ``pgforge remove
--backup`` surfaces the result as a warning.
"""
from __future__ import annotations

import logging
from dataclasses import dataclass
from pathlib import Path
from typing import Protocol

from .models import InstanceRecord

logger = logging.getLogger(__name__)


@dataclass(frozen=True, slots=True)
class BackupResult:
    """Outcome of a backup request."""

    performed: bool
    detail: str
    path: Path | None = None


class BackupProvider(Protocol):
    """Interface for collaborators able to back up an instance before removal."""

    def create(self, record: InstanceRecord) -> BackupResult:
        """Back up *record* and describe the outcome."""
        ...


@dataclass(slots=True)
class PlaceholderBackupProvider:
    """Backup collaborator that performs no work."""

    backup_root: Path | None = None

    def create(self, record: InstanceRecord) -> BackupResult:
        """Return a result noting that no backup was taken for *record*."""
        target = self.backup_root / record.name if self.backup_root is not None else None
        logger.warning("Backup requested for %s but backups are not implemented", record.name)
        return BackupResult(
            performed=False,
            detail=(
                f"Backups are not implemented; data for '{record.name}' remains in "
                f"{record.spec.storage.data_directory}"
            ),
            path=target,
        )


__all__ = ["BackupProvider", "BackupResult", "PlaceholderBackupProvider"]
