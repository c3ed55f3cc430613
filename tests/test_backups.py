"""Tests for the pre-removal backup collaborator."""
from __future__ import annotations

from collections.abc import Callable
from pathlib import Path

from pgforge.backups import BackupProvider, PlaceholderBackupProvider
from pgforge.models import InstanceRecord


def test_placeholder_reports_nothing_written(
    tmp_path: Path, make_record: Callable[..., InstanceRecord]
) -> None:
    """The placeholder never writes and points at the data that remains."""
    provider: BackupProvider = PlaceholderBackupProvider(backup_root=tmp_path / "backups")
    record = make_record()

    result = provider.create(record)

    assert result.performed is False
    assert "not implemented" in result.detail
    assert str(record.spec.storage.data_directory) in result.detail
    assert result.path == tmp_path / "backups" / "demo"
    assert not (tmp_path / "backups").exists()


def test_placeholder_without_root(make_record: Callable[..., InstanceRecord]) -> None:
    """Without a backup root no target path is reported."""
    result = PlaceholderBackupProvider().create(make_record())

    assert result.path is None
