"""Data directory preparation and partial-install detection.

A ``create`` that fails after ``initdb`` leaves a half-built cluster behind.
Retrying must not be blocked by it, yet pgforge must never delete a directory
it did not produce. The classifier therefore only reports
:attr:`DataDirectoryState.PARTIAL` when the directory carries evidence of a
pgforge bootstrap:

* ``postgresql.conf`` begins with the pgforge generated-file marker, or
* the ``sockets`` subdirectory pgforge creates right after ``initdb`` is
  present and at least 80% of the entries are known cluster files.

Everything else that is non-empty is :attr:`DataDirectoryState.FOREIGN` and is
left untouched. ``initdb`` cleans up after its own failures, so a directory
without the ``sockets`` marker is never the product of an aborted create.
"""
from __future__ import annotations

import logging
import os
import shutil
from dataclasses import dataclass
from enum import Enum
from pathlib import Path

from ..errors import UnsafeStateError
from ..models import SOCKET_DIRNAME, InstanceRecord
from ..pgconf import GENERATED_MARKER, SERVER_CONFIG_NAME

logger = logging.getLogger(__name__)

SIGNATURE_NAMES = frozenset(
    {
        "PG_VERSION",
        "postgresql.conf",
        "postgresql.auto.conf",
        "pg_hba.conf",
        "pg_ident.conf",
        "postmaster.pid",
        "postmaster.opts",
        "base",
        "global",
        SOCKET_DIRNAME,
    }
)
SIGNATURE_PREFIXES = ("pg_",)
RECOGNITION_THRESHOLD = 0.8
_LISTED_ENTRIES = 5


class DataDirectoryState(str, Enum):
    """Classification of an instance data directory."""

    MISSING = "missing"
    EMPTY = "empty"
    PARTIAL = "partial"
    FOREIGN = "foreign"


@dataclass(frozen=True, slots=True)
class PreparedDirectories:
    """Outcome of :func:`prepare_directories`."""

    data_directory: Path
    log_directory: Path
    previous_state: DataDirectoryState
    cleaned: bool


def is_signature_entry(name: str) -> bool:
    """Return ``True`` when *name* is a file PostgreSQL or pgforge puts in a cluster."""
    return name in SIGNATURE_NAMES or name.startswith(SIGNATURE_PREFIXES)


def has_generated_marker(data_directory: Path) -> bool:
    """Return ``True`` when ``postgresql.conf`` was written by pgforge."""
    config_path = data_directory / SERVER_CONFIG_NAME
    try:
        with config_path.open(encoding="utf-8", errors="replace") as handle:
            head = handle.read(4096)
    except OSError:
        return False
    return GENERATED_MARKER in head


def classify_data_directory(path: Path) -> DataDirectoryState:
    """Classify *path* as missing, empty, a partial pgforge install or foreign data."""
    if not path.exists() and not path.is_symlink():
        return DataDirectoryState.MISSING
    if not path.is_dir():
        return DataDirectoryState.FOREIGN
    entries = [entry.name for entry in path.iterdir()]
    if not entries:
        return DataDirectoryState.EMPTY
    if has_generated_marker(path):
        return DataDirectoryState.PARTIAL
    if SOCKET_DIRNAME in entries and (path / SOCKET_DIRNAME).is_dir():
        recognised = sum(1 for name in entries if is_signature_entry(name))
        if recognised / len(entries) >= RECOGNITION_THRESHOLD:
            return DataDirectoryState.PARTIAL
    return DataDirectoryState.FOREIGN


def read_postmaster_pid(data_directory: Path) -> int | None:
    """Return the pid recorded in ``postmaster.pid``, if any."""
    try:
        first_line = (data_directory / "postmaster.pid").read_text(encoding="utf-8").splitlines()
    except (OSError, UnicodeDecodeError):
        return None
    if not first_line:
        return None
    try:
        pid = int(first_line[0].strip())
    except ValueError:
        return None
    return pid if pid > 0 else None


def _pid_alive(pid: int) -> bool:
    try:
        os.kill(pid, 0)
    except ProcessLookupError:
        return False
    except PermissionError:
        return True
    return True


def erase_contents(path: Path) -> None:
    """Remove everything inside *path*, keeping the directory itself."""
    for entry in path.iterdir():
        if entry.is_dir() and not entry.is_symlink():
            shutil.rmtree(entry)
        else:
            entry.unlink()


def prepare_directories(record: InstanceRecord) -> PreparedDirectories:
    """Create the instance directories, clearing a partial prior attempt.

    Raises :class:`UnsafeStateError` when the data directory holds anything
    pgforge did not create, or when a server from a previous attempt still
    runs from it.
    """
    storage = record.spec.storage
    data_directory = storage.data_directory
    state = classify_data_directory(data_directory)
    cleaned = False

    if state is DataDirectoryState.FOREIGN:
        if data_directory.is_dir():
            listing = sorted(entry.name for entry in data_directory.iterdir())[:_LISTED_ENTRIES]
        else:
            listing = [f"{data_directory.name} (not a directory)"]
        raise UnsafeStateError(
            f"Data directory {data_directory} contains files not created by pgforge",
            instance=record.name,
            step="directories",
            detail="Found: " + ", ".join(listing),
            hint=(
                "pgforge never deletes unrecognised data. Move or remove the directory "
                "manually, or choose another data directory."
            ),
        )

    if state is DataDirectoryState.PARTIAL:
        pid = read_postmaster_pid(data_directory)
        if pid is not None and _pid_alive(pid):
            raise UnsafeStateError(
                f"A server process (pid {pid}) is still running from {data_directory}",
                instance=record.name,
                step="directories",
                hint=f"Stop process {pid} before retrying the create.",
            )
        logger.warning(
            "Removing partial installation left in %s by a previous attempt", data_directory
        )
        erase_contents(data_directory)
        cleaned = True

    data_directory.mkdir(parents=True, exist_ok=True)
    data_directory.chmod(0o700)
    storage.log_directory.mkdir(parents=True, exist_ok=True)
    if storage.archive_directory is not None:
        storage.archive_directory.mkdir(parents=True, exist_ok=True)

    return PreparedDirectories(
        data_directory=data_directory,
        log_directory=storage.log_directory,
        previous_state=state,
        cleaned=cleaned,
    )


__all__ = [
    "DataDirectoryState",
    "PreparedDirectories",
    "classify_data_directory",
    "erase_contents",
    "has_generated_marker",
    "is_signature_entry",
    "prepare_directories",
    "read_postmaster_pid",
]
