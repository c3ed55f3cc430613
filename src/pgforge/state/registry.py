"""Instance record store.

Each instance is persisted as ``<root>/<name>.yaml`` (``~/.pgforge/instances``
by default). Records are written atomically through a temporary file in the
same directory followed by ``os.replace`` so a crash mid-write never leaves a
truncated record behind. The records are the single source of truth for
instance existence, port claims and last known state.
"""
from __future__ import annotations

import os
import tempfile
from dataclasses import dataclass
from pathlib import Path

try:  # PyYAML is a runtime dependency declared in pyproject.toml
    import yaml
except Exception as exc:  # pragma: no cover - import failure handled in tests
    raise RuntimeError(
        "PyYAML is required to manage pgforge state. Install with `pip install pgforge`."
    ) from exc

from ..errors import PersistenceError
from ..models import InstanceRecord, RecordFormatError

RECORD_SUFFIX = ".yaml"


class StateRegistryError(PersistenceError):
    """Raised when record store operations fail."""


@dataclass(frozen=True)
class StateRegistry:
    """Read and write instance records under *root*."""

    root: Path

    def __post_init__(self) -> None:
        """Normalise the root path after initialisation."""
        object.__setattr__(self, "root", Path(self.root).expanduser())

    def ensure_root(self) -> None:
        """Create the record directory if it does not yet exist."""
        try:
            self.root.mkdir(parents=True, exist_ok=True)
        except OSError as exc:
            raise StateRegistryError(
                f"Cannot create record directory {self.root}: {exc}"
            ) from exc

    def path_for(self, name: str) -> Path:
        """Return the filesystem path of the record for *name*."""
        normalized = name.strip()
        if not normalized or "/" in normalized or normalized.startswith("."):
            raise StateRegistryError(f"Invalid instance name for record store: {name!r}.")
        return self.root / f"{normalized}{RECORD_SUFFIX}"

    # ------------------------------------------------------------------
    def get(self, name: str) -> InstanceRecord | None:
        """Return the record for *name*, or ``None`` when absent."""
        path = self.path_for(name)
        if not path.exists():
            return None
        try:
            data = yaml.safe_load(path.read_text(encoding="utf-8"))
        except yaml.YAMLError as exc:
            raise StateRegistryError(f"Failed to parse record {path}: {exc}") from exc
        except OSError as exc:
            raise StateRegistryError(f"Failed to read record {path}: {exc}") from exc
        if not isinstance(data, dict):
            raise StateRegistryError(f"Record {path} must contain a mapping.")
        try:
            return InstanceRecord.from_dict(data)
        except RecordFormatError as exc:
            raise StateRegistryError(f"Invalid record {path}: {exc}") from exc

    def save(self, record: InstanceRecord) -> Path:
        """Atomically write *record* and return its path."""
        self.ensure_root()
        path = self.path_for(record.name)

        tmp_fd, tmp_name = tempfile.mkstemp(dir=str(self.root), prefix=f".{path.name}.")
        tmp_path = Path(tmp_name)
        try:
            with os.fdopen(tmp_fd, "w", encoding="utf-8") as handle:
                yaml.safe_dump(record.to_dict(), handle, sort_keys=False)
            os.chmod(tmp_path, 0o640)
            os.replace(tmp_path, path)
        except OSError as exc:
            raise StateRegistryError(f"Failed to write record {path}: {exc}") from exc
        finally:
            tmp_path.unlink(missing_ok=True)
        return path

    def delete(self, name: str) -> bool:
        """Delete the record for *name*; return ``False`` when it did not exist."""
        path = self.path_for(name)
        try:
            path.unlink()
        except FileNotFoundError:
            return False
        except OSError as exc:
            raise StateRegistryError(f"Failed to delete record {path}: {exc}") from exc
        return True

    def list(self) -> list[str]:
        """Return the names of every stored record, sorted."""
        if not self.root.exists():
            return []
        return sorted(
            path.name[: -len(RECORD_SUFFIX)]
            for path in self.root.iterdir()
            if path.is_file()
            and path.name.endswith(RECORD_SUFFIX)
            and not path.name.startswith(".")
        )

    def load_all(self) -> list[InstanceRecord]:
        """Return every stored record, sorted by name."""
        records: list[InstanceRecord] = []
        for name in self.list():
            record = self.get(name)
            if record is not None:
                records.append(record)
        return records


__all__ = ["StateRegistry", "StateRegistryError"]
