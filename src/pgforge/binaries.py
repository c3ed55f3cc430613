"""Locate PostgreSQL executables for a requested server version.

Distributions install PostgreSQL in different places (Debian's
``/usr/lib/postgresql/<major>/bin``, RHEL's ``/usr/pgsql-<major>/bin``,
source builds under ``/usr/local/pgsql/bin``). The locator walks a
configurable, ordered list of directory templates, most specific first, and
finally falls back to ``PATH``.

Results are never cached: packages may be installed or removed between
invocations.
"""
from __future__ import annotations

import os
import shutil
from collections.abc import Sequence
from dataclasses import dataclass, field
from pathlib import Path

from .config import DEFAULT_SEARCH_PATHS
from .errors import ExternalToolMissingError


def major_version(version: str) -> str:
    """Return the major component of *version* (``"15.3"`` -> ``"15"``)."""
    return version.strip().split(".", 1)[0]


@dataclass(slots=True)
class BinaryLocator:
    """Resolve PostgreSQL executables by name and version."""

    search_paths: Sequence[str] = field(default_factory=lambda: DEFAULT_SEARCH_PATHS)
    path_env: str | None = None

    def search_directories(self, version: str) -> list[Path]:
        """Return the directories probed for *version*, in order, without duplicates."""
        major = major_version(version)
        seen: set[str] = set()
        directories: list[Path] = []
        for template in self.search_paths:
            resolved = template.format(version=version, major=major)
            if resolved in seen:
                continue
            seen.add(resolved)
            directories.append(Path(resolved))
        return directories

    def candidates(self, name: str, version: str) -> list[Path]:
        """Return every path probed for *name*, for diagnostics."""
        return [directory / name for directory in self.search_directories(version)]

    def locate(self, name: str, version: str) -> Path | None:
        """Return the first executable *name* for *version*, or ``None``."""
        for candidate in self.candidates(name, version):
            if _is_executable(candidate):
                return candidate
        path_env = self.path_env if self.path_env is not None else os.environ.get("PATH", "")
        found = shutil.which(name, path=path_env)
        return Path(found) if found else None

    def require(self, name: str, version: str) -> Path:
        """Return the executable path or raise :class:`ExternalToolMissingError`."""
        located = self.locate(name, version)
        if located is None:
            searched = [str(path) for path in self.candidates(name, version)]
            searched.append("$PATH")
            raise ExternalToolMissingError(name, version, searched)
        return located


def _is_executable(path: Path) -> bool:
    return path.is_file() and os.access(path, os.X_OK)


__all__ = ["BinaryLocator", "major_version"]
