"""Report whether the PostgreSQL tooling pgforge relies on is installed."""
from __future__ import annotations

import re
import subprocess
from dataclasses import dataclass
from pathlib import Path

from packaging.version import InvalidVersion, Version

from .binaries import BinaryLocator

_VERSION_PATTERN = re.compile(r"(\d+\.\d+(?:\.\d+)?)")


@dataclass(frozen=True, slots=True)
class SystemRequirement:
    """An executable pgforge needs on the host."""

    name: str
    command: str
    description: str
    required: bool = True
    check_min_version: bool = False


SYSTEM_REQUIREMENTS: tuple[SystemRequirement, ...] = (
    SystemRequirement(
        "PostgreSQL Server", "postgres", "PostgreSQL database server", check_min_version=True
    ),
    SystemRequirement("PostgreSQL Client", "psql", "PostgreSQL command-line client"),
    SystemRequirement("pg_dump", "pg_dump", "PostgreSQL backup utility"),
    SystemRequirement("pg_restore", "pg_restore", "PostgreSQL restore utility"),
    SystemRequirement("initdb", "initdb", "PostgreSQL database cluster initialization"),
)


@dataclass(frozen=True, slots=True)
class RequirementCheck:
    """Result of probing one :class:`SystemRequirement`."""

    requirement: SystemRequirement
    path: Path | None = None
    version: str | None = None
    satisfies_min_version: bool | None = None
    error: str | None = None

    @property
    def installed(self) -> bool:
        """Return ``True`` when the executable was found."""
        return self.path is not None

    @property
    def ok(self) -> bool:
        """Return ``True`` when the requirement is met."""
        if not self.installed:
            return not self.requirement.required
        return self.satisfies_min_version is not False

    def to_dict(self) -> dict[str, object]:
        """Return a JSON-friendly representation."""
        return {
            "name": self.requirement.name,
            "command": self.requirement.command,
            "required": self.requirement.required,
            "installed": self.installed,
            "path": str(self.path) if self.path else None,
            "version": self.version,
            "satisfies_min_version": self.satisfies_min_version,
            "error": self.error,
        }


def parse_version_output(output: str) -> str | None:
    """Extract the dotted version number from ``<tool> --version`` output."""
    match = _VERSION_PATTERN.search(output)
    return match.group(1) if match else None


def compare_versions(left: str, right: str) -> int:
    """Return -1, 0 or 1 as *left* is lower, equal or higher than *right*."""
    left_version, right_version = Version(left), Version(right)
    if left_version < right_version:
        return -1
    if left_version > right_version:
        return 1
    return 0


def command_version(path: Path) -> str | None:
    """Run ``<path> --version`` and return the parsed version, if any."""
    try:
        result = subprocess.run(  # noqa: S603
            [str(path), "--version"],
            capture_output=True,
            text=True,
            check=False,
            timeout=10,
        )
    except (OSError, subprocess.TimeoutExpired):
        return None
    if result.returncode != 0:
        return None
    return parse_version_output(result.stdout or result.stderr or "")


def check_requirement(
    requirement: SystemRequirement,
    locator: BinaryLocator,
    version: str,
    min_version: str,
) -> RequirementCheck:
    """Probe a single requirement."""
    path = locator.locate(requirement.command, version)
    if path is None:
        return RequirementCheck(
            requirement=requirement,
            error=(
                f"Command '{requirement.command}' not found in PATH or common "
                "PostgreSQL locations"
            ),
        )
    detected = command_version(path)
    if detected is None:
        return RequirementCheck(
            requirement=requirement,
            path=path,
            error="Could not determine version",
        )
    satisfies: bool | None = None
    if requirement.check_min_version:
        try:
            satisfies = compare_versions(detected, min_version) >= 0
        except InvalidVersion:
            return RequirementCheck(
                requirement=requirement,
                path=path,
                version=detected,
                error=f"Cannot compare version '{detected}' with '{min_version}'",
            )
    return RequirementCheck(
        requirement=requirement,
        path=path,
        version=detected,
        satisfies_min_version=satisfies,
    )


def check_requirements(
    locator: BinaryLocator,
    version: str,
    min_version: str,
) -> list[RequirementCheck]:
    """Probe every entry of :data:`SYSTEM_REQUIREMENTS`."""
    return [
        check_requirement(requirement, locator, version, min_version)
        for requirement in SYSTEM_REQUIREMENTS
    ]


def detect_server_version(locator: BinaryLocator, version: str) -> str | None:
    """Return the version reported by the ``postgres`` binary, or ``None``."""
    path = locator.locate("postgres", version)
    if path is None:
        return None
    return command_version(path)


_INSTALL_HINTS: dict[str, tuple[str, ...]] = {
    "apt": (
        "sudo apt install -y postgresql-common",
        "sudo /usr/share/postgresql-common/pgdg/apt.postgresql.org.sh",
        "sudo apt install -y postgresql-{major} postgresql-client-{major}",
    ),
    "yum": (
        "sudo yum install -y https://download.postgresql.org/pub/repos/yum/reporpms/"
        "EL-8-x86_64/pgdg-redhat-repo-latest.noarch.rpm",
        "sudo yum install -y postgresql{major}-server postgresql{major}",
    ),
    "dnf": (
        "sudo dnf install -y postgresql{major}-server postgresql{major}",
    ),
    "brew": ("brew install postgresql@{major}",),
    "pacman": ("sudo pacman -S postgresql",),
    "zypper": ("sudo zypper install postgresql{major}-server postgresql{major}",),
}


def installation_hints(package_manager: str, version: str = "15") -> list[str]:
    """Return shell commands that install PostgreSQL with *package_manager*."""
    major = version.strip().split(".", 1)[0]
    return [line.format(major=major) for line in _INSTALL_HINTS.get(package_manager, ())]


__all__ = [
    "RequirementCheck",
    "SYSTEM_REQUIREMENTS",
    "SystemRequirement",
    "check_requirement",
    "check_requirements",
    "command_version",
    "compare_versions",
    "detect_server_version",
    "installation_hints",
    "parse_version_output",
]
