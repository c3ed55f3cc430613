"""Input validation for instance specifications.

Each ``is_valid_*`` predicate checks a single value; :func:`validate_instance_spec`
walks a whole record and returns every :class:`SpecIssue` it finds so the CLI
can report them together instead of failing on the first one.
"""
from __future__ import annotations

import re
from dataclasses import dataclass

from .models import InstanceRecord

INSTANCE_NAME_PATTERN = re.compile(r"^[a-z][a-z0-9-]*$")
IDENTIFIER_PATTERN = re.compile(r"^[A-Za-z_][A-Za-z0-9_]*$")
MEMORY_SIZE_PATTERN = re.compile(r"^\d+(\.\d+)?(kB|MB|GB|TB|B)$")
IPV4_PATTERN = re.compile(r"^(\d{1,3}\.){3}\d{1,3}$")
IPV6_PATTERN = re.compile(r"^([0-9a-fA-F]{1,4}:){7}[0-9a-fA-F]{1,4}$")

MAX_IDENTIFIER_LENGTH = 63
MIN_PORT = 1024
MAX_PORT = 65535
MAX_CONNECTIONS_LIMIT = 10000

AUTH_METHODS = ("md5", "scram-sha-256", "trust", "peer")
BACKUP_FORMATS = ("custom", "plain", "directory", "tar")
RESTART_POLICIES = (
    "no",
    "always",
    "on-success",
    "on-failure",
    "on-abnormal",
    "on-abort",
    "on-watchdog",
)
ENCODINGS = frozenset(
    {
        "UTF8",
        "UTF-8",
        "UNICODE",
        "LATIN1",
        "LATIN2",
        "LATIN3",
        "LATIN4",
        "LATIN5",
        "LATIN6",
        "LATIN7",
        "LATIN8",
        "LATIN9",
        "LATIN10",
        "ISO_8859_5",
        "ISO_8859_6",
        "ISO_8859_7",
        "ISO_8859_8",
        "KOI8R",
        "KOI8U",
        "WIN1250",
        "WIN1251",
        "WIN1252",
        "WIN1253",
        "WIN1254",
        "WIN1255",
        "WIN1256",
        "WIN1257",
        "WIN1258",
        "SQL_ASCII",
    }
)
MEMORY_FIELDS = (
    ("shared_buffers", "sharedBuffers"),
    ("effective_cache_size", "effectiveCacheSize"),
    ("work_mem", "workMem"),
    ("maintenance_work_mem", "maintenanceWorkMem"),
    ("wal_buffers", "walBuffers"),
)


@dataclass(frozen=True, slots=True)
class SpecIssue:
    """A single validation failure, addressed by its document path."""

    field: str
    message: str

    def __str__(self) -> str:
        """Return ``field: message``."""
        return f"{self.field}: {self.message}"


def is_valid_instance_name(name: str) -> bool:
    """Return ``True`` for lowercase names made of letters, digits and hyphens."""
    return bool(INSTANCE_NAME_PATTERN.match(name)) and len(name) <= MAX_IDENTIFIER_LENGTH


def is_valid_port(port: object) -> bool:
    """Return ``True`` when *port* is an unprivileged TCP port."""
    if isinstance(port, bool) or not isinstance(port, int):
        return False
    return MIN_PORT <= port <= MAX_PORT


def is_valid_bind_address(address: str) -> bool:
    """Return ``True`` for wildcard, localhost, IPv4 or IPv6 listen addresses."""
    if address in {"localhost", "*", "0.0.0.0", "::1"}:
        return True
    if IPV4_PATTERN.match(address):
        return all(0 <= int(part) <= 255 for part in address.split("."))
    return bool(IPV6_PATTERN.match(address))


def is_valid_identifier(name: str) -> bool:
    """Return ``True`` for plain (unquoted) PostgreSQL identifiers."""
    return bool(IDENTIFIER_PATTERN.match(name)) and len(name) <= MAX_IDENTIFIER_LENGTH


def is_valid_encoding(encoding: str) -> bool:
    """Return ``True`` when *encoding* is a known server encoding."""
    return encoding.upper() in ENCODINGS


def is_valid_memory_size(size: str) -> bool:
    """Return ``True`` for sizes such as ``128MB`` or ``1.5GB``."""
    return bool(MEMORY_SIZE_PATTERN.match(size))


def validate_instance_spec(record: InstanceRecord) -> list[SpecIssue]:
    """Return every validation issue found in *record* (empty when valid)."""
    issues: list[SpecIssue] = []
    spec = record.spec

    name = record.metadata.name
    if not name.strip():
        issues.append(SpecIssue("metadata.name", "Instance name is required"))
    elif not is_valid_instance_name(name):
        issues.append(
            SpecIssue(
                "metadata.name",
                "Instance name must start with a lowercase letter and contain only "
                "lowercase letters, numbers, and hyphens (max 63 characters)",
            )
        )

    if not spec.version.strip():
        issues.append(SpecIssue("spec.version", "PostgreSQL version is required"))

    network = spec.network
    if not is_valid_port(network.port):
        issues.append(
            SpecIssue("spec.network.port", f"Port must be between {MIN_PORT} and {MAX_PORT}")
        )
    if not is_valid_bind_address(network.bind_address):
        issues.append(SpecIssue("spec.network.bindAddress", "Invalid bind address format"))
    if not 1 <= network.max_connections <= MAX_CONNECTIONS_LIMIT:
        issues.append(
            SpecIssue(
                "spec.network.maxConnections",
                f"Max connections must be between 1 and {MAX_CONNECTIONS_LIMIT}",
            )
        )

    database = spec.database
    if not is_valid_identifier(database.name):
        issues.append(
            SpecIssue(
                "spec.database.name",
                "Database name must contain only letters, numbers, and underscores",
            )
        )
    if not is_valid_identifier(database.owner):
        issues.append(
            SpecIssue(
                "spec.database.owner",
                "User name must contain only letters, numbers, and underscores",
            )
        )
    if not is_valid_encoding(database.encoding):
        issues.append(
            SpecIssue("spec.database.encoding", "Invalid encoding. Use UTF8, LATIN1, etc.")
        )

    method = spec.security.authentication.method
    if method not in AUTH_METHODS:
        issues.append(
            SpecIssue(
                "spec.security.authentication.method",
                f"Authentication method must be one of: {', '.join(AUTH_METHODS)}",
            )
        )
    if not spec.security.authentication.allowed_hosts:
        issues.append(
            SpecIssue(
                "spec.security.authentication.allowedHosts",
                "At least one allowed host is required",
            )
        )

    for attribute, key in MEMORY_FIELDS:
        value = getattr(spec.performance, attribute)
        if value is not None and not is_valid_memory_size(value):
            issues.append(
                SpecIssue(
                    f"spec.performance.{key}",
                    'Invalid memory size format. Use format like "128MB", "1GB", etc.',
                )
            )

    backup_format = spec.backup.format
    if backup_format is not None and backup_format not in BACKUP_FORMATS:
        issues.append(
            SpecIssue(
                "spec.backup.format",
                f"Backup format must be one of: {', '.join(BACKUP_FORMATS)}",
            )
        )

    service = spec.service
    if service is not None:
        if service.restart_policy not in RESTART_POLICIES:
            issues.append(
                SpecIssue(
                    "spec.service.restartPolicy",
                    f"Restart policy must be one of: {', '.join(RESTART_POLICIES)}",
                )
            )
        if service.restart_sec < 0:
            issues.append(SpecIssue("spec.service.restartSec", "Restart delay must be >= 0"))

    return issues


__all__ = [
    "AUTH_METHODS",
    "BACKUP_FORMATS",
    "ENCODINGS",
    "RESTART_POLICIES",
    "SpecIssue",
    "is_valid_bind_address",
    "is_valid_encoding",
    "is_valid_identifier",
    "is_valid_instance_name",
    "is_valid_memory_size",
    "is_valid_port",
    "validate_instance_spec",
]
