"""Builders for the server configuration files pgforge owns.

``postgresql.conf`` and ``pg_hba.conf`` are assembled from typed directives
and rules rather than string concatenation so that quoting is always correct:
string values are single-quoted with embedded quotes doubled, booleans become
``on``/``off`` and numbers are written bare.

Both files start with :data:`GENERATED_MARKER`. The data directory classifier
uses the marker to recognise a data directory pgforge itself created.
"""
from __future__ import annotations

from collections.abc import Iterable
from dataclasses import dataclass, field
from pathlib import Path

from .models import InstanceRecord

GENERATED_MARKER = "# PostgreSQL configuration generated by pgforge"
SERVER_CONFIG_NAME = "postgresql.conf"
ACCESS_RULES_NAME = "pg_hba.conf"
LOG_FILENAME_PATTERN = "postgresql-%Y-%m-%d_%H%M%S.log"

Scalar = str | int | float | bool


def render_value(value: Scalar | Path) -> str:
    """Render a directive value using PostgreSQL config file syntax."""
    if isinstance(value, bool):
        return "on" if value else "off"
    if isinstance(value, (int, float)):
        return str(value)
    text = str(value).replace("'", "''")
    return f"'{text}'"


@dataclass(slots=True)
class ConfigSection:
    """A titled group of ``key = value`` directives."""

    title: str
    directives: list[tuple[str, Scalar | Path]] = field(default_factory=list)

    def set(self, key: str, value: Scalar | Path | None) -> None:
        """Add a directive; ``None`` values are skipped."""
        if value is not None:
            self.directives.append((key, value))


@dataclass(slots=True)
class ServerConfigDocument:
    """An ordered ``postgresql.conf`` document."""

    sections: list[ConfigSection] = field(default_factory=list)

    def section(self, title: str) -> ConfigSection:
        """Append and return a new section."""
        section = ConfigSection(title)
        self.sections.append(section)
        return section

    def directives(self) -> dict[str, Scalar | Path]:
        """Return every directive keyed by name (last one wins)."""
        merged: dict[str, Scalar | Path] = {}
        for section in self.sections:
            merged.update(section.directives)
        return merged

    def render(self) -> str:
        """Return the file contents."""
        lines = [GENERATED_MARKER]
        for section in self.sections:
            if not section.directives:
                continue
            lines.append("")
            lines.append(f"# {section.title}")
            for key, value in section.directives:
                lines.append(f"{key} = {render_value(value)}")
        return "\n".join(lines) + "\n"


@dataclass(frozen=True, slots=True)
class AccessRule:
    """One ``pg_hba.conf`` line."""

    kind: str
    database: str
    user: str
    address: str
    method: str


_HBA_COLUMNS = (8, 16, 16, 24)


@dataclass(slots=True)
class AccessRuleDocument:
    """An ordered ``pg_hba.conf`` document."""

    rules: list[AccessRule] = field(default_factory=list)

    def add(self, rule: AccessRule) -> None:
        """Append *rule*."""
        self.rules.append(rule)

    def render(self) -> str:
        """Return the file contents with fixed-width columns."""
        lines = [
            GENERATED_MARKER,
            _format_row(("# TYPE", "DATABASE", "USER", "ADDRESS", "METHOD")),
        ]
        for rule in self.rules:
            lines.append(
                _format_row((rule.kind, rule.database, rule.user, rule.address, rule.method))
            )
        return "\n".join(lines) + "\n"


def _format_row(columns: tuple[str, str, str, str, str]) -> str:
    padded = [
        value.ljust(width - 1) + " "
        for value, width in zip(columns[:4], _HBA_COLUMNS, strict=True)
    ]
    return ("".join(padded) + columns[-1]).rstrip()


def build_server_config(record: InstanceRecord) -> ServerConfigDocument:
    """Return the ``postgresql.conf`` document for *record*."""
    spec = record.spec
    document = ServerConfigDocument()

    connection = document.section("Connection settings")
    connection.set("port", spec.network.port)
    connection.set("listen_addresses", spec.network.bind_address)
    connection.set("max_connections", spec.network.max_connections)

    sockets = document.section("Socket configuration")
    sockets.set("unix_socket_directories", str(record.socket_directory))

    performance = document.section("Performance settings")
    perf = spec.performance
    performance.set("shared_buffers", perf.shared_buffers)
    performance.set("effective_cache_size", perf.effective_cache_size)
    performance.set("work_mem", perf.work_mem)
    performance.set("maintenance_work_mem", perf.maintenance_work_mem)
    performance.set("wal_buffers", perf.wal_buffers)
    performance.set("checkpoint_completion_target", perf.checkpoint_completion_target)
    performance.set("random_page_cost", perf.random_page_cost)

    locale = document.section("Locale")
    locale.set("timezone", spec.database.timezone)

    logging_section = document.section("Logging")
    logging_section.set("log_directory", str(spec.storage.log_directory))
    logging_section.set("log_filename", LOG_FILENAME_PATTERN)
    logging_section.set("logging_collector", True)
    audit = spec.security.audit
    if audit.enabled:
        logging_section.set(
            "log_connections", True if audit.log_connections is None else audit.log_connections
        )
        logging_section.set(
            "log_disconnections",
            True if audit.log_disconnections is None else audit.log_disconnections,
        )
        if audit.log_statements:
            logging_section.set("log_statement", ",".join(audit.log_statements))
        logging_section.set("log_min_messages", audit.log_level)

    if spec.storage.archive_directory is not None:
        archive = document.section("WAL archiving")
        archive.set("archive_mode", True)
        target = spec.storage.archive_directory
        archive.set("archive_command", f"test ! -f {target}/%f && cp %p {target}/%f")

    ssl = spec.security.ssl
    if ssl.enabled:
        ssl_section = document.section("SSL configuration")
        ssl_section.set("ssl", True)
        ssl_section.set("ssl_cert_file", ssl.certificate_path)
        ssl_section.set("ssl_key_file", ssl.key_path)
        ssl_section.set("ssl_ciphers", ssl.ciphers)

    return document


def build_access_rules(record: InstanceRecord) -> AccessRuleDocument:
    """Return the ``pg_hba.conf`` document for *record*."""
    auth = record.spec.security.authentication
    document = AccessRuleDocument()
    document.add(AccessRule("local", "all", "all", "", "peer"))
    for host in auth.allowed_hosts or ["127.0.0.1/32"]:
        document.add(AccessRule("host", "all", "all", host, auth.method or "md5"))
    return document


def write_generated_files(record: InstanceRecord) -> list[Path]:
    """Write both configuration files into the data directory."""
    data_directory = record.spec.storage.data_directory
    written: list[Path] = []
    outputs: Iterable[tuple[str, str]] = (
        (SERVER_CONFIG_NAME, build_server_config(record).render()),
        (ACCESS_RULES_NAME, build_access_rules(record).render()),
    )
    for filename, content in outputs:
        path = data_directory / filename
        path.write_text(content, encoding="utf-8")
        path.chmod(0o600)
        written.append(path)
    return written


__all__ = [
    "ACCESS_RULES_NAME",
    "AccessRule",
    "AccessRuleDocument",
    "ConfigSection",
    "GENERATED_MARKER",
    "SERVER_CONFIG_NAME",
    "ServerConfigDocument",
    "build_access_rules",
    "build_server_config",
    "render_value",
    "write_generated_files",
]
