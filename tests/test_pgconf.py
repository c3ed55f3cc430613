"""Tests for the generated server configuration files."""
from __future__ import annotations

from collections.abc import Callable
from pathlib import Path

from pgforge.models import InstanceRecord
from pgforge.pgconf import (
    GENERATED_MARKER,
    build_access_rules,
    build_server_config,
    render_value,
    write_generated_files,
)


def test_render_value_quoting() -> None:
    """Strings are quoted with doubled quotes; numbers and booleans are bare."""
    assert render_value("128MB") == "'128MB'"
    assert render_value("it's") == "'it''s'"
    assert render_value(True) == "on"
    assert render_value(False) == "off"
    assert render_value(100) == "100"
    assert render_value(0.9) == "0.9"
    assert render_value(Path("/srv/pg")) == "'/srv/pg'"


def test_server_config_core_directives(make_record: Callable[..., InstanceRecord]) -> None:
    """Port, listen address and socket directory come from the record."""
    record = make_record(port=5499)
    record.spec.network.bind_address = "*"
    record.spec.performance.shared_buffers = "256MB"

    directives = build_server_config(record).directives()

    assert directives["port"] == 5499
    assert directives["listen_addresses"] == "*"
    assert directives["max_connections"] == 100
    assert directives["unix_socket_directories"] == str(record.socket_directory)
    assert directives["shared_buffers"] == "256MB"
    assert directives["timezone"] == "UTC"
    assert directives["logging_collector"] is True
    assert "work_mem" not in directives
    assert "ssl" not in directives
    assert "archive_mode" not in directives
    assert "log_connections" not in directives


def test_server_config_optional_sections(make_record: Callable[..., InstanceRecord]) -> None:
    """SSL, audit and archiving sections appear only when configured."""
    record = make_record()
    security = record.spec.security
    security.ssl.enabled = True
    security.ssl.certificate_path = "/etc/ssl/server.crt"
    security.audit.enabled = True
    security.audit.log_statements = ["ddl", "mod"]
    security.audit.log_disconnections = False
    record.spec.storage.archive_directory = Path("/srv/archive")

    directives = build_server_config(record).directives()

    assert directives["ssl"] is True
    assert directives["ssl_cert_file"] == "/etc/ssl/server.crt"
    assert "ssl_key_file" not in directives
    assert directives["log_connections"] is True
    assert directives["log_disconnections"] is False
    assert directives["log_statement"] == "ddl,mod"
    assert directives["archive_mode"] is True
    assert directives["archive_command"] == (
        "test ! -f /srv/archive/%f && cp %p /srv/archive/%f"
    )


def test_rendered_config_starts_with_marker(make_record: Callable[..., InstanceRecord]) -> None:
    """The rendered file opens with the generated-file marker."""
    text = build_server_config(make_record()).render()

    assert text.startswith(GENERATED_MARKER + "\n")
    assert "port = 5440" in text
    assert "listen_addresses = '127.0.0.1'" in text
    assert text.endswith("\n")


def test_access_rules(make_record: Callable[..., InstanceRecord]) -> None:
    """Local peer access plus one host rule per allowed range."""
    record = make_record()
    record.spec.security.authentication.method = "scram-sha-256"
    document = build_access_rules(record)

    assert [(rule.kind, rule.address, rule.method) for rule in document.rules] == [
        ("local", "", "peer"),
        ("host", "127.0.0.1/32", "scram-sha-256"),
        ("host", "::1/128", "scram-sha-256"),
    ]
    lines = document.render().splitlines()
    assert lines[0] == GENERATED_MARKER
    assert lines[1].startswith("# TYPE")
    assert lines[3].split() == ["host", "all", "all", "127.0.0.1/32", "scram-sha-256"]


def test_write_generated_files(make_record: Callable[..., InstanceRecord]) -> None:
    """Both files are written into the data directory with owner-only access."""
    record = make_record()
    data = record.spec.storage.data_directory
    data.mkdir(parents=True)

    written = write_generated_files(record)

    assert written == [data / "postgresql.conf", data / "pg_hba.conf"]
    for path in written:
        assert oct(path.stat().st_mode & 0o777) == "0o600"
        assert path.read_text(encoding="utf-8").startswith(GENERATED_MARKER)
