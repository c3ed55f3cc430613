"""Tests for instance specification validation."""
from __future__ import annotations

from collections.abc import Callable

import pytest

from pgforge.models import InstanceRecord, ServiceSpec
from pgforge.validation import (
    SpecIssue,
    is_valid_bind_address,
    is_valid_encoding,
    is_valid_identifier,
    is_valid_instance_name,
    is_valid_memory_size,
    is_valid_port,
    validate_instance_spec,
)


@pytest.mark.parametrize(
    ("name", "expected"),
    [
        ("demo", True),
        ("app-2", True),
        ("a" * 63, True),
        ("a" * 64, False),
        ("Demo", False),
        ("2app", False),
        ("app_one", False),
        ("", False),
    ],
)
def test_instance_name_rules(name: str, expected: bool) -> None:
    """Names start with a lowercase letter and use letters, digits and hyphens."""
    assert is_valid_instance_name(name) is expected


def test_port_bounds() -> None:
    """Only unprivileged integer ports are accepted."""
    assert is_valid_port(1024)
    assert is_valid_port(65535)
    assert not is_valid_port(1023)
    assert not is_valid_port(65536)
    assert not is_valid_port(True)
    assert not is_valid_port("5432")


def test_bind_addresses() -> None:
    """Wildcards, IPv4 and full IPv6 addresses are accepted."""
    for address in ("*", "0.0.0.0", "localhost", "::1", "10.1.2.3", "fe80:0:0:0:0:0:0:1"):
        assert is_valid_bind_address(address), address
    for address in ("256.1.1.1", "example.com", "1.2.3"):
        assert not is_valid_bind_address(address), address


def test_identifiers_encodings_and_sizes() -> None:
    """Plain identifiers, known encodings and memory sizes validate."""
    assert is_valid_identifier("app_db")
    assert not is_valid_identifier("app-db")
    assert is_valid_encoding("utf8")
    assert not is_valid_encoding("EBCDIC")
    assert is_valid_memory_size("128MB")
    assert is_valid_memory_size("1.5GB")
    assert not is_valid_memory_size("128 MB")
    assert not is_valid_memory_size("lots")


def test_valid_record_has_no_issues(make_record: Callable[..., InstanceRecord]) -> None:
    """A default record passes validation."""
    assert validate_instance_spec(make_record()) == []


def test_all_issues_are_reported_together(make_record: Callable[..., InstanceRecord]) -> None:
    """Validation collects every problem instead of stopping at the first."""
    record = make_record()
    record.spec.network.port = 80
    record.spec.database.owner = "bad-owner"
    record.spec.performance.work_mem = "lots"
    record.spec.security.authentication.method = "password"
    record.spec.service = ServiceSpec(restart_policy="sometimes", restart_sec=-1)

    fields = {issue.field for issue in validate_instance_spec(record)}

    assert fields == {
        "spec.network.port",
        "spec.database.owner",
        "spec.performance.workMem",
        "spec.security.authentication.method",
        "spec.service.restartPolicy",
        "spec.service.restartSec",
    }


def test_empty_allowed_hosts_is_an_issue(make_record: Callable[..., InstanceRecord]) -> None:
    """At least one network client range is required."""
    record = make_record()
    record.spec.security.authentication.allowed_hosts = []

    issues = validate_instance_spec(record)

    assert [issue.field for issue in issues] == ["spec.security.authentication.allowedHosts"]


def test_issue_string_includes_field() -> None:
    """Issues render as ``field: message``."""
    assert str(SpecIssue("spec.version", "required")) == "spec.version: required"
