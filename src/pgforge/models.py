"""Instance record data model.

Each instance is persisted as one YAML document shaped like::

    apiVersion: v1
    kind: PostgreSQLInstance
    metadata: {name: demo, labels: {...}, annotations: {...}}
    spec: {version: "15.3", network: {...}, storage: {...}, database: {...}, ...}
    status: {state: stopped, ...}

Python attributes use snake_case; the document keys are the camelCase
equivalents (``bind_address`` <-> ``bindAddress``) so hand-edited files stay
interoperable. ``None`` values are omitted when serialising and restored as
defaults when loading, which keeps ``from_dict(to_dict(x)) == x``.
"""
from __future__ import annotations

import dataclasses
import types
from collections.abc import Mapping
from dataclasses import dataclass, field
from enum import Enum
from functools import cache
from pathlib import Path
from typing import Any, ClassVar, TypeVar, Union, get_args, get_origin, get_type_hints

API_VERSION = "v1"
RECORD_KIND = "PostgreSQLInstance"
SOCKET_DIRNAME = "sockets"

_T = TypeVar("_T", bound="_Document")


class RecordFormatError(ValueError):
    """Raised when a record document does not match the expected shape."""


class InstanceState(str, Enum):
    """Observed lifecycle state of an instance."""

    STOPPED = "stopped"
    STARTING = "starting"
    RUNNING = "running"
    STOPPING = "stopping"
    ERROR = "error"


def _camel(name: str) -> str:
    head, *rest = name.split("_")
    return head + "".join(part.title() for part in rest)


def _encode(value: object) -> object:
    if isinstance(value, _Document):
        return value.to_dict()
    if isinstance(value, Enum):
        return value.value
    if isinstance(value, Path):
        return str(value)
    if isinstance(value, (list, tuple)):
        return [_encode(item) for item in value]
    if isinstance(value, Mapping):
        return {str(key): _encode(item) for key, item in value.items()}
    return value


@cache
def _hints(cls: type) -> dict[str, Any]:
    return get_type_hints(cls)


def _decode(annotation: Any, raw: object, label: str) -> object:
    origin = get_origin(annotation)
    if origin in (Union, types.UnionType):
        if raw is None:
            return None
        members = [arg for arg in get_args(annotation) if arg is not type(None)]
        annotation = members[0]
        origin = get_origin(annotation)

    if origin is list:
        if not isinstance(raw, list):
            raise RecordFormatError(f"{label} must be a list.")
        (item_type,) = get_args(annotation)
        return [_decode(item_type, item, f"{label}[{index}]") for index, item in enumerate(raw)]
    if origin is dict:
        if not isinstance(raw, Mapping):
            raise RecordFormatError(f"{label} must be a mapping.")
        return {str(key): str(value) for key, value in raw.items()}

    if isinstance(annotation, type) and issubclass(annotation, _Document):
        if not isinstance(raw, Mapping):
            raise RecordFormatError(f"{label} must be a mapping.")
        return annotation.from_dict(raw, label=label)
    if isinstance(annotation, type) and issubclass(annotation, Enum):
        try:
            return annotation(raw)
        except ValueError as exc:
            allowed = ", ".join(member.value for member in annotation)
            raise RecordFormatError(f"{label} must be one of: {allowed}.") from exc
    if annotation is Path:
        return Path(str(raw))
    if annotation is bool:
        if not isinstance(raw, bool):
            raise RecordFormatError(f"{label} must be a boolean.")
        return raw
    if annotation is int:
        if isinstance(raw, bool):
            raise RecordFormatError(f"{label} must be an integer.")
        try:
            return int(raw)  # type: ignore[call-overload]
        except (TypeError, ValueError) as exc:
            raise RecordFormatError(f"{label} must be an integer.") from exc
    if annotation is float:
        if isinstance(raw, bool) or not isinstance(raw, (int, float, str)):
            raise RecordFormatError(f"{label} must be a number.")
        try:
            return float(raw)
        except ValueError as exc:
            raise RecordFormatError(f"{label} must be a number.") from exc
    if annotation is str:
        if isinstance(raw, (Mapping, list)):
            raise RecordFormatError(f"{label} must be a string.")
        return str(raw)
    return raw


class _Document:
    """Mixin converting dataclasses to and from camelCase mappings."""

    __slots__ = ()

    def to_dict(self) -> dict[str, object]:
        """Return the document representation, omitting unset values."""
        payload: dict[str, object] = {}
        for item in dataclasses.fields(self):  # type: ignore[arg-type]
            value = getattr(self, item.name)
            if value is None:
                continue
            payload[_camel(item.name)] = _encode(value)
        return payload

    @classmethod
    def from_dict(cls: type[_T], data: Mapping[str, object], *, label: str = "") -> _T:
        """Build an instance from a document mapping."""
        hints = _hints(cls)
        kwargs: dict[str, object] = {}
        for item in dataclasses.fields(cls):  # type: ignore[arg-type]
            key = _camel(item.name)
            path = f"{label}.{key}" if label else key
            if key not in data or data[key] is None:
                required = (
                    item.default is dataclasses.MISSING
                    and item.default_factory is dataclasses.MISSING
                )
                if required:
                    raise RecordFormatError(f"Missing required field '{path}'.")
                continue
            kwargs[item.name] = _decode(hints[item.name], data[key], path)
        return cls(**kwargs)


@dataclass(slots=True)
class InstanceMetadata(_Document):
    """Identity and free-form annotations of an instance."""

    name: str
    labels: dict[str, str] = field(default_factory=dict)
    annotations: dict[str, str] = field(default_factory=dict)


@dataclass(slots=True)
class NetworkSpec(_Document):
    """Listening configuration."""

    port: int
    bind_address: str = "127.0.0.1"
    max_connections: int = 100


@dataclass(slots=True)
class StorageSpec(_Document):
    """On-disk locations owned by the instance."""

    data_directory: Path
    log_directory: Path
    archive_directory: Path | None = None
    wal_directory: Path | None = None


@dataclass(slots=True)
class DatabaseSpec(_Document):
    """The application database provisioned at create time."""

    name: str
    owner: str
    password: str | None = None
    encoding: str = "UTF8"
    locale: str = "en_US.UTF-8"
    timezone: str = "UTC"


@dataclass(slots=True)
class SSLSpec(_Document):
    """Server TLS toggle and material."""

    enabled: bool = False
    certificate_path: str | None = None
    key_path: str | None = None
    ciphers: str | None = None


@dataclass(slots=True)
class AuthenticationSpec(_Document):
    """Host-based access rules for network clients."""

    method: str = "md5"
    allowed_hosts: list[str] = field(default_factory=lambda: ["127.0.0.1/32", "::1/128"])


@dataclass(slots=True)
class AuditSpec(_Document):
    """Connection/statement logging knobs."""

    enabled: bool = False
    log_level: str | None = None
    log_connections: bool | None = None
    log_disconnections: bool | None = None
    log_statements: list[str] | None = None


@dataclass(slots=True)
class SecuritySpec(_Document):
    """Security-related settings consumed by config generation."""

    ssl: SSLSpec = field(default_factory=SSLSpec)
    authentication: AuthenticationSpec = field(default_factory=AuthenticationSpec)
    audit: AuditSpec = field(default_factory=AuditSpec)


@dataclass(slots=True)
class PerformanceSpec(_Document):
    """Optional server tuning knobs written verbatim into the config."""

    shared_buffers: str | None = None
    effective_cache_size: str | None = None
    work_mem: str | None = None
    maintenance_work_mem: str | None = None
    wal_buffers: str | None = None
    checkpoint_completion_target: float | None = None
    random_page_cost: float | None = None


@dataclass(slots=True)
class BackupSpec(_Document):
    """Backup preferences (recorded only; backups are not orchestrated)."""

    enabled: bool = False
    schedule: str | None = None
    retention: str | None = None
    compression: bool | None = None
    format: str | None = None
    destination: str | None = None


@dataclass(slots=True)
class ServiceSpec(_Document):
    """OS service supervision settings; ``enabled`` selects service mode."""

    enabled: bool = True
    auto_start: bool = False
    restart_policy: str = "on-failure"
    restart_sec: int = 5
    user_mode: bool = False


@dataclass(slots=True)
class InstanceSpec(_Document):
    """Declarative user intent for one instance."""

    version: str
    network: NetworkSpec
    storage: StorageSpec
    database: DatabaseSpec
    security: SecuritySpec = field(default_factory=SecuritySpec)
    performance: PerformanceSpec = field(default_factory=PerformanceSpec)
    backup: BackupSpec = field(default_factory=BackupSpec)
    service: ServiceSpec | None = None


@dataclass(slots=True)
class ServiceStatus(_Document):
    """Mirror of the service manager's view of the instance unit."""

    enabled: bool = False
    active: bool = False
    status: str = "unknown"


@dataclass(slots=True)
class InstanceStatus(_Document):
    """Observed state; written by pgforge, never by the user."""

    state: InstanceState = InstanceState.STOPPED
    pid: int | None = None
    start_time: str | None = None
    last_restart: str | None = None
    version: str | None = None
    detail: str | None = None
    service: ServiceStatus | None = None


@dataclass(slots=True)
class InstanceRecord(_Document):
    """A persisted spec plus its last known status."""

    metadata: InstanceMetadata
    spec: InstanceSpec
    status: InstanceStatus = field(default_factory=InstanceStatus)
    api_version: str = API_VERSION
    kind: str = RECORD_KIND

    @property
    def name(self) -> str:
        """Return the instance name (the record key)."""
        return self.metadata.name

    @property
    def socket_directory(self) -> Path:
        """Return the unix socket directory inside the data directory."""
        return self.spec.storage.data_directory / SOCKET_DIRNAME

    @property
    def service_mode(self) -> bool:
        """Return ``True`` when the instance is supervised by the service manager."""
        return self.spec.service is not None and self.spec.service.enabled

    @property
    def is_running(self) -> bool:
        """Return ``True`` when the persisted state is ``running``."""
        return self.status.state is InstanceState.RUNNING


@dataclass(frozen=True, slots=True)
class UnitDescriptor:
    """Everything needed to render and address an instance's service unit."""

    unit_name: str
    binary: Path
    data_directory: Path
    log_directory: Path
    socket_directory: Path
    port: int
    restart_policy: str
    restart_sec: int
    user_mode: bool
    archive_directory: Path | None = None

    @property
    def write_paths(self) -> tuple[Path, ...]:
        """Return the only paths the unit may write to (WAL archive included)."""
        paths = (self.data_directory, self.log_directory)
        if self.archive_directory is not None:
            paths += (self.archive_directory,)
        return paths


@dataclass(frozen=True, slots=True)
class DirectSupervision:
    """pgforge spawns the server itself and tracks it by pid."""

    kind: ClassVar[str] = "direct"


@dataclass(frozen=True, slots=True)
class ServiceSupervision:
    """The OS service manager owns the server process."""

    unit: UnitDescriptor
    kind: ClassVar[str] = "service"


Supervision = DirectSupervision | ServiceSupervision


__all__ = [
    "API_VERSION",
    "AuditSpec",
    "AuthenticationSpec",
    "BackupSpec",
    "DatabaseSpec",
    "DirectSupervision",
    "InstanceMetadata",
    "InstanceRecord",
    "InstanceSpec",
    "InstanceState",
    "InstanceStatus",
    "NetworkSpec",
    "PerformanceSpec",
    "RECORD_KIND",
    "RecordFormatError",
    "SOCKET_DIRNAME",
    "SSLSpec",
    "SecuritySpec",
    "ServiceSpec",
    "ServiceStatus",
    "ServiceSupervision",
    "StorageSpec",
    "Supervision",
    "UnitDescriptor",
]
