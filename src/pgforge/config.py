"""Layered configuration for pgforge.

Sources are applied in order, each overriding the one before:

1. Built-in defaults (the same document ``pgforge init`` writes).
2. The YAML config file, ``~/.pgforge/config.yaml`` unless
   ``PGFORGE_CONFIG_FILE`` or ``--config`` names another.
3. ``PGFORGE_*`` environment variables.  Double underscores descend into
   sections and values are read as YAML scalars, so
   ``PGFORGE_PORTS__PROBE_LISTENING=false`` yields a boolean.
4. Overrides passed in by the caller (CLI flags).

The merged document is then read section by section into frozen dataclasses;
unknown keys and badly typed values raise :class:`ConfigError` naming the
dotted key at fault.
"""
from __future__ import annotations

import copy
import os
from collections.abc import Collection, Mapping, Sequence
from dataclasses import dataclass, field, fields
from pathlib import Path

import yaml

ENV_PREFIX = "PGFORGE_"
CONFIG_ENV_VAR = f"{ENV_PREFIX}CONFIG_FILE"
DEFAULT_CONFIG_FILE = Path("~/.pgforge/config.yaml")

DEFAULT_SEARCH_PATHS: tuple[str, ...] = (
    "/usr/lib/postgresql/{version}/bin",
    "/usr/pgsql-{version}/bin",
    "/opt/postgresql/{version}/bin",
    "/usr/lib/postgresql/{major}/bin",
    "/usr/pgsql-{major}/bin",
    "/opt/postgresql/{major}/bin",
    "/usr/bin",
    "/usr/local/bin",
    "/usr/local/pgsql/bin",
    "/opt/postgresql/bin",
)
PACKAGE_MANAGERS = frozenset({"apt", "yum", "dnf", "brew", "pacman", "zypper"})

DEFAULT_TEMPLATES: dict[str, dict[str, object]] = {
    "development": {
        "performance": {"sharedBuffers": "64MB", "workMem": "2MB"},
        "security": {"ssl": {"enabled": False}, "audit": {"enabled": False}},
        "backup": {"enabled": False},
    },
    "production": {
        "performance": {
            "sharedBuffers": "256MB",
            "workMem": "8MB",
            "maintenanceWorkMem": "128MB",
        },
        "security": {"ssl": {"enabled": True}, "audit": {"enabled": True}},
        "backup": {"enabled": True, "schedule": "0 2 * * *", "retention": "7d"},
    },
    "testing": {
        "network": {"port": 5433, "bindAddress": "127.0.0.1", "maxConnections": 50},
        "backup": {"enabled": False},
    },
}

# Top-level scalars; the *_dir keys without an entry here derive from state_dir.
_ROOT_DEFAULTS: dict[str, object] = {
    "state_dir": "~/.pgforge",
    "data_root": "/var/lib/postgresql/pgforge",
    "log_root": "/var/log/postgresql/pgforge",
    "backup_root": "/var/backups/postgresql/pgforge",
    "lock_timeout": 30.0,
}


class ConfigError(RuntimeError):
    """The configuration file, environment or overrides are invalid."""


def _plain(value: object) -> object:
    """Convert config values into YAML/JSON friendly builtins."""
    if isinstance(value, _Section):
        return value.to_dict()
    if isinstance(value, Path):
        return str(value)
    if isinstance(value, Mapping):
        return {key: _plain(item) for key, item in value.items()}
    if isinstance(value, (list, tuple)):
        return [_plain(item) for item in value]
    return value


class _Section:
    """Mixin giving config dataclasses a field-by-field ``to_dict``."""

    def to_dict(self) -> dict[str, object]:
        values = fields(self)  # type: ignore[arg-type]
        return {item.name: _plain(getattr(self, item.name)) for item in values}


# ---------------------------------------------------------------------------
# Reading typed values


class _Reader:
    """Typed reads from one mapping, remembering which keys were consumed."""

    def __init__(self, raw: object, label: str = "") -> None:
        if raw is None:
            raw = {}
        if not isinstance(raw, Mapping):
            where = label or "the configuration"
            raise ConfigError(f"Expected {where} to be a mapping. Got {type(raw).__name__}.")
        self.label = label
        self.values = dict(raw)
        self.consumed: set[str] = set()

    def name(self, key: str) -> str:
        return f"{self.label}.{key}" if self.label else key

    def get(self, key: str) -> object | None:
        self.consumed.add(key)
        return self.values.get(key)

    def child(self, key: str) -> _Reader:
        return _Reader(self.get(key), self.name(key))

    def finish(self) -> None:
        unknown = sorted(str(key) for key in self.values if key not in self.consumed)
        if unknown:
            scope = f"{self.label} " if self.label else ""
            raise ConfigError(f"Unknown {scope}configuration keys: {', '.join(unknown)}.")

    # ------------------------------------------------------------------
    def text(self, key: str, default: str) -> str:
        value = self.get(key)
        if value is None:
            return default
        if isinstance(value, bool) or not isinstance(value, (str, int, float)):
            raise ConfigError(f"{self.name(key)} must be a string. Got {value!r}.")
        return str(value)

    def choice(self, key: str, default: str, allowed: Collection[str]) -> str:
        value = self.text(key, default)
        if value not in allowed:
            options = ", ".join(sorted(allowed))
            raise ConfigError(f"{self.name(key)}: '{value}' is not supported. Allowed: {options}.")
        return value

    def flag(self, key: str, default: bool) -> bool:
        value = self.get(key)
        if value is None:
            return default
        if not isinstance(value, bool):
            raise ConfigError(f"{self.name(key)} must be true or false. Got {value!r}.")
        return value

    def integer(self, key: str, default: int, *, low: int, high: int | None = None) -> int:
        value = self.get(key)
        if value is None:
            number = default
        elif isinstance(value, int) and not isinstance(value, bool):
            number = value
        elif isinstance(value, str) and value.strip().isdigit():
            number = int(value)
        else:
            raise ConfigError(f"{self.name(key)} must be an integer. Got {value!r}.")
        if number < low or (high is not None and number > high):
            bounds = f"between {low} and {high}" if high is not None else f"at least {low}"
            raise ConfigError(f"{self.name(key)} must be {bounds}. Got {number}.")
        return number

    def number(self, key: str, default: float, *, positive: bool) -> float:
        """Read a float; ``positive`` excludes zero, otherwise only negatives fail."""
        value = self.get(key)
        if value is None:
            return float(default)
        if isinstance(value, bool) or not isinstance(value, (int, float, str)):
            raise ConfigError(f"{self.name(key)} must be a number. Got {value!r}.")
        try:
            number = float(value)
        except ValueError as exc:
            raise ConfigError(f"{self.name(key)} must be a number. Got {value!r}.") from exc
        if number < 0 or (positive and number == 0):
            requirement = "greater than zero" if positive else "zero or more"
            raise ConfigError(f"{self.name(key)} must be {requirement}. Got {number}.")
        return number

    def strings(self, key: str, default: Sequence[str]) -> tuple[str, ...]:
        value = self.get(key)
        if value is None:
            return tuple(default)
        if isinstance(value, (str, bytes)) or not isinstance(value, Sequence):
            raise ConfigError(f"{self.name(key)} must be a list. Got {type(value).__name__}.")
        return tuple(str(entry) for entry in value)

    def path(self, key: str) -> Path | None:
        value = self.get(key)
        if value is None or value == "":
            return None
        if not isinstance(value, (str, os.PathLike)):
            raise ConfigError(f"{self.name(key)} must be a filesystem path. Got {value!r}.")
        return Path(value).expanduser()

    def required_path(self, key: str) -> Path:
        value = self.path(key)
        if value is None:
            raise ConfigError(f"{self.name(key)} must be set.")
        return value


# ---------------------------------------------------------------------------
# Sections


@dataclass(frozen=True)
class PortsConfig(_Section):
    """Where automatic port allocation starts and whether to probe for listeners."""

    base: int = 5432
    probe_listening: bool = True

    @classmethod
    def read(cls, reader: _Reader) -> PortsConfig:
        defaults = cls()
        config = cls(
            base=reader.integer("base", defaults.base, low=1, high=65535),
            probe_listening=reader.flag("probe_listening", defaults.probe_listening),
        )
        reader.finish()
        return config


@dataclass(frozen=True)
class PostgresConfig(_Section):
    """Where PostgreSQL lives and which versions pgforge expects."""

    default_version: str = "15.3"
    min_version: str = "15.3"
    versions: tuple[str, ...] = ("15.3", "14.8", "13.11")
    package_manager: str = "apt"
    superuser: str = "postgres"
    search_paths: tuple[str, ...] = DEFAULT_SEARCH_PATHS

    @classmethod
    def read(cls, reader: _Reader) -> PostgresConfig:
        defaults = cls()
        config = cls(
            default_version=reader.text("default_version", defaults.default_version),
            min_version=reader.text("min_version", defaults.min_version),
            versions=reader.strings("versions", defaults.versions),
            package_manager=reader.choice(
                "package_manager", defaults.package_manager, PACKAGE_MANAGERS
            ),
            superuser=reader.text("superuser", defaults.superuser),
            search_paths=reader.strings("search_paths", defaults.search_paths),
        )
        reader.finish()
        return config


@dataclass(frozen=True)
class SupervisionConfig(_Section):
    """Bounded waits used when starting, stopping and bootstrapping servers."""

    settle_seconds: float = 2.0
    poll_interval: float = 1.0
    stop_attempts: int = 30
    readiness_attempts: int = 30
    restart_cooldown: float = 2.0

    @classmethod
    def read(cls, reader: _Reader) -> SupervisionConfig:
        defaults = cls()
        config = cls(
            settle_seconds=reader.number("settle_seconds", defaults.settle_seconds, positive=False),
            poll_interval=reader.number("poll_interval", defaults.poll_interval, positive=True),
            stop_attempts=reader.integer("stop_attempts", defaults.stop_attempts, low=1),
            readiness_attempts=reader.integer(
                "readiness_attempts", defaults.readiness_attempts, low=1
            ),
            restart_cooldown=reader.number(
                "restart_cooldown", defaults.restart_cooldown, positive=False
            ),
        )
        reader.finish()
        return config


@dataclass(frozen=True)
class SystemdConfig(_Section):
    """Unit location, ``systemctl`` binary and the account services run as."""

    unit_dir: Path | None = None
    systemctl_bin: str = "systemctl"
    user_mode: bool = False
    service_user: str = "postgres"

    @classmethod
    def read(cls, reader: _Reader) -> SystemdConfig:
        defaults = cls()
        config = cls(
            unit_dir=reader.path("unit_dir"),
            systemctl_bin=reader.text("systemctl_bin", defaults.systemctl_bin),
            user_mode=reader.flag("user_mode", defaults.user_mode),
            service_user=reader.text("service_user", defaults.service_user),
        )
        reader.finish()
        return config


_SECTIONS: dict[str, type[PortsConfig | PostgresConfig | SupervisionConfig | SystemdConfig]] = {
    "ports": PortsConfig,
    "postgresql": PostgresConfig,
    "supervision": SupervisionConfig,
    "systemd": SystemdConfig,
}


@dataclass(frozen=True)
class AppConfig(_Section):
    """Resolved configuration values for pgforge."""

    config_file: Path
    state_dir: Path
    instances_dir: Path
    runtime_dir: Path
    logs_dir: Path
    templates_dir: Path
    data_root: Path
    log_root: Path
    backup_root: Path
    lock_timeout: float
    ports: PortsConfig
    postgresql: PostgresConfig
    supervision: SupervisionConfig
    systemd: SystemdConfig
    templates: Mapping[str, Mapping[str, object]] = field(default_factory=dict)

    @classmethod
    def read(cls, document: Mapping[str, object], config_file: Path) -> AppConfig:
        """Build the config from a fully merged *document*."""
        reader = _Reader(document)
        state_dir = reader.required_path("state_dir")

        templates_reader = reader.child("templates")
        templates = {
            name: dict(templates_reader.child(name).values) for name in templates_reader.values
        }

        config = cls(
            config_file=config_file,
            state_dir=state_dir,
            instances_dir=reader.path("instances_dir") or state_dir / "instances",
            runtime_dir=reader.path("runtime_dir") or state_dir / "run",
            logs_dir=reader.path("logs_dir") or state_dir / "logs",
            templates_dir=reader.path("templates_dir") or state_dir / "templates",
            data_root=reader.required_path("data_root"),
            log_root=reader.required_path("log_root"),
            backup_root=reader.required_path("backup_root"),
            lock_timeout=reader.number("lock_timeout", 30.0, positive=True),
            ports=PortsConfig.read(reader.child("ports")),
            postgresql=PostgresConfig.read(reader.child("postgresql")),
            supervision=SupervisionConfig.read(reader.child("supervision")),
            systemd=SystemdConfig.read(reader.child("systemd")),
            templates=templates,
        )
        reader.finish()
        return config


# ---------------------------------------------------------------------------
# Loading


def default_config_document() -> dict[str, object]:
    """Return the defaults in the shape written by ``pgforge init``."""
    document: dict[str, object] = dict(_ROOT_DEFAULTS)
    for name, section in _SECTIONS.items():
        document[name] = section().to_dict()
    document["templates"] = copy.deepcopy(DEFAULT_TEMPLATES)
    return document


def load_config(
    config_file: str | os.PathLike[str] | None = None,
    *,
    env: Mapping[str, str] | None = None,
    overrides: Mapping[str, object] | None = None,
) -> AppConfig:
    """Merge defaults, file, environment and *overrides* into an :class:`AppConfig`."""
    environ = os.environ if env is None else env
    if config_file:
        path = Path(config_file).expanduser()
    elif environ.get(CONFIG_ENV_VAR):
        path = Path(environ[CONFIG_ENV_VAR]).expanduser()
    else:
        path = DEFAULT_CONFIG_FILE.expanduser()

    document = default_config_document()
    for layer in (_read_file(path), _environment_layer(environ), overrides or {}):
        _merge(document, layer)
    return AppConfig.read(document, path)


def write_config_file(path: Path, payload: Mapping[str, object]) -> None:
    """Write *payload* as YAML to *path*, creating parent directories."""
    path.parent.mkdir(parents=True, exist_ok=True)
    path.write_text(yaml.safe_dump(_plain(payload), sort_keys=False), encoding="utf-8")


def _read_file(path: Path) -> Mapping[str, object]:
    if not path.exists():
        return {}
    try:
        data = yaml.safe_load(path.read_text(encoding="utf-8"))
    except yaml.YAMLError as exc:
        raise ConfigError(f"Failed to parse config file {path}: {exc}") from exc
    except OSError as exc:
        raise ConfigError(f"Cannot read config file {path}: {exc}") from exc
    if data is None:
        return {}
    if not isinstance(data, Mapping):
        raise ConfigError(f"Config file {path} must contain a mapping at the top level.")
    return data


def _environment_layer(environ: Mapping[str, str]) -> dict[str, object]:
    layer: dict[str, object] = {}
    for variable, raw in environ.items():
        if not variable.startswith(ENV_PREFIX) or variable == CONFIG_ENV_VAR:
            continue
        keys = [part.lower() for part in variable[len(ENV_PREFIX) :].split("__") if part]
        if not keys:
            continue
        node = layer
        for key in keys[:-1]:
            child = node.setdefault(key, {})
            if not isinstance(child, dict):
                raise ConfigError(f"{variable} conflicts with another PGFORGE_ variable.")
            node = child
        node[keys[-1]] = _scalar(raw)
    return layer


def _scalar(raw: str) -> object:
    try:
        return yaml.safe_load(raw.strip())
    except yaml.YAMLError:
        return raw.strip()


def _merge(target: dict[str, object], layer: Mapping[str, object]) -> None:
    for key, value in layer.items():
        current = target.get(key)
        if isinstance(current, dict) and isinstance(value, Mapping):
            _merge(current, value)
        else:
            target[key] = copy.deepcopy(value)


__all__ = [
    "AppConfig",
    "ConfigError",
    "DEFAULT_SEARCH_PATHS",
    "PortsConfig",
    "PostgresConfig",
    "SupervisionConfig",
    "SystemdConfig",
    "default_config_document",
    "load_config",
    "write_config_file",
]
