"""systemd units for instances running in service mode.

Each instance gets one unit, ``pgforge-<name>.service``, rendered from a
Jinja2 template into the system unit directory or, for per-user managers,
into ``~/.config/systemd/user``.  All ``systemctl`` traffic goes through
:meth:`SystemdProvider._systemctl` so tests can swap in a fake manager.
"""
from __future__ import annotations

import logging
import subprocess
from collections.abc import Mapping
from dataclasses import dataclass, replace
from pathlib import Path

from ..errors import SupervisionError
from ..templates import TemplateEngine

logger = logging.getLogger(__name__)

UNIT_TEMPLATE = "systemd/postgresql.service.j2"
SYSTEM_UNIT_DIR = Path("/etc/systemd/system")
USER_UNIT_DIR = Path("~/.config/systemd/user")
UNIT_PREFIX = "pgforge-"
# A reloading unit keeps serving; both count as a running server.
RUNNING_UNIT_STATES = frozenset({"active", "reloading"})


class SystemdError(SupervisionError):
    """Raised when a unit file cannot be written or ``systemctl`` fails."""


class SystemctlNotFoundError(SystemdError):
    """Raised when the ``systemctl`` executable cannot be run at all."""


@dataclass(frozen=True, slots=True)
class UnitState:
    """Snapshot of one unit as reported by ``is-active`` and ``is-enabled``."""

    active: str
    enabled: bool

    @property
    def running(self) -> bool:
        return self.active in RUNNING_UNIT_STATES


@dataclass(slots=True)
class SystemdProvider:
    """Install, query and drive instance units through ``systemctl``."""

    templates: TemplateEngine
    systemd_dir: Path = SYSTEM_UNIT_DIR
    user_systemd_dir: Path = USER_UNIT_DIR
    systemctl_bin: str = "systemctl"
    user_mode: bool = False
    dry_run: bool = False

    def scoped(self, user_mode: bool) -> SystemdProvider:
        """Return a provider bound to the system or the per-user manager."""
        if user_mode == self.user_mode:
            return self
        return replace(self, user_mode=user_mode)

    # ------------------------------------------------------------------
    def unit_name(self, instance: str) -> str:
        return f"{UNIT_PREFIX}{instance}.service"

    def unit_dir(self) -> Path:
        base = self.user_systemd_dir if self.user_mode else self.systemd_dir
        return base.expanduser()

    def unit_path(self, instance: str) -> Path:
        return self.unit_dir() / self.unit_name(instance)

    # ------------------------------------------------------------------
    def install_unit(self, instance: str, context: Mapping[str, object]) -> bool:
        """Write the unit file for *instance*; return ``True`` when its content changed.

        systemd only rereads unit files on ``daemon-reload``, so a reload is
        issued whenever the file on disk actually changed.
        """
        path = self.unit_path(instance)
        try:
            changed = self.templates.render_to_path(UNIT_TEMPLATE, path, context, mode=0o644)
        except OSError as exc:
            raise SystemdError(
                f"Cannot write unit file {path}",
                instance=instance,
                detail=str(exc),
                hint="Service mode for system units usually needs root; try --user.",
            ) from exc
        if changed:
            logger.info("Wrote unit file %s", path)
            self._daemon_reload()
        return changed

    def remove_unit(self, instance: str) -> bool:
        """Delete the unit file for *instance*; return whether one existed."""
        path = self.unit_path(instance)
        if not path.exists():
            return False
        try:
            path.unlink()
        except OSError as exc:
            raise SystemdError(
                f"Cannot remove unit file {path}", instance=instance, detail=str(exc)
            ) from exc
        logger.info("Removed unit file %s", path)
        self._daemon_reload()
        return True

    def enable(self, instance: str) -> None:
        self._systemctl("enable", self.unit_name(instance))

    def disable(self, instance: str) -> None:
        self._systemctl("disable", self.unit_name(instance))

    def start(self, instance: str) -> None:
        self._systemctl("start", self.unit_name(instance))

    def stop(self, instance: str) -> None:
        self._systemctl("stop", self.unit_name(instance))

    def unit_state(self, instance: str) -> UnitState:
        """Query the manager for the current state of the instance unit.

        Both queries exit non-zero for inactive or disabled units, so their
        exit codes are ignored and only the printed answer is used.
        """
        unit = self.unit_name(instance)
        active = self._systemctl("is-active", unit, check=False).stdout.strip()
        enabled = self._systemctl("is-enabled", unit, check=False).stdout.strip()
        return UnitState(active=active or "unknown", enabled=enabled == "enabled")

    # ------------------------------------------------------------------
    def _daemon_reload(self) -> None:
        try:
            self._systemctl("daemon-reload")
        except SystemctlNotFoundError:
            logger.debug("Skipping daemon-reload; %s is not available", self.systemctl_bin)

    def _systemctl(
        self,
        command: str,
        unit: str | None = None,
        *,
        check: bool = True,
    ) -> subprocess.CompletedProcess[str]:
        args = [self.systemctl_bin]
        if self.user_mode:
            args.append("--user")
        args.append(command)
        if unit is not None:
            args.append(unit)

        if self.dry_run:
            logger.info("Dry run, not executing: %s", " ".join(args))
            return subprocess.CompletedProcess(args, 0, stdout="", stderr="")

        logger.debug("Running %s", " ".join(args))
        try:
            result = subprocess.run(  # noqa: S603
                args, capture_output=True, text=True, check=False
            )
        except OSError as exc:
            raise SystemctlNotFoundError(
                f"Cannot run {self.systemctl_bin}",
                detail=str(exc),
                hint="Service mode requires systemd; use direct supervision instead.",
            ) from exc
        if check and result.returncode != 0:
            output = (result.stderr or result.stdout or "").strip() or "no output"
            raise SystemdError(
                f"systemctl {command} exited with status {result.returncode}",
                detail=output,
            )
        return result


__all__ = [
    "RUNNING_UNIT_STATES",
    "SYSTEM_UNIT_DIR",
    "SystemctlNotFoundError",
    "SystemdError",
    "SystemdProvider",
    "UNIT_PREFIX",
    "UNIT_TEMPLATE",
    "USER_UNIT_DIR",
    "UnitState",
]
