"""Direct process supervision: pgforge spawns and signals the server itself."""
from __future__ import annotations

import logging
import os
import signal
import subprocess
import time
from collections.abc import Callable, Sequence
from dataclasses import dataclass, field
from pathlib import Path

from ..errors import SupervisionError

logger = logging.getLogger(__name__)


@dataclass(slots=True)
class DirectProcessProvider:
    """Spawn detached server processes and track them by pid."""

    settle_seconds: float = 2.0
    poll_interval: float = 1.0
    stop_attempts: int = 30
    sleep: Callable[[float], None] = field(default=time.sleep)

    def spawn(self, args: Sequence[str]) -> int:
        """Start *args* in a new session with stdio detached and return its pid."""
        try:
            process = subprocess.Popen(  # noqa: S603
                list(args),
                stdin=subprocess.DEVNULL,
                stdout=subprocess.DEVNULL,
                stderr=subprocess.DEVNULL,
                start_new_session=True,
            )
        except OSError as exc:
            raise SupervisionError(f"Failed to spawn {args[0]}", detail=str(exc)) from exc
        return process.pid

    def start_server(self, binary: Path, data_directory: Path) -> int:
        """Spawn ``postgres -D <data>`` and confirm it survives the settle delay."""
        pid = self.spawn([str(binary), "-D", str(data_directory)])
        self.sleep(self.settle_seconds)
        if not self.is_alive(pid):
            raise SupervisionError(
                f"Server process {pid} exited during startup",
                hint="Check the server log directory for the startup error.",
            )
        return pid

    def is_alive(self, pid: int) -> bool:
        """Return ``True`` when *pid* exists (reaping it first if it is our zombie child)."""
        try:
            reaped, _status = os.waitpid(pid, os.WNOHANG)
        except ChildProcessError:
            pass
        else:
            if reaped == pid:
                return False
        try:
            os.kill(pid, 0)
        except ProcessLookupError:
            return False
        except PermissionError:
            return True
        return True

    def terminate(self, pid: int) -> bool:
        """Stop *pid*: SIGTERM, bounded wait, then SIGKILL.

        Returns ``True`` when escalation to SIGKILL was required.
        """
        if not self._signal(pid, signal.SIGTERM):
            return False
        if self._wait_for_exit(pid, self.stop_attempts):
            return False

        logger.warning(
            "Process %s ignored SIGTERM after %s checks; sending SIGKILL", pid, self.stop_attempts
        )
        if not self._signal(pid, signal.SIGKILL):
            return True
        if not self._wait_for_exit(pid, max(3, self.stop_attempts // 10)):
            raise SupervisionError(
                f"Process {pid} is still running after SIGKILL",
                hint="Inspect the process manually (it may be stuck in uninterruptible I/O).",
            )
        return True

    # ------------------------------------------------------------------
    def _signal(self, pid: int, signum: signal.Signals) -> bool:
        try:
            os.kill(pid, signum)
        except ProcessLookupError:
            return False
        except PermissionError as exc:
            raise SupervisionError(
                f"Not permitted to signal process {pid}",
                detail=str(exc),
                hint="Run pgforge as the user that owns the server process.",
            ) from exc
        return True

    def _wait_for_exit(self, pid: int, attempts: int) -> bool:
        for _ in range(attempts):
            if not self.is_alive(pid):
                return True
            self.sleep(self.poll_interval)
        return not self.is_alive(pid)


__all__ = ["DirectProcessProvider"]
