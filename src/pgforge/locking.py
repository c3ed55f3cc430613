"""Advisory file locks serialising mutations of pgforge state.

A global lock (``pgforge.lock``) guards cross-instance invariants such as port
uniqueness; per-instance locks (``instances/<name>.lock``) serialise lifecycle
operations on one instance. Instance locks live in their own directory so no
instance name can collide with the global lock file. Bundles always take the global lock first and then the
instance locks in sorted order so concurrent invocations cannot deadlock.

Locks are ``fcntl.flock`` locks on files in the runtime directory. The kernel
releases them when the holder exits, so a crashed invocation never leaves a
stale lock behind; the file itself is kept for diagnostics and records the pid
of the last holder.
"""
from __future__ import annotations

import fcntl
import json
import os
import time
from collections.abc import Iterable, Iterator
from contextlib import ExitStack, contextmanager
from dataclasses import dataclass
from datetime import UTC, datetime
from pathlib import Path

GLOBAL_LOCK_NAME = "pgforge"
INSTANCE_LOCK_DIR = "instances"
_POLL_INTERVAL = 0.05


class LockTimeoutError(RuntimeError):
    """Raised when a lock cannot be acquired within the timeout."""

    def __init__(self, path: Path, timeout: float) -> None:
        """Initialise the error with the contended lock path."""
        super().__init__(
            f"Timed out after {timeout:.1f}s waiting for lock {path}. "
            "Another pgforge command may be running."
        )
        self.path = path
        self.timeout = timeout


@dataclass(slots=True)
class LockHandle:
    """A held lock plus how long it took to acquire."""

    path: Path
    wait_ms: int


@dataclass(slots=True)
class LockBundle:
    """A set of held locks acquired together."""

    handles: list[LockHandle]

    @property
    def wait_ms(self) -> int:
        """Return the total time spent waiting for every lock in the bundle."""
        return sum(handle.wait_ms for handle in self.handles)


class LockManager:
    """Acquire global and per-instance advisory locks."""

    def __init__(self, runtime_dir: Path, default_timeout: float = 30.0) -> None:
        """Initialise the manager rooted at *runtime_dir*."""
        self.runtime_dir = Path(runtime_dir)
        self.default_timeout = default_timeout

    def lock_path(self, name: str) -> Path:
        """Return the lock file path of instance *name*."""
        return self.runtime_dir / INSTANCE_LOCK_DIR / f"{name}.lock"

    @property
    def global_lock_path(self) -> Path:
        return self.runtime_dir / f"{GLOBAL_LOCK_NAME}.lock"

    @contextmanager
    def global_lock(self, *, timeout: float | None = None) -> Iterator[LockHandle]:
        """Hold the global lock for the duration of the block."""
        with self._acquire(self.global_lock_path, timeout) as handle:
            yield handle

    @contextmanager
    def instance_lock(self, name: str, *, timeout: float | None = None) -> Iterator[LockHandle]:
        """Hold the lock of instance *name* for the duration of the block."""
        with self._acquire(self.lock_path(name), timeout) as handle:
            yield handle

    @contextmanager
    def mutate_instances(
        self,
        names: Iterable[str],
        *,
        timeout: float | None = None,
    ) -> Iterator[LockBundle]:
        """Hold the global lock followed by every named instance lock."""
        with ExitStack() as stack:
            handles = [stack.enter_context(self.global_lock(timeout=timeout))]
            for name in sorted(set(names)):
                handles.append(stack.enter_context(self.instance_lock(name, timeout=timeout)))
            yield LockBundle(handles)

    # ------------------------------------------------------------------
    @contextmanager
    def _acquire(self, path: Path, timeout: float | None) -> Iterator[LockHandle]:
        limit = self.default_timeout if timeout is None else timeout
        path.parent.mkdir(parents=True, exist_ok=True)
        fd = os.open(path, os.O_RDWR | os.O_CREAT, 0o644)
        started = time.monotonic()
        try:
            while True:
                try:
                    fcntl.flock(fd, fcntl.LOCK_EX | fcntl.LOCK_NB)
                    break
                except BlockingIOError:
                    if time.monotonic() - started >= limit:
                        raise LockTimeoutError(path, limit) from None
                    time.sleep(_POLL_INTERVAL)
            wait_ms = int((time.monotonic() - started) * 1000)
            _write_metadata(fd, path)
            try:
                yield LockHandle(path=path, wait_ms=wait_ms)
            finally:
                fcntl.flock(fd, fcntl.LOCK_UN)
        finally:
            os.close(fd)


def _write_metadata(fd: int, path: Path) -> None:
    payload = json.dumps(
        {"pid": os.getpid(), "path": str(path), "acquired_at": datetime.now(UTC).isoformat()}
    ).encode("utf-8")
    os.ftruncate(fd, 0)
    os.pwrite(fd, payload, 0)


__all__ = [
    "GLOBAL_LOCK_NAME",
    "INSTANCE_LOCK_DIR",
    "LockBundle",
    "LockHandle",
    "LockManager",
    "LockTimeoutError",
]
