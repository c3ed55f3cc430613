"""Structured operation logging for pgforge.

Every CLI command runs inside :meth:`StructuredLogger.operation`, which yields
an :class:`OperationScope`. Commands record steps and exactly one outcome
(``success``, ``warning`` or ``error``); when the scope closes a single JSON
object is appended to ``operations.jsonl`` in the configured log directory.

Logging must never be the reason a command fails: if the directory cannot be
created or the file cannot be written, the logger disables itself and
subsequent operations are no-ops.

Internal diagnostics (stale-state correction, SIGKILL escalation, partial
install cleanup) go through standard :mod:`logging` module loggers; the CLI
routes them to stderr with :func:`configure_logging`.
"""
from __future__ import annotations

import json
import logging
import os
import time
import uuid
from collections.abc import Iterator, Mapping, Sequence
from contextlib import contextmanager
from dataclasses import dataclass, field
from datetime import UTC, datetime
from pathlib import Path

from rich.console import Console
from rich.logging import RichHandler

OPERATIONS_LOG_NAME = "operations.jsonl"

_module_logger = logging.getLogger(__name__)


def configure_logging(*, verbose: bool = False, console: Console | None = None) -> None:
    """Attach a rich handler to the ``pgforge`` logger hierarchy."""
    root = logging.getLogger("pgforge")
    for handler in list(root.handlers):
        if getattr(handler, "_pgforge_handler", False):
            root.removeHandler(handler)
    handler = RichHandler(
        console=console or Console(stderr=True),
        show_time=False,
        show_path=False,
        markup=False,
    )
    handler._pgforge_handler = True  # type: ignore[attr-defined]
    root.addHandler(handler)
    root.setLevel(logging.DEBUG if verbose else logging.WARNING)


def _utcnow() -> str:
    return datetime.now(UTC).isoformat()


def _sanitise(value: object) -> object:
    """Return a JSON-safe copy of *value*."""
    if value is None or isinstance(value, (bool, int, float, str)):
        return value
    if isinstance(value, Path):
        return str(value)
    if isinstance(value, Mapping):
        return {str(key): _sanitise(item) for key, item in value.items()}
    if isinstance(value, (list, tuple)):
        return [_sanitise(item) for item in value]
    return str(value)


@dataclass(slots=True)
class OperationScope:
    """Collects steps and the outcome of a single logged operation."""

    operation_id: str
    command: str
    args: Mapping[str, object]
    target: Mapping[str, object] | None
    started_at: str
    steps: list[dict[str, object]] = field(default_factory=list)
    result: dict[str, object] | None = None
    lock_wait_ms: int | None = None

    def add_step(self, name: str, *, status: str = "success", detail: object = None) -> None:
        """Record an intermediate step."""
        step: dict[str, object] = {"name": name, "status": status, "at": _utcnow()}
        if detail is not None:
            step["detail"] = _sanitise(detail)
        self.steps.append(step)

    def set_lock_wait_ms(self, wait_ms: int) -> None:
        """Record how long the operation waited for its locks."""
        self.lock_wait_ms = int(wait_ms)

    def success(
        self,
        message: str,
        *,
        changed: int = 0,
        context: Mapping[str, object] | None = None,
        backups: Sequence[str] | None = None,
    ) -> None:
        """Mark the operation as successful."""
        self._set_result(
            "success",
            message,
            rc=0,
            changed=changed,
            context=context,
            backups=backups,
        )

    def warning(
        self,
        message: str,
        *,
        warnings: Sequence[str] | None = None,
        errors: Sequence[str] | None = None,
        changed: int = 0,
        backups: Sequence[str] | None = None,
        context: Mapping[str, object] | None = None,
    ) -> None:
        """Mark the operation as completed with warnings."""
        self._set_result(
            "warning",
            message,
            rc=0,
            changed=changed,
            warnings=warnings if warnings is not None else [message],
            errors=errors,
            context=context,
            backups=backups,
        )

    def error(
        self,
        message: str,
        *,
        errors: Sequence[str] | None = None,
        rc: int = 1,
        context: Mapping[str, object] | None = None,
    ) -> None:
        """Mark the operation as failed."""
        self._set_result(
            "error",
            message,
            rc=rc,
            errors=errors if errors is not None else [message],
            context=context,
        )

    # ------------------------------------------------------------------
    def _set_result(
        self,
        status: str,
        message: str,
        *,
        rc: int,
        changed: int = 0,
        warnings: Sequence[str] | None = None,
        errors: Sequence[str] | None = None,
        context: Mapping[str, object] | None = None,
        backups: Sequence[str] | None = None,
    ) -> None:
        result: dict[str, object] = {
            "status": status,
            "message": message,
            "rc": rc,
            "changed": changed,
        }
        if warnings:
            result["warnings"] = [str(item) for item in warnings]
        if errors:
            result["errors"] = [str(item) for item in errors]
        if backups:
            result["backups"] = [str(item) for item in backups]
        if context:
            result["context"] = _sanitise(context)
        self.result = result

    def to_record(self, *, duration_ms: int) -> dict[str, object]:
        """Return the JSON record for this operation."""
        record: dict[str, object] = {
            "id": self.operation_id,
            "command": self.command,
            "started_at": self.started_at,
            "finished_at": _utcnow(),
            "duration_ms": duration_ms,
            "pid": os.getpid(),
            "args": _sanitise(dict(self.args)),
            "steps": self.steps,
            "result": self.result or {"status": "unknown"},
        }
        if self.target is not None:
            record["target"] = _sanitise(dict(self.target))
        if self.lock_wait_ms is not None:
            record["lock_wait_ms"] = self.lock_wait_ms
        return record


class StructuredLogger:
    """Append-only JSON lines logger for CLI operations."""

    def __init__(self, log_dir: Path) -> None:
        """Prepare the log directory, disabling the logger if it is unusable."""
        self._log_dir = Path(log_dir)
        self._operations_log_path = self._log_dir / OPERATIONS_LOG_NAME
        self._enabled = True
        try:
            self._log_dir.mkdir(parents=True, exist_ok=True)
        except OSError as exc:
            _module_logger.warning(
                "Structured logging disabled; cannot create %s: %s", self._log_dir, exc
            )
            self._enabled = False

    @property
    def path(self) -> Path:
        """Return the operations log path."""
        return self._operations_log_path

    @property
    def enabled(self) -> bool:
        return self._enabled

    @contextmanager
    def operation(
        self,
        command: str,
        *,
        args: Mapping[str, object] | None = None,
        target: Mapping[str, object] | None = None,
    ) -> Iterator[OperationScope]:
        """Run a block as one logged operation."""
        scope = OperationScope(
            operation_id=uuid.uuid4().hex,
            command=command,
            args=dict(args or {}),
            target=dict(target) if target is not None else None,
            started_at=_utcnow(),
        )
        started = time.monotonic()
        try:
            yield scope
        except Exception as exc:
            if scope.result is None:
                scope.error(str(exc) or type(exc).__name__, rc=1)
            raise
        finally:
            duration_ms = int((time.monotonic() - started) * 1000)
            self._write(scope.to_record(duration_ms=duration_ms))

    def _write(self, record: Mapping[str, object]) -> None:
        if not self._enabled:
            return
        try:
            with self._operations_log_path.open("a", encoding="utf-8") as handle:
                handle.write(json.dumps(record, sort_keys=False) + "\n")
        except OSError as exc:
            _module_logger.warning(
                "Structured logging disabled; cannot write %s: %s",
                self._operations_log_path,
                exc,
            )
            self._enabled = False


__all__ = ["OperationScope", "StructuredLogger", "configure_logging"]
