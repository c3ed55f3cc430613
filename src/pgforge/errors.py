"""Typed failures raised by pgforge lifecycle operations.

Lower layers (binary locator, bootstrap sequencer, process supervisor, record
store) raise these directly. The orchestrator annotates them with the instance
name and operation and re-raises them unchanged in kind; the CLI maps each
class onto an :class:`~pgforge.exit_codes.ExitCode`.
"""
from __future__ import annotations

from collections.abc import Sequence

from .exit_codes import ExitCode


class PgForgeError(RuntimeError):
    """Base class for every failure surfaced to pgforge callers."""

    exit_code: ExitCode = ExitCode.PROVIDER

    def __init__(
        self,
        message: str,
        *,
        instance: str | None = None,
        step: str | None = None,
        detail: str | None = None,
        hint: str | None = None,
    ) -> None:
        """Initialise the error with optional diagnostic context."""
        super().__init__(message)
        self.message = message
        self.instance = instance
        self.step = step
        self.detail = detail
        self.hint = hint

    def annotate(self, *, instance: str | None = None, step: str | None = None) -> PgForgeError:
        """Fill in missing instance/step context and return ``self``."""
        if self.instance is None and instance is not None:
            self.instance = instance
        if self.step is None and step is not None:
            self.step = step
        return self

    def to_dict(self) -> dict[str, object]:
        """Return a serialisable representation used in structured logs."""
        return {
            "error": type(self).__name__,
            "message": self.message,
            "instance": self.instance,
            "step": self.step,
            "detail": self.detail,
            "hint": self.hint,
        }

    def describe(self) -> str:
        """Return a multi-line, human-readable description of the failure."""
        prefix = f"[{self.instance}] " if self.instance else ""
        lines = [f"{prefix}{self.message}"]
        if self.step:
            lines.append(f"  step: {self.step}")
        if self.detail:
            detail_lines = self.detail.strip().splitlines()
            lines.append("  detail: " + (detail_lines[0] if detail_lines else ""))
            lines.extend(f"    {line}" for line in detail_lines[1:])
        if self.hint:
            lines.append(f"  hint: {self.hint}")
        return "\n".join(lines)

    def __str__(self) -> str:
        """Return the message plus the most useful context."""
        text = self.message
        if self.detail:
            text = f"{text}: {self.detail.strip()}"
        return text


class InstanceNotFoundError(PgForgeError):
    """The requested instance has no record."""

    exit_code = ExitCode.VALIDATION


class ConflictError(PgForgeError):
    """Duplicate name, claimed port, or instance already in the target state."""

    exit_code = ExitCode.VALIDATION


class InvalidSpecError(PgForgeError):
    """The requested instance specification failed validation."""

    exit_code = ExitCode.VALIDATION

    def __init__(self, message: str, issues: Sequence[object] = (), **kwargs: str | None) -> None:
        """Initialise the error with the individual validation issues."""
        super().__init__(message, **kwargs)
        self.issues = list(issues)


class ExternalToolMissingError(PgForgeError):
    """A required PostgreSQL executable could not be located."""

    exit_code = ExitCode.ENVIRONMENT

    def __init__(
        self,
        binary: str,
        version: str,
        searched: Sequence[str] = (),
        **kwargs: str | None,
    ) -> None:
        """Initialise the error with the binary name and probed locations."""
        kwargs.setdefault(
            "hint",
            f"Install PostgreSQL {version} or add its bin directory to "
            "postgresql.search_paths. Run 'pgforge check' for details.",
        )
        super().__init__(
            f"PostgreSQL binary '{binary}' not found for version {version}",
            detail="Tried: " + ", ".join(searched) if searched else None,
            **kwargs,
        )
        self.binary = binary
        self.version = version
        self.searched = list(searched)


class UnsafeStateError(PgForgeError):
    """On-disk state requires a human decision before pgforge continues."""

    exit_code = ExitCode.ENVIRONMENT


class PersistenceError(PgForgeError):
    """Reading or writing an instance record failed."""

    exit_code = ExitCode.ENVIRONMENT


class BootstrapError(PgForgeError):
    """A step of the create-time bootstrap sequence failed."""

    exit_code = ExitCode.PROVIDER


class SupervisionError(PgForgeError):
    """Start/stop did not reach the expected liveness within the bounded wait."""

    exit_code = ExitCode.PROVIDER


__all__ = [
    "BootstrapError",
    "ConflictError",
    "ExternalToolMissingError",
    "InstanceNotFoundError",
    "InvalidSpecError",
    "PersistenceError",
    "PgForgeError",
    "SupervisionError",
    "UnsafeStateError",
]
