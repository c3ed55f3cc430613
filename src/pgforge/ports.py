"""Port allocation helpers for pgforge.

Port claims are derived from the stored instance records rather than kept in a
separate file, so there is no second source of truth to drift. Callers that
mutate claims (``create``) hold the global lock while checking and saving.
"""
from __future__ import annotations

import socket
from dataclasses import dataclass

from .errors import ConflictError
from .state import StateRegistry

MAX_PORT = 65535


class PortsRegistryError(RuntimeError):
    """Raised when port allocation cannot proceed."""


@dataclass(frozen=True, slots=True)
class PortClaim:
    """A port held by a stored instance."""

    name: str
    port: int


@dataclass(slots=True)
class PortsRegistry:
    """Answer port ownership questions from the instance records."""

    registry: StateRegistry
    base_port: int = 5432
    probe_listening: bool = True

    def __post_init__(self) -> None:
        """Validate initialiser parameters."""
        if not 1 <= self.base_port <= MAX_PORT:
            raise PortsRegistryError("Base port must be between 1 and 65535.")

    # ------------------------------------------------------------------
    def list_entries(self) -> list[PortClaim]:
        """Return the current port claims sorted by port."""
        claims = [
            PortClaim(name=record.name, port=record.spec.network.port)
            for record in self.registry.load_all()
        ]
        claims.sort(key=lambda claim: (claim.port, claim.name))
        return claims

    def owner_of(self, port: int, *, exclude: str | None = None) -> str | None:
        """Return the instance claiming *port*, ignoring *exclude*."""
        excluded = _normalize_name(exclude) if exclude else None
        for claim in self.list_entries():
            if claim.port == port and claim.name != excluded:
                return claim.name
        return None

    def ensure_available(self, name: str, port: int) -> None:
        """Raise :class:`ConflictError` unless *port* is free for *name*."""
        normalized = _normalize_name(name)
        owner = self.owner_of(port, exclude=normalized)
        if owner is not None:
            raise ConflictError(
                f"Port {port} is already used by instance '{owner}'",
                instance=normalized,
                hint="Choose another port with --port or remove the other instance.",
            )
        if self.probe_listening and is_port_listening(port):
            raise ConflictError(
                f"Port {port} already has a listening process",
                instance=normalized,
                hint="Stop the process bound to the port or choose another port with --port.",
            )

    def next_available(self, start: int | None = None) -> int:
        """Return the first unclaimed port at or above *start* (default: base)."""
        used = {claim.port for claim in self.list_entries()}
        return self._next_available_port(used, self.base_port if start is None else start)

    # Internal helpers -------------------------------------------------
    def _next_available_port(self, used: set[int], start: int) -> int:
        """Walk upward from *start*, wrapping to the base port once."""
        candidate = start
        wrapped = False
        while candidate in used or (self.probe_listening and is_port_listening(candidate)):
            candidate += 1
            if candidate > MAX_PORT:
                if wrapped:
                    raise PortsRegistryError("No available ports found.")
                candidate = self.base_port
                wrapped = True
            if wrapped and candidate >= start:
                raise PortsRegistryError("No available ports found.")
        return candidate


def is_port_listening(port: int, host: str = "127.0.0.1") -> bool:
    """Return ``True`` when something accepts TCP connections on *port*."""
    with socket.socket(socket.AF_INET, socket.SOCK_STREAM) as probe:
        probe.settimeout(0.2)
        return probe.connect_ex((host, port)) == 0


def _normalize_name(name: str) -> str:
    """Return a normalised instance name."""
    normalized = name.strip()
    if not normalized:
        raise PortsRegistryError("Instance name must be a non-empty string.")
    return normalized


__all__ = ["PortClaim", "PortsRegistry", "PortsRegistryError", "is_port_listening"]
