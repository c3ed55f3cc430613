"""SQL provisioning of a freshly initialised cluster.

Statements are composed with :mod:`psycopg.sql` so role, database and
password values are always quoted by the driver; nothing is interpolated into
SQL text by hand.
"""
from __future__ import annotations

import secrets
import string
from collections.abc import Sequence
from typing import Any, Protocol

from psycopg import sql

PASSWORD_ALPHABET = string.ascii_letters + string.digits
DEFAULT_PASSWORD_LENGTH = 16


class SupportsExecute(Protocol):
    """The slice of a psycopg connection used for provisioning."""

    def execute(self, query: Any, params: Sequence[Any] | None = None) -> Any:  # pragma: no cover
        """Execute *query*."""
        ...


def generate_password(length: int = DEFAULT_PASSWORD_LENGTH) -> str:
    """Return a random alphanumeric password from a cryptographic source."""
    if length < 1:
        raise ValueError("Password length must be positive.")
    return "".join(secrets.choice(PASSWORD_ALPHABET) for _ in range(length))


class ProvisioningSession:
    """Issue the provisioning statements over an autocommit connection."""

    def __init__(self, connection: SupportsExecute) -> None:
        """Wrap *connection* (must be in autocommit mode for CREATE DATABASE)."""
        self.connection = connection

    def set_password(self, role: str, password: str) -> None:
        """Set *role*'s password."""
        self.connection.execute(
            sql.SQL("ALTER ROLE {} WITH PASSWORD {}").format(
                sql.Identifier(role), sql.Literal(password)
            )
        )

    def create_database(self, name: str, *, encoding: str, locale: str) -> None:
        """Create database *name* with the requested encoding and locale."""
        statement = sql.SQL(
            "CREATE DATABASE {} WITH ENCODING {} LC_COLLATE {} LC_CTYPE {} TEMPLATE template0"
        )
        self.connection.execute(
            statement.format(
                sql.Identifier(name),
                sql.Literal(encoding),
                sql.Literal(locale),
                sql.Literal(locale),
            )
        )

    def create_role(self, name: str, password: str) -> None:
        """Create login role *name* with *password*."""
        self.connection.execute(
            sql.SQL("CREATE ROLE {} WITH LOGIN PASSWORD {}").format(
                sql.Identifier(name), sql.Literal(password)
            )
        )

    def grant_database(self, database: str, role: str) -> None:
        """Grant every database privilege on *database* to *role*."""
        self.connection.execute(
            sql.SQL("GRANT ALL PRIVILEGES ON DATABASE {} TO {}").format(
                sql.Identifier(database), sql.Identifier(role)
            )
        )

    def transfer_database_ownership(self, database: str, role: str) -> None:
        """Make *role* the owner of *database*."""
        self.connection.execute(
            sql.SQL("ALTER DATABASE {} OWNER TO {}").format(
                sql.Identifier(database), sql.Identifier(role)
            )
        )

    def grant_schema_create(self, role: str, schema: str = "public") -> None:
        """Allow *role* to create objects in *schema* (run on the target database)."""
        self.connection.execute(
            sql.SQL("GRANT CREATE, USAGE ON SCHEMA {} TO {}").format(
                sql.Identifier(schema), sql.Identifier(role)
            )
        )


__all__ = ["PASSWORD_ALPHABET", "ProvisioningSession", "generate_password"]
