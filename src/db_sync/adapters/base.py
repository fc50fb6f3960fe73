"""Database client protocol and connection handles.

Defines the ``DatabaseClient`` Protocol that all adapters must implement and
``ConnectionHandle``, the explicit handle every engine operation receives.
All client methods are ``async def`` -- the library is async-first.

Usage:
    from db_sync.adapters.base import ConnectionHandle, DatabaseClient
    from db_sync.schema.models import Dialect

    handle = ConnectionHandle(name="prod", dialect=Dialect.POSTGRES, client=adapter)
    rows = await handle.client.fetch('SELECT * FROM "public"."users"')
"""

from dataclasses import dataclass
from typing import Any, Protocol

from db_sync.schema.models import Dialect, SchemaSnapshot


class DatabaseClient(Protocol):
    """Database client interface that all adapters must implement.

    Statements use named bind parameters (``:name``).  Failures are raised as
    ``ConnectivityError``, ``ConstraintViolation``, or ``SqlSyntaxError`` from
    ``db_sync.errors`` so the engine can classify them.
    """

    async def fetch(self, sql: str, params: dict[str, Any] | None = None) -> list[dict]:
        """Run a query and return its rows.

        Args:
            sql: SQL query text with named binds.
            params: Optional dict of bind values.

        Returns:
            List of dicts, one per row.  Empty list if no rows.

        Example:
            rows = await client.fetch(
                'SELECT * FROM "users" WHERE "id" = :w0', {"w0": 1}
            )
        """
        ...

    async def execute(self, sql: str, params: dict[str, Any] | None = None) -> int:
        """Execute a statement (DDL or DML) in its own transaction.

        Args:
            sql: SQL statement text with named binds.
            params: Optional dict of bind values.

        Returns:
            Number of affected rows (``-1`` or ``0`` for DDL, driver dependent).

        Example:
            await client.execute('ALTER TABLE "users" ADD COLUMN "email" text')
        """
        ...

    async def close(self) -> None:
        """Close database connection and clean up resources."""
        ...


class Introspector(Protocol):
    """Schema introspection capability (see ``db_sync.schema.introspector``)."""

    async def introspect(self, handle: "ConnectionHandle", schema: str | None = None) -> SchemaSnapshot:
        ...


_DEFAULT_SCHEMAS = {
    Dialect.POSTGRES: "public",
    Dialect.SQLITE: "main",
}


@dataclass(frozen=True)
class ConnectionHandle:
    """Named, dialect-tagged database client.

    Handles are created by the caller (see ``db_sync.factory``) and passed
    explicitly into every operation.  The engine never caches or closes them.

    Attributes:
        name: Connection identifier used in logs and history records.
        dialect: Dialect of the database behind ``client``.
        client: Object implementing ``DatabaseClient``.
        default_schema: Schema used when an operation gets none.  For MySQL
            and MariaDB this is the database name.
    """

    name: str
    dialect: Dialect
    client: DatabaseClient
    default_schema: str | None = None

    def resolve_schema(self, schema: str | None = None) -> str:
        """Pick the explicit schema, the handle default, or the dialect default.

        Raises:
            ValueError: If no schema can be determined (MySQL without a database).
        """
        resolved = schema or self.default_schema or _DEFAULT_SCHEMAS.get(self.dialect)
        if not resolved:
            raise ValueError(f"No schema given for connection '{self.name}' ({self.dialect.value})")
        return resolved
