"""Database adapters package.

Provides the ``DatabaseClient`` Protocol, ``ConnectionHandle``, and the
SQLAlchemy-based ``AsyncSqlAdapter`` covering PostgreSQL, MySQL/MariaDB,
and SQLite.

Usage:
    from db_sync.adapters import AsyncSqlAdapter, ConnectionHandle
"""

from db_sync.adapters.async_sql import AsyncSqlAdapter
from db_sync.adapters.base import ConnectionHandle, DatabaseClient, Introspector

__all__ = [
    "AsyncSqlAdapter",
    "ConnectionHandle",
    "DatabaseClient",
    "Introspector",
]
