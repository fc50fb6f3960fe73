"""Tests for catalog introspection.

SQLite is introspected from a real file; PostgreSQL and MySQL catalogs are
served by a fetch stub that answers each catalog query by shape.
"""

from unittest.mock import AsyncMock

import pytest
import pytest_asyncio

from db_sync.adapters.async_sql import AsyncSqlAdapter
from db_sync.adapters.base import ConnectionHandle
from db_sync.schema.comparator import diff_schemas
from db_sync.schema.introspector import SchemaIntrospector
from db_sync.schema.migration import apply_migration, generate_migration
from db_sync.schema.models import Dialect


def _catalog_client(answers: list[tuple[str, list[dict]]]) -> AsyncMock:
    """Client whose fetch returns the rows of the first matching marker."""

    async def fetch(sql, params=None):
        for marker, rows in answers:
            if marker in sql:
                return [dict(r) for r in rows]
        return []

    client = AsyncMock()
    client.fetch.side_effect = fetch
    return client


# ==================================================================
# SQLite
# ==================================================================


@pytest_asyncio.fixture
async def sqlite_handle(tmp_path):
    adapter = AsyncSqlAdapter(f"sqlite:///{tmp_path / 'catalog.db'}")
    for ddl in [
        "CREATE TABLE authors (id INTEGER PRIMARY KEY, name TEXT NOT NULL, email VARCHAR(120) UNIQUE)",
        "CREATE TABLE books ("
        " id INTEGER PRIMARY KEY,"
        " author_id INTEGER REFERENCES authors(id) ON DELETE CASCADE,"
        " title TEXT DEFAULT 'untitled')",
        "CREATE INDEX ix_books_title ON books (title)",
        "CREATE TABLE schema_migrations (version TEXT)",
    ]:
        await adapter.execute(ddl)
    yield ConnectionHandle(name="local", dialect=Dialect.SQLITE, client=adapter)
    await adapter.close()


class TestSqliteIntrospection:
    """Snapshot of a real SQLite database."""

    @pytest.mark.asyncio
    async def test_tables_in_name_order(self, sqlite_handle) -> None:
        """User tables are listed by name and bookkeeping tables are skipped."""
        snapshot = await SchemaIntrospector().introspect(sqlite_handle)
        assert snapshot.schema_name == "main"
        assert snapshot.dialect == Dialect.SQLITE
        assert [t.name for t in snapshot.tables] == ["authors", "books"]

    @pytest.mark.asyncio
    async def test_columns(self, sqlite_handle) -> None:
        """Types, nullability, defaults, and key flags are read."""
        snapshot = await SchemaIntrospector().introspect(sqlite_handle)
        authors = snapshot.table("authors")
        assert authors.primary_key == ["id"]

        name = authors.column("name")
        assert name.data_type == "text"
        assert not name.nullable

        email = authors.column("email")
        assert email.data_type == "varchar"
        assert email.native_type == "VARCHAR(120)"
        assert email.nullable
        assert email.is_unique

        title = snapshot.table("books").column("title")
        assert title.default == "'untitled'"
        assert not authors.column("id").nullable

    @pytest.mark.asyncio
    async def test_indexes(self, sqlite_handle) -> None:
        snapshot = await SchemaIntrospector().introspect(sqlite_handle)
        books = snapshot.table("books")
        assert [(i.name, i.columns, i.is_unique) for i in books.indexes] == [("ix_books_title", ["title"], False)]

    @pytest.mark.asyncio
    async def test_unique_constraint_index_renamed(self, sqlite_handle) -> None:
        """Internal autoindex names are replaced by a portable constraint name."""
        snapshot = await SchemaIntrospector().introspect(sqlite_handle)
        (index,) = snapshot.table("authors").indexes
        assert (index.name, index.columns, index.is_unique) == ("authors_email_key", ["email"], True)

    @pytest.mark.asyncio
    async def test_foreign_keys(self, sqlite_handle) -> None:
        """Unnamed SQLite foreign keys get a generated name."""
        snapshot = await SchemaIntrospector().introspect(sqlite_handle)
        (fk,) = snapshot.table("books").foreign_keys
        assert fk.name == "fk_books_0"
        assert fk.columns == ["author_id"]
        assert fk.referenced_table == "authors"
        assert fk.referenced_columns == ["id"]
        assert fk.on_delete == "CASCADE"
        assert fk.on_update == "NO ACTION"

    @pytest.mark.asyncio
    async def test_foreign_key_without_column_list(self, tmp_path) -> None:
        """A bare ``REFERENCES parent`` resolves to the parent's primary key."""
        adapter = AsyncSqlAdapter(f"sqlite:///{tmp_path / 'implicit.db'}")
        try:
            await adapter.execute("CREATE TABLE regions (code TEXT, seq INTEGER, PRIMARY KEY (code, seq))")
            await adapter.execute("CREATE TABLE authors (id INTEGER PRIMARY KEY)")
            await adapter.execute("CREATE TABLE books (id INTEGER PRIMARY KEY, author_id INTEGER REFERENCES authors)")
            await adapter.execute(
                "CREATE TABLE offices (id INTEGER PRIMARY KEY, code TEXT, seq INTEGER,"
                " FOREIGN KEY (code, seq) REFERENCES regions)"
            )
            handle = ConnectionHandle(name="local", dialect=Dialect.SQLITE, client=adapter)
            snapshot = await SchemaIntrospector().introspect(handle)
        finally:
            await adapter.close()

        (fk,) = snapshot.table("books").foreign_keys
        assert (fk.referenced_table, fk.referenced_columns) == ("authors", ["id"])
        (composite,) = snapshot.table("offices").foreign_keys
        assert composite.columns == ["code", "seq"]
        assert composite.referenced_columns == ["code", "seq"]

    @pytest.mark.asyncio
    async def test_column_names(self, sqlite_handle) -> None:
        names = await SchemaIntrospector().get_column_names(sqlite_handle)
        assert names == {"authors": {"id", "name", "email"}, "books": {"id", "author_id", "title"}}


# ==================================================================
# Migration round trip
# ==================================================================


SOURCE_DDL = [
    "CREATE TABLE publishers (id INTEGER PRIMARY KEY, name TEXT NOT NULL)",
    "CREATE TABLE authors ("
    " id INTEGER PRIMARY KEY,"
    " name TEXT NOT NULL,"
    " email VARCHAR(120) UNIQUE,"
    " active INTEGER NOT NULL DEFAULT 1)",
    "CREATE TABLE books ("
    " id INTEGER PRIMARY KEY,"
    " author_id INTEGER REFERENCES authors(id) ON DELETE CASCADE,"
    " publisher_id INTEGER REFERENCES publishers,"
    " title TEXT DEFAULT 'untitled')",
    "CREATE INDEX ix_books_title ON books (title)",
]


@pytest_asyncio.fixture
async def sqlite_pair(tmp_path):
    source = AsyncSqlAdapter(f"sqlite:///{tmp_path / 'source.db'}")
    target = AsyncSqlAdapter(f"sqlite:///{tmp_path / 'target.db'}")
    for ddl in SOURCE_DDL:
        await source.execute(ddl)
    yield (
        ConnectionHandle(name="source", dialect=Dialect.SQLITE, client=source),
        ConnectionHandle(name="target", dialect=Dialect.SQLITE, client=target),
    )
    await source.close()
    await target.close()


class TestMigrationRoundTrip:
    """Applying a generated migration leaves nothing to diff."""

    @pytest.mark.asyncio
    async def test_applied_migration_rediffs_empty(self, sqlite_pair) -> None:
        source, target = sqlite_pair
        introspector = SchemaIntrospector()
        source_snapshot = await introspector.introspect(source)

        diff = diff_schemas(source_snapshot, await introspector.introspect(target))
        assert diff.summary.tables_added == 3
        script = generate_migration(diff, Dialect.SQLITE)
        assert all("()" not in sql for sql in script.statements)

        entry = await apply_migration(target, script, target_schema="main", dry_run=False, confirm=True)
        assert entry.success, entry.error
        assert entry.statements_applied == len(script.statements)

        assert diff_schemas(source_snapshot, await introspector.introspect(target)).is_empty

    @pytest.mark.asyncio
    async def test_second_migration_is_empty(self, sqlite_pair) -> None:
        source, target = sqlite_pair
        introspector = SchemaIntrospector()
        first = diff_schemas(await introspector.introspect(source), await introspector.introspect(target))
        await apply_migration(target, generate_migration(first), target_schema="main", dry_run=False, confirm=True)

        second = diff_schemas(await introspector.introspect(source), await introspector.introspect(target))
        assert generate_migration(second).is_empty


# ==================================================================
# PostgreSQL
# ==================================================================


class TestPostgresIntrospection:
    """Folding of pg_catalog rows into definitions."""

    @pytest.mark.asyncio
    async def test_snapshot_from_catalog_rows(self) -> None:
        client = _catalog_client([
            ("pg_constraint", [
                {"name": "orders_user_fk", "column_name": "user_id", "referenced_schema": "public",
                 "referenced_table": "users", "referenced_column": "id", "on_delete": "c", "on_update": "a"},
            ]),
            ("pg_index ix", [
                {"index_name": "orders_pkey", "columns": ["id"], "is_unique": True,
                 "is_primary": True, "index_type": "btree"},
                {"index_name": "ix_orders_ref", "columns": ["ref"], "is_unique": True,
                 "is_primary": False, "index_type": "btree"},
            ]),
            ("table_constraints", [
                {"constraint_name": "orders_pkey", "constraint_type": "PRIMARY KEY", "column_name": "id"},
                {"constraint_name": "orders_ref_key", "constraint_type": "UNIQUE", "column_name": "ref"},
            ]),
            ("pg_attrdef", [
                {"column_name": "id", "native_type": "integer", "is_nullable": False,
                 "column_default": "nextval('orders_id_seq'::regclass)"},
                {"column_name": "ref", "native_type": "character varying(32)", "is_nullable": True,
                 "column_default": None},
                {"column_name": "user_id", "native_type": "bigint", "is_nullable": True, "column_default": None},
            ]),
            ("information_schema.tables", [{"table_name": "orders"}, {"table_name": "spatial_ref_sys"}]),
        ])
        handle = ConnectionHandle(name="prod", dialect=Dialect.POSTGRES, client=client)
        snapshot = await SchemaIntrospector().introspect(handle)

        assert snapshot.schema_name == "public"
        (orders,) = snapshot.tables
        assert orders.primary_key == ["id"]
        ref = orders.column("ref")
        assert (ref.data_type, ref.native_type, ref.is_unique) == ("varchar", "character varying(32)", True)
        assert [i.is_primary for i in orders.indexes] == [True, False]
        (fk,) = orders.foreign_keys
        assert (fk.on_delete, fk.on_update) == ("CASCADE", "NO ACTION")
        assert fk.referenced_columns == ["id"]


# ==================================================================
# MySQL
# ==================================================================


class TestMySqlIntrospection:
    """information_schema rows from MySQL/MariaDB."""

    @pytest.mark.asyncio
    async def test_snapshot_from_information_schema(self) -> None:
        client = _catalog_client([
            ("KEY_COLUMN_USAGE", [
                {"name": "fk_lines", "column_name": "order_id", "referenced_schema": "shop",
                 "referenced_table": "orders", "referenced_column": "id",
                 "on_delete": "SET NULL", "on_update": "RESTRICT"},
                {"name": "fk_lines", "column_name": "order_rev", "referenced_schema": "shop",
                 "referenced_table": "orders", "referenced_column": "rev",
                 "on_delete": "SET NULL", "on_update": "RESTRICT"},
            ]),
            ("information_schema.STATISTICS", [
                {"index_name": "PRIMARY", "column_name": "id", "non_unique": 0, "index_type": "BTREE"},
                {"index_name": "ix_order", "column_name": "order_id", "non_unique": 1, "index_type": "BTREE"},
                {"index_name": "ix_order", "column_name": "order_rev", "non_unique": 1, "index_type": "BTREE"},
            ]),
            ("information_schema.COLUMNS", [
                {"column_name": "id", "native_type": "int(10) unsigned", "is_nullable": "NO",
                 "column_default": None, "column_key": "PRI"},
                {"column_name": "paid", "native_type": "tinyint(1)", "is_nullable": "YES",
                 "column_default": "0", "column_key": ""},
            ]),
            ("information_schema.TABLES", [{"table_name": "order_lines"}]),
        ])
        handle = ConnectionHandle(name="shop", dialect=Dialect.MYSQL, client=client, default_schema="shop")
        snapshot = await SchemaIntrospector().introspect(handle)

        (lines,) = snapshot.tables
        assert lines.column("id").data_type == "integer"
        assert lines.column("id").is_primary_key
        assert lines.column("paid").data_type == "boolean"
        assert lines.column("paid").default == "0"

        primary, composite = lines.indexes
        assert primary.is_primary and primary.is_unique
        assert composite.columns == ["order_id", "order_rev"]
        assert composite.method == "btree"

        (fk,) = lines.foreign_keys
        assert fk.columns == ["order_id", "order_rev"]
        assert fk.referenced_columns == ["id", "rev"]
        assert (fk.on_delete, fk.on_update) == ("SET NULL", "RESTRICT")

    @pytest.mark.asyncio
    async def test_schema_is_required(self) -> None:
        """A MySQL handle without a database name cannot be introspected."""
        handle = ConnectionHandle(name="shop", dialect=Dialect.MYSQL, client=_catalog_client([]))
        with pytest.raises(ValueError):
            await SchemaIntrospector().introspect(handle)
