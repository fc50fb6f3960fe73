"""Schema introspection via catalog queries.

Queries the live database through a ``ConnectionHandle`` and produces a
``SchemaSnapshot``:
- Tables, columns, native and canonical types, nullability, defaults
- Primary key and single-column unique flags
- Indexes (name, columns, uniqueness, method)
- Foreign keys (columns, referenced table/columns, ON DELETE/UPDATE)

PostgreSQL uses information_schema and pg_catalog, MySQL/MariaDB use
information_schema, SQLite uses the ``pragma_*`` table-valued functions.
"""

import logging
from collections import defaultdict

from db_sync.adapters.base import ConnectionHandle
from db_sync.schema.dialects import canonical_type
from db_sync.schema.models import (
    ColumnDefinition,
    Dialect,
    ForeignKeyDefinition,
    IndexDefinition,
    SchemaSnapshot,
    TableDefinition,
)

logger = logging.getLogger(__name__)

_PG_FK_ACTIONS = {
    "a": "NO ACTION",
    "r": "RESTRICT",
    "c": "CASCADE",
    "n": "SET NULL",
    "d": "SET DEFAULT",
}


class SchemaIntrospector:
    """Introspects database schemas for every supported dialect.

    Stateless: the connection comes from the handle passed to each call.

    Usage:
        introspector = SchemaIntrospector()
        snapshot = await introspector.introspect(handle, "public")
        snapshot.table("users").primary_key  # ["id"]
    """

    # Tables to exclude from introspection (system tables)
    EXCLUDED_TABLES = {
        "schema_migrations",
        "pg_stat_statements",
        "spatial_ref_sys",
    }

    async def introspect(self, handle: ConnectionHandle, schema: str | None = None) -> SchemaSnapshot:
        """Introspect one schema.

        Args:
            handle: Connection to introspect.
            schema: Schema (database on MySQL) to read; defaults to the
                handle's default schema.

        Returns:
            Immutable ``SchemaSnapshot`` with tables in name order.
        """
        schema_name = handle.resolve_schema(schema)
        if handle.dialect == Dialect.POSTGRES:
            reader = _PostgresCatalog(handle, schema_name)
        elif handle.dialect in (Dialect.MYSQL, Dialect.MARIADB):
            reader = _MySqlCatalog(handle, schema_name)
        else:
            reader = _SqliteCatalog(handle, schema_name)

        tables: list[TableDefinition] = []
        for table_name in await reader.tables():
            if table_name in self.EXCLUDED_TABLES:
                continue
            tables.append(
                TableDefinition(
                    name=table_name,
                    schema=schema_name,
                    columns=await reader.columns(table_name),
                    indexes=await reader.indexes(table_name),
                    foreign_keys=await reader.foreign_keys(table_name),
                )
            )

        logger.debug(f"Introspected {len(tables)} table(s) from {handle.name}.{schema_name}")
        return SchemaSnapshot(schema=schema_name, dialect=handle.dialect, tables=tables)

    async def get_column_names(self, handle: ConnectionHandle, schema: str | None = None) -> dict[str, set[str]]:
        """Get column names for all tables (lightweight alternative to ``introspect``)."""
        snapshot = await self.introspect(handle, schema)
        return {t.name: {c.name for c in t.columns} for t in snapshot.tables}


def _group_foreign_keys(rows: list[dict], schema_name: str) -> list[ForeignKeyDefinition]:
    """Fold one-row-per-column FK results into definitions, keeping order."""
    grouped: dict[str, dict] = {}
    for row in rows:
        fk = grouped.setdefault(
            row["name"],
            {
                "name": row["name"],
                "columns": [],
                "referenced_schema": row.get("referenced_schema") or schema_name,
                "referenced_table": row["referenced_table"],
                "referenced_columns": [],
                "on_delete": row.get("on_delete"),
                "on_update": row.get("on_update"),
            },
        )
        fk["columns"].append(row["column_name"])
        if row.get("referenced_column"):
            fk["referenced_columns"].append(row["referenced_column"])
    return [ForeignKeyDefinition(**fk) for fk in grouped.values()]


# ------------------------------------------------------------------
# PostgreSQL
# ------------------------------------------------------------------


class _PostgresCatalog:
    def __init__(self, handle: ConnectionHandle, schema_name: str) -> None:
        self._client = handle.client
        self._schema = schema_name

    async def tables(self) -> list[str]:
        """Get all table names in schema."""
        query = """
            SELECT table_name
            FROM information_schema.tables
            WHERE table_schema = :schema
              AND table_type = 'BASE TABLE'
            ORDER BY table_name
        """
        rows = await self._client.fetch(query, {"schema": self._schema})
        return [row["table_name"] for row in rows]

    async def columns(self, table_name: str) -> list[ColumnDefinition]:
        """Get columns for a table with key flags."""
        query = """
            SELECT
                a.attname AS column_name,
                format_type(a.atttypid, a.atttypmod) AS native_type,
                NOT a.attnotnull AS is_nullable,
                pg_get_expr(d.adbin, d.adrelid) AS column_default
            FROM pg_attribute a
            JOIN pg_class t ON t.oid = a.attrelid
            JOIN pg_namespace n ON n.oid = t.relnamespace
            LEFT JOIN pg_attrdef d ON d.adrelid = a.attrelid AND d.adnum = a.attnum
            WHERE n.nspname = :schema
              AND t.relname = :table
              AND a.attnum > 0
              AND NOT a.attisdropped
            ORDER BY a.attnum
        """
        key_query = """
            SELECT
                tc.constraint_name,
                tc.constraint_type,
                kcu.column_name
            FROM information_schema.table_constraints tc
            JOIN information_schema.key_column_usage kcu
                ON tc.constraint_name = kcu.constraint_name
                AND tc.table_schema = kcu.table_schema
                AND tc.table_name = kcu.table_name
            WHERE tc.table_schema = :schema
              AND tc.table_name = :table
              AND tc.constraint_type IN ('PRIMARY KEY', 'UNIQUE')
            ORDER BY tc.constraint_name, kcu.ordinal_position
        """
        params = {"schema": self._schema, "table": table_name}
        rows = await self._client.fetch(query, params)
        key_rows = await self._client.fetch(key_query, params)

        primary: set[str] = set()
        unique_constraints: dict[str, list[str]] = defaultdict(list)
        for row in key_rows:
            if row["constraint_type"] == "PRIMARY KEY":
                primary.add(row["column_name"])
            else:
                unique_constraints[row["constraint_name"]].append(row["column_name"])
        unique = {cols[0] for cols in unique_constraints.values() if len(cols) == 1}

        return [
            ColumnDefinition(
                name=row["column_name"],
                data_type=canonical_type(row["native_type"]),
                native_type=row["native_type"],
                nullable=bool(row["is_nullable"]),
                default=row["column_default"],
                is_primary_key=row["column_name"] in primary,
                is_unique=row["column_name"] in unique,
            )
            for row in rows
        ]

    async def indexes(self, table_name: str) -> list[IndexDefinition]:
        """Get indexes for a table (primary key index flagged)."""
        query = """
            SELECT
                i.relname AS index_name,
                array_agg(a.attname ORDER BY x.ordinality) AS columns,
                ix.indisunique AS is_unique,
                ix.indisprimary AS is_primary,
                am.amname AS index_type
            FROM pg_index ix
            JOIN pg_class t ON t.oid = ix.indrelid
            JOIN pg_class i ON i.oid = ix.indexrelid
            JOIN pg_namespace n ON n.oid = t.relnamespace
            JOIN pg_am am ON am.oid = i.relam
            JOIN LATERAL unnest(ix.indkey) WITH ORDINALITY AS x(attnum, ordinality) ON TRUE
            JOIN pg_attribute a ON a.attrelid = t.oid AND a.attnum = x.attnum
            WHERE n.nspname = :schema
              AND t.relname = :table
            GROUP BY i.relname, ix.indisunique, ix.indisprimary, am.amname
            ORDER BY i.relname
        """
        rows = await self._client.fetch(query, {"schema": self._schema, "table": table_name})
        return [
            IndexDefinition(
                name=row["index_name"],
                columns=list(row["columns"]),
                is_unique=bool(row["is_unique"]),
                is_primary=bool(row["is_primary"]),
                method=row["index_type"],
                index_type=row["index_type"],
            )
            for row in rows
        ]

    async def foreign_keys(self, table_name: str) -> list[ForeignKeyDefinition]:
        """Get foreign keys for a table, one definition per constraint."""
        query = """
            SELECT
                con.conname AS name,
                att.attname AS column_name,
                ref_ns.nspname AS referenced_schema,
                ref_tbl.relname AS referenced_table,
                ref_att.attname AS referenced_column,
                con.confdeltype AS on_delete,
                con.confupdtype AS on_update
            FROM pg_constraint con
            JOIN pg_class tbl ON tbl.oid = con.conrelid
            JOIN pg_namespace ns ON ns.oid = tbl.relnamespace
            JOIN pg_class ref_tbl ON ref_tbl.oid = con.confrelid
            JOIN pg_namespace ref_ns ON ref_ns.oid = ref_tbl.relnamespace
            JOIN LATERAL unnest(con.conkey, con.confkey) WITH ORDINALITY AS k(attnum, refattnum, ord) ON TRUE
            JOIN pg_attribute att ON att.attrelid = con.conrelid AND att.attnum = k.attnum
            JOIN pg_attribute ref_att ON ref_att.attrelid = con.confrelid AND ref_att.attnum = k.refattnum
            WHERE con.contype = 'f'
              AND ns.nspname = :schema
              AND tbl.relname = :table
            ORDER BY con.conname, k.ord
        """
        rows = await self._client.fetch(query, {"schema": self._schema, "table": table_name})
        for row in rows:
            row["on_delete"] = _PG_FK_ACTIONS.get(row["on_delete"], "NO ACTION")
            row["on_update"] = _PG_FK_ACTIONS.get(row["on_update"], "NO ACTION")
        return _group_foreign_keys(rows, self._schema)


# ------------------------------------------------------------------
# MySQL / MariaDB
# ------------------------------------------------------------------


class _MySqlCatalog:
    def __init__(self, handle: ConnectionHandle, schema_name: str) -> None:
        self._client = handle.client
        self._schema = schema_name

    async def tables(self) -> list[str]:
        query = """
            SELECT TABLE_NAME AS table_name
            FROM information_schema.TABLES
            WHERE TABLE_SCHEMA = :schema
              AND TABLE_TYPE = 'BASE TABLE'
            ORDER BY TABLE_NAME
        """
        rows = await self._client.fetch(query, {"schema": self._schema})
        return [row["table_name"] for row in rows]

    async def columns(self, table_name: str) -> list[ColumnDefinition]:
        query = """
            SELECT
                COLUMN_NAME AS column_name,
                COLUMN_TYPE AS native_type,
                IS_NULLABLE AS is_nullable,
                COLUMN_DEFAULT AS column_default,
                COLUMN_KEY AS column_key
            FROM information_schema.COLUMNS
            WHERE TABLE_SCHEMA = :schema
              AND TABLE_NAME = :table
            ORDER BY ORDINAL_POSITION
        """
        rows = await self._client.fetch(query, {"schema": self._schema, "table": table_name})
        return [
            ColumnDefinition(
                name=row["column_name"],
                data_type=canonical_type(row["native_type"]),
                native_type=row["native_type"],
                nullable=row["is_nullable"] == "YES",
                default=row["column_default"],
                is_primary_key=row["column_key"] == "PRI",
                is_unique=row["column_key"] == "UNI",
            )
            for row in rows
        ]

    async def indexes(self, table_name: str) -> list[IndexDefinition]:
        query = """
            SELECT
                INDEX_NAME AS index_name,
                COLUMN_NAME AS column_name,
                NON_UNIQUE AS non_unique,
                INDEX_TYPE AS index_type
            FROM information_schema.STATISTICS
            WHERE TABLE_SCHEMA = :schema
              AND TABLE_NAME = :table
            ORDER BY INDEX_NAME, SEQ_IN_INDEX
        """
        rows = await self._client.fetch(query, {"schema": self._schema, "table": table_name})
        indexes: dict[str, IndexDefinition] = {}
        for row in rows:
            name = row["index_name"]
            if name not in indexes:
                indexes[name] = IndexDefinition(
                    name=name,
                    is_unique=not int(row["non_unique"]),
                    is_primary=name == "PRIMARY",
                    method=(row["index_type"] or "btree").lower(),
                    index_type=row["index_type"] or "",
                )
            indexes[name].columns.append(row["column_name"])
        return list(indexes.values())

    async def foreign_keys(self, table_name: str) -> list[ForeignKeyDefinition]:
        query = """
            SELECT
                kcu.CONSTRAINT_NAME AS name,
                kcu.COLUMN_NAME AS column_name,
                kcu.REFERENCED_TABLE_SCHEMA AS referenced_schema,
                kcu.REFERENCED_TABLE_NAME AS referenced_table,
                kcu.REFERENCED_COLUMN_NAME AS referenced_column,
                rc.DELETE_RULE AS on_delete,
                rc.UPDATE_RULE AS on_update
            FROM information_schema.KEY_COLUMN_USAGE kcu
            JOIN information_schema.REFERENTIAL_CONSTRAINTS rc
                ON rc.CONSTRAINT_SCHEMA = kcu.CONSTRAINT_SCHEMA
                AND rc.CONSTRAINT_NAME = kcu.CONSTRAINT_NAME
            WHERE kcu.TABLE_SCHEMA = :schema
              AND kcu.TABLE_NAME = :table
              AND kcu.REFERENCED_TABLE_NAME IS NOT NULL
            ORDER BY kcu.CONSTRAINT_NAME, kcu.ORDINAL_POSITION
        """
        rows = await self._client.fetch(query, {"schema": self._schema, "table": table_name})
        return _group_foreign_keys(rows, self._schema)


# ------------------------------------------------------------------
# SQLite
# ------------------------------------------------------------------


class _SqliteCatalog:
    def __init__(self, handle: ConnectionHandle, schema_name: str) -> None:
        self._client = handle.client
        self._schema = schema_name

    async def tables(self) -> list[str]:
        query = """
            SELECT name
            FROM sqlite_master
            WHERE type = 'table'
              AND name NOT LIKE 'sqlite_%'
            ORDER BY name
        """
        rows = await self._client.fetch(query)
        return [row["name"] for row in rows]

    async def columns(self, table_name: str) -> list[ColumnDefinition]:
        query = 'SELECT name, type, "notnull" AS not_null, dflt_value, pk FROM pragma_table_info(:table) ORDER BY cid'
        rows = await self._client.fetch(query, {"table": table_name})
        unique = set()
        for index in await self.indexes(table_name):
            if index.is_unique and not index.is_primary and len(index.columns) == 1:
                unique.add(index.columns[0])
        return [
            ColumnDefinition(
                name=row["name"],
                data_type=canonical_type(row["type"] or "blob"),
                native_type=row["type"] or "",
                nullable=not row["not_null"] and not row["pk"],
                default=row["dflt_value"],
                is_primary_key=bool(row["pk"]),
                is_unique=row["name"] in unique,
            )
            for row in rows
        ]

    async def indexes(self, table_name: str) -> list[IndexDefinition]:
        rows = await self._client.fetch(
            'SELECT name, "unique" AS is_unique, origin FROM pragma_index_list(:table) ORDER BY name',
            {"table": table_name},
        )
        indexes: list[IndexDefinition] = []
        for row in rows:
            columns = await self._client.fetch(
                "SELECT name FROM pragma_index_info(:index) ORDER BY seqno", {"index": row["name"]}
            )
            column_names = [c["name"] for c in columns]
            name = row["name"]
            if name.startswith("sqlite_autoindex_"):
                # Reserved name; UNIQUE constraints get the Postgres-style name
                name = f"{table_name}_{'_'.join(column_names)}_key"
            indexes.append(
                IndexDefinition(
                    name=name,
                    columns=column_names,
                    is_unique=bool(row["is_unique"]),
                    is_primary=row["origin"] == "pk",
                )
            )
        return indexes

    async def foreign_keys(self, table_name: str) -> list[ForeignKeyDefinition]:
        query = """
            SELECT
                id,
                "table" AS referenced_table,
                "from" AS column_name,
                "to" AS referenced_column,
                on_update,
                on_delete
            FROM pragma_foreign_key_list(:table)
            ORDER BY id, seq
        """
        rows = await self._client.fetch(query, {"table": table_name})
        for row in rows:
            # SQLite foreign keys are unnamed
            row["name"] = f"fk_{table_name}_{row['id']}"
            row["referenced_schema"] = self._schema
        foreign_keys = _group_foreign_keys(rows, self._schema)
        for i, fk in enumerate(foreign_keys):
            if not fk.referenced_columns:
                # "REFERENCES parent" without a column list targets the parent's primary key
                foreign_keys[i] = fk.model_copy(
                    update={"referenced_columns": await self._primary_key(fk.referenced_table)}
                )
        return foreign_keys

    async def _primary_key(self, table_name: str) -> list[str]:
        rows = await self._client.fetch(
            "SELECT name FROM pragma_table_info(:table) WHERE pk > 0 ORDER BY pk", {"table": table_name}
        )
        return [row["name"] for row in rows]
