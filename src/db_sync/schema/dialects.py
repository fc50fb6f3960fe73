"""Per-dialect identifier quoting, type mapping, and statement rendering.

Each supported dialect gets one renderer instance in ``RENDERERS``.  The
renderers are pure: they turn definitions into SQL text and never touch a
connection.  Capability flags (``supports_alter_column`` and friends) let the
migration generator reject diff items a dialect cannot express.

Usage:
    from db_sync.schema.dialects import get_renderer
    from db_sync.schema.models import Dialect

    renderer = get_renderer(Dialect.POSTGRES)
    renderer.table_ref("public", "users")  # '"public"."users"'
"""

import re

from db_sync.schema.models import (
    ColumnDefinition,
    Dialect,
    ForeignKeyDefinition,
    IndexDefinition,
)


# ============================================================================
# Canonical Types
# ============================================================================


_CANONICAL_TYPES = {
    "int": "integer",
    "int4": "integer",
    "integer": "integer",
    "mediumint": "integer",
    "serial": "integer",
    "int2": "smallint",
    "smallint": "smallint",
    "tinyint": "smallint",
    "smallserial": "smallint",
    "int8": "bigint",
    "bigint": "bigint",
    "bigserial": "bigint",
    "bool": "boolean",
    "boolean": "boolean",
    "varchar": "varchar",
    "character varying": "varchar",
    "nvarchar": "varchar",
    "char": "char",
    "character": "char",
    "bpchar": "char",
    "nchar": "char",
    "text": "text",
    "tinytext": "text",
    "mediumtext": "text",
    "longtext": "text",
    "clob": "text",
    "timestamp": "timestamp",
    "timestamp without time zone": "timestamp",
    "datetime": "timestamp",
    "timestamptz": "timestamptz",
    "timestamp with time zone": "timestamptz",
    "date": "date",
    "time": "time",
    "time without time zone": "time",
    "numeric": "numeric",
    "decimal": "numeric",
    "real": "real",
    "float4": "real",
    "float": "real",
    "double precision": "double",
    "double": "double",
    "float8": "double",
    "json": "json",
    "jsonb": "json",
    "uuid": "uuid",
    "bytea": "bytes",
    "blob": "bytes",
    "longblob": "bytes",
    "binary": "bytes",
    "varbinary": "bytes",
}

_PARAMS_RE = re.compile(r"\(([^)]*)\)")


def canonical_type(native_type: str) -> str:
    """Normalize a native column type to the canonical name used for comparison.

    Length, precision, and ``unsigned`` modifiers are dropped; unknown types
    fall back to their lowercased base name.

    Example:
        canonical_type("character varying(255)")  # "varchar"
        canonical_type("tinyint(1)")              # "boolean"
    """
    lowered = " ".join(native_type.lower().split())
    if lowered.startswith("tinyint(1)"):
        return "boolean"
    array = lowered.endswith("[]")
    base = _PARAMS_RE.sub("", lowered.removesuffix("[]"))
    base = " ".join(base.replace("unsigned", "").replace("zerofill", "").split())
    canonical = _CANONICAL_TYPES.get(base, base)
    return f"{canonical}[]" if array else canonical


def _type_params(native_type: str) -> str:
    match = _PARAMS_RE.search(native_type)
    return f"({match.group(1)})" if match else ""


# ============================================================================
# Renderers
# ============================================================================


class DialectRenderer:
    """SQL rendering shared by all dialects.

    Subclasses override quoting, type maps, capability flags, and the
    statements whose syntax differs.
    """

    dialect: Dialect
    quote_char = '"'
    qualify_schema = True
    type_map: dict[str, str] = {}
    sized_types = frozenset({"varchar", "char", "numeric"})

    supports_alter_column = True
    supports_drop_column = True
    supports_alter_foreign_keys = True
    inline_foreign_keys = False

    # ------------------------------------------------------------------
    # Identifiers and types
    # ------------------------------------------------------------------

    def quote(self, identifier: str) -> str:
        q = self.quote_char
        return f"{q}{identifier.replace(q, q + q)}{q}"

    def table_ref(self, schema: str | None, table: str) -> str:
        if self.qualify_schema and schema:
            return f"{self.quote(schema)}.{self.quote(table)}"
        return self.quote(table)

    def column_list(self, columns: list[str]) -> str:
        return ", ".join(self.quote(c) for c in columns)

    def render_type(self, column: ColumnDefinition, source_dialect: Dialect | None) -> str:
        """Type text for ``column`` when created in this dialect.

        The native type is reused when it comes from the same dialect;
        otherwise the canonical type is mapped through ``type_map``.
        """
        if column.native_type and (source_dialect is None or source_dialect == self.dialect):
            return column.native_type
        mapped = self.type_map.get(column.data_type)
        if mapped is None:
            return column.native_type or column.data_type
        if column.data_type in self.sized_types and "(" not in mapped:
            mapped = f"{mapped}{_type_params(column.native_type)}"
        return mapped

    def column_definition(self, column: ColumnDefinition, source_dialect: Dialect | None) -> str:
        parts = [self.quote(column.name), self.render_type(column, source_dialect)]
        if not column.nullable:
            parts.append("NOT NULL")
        if column.default is not None:
            parts.append(f"DEFAULT {column.default}")
        return " ".join(parts)

    # ------------------------------------------------------------------
    # DDL
    # ------------------------------------------------------------------

    def create_table(
        self,
        schema: str | None,
        table: str,
        columns: list[ColumnDefinition],
        primary_key: list[str],
        source_dialect: Dialect | None,
        foreign_keys: list[str] | None = None,
    ) -> str:
        lines = [self.column_definition(c, source_dialect) for c in columns]
        if primary_key:
            lines.append(f"PRIMARY KEY ({self.column_list(primary_key)})")
        lines.extend(foreign_keys or [])
        body = ",\n  ".join(lines)
        return f"CREATE TABLE {self.table_ref(schema, table)} (\n  {body}\n)"

    def drop_table(self, schema: str | None, table: str) -> str:
        return f"DROP TABLE IF EXISTS {self.table_ref(schema, table)}"

    def add_column(self, schema: str | None, table: str, column: ColumnDefinition, source_dialect: Dialect | None) -> str:
        return (
            f"ALTER TABLE {self.table_ref(schema, table)} "
            f"ADD COLUMN {self.column_definition(column, source_dialect)}"
        )

    def drop_column(self, schema: str | None, table: str, column: str) -> str:
        return f"ALTER TABLE {self.table_ref(schema, table)} DROP COLUMN {self.quote(column)}"

    def alter_column(
        self,
        schema: str | None,
        table: str,
        column: ColumnDefinition,
        changes: list[str],
        source_dialect: Dialect | None,
    ) -> list[str]:
        raise NotImplementedError

    def create_index(self, schema: str | None, table: str, index: IndexDefinition) -> str:
        unique = "UNIQUE " if index.is_unique else ""
        return (
            f"CREATE {unique}INDEX {self.quote(index.name)} "
            f"ON {self.table_ref(schema, table)} ({self.column_list(index.columns)})"
        )

    def drop_index(self, schema: str | None, table: str, index: IndexDefinition) -> str:
        return f"DROP INDEX IF EXISTS {self.table_ref(schema, index.name)}"

    def foreign_key_clause(self, fk: ForeignKeyDefinition, referenced_schema: str | None) -> str:
        references = self.table_ref(referenced_schema, fk.referenced_table)
        if fk.referenced_columns:
            references = f"{references} ({self.column_list(fk.referenced_columns)})"
        return (
            f"CONSTRAINT {self.quote(fk.name)} FOREIGN KEY ({self.column_list(fk.columns)}) "
            f"REFERENCES {references} "
            f"ON DELETE {fk.on_delete} ON UPDATE {fk.on_update}"
        )

    def add_foreign_key(
        self, schema: str | None, table: str, fk: ForeignKeyDefinition, referenced_schema: str | None
    ) -> str:
        return (
            f"ALTER TABLE {self.table_ref(schema, table)} "
            f"ADD {self.foreign_key_clause(fk, referenced_schema)}"
        )

    def drop_foreign_key(self, schema: str | None, table: str, fk: ForeignKeyDefinition) -> str:
        return f"ALTER TABLE {self.table_ref(schema, table)} DROP CONSTRAINT {self.quote(fk.name)}"

    # ------------------------------------------------------------------
    # Data statements (named binds for SQLAlchemy ``text()``)
    # ------------------------------------------------------------------

    def _where_keys(self, keys: list[str], prefix: str = "w") -> str:
        return " AND ".join(f"{self.quote(k)} = :{prefix}{i}" for i, k in enumerate(keys))

    def select_rows(self, schema: str | None, table: str, order_by: list[str] | None = None) -> str:
        sql = f"SELECT * FROM {self.table_ref(schema, table)}"
        if order_by:
            sql += f" ORDER BY {self.column_list(order_by)}"
        return sql

    def select_page(self, schema: str | None, table: str, order_by: list[str] | None, limit: int, offset: int) -> str:
        return f"{self.select_rows(schema, table, order_by)} LIMIT {int(limit)} OFFSET {int(offset)}"

    def select_by_key(self, schema: str | None, table: str, keys: list[str]) -> str:
        return f"SELECT * FROM {self.table_ref(schema, table)} WHERE {self._where_keys(keys)}"

    def exists_by_key(self, schema: str | None, table: str, keys: list[str]) -> str:
        return f"SELECT 1 AS present FROM {self.table_ref(schema, table)} WHERE {self._where_keys(keys)} LIMIT 1"

    def count_rows(self, schema: str | None, table: str) -> str:
        return f"SELECT COUNT(*) AS row_count FROM {self.table_ref(schema, table)}"

    def insert_row(self, schema: str | None, table: str, columns: list[str]) -> str:
        binds = ", ".join(f":p{i}" for i in range(len(columns)))
        return f"INSERT INTO {self.table_ref(schema, table)} ({self.column_list(columns)}) VALUES ({binds})"

    def update_row(self, schema: str | None, table: str, columns: list[str], keys: list[str]) -> str:
        assignments = ", ".join(f"{self.quote(c)} = :p{i}" for i, c in enumerate(columns))
        return f"UPDATE {self.table_ref(schema, table)} SET {assignments} WHERE {self._where_keys(keys)}"

    def delete_row(self, schema: str | None, table: str, keys: list[str]) -> str:
        return f"DELETE FROM {self.table_ref(schema, table)} WHERE {self._where_keys(keys)}"

    def delete_all(self, schema: str | None, table: str) -> str:
        return f"DELETE FROM {self.table_ref(schema, table)}"


class PostgresRenderer(DialectRenderer):
    dialect = Dialect.POSTGRES
    type_map = {
        "integer": "integer",
        "smallint": "smallint",
        "bigint": "bigint",
        "boolean": "boolean",
        "varchar": "varchar",
        "char": "char",
        "text": "text",
        "timestamp": "timestamp",
        "timestamptz": "timestamptz",
        "date": "date",
        "time": "time",
        "numeric": "numeric",
        "real": "real",
        "double": "double precision",
        "json": "jsonb",
        "uuid": "uuid",
        "bytes": "bytea",
    }

    def alter_column(self, schema, table, column, changes, source_dialect):
        prefix = f"ALTER TABLE {self.table_ref(schema, table)} ALTER COLUMN {self.quote(column.name)}"
        statements: list[str] = []
        if "data_type" in changes:
            type_sql = self.render_type(column, source_dialect)
            statements.append(f"{prefix} TYPE {type_sql} USING {self.quote(column.name)}::{type_sql}")
        if "nullable" in changes:
            statements.append(f"{prefix} {'DROP NOT NULL' if column.nullable else 'SET NOT NULL'}")
        if "default" in changes:
            if column.default is None:
                statements.append(f"{prefix} DROP DEFAULT")
            else:
                statements.append(f"{prefix} SET DEFAULT {column.default}")
        return statements

    def create_index(self, schema, table, index):
        unique = "UNIQUE " if index.is_unique else ""
        using = ""
        if index.method and index.method.lower() != "btree":
            using = f" USING {index.method.lower()}"
        return (
            f"CREATE {unique}INDEX {self.quote(index.name)} "
            f"ON {self.table_ref(schema, table)}{using} ({self.column_list(index.columns)})"
        )


class MySqlRenderer(DialectRenderer):
    dialect = Dialect.MYSQL
    quote_char = "`"
    type_map = {
        "integer": "int",
        "smallint": "smallint",
        "bigint": "bigint",
        "boolean": "tinyint(1)",
        "varchar": "varchar",
        "char": "char",
        "text": "text",
        "timestamp": "datetime",
        "timestamptz": "timestamp",
        "date": "date",
        "time": "time",
        "numeric": "decimal",
        "real": "float",
        "double": "double",
        "json": "json",
        "uuid": "char(36)",
        "bytes": "blob",
    }

    def render_type(self, column, source_dialect):
        rendered = super().render_type(column, source_dialect)
        # MySQL requires a length on VARCHAR
        if rendered == "varchar":
            return "varchar(255)"
        return rendered

    def alter_column(self, schema, table, column, changes, source_dialect):
        # MODIFY COLUMN restates the whole definition
        return [
            f"ALTER TABLE {self.table_ref(schema, table)} "
            f"MODIFY COLUMN {self.column_definition(column, source_dialect)}"
        ]

    def drop_index(self, schema, table, index):
        return f"DROP INDEX {self.quote(index.name)} ON {self.table_ref(schema, table)}"

    def drop_foreign_key(self, schema, table, fk):
        return f"ALTER TABLE {self.table_ref(schema, table)} DROP FOREIGN KEY {self.quote(fk.name)}"


class MariaDbRenderer(MySqlRenderer):
    dialect = Dialect.MARIADB


class SqliteRenderer(DialectRenderer):
    dialect = Dialect.SQLITE
    qualify_schema = False
    type_map = {
        "integer": "INTEGER",
        "smallint": "INTEGER",
        "bigint": "INTEGER",
        "boolean": "INTEGER",
        "varchar": "TEXT",
        "char": "TEXT",
        "text": "TEXT",
        "timestamp": "TEXT",
        "timestamptz": "TEXT",
        "date": "TEXT",
        "time": "TEXT",
        "numeric": "NUMERIC",
        "real": "REAL",
        "double": "REAL",
        "json": "TEXT",
        "uuid": "TEXT",
        "bytes": "BLOB",
    }
    sized_types = frozenset()

    supports_alter_column = False
    supports_drop_column = False
    supports_alter_foreign_keys = False
    inline_foreign_keys = True

    def drop_index(self, schema, table, index):
        return f"DROP INDEX IF EXISTS {self.quote(index.name)}"


RENDERERS: dict[Dialect, DialectRenderer] = {
    Dialect.POSTGRES: PostgresRenderer(),
    Dialect.MYSQL: MySqlRenderer(),
    Dialect.MARIADB: MariaDbRenderer(),
    Dialect.SQLITE: SqliteRenderer(),
}


def get_renderer(dialect: Dialect | str) -> DialectRenderer:
    """Look up the renderer for a dialect."""
    return RENDERERS[Dialect(dialect)]
