"""Pydantic models for schema snapshots, schema diffs, and migrations."""

import uuid
from datetime import datetime, timezone
from enum import Enum

from pydantic import BaseModel, ConfigDict, Field, field_validator


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


class Dialect(str, Enum):
    """Supported database dialects."""

    POSTGRES = "postgres"
    MYSQL = "mysql"
    MARIADB = "mariadb"
    SQLITE = "sqlite"

    @classmethod
    def from_url(cls, url: str) -> "Dialect":
        """Infer the dialect from a connection URL scheme.

        Raises:
            ValueError: If the scheme is not recognized.
        """
        scheme = url.split("://", 1)[0].split("+", 1)[0].lower()
        aliases = {
            "postgres": cls.POSTGRES,
            "postgresql": cls.POSTGRES,
            "mysql": cls.MYSQL,
            "mariadb": cls.MARIADB,
            "sqlite": cls.SQLITE,
        }
        if scheme not in aliases:
            raise ValueError(f"Unrecognized database URL scheme: {scheme}")
        return aliases[scheme]


# ============================================================================
# Schema Snapshot Models
# ============================================================================


FK_ACTIONS = ("NO ACTION", "CASCADE", "SET NULL", "SET DEFAULT", "RESTRICT")


class ColumnDefinition(BaseModel):
    """A table column.

    ``data_type`` is the canonical type used for comparison across dialects;
    ``native_type`` is the type exactly as the source database declared it.
    """

    name: str
    data_type: str
    native_type: str = ""
    nullable: bool = True
    default: str | None = None  # Opaque SQL expression text
    is_primary_key: bool = False
    is_unique: bool = False


class IndexDefinition(BaseModel):
    """A table index."""

    name: str
    columns: list[str] = Field(default_factory=list)
    is_unique: bool = False
    is_primary: bool = False
    method: str = "btree"
    index_type: str = ""


class ForeignKeyDefinition(BaseModel):
    """A foreign key constraint."""

    name: str
    columns: list[str] = Field(default_factory=list)
    referenced_schema: str | None = None
    referenced_table: str
    referenced_columns: list[str] = Field(default_factory=list)
    on_delete: str = "NO ACTION"
    on_update: str = "NO ACTION"

    @field_validator("on_delete", "on_update", mode="before")
    @classmethod
    def _normalize_action(cls, value: str | None) -> str:
        normalized = " ".join((value or "").replace("_", " ").upper().split())
        return normalized if normalized in FK_ACTIONS else "NO ACTION"


class TableDefinition(BaseModel):
    """A table with its columns, indexes, and foreign keys."""

    name: str
    schema_name: str | None = Field(default=None, alias="schema")
    columns: list[ColumnDefinition] = Field(default_factory=list)
    indexes: list[IndexDefinition] = Field(default_factory=list)
    foreign_keys: list[ForeignKeyDefinition] = Field(default_factory=list)

    model_config = ConfigDict(populate_by_name=True)

    @property
    def primary_key(self) -> list[str]:
        """Primary-key column names in column order."""
        return [c.name for c in self.columns if c.is_primary_key]

    def column(self, name: str) -> ColumnDefinition | None:
        for col in self.columns:
            if col.name == name:
                return col
        return None


class SchemaSnapshot(BaseModel):
    """Point-in-time structural description of one schema.

    Immutable once produced.
    """

    model_config = ConfigDict(frozen=True, populate_by_name=True)

    schema_name: str = Field(alias="schema")
    dialect: Dialect | None = None
    captured_at: datetime = Field(default_factory=_utcnow)
    tables: list[TableDefinition] = Field(default_factory=list)

    def table(self, name: str) -> TableDefinition | None:
        for table in self.tables:
            if table.name == name:
                return table
        return None

    @property
    def table_names(self) -> list[str]:
        return [t.name for t in self.tables]


# ============================================================================
# Diff Models
# ============================================================================


class DiffKind(str, Enum):
    """Kinds of structural difference."""

    TABLE_ADDED = "table_added"
    TABLE_REMOVED = "table_removed"
    COLUMN_ADDED = "column_added"
    COLUMN_REMOVED = "column_removed"
    COLUMN_MODIFIED = "column_modified"
    INDEX_ADDED = "index_added"
    INDEX_REMOVED = "index_removed"
    INDEX_MODIFIED = "index_modified"
    FK_ADDED = "fk_added"
    FK_REMOVED = "fk_removed"
    FK_MODIFIED = "fk_modified"


DiffDefinition = TableDefinition | ColumnDefinition | IndexDefinition | ForeignKeyDefinition


class DiffItem(BaseModel):
    """One structural difference between source and target.

    ``source`` is the definition the target should converge to (absent for
    removals), ``target`` is what the target currently has (absent for
    additions).
    """

    kind: DiffKind
    table: str
    name: str
    schema_name: str | None = Field(default=None, alias="schema")
    source: DiffDefinition | None = None
    target: DiffDefinition | None = None
    changes: list[str] = Field(default_factory=list)
    statements: list[str] = Field(default_factory=list)
    note: str | None = None

    model_config = ConfigDict(populate_by_name=True)


class DiffSummary(BaseModel):
    """Per-kind counts for a schema diff."""

    tables_added: int = 0
    tables_removed: int = 0
    columns_added: int = 0
    columns_removed: int = 0
    columns_modified: int = 0
    indexes_added: int = 0
    indexes_removed: int = 0
    indexes_modified: int = 0
    fks_added: int = 0
    fks_removed: int = 0
    fks_modified: int = 0

    @property
    def total(self) -> int:
        return sum(self.model_dump().values())

    @classmethod
    def from_items(cls, items: list[DiffItem]) -> "DiffSummary":
        counts: dict[str, int] = {}
        for item in items:
            field = _SUMMARY_FIELDS[item.kind]
            counts[field] = counts.get(field, 0) + 1
        return cls(**counts)


_SUMMARY_FIELDS: dict[DiffKind, str] = {
    DiffKind.TABLE_ADDED: "tables_added",
    DiffKind.TABLE_REMOVED: "tables_removed",
    DiffKind.COLUMN_ADDED: "columns_added",
    DiffKind.COLUMN_REMOVED: "columns_removed",
    DiffKind.COLUMN_MODIFIED: "columns_modified",
    DiffKind.INDEX_ADDED: "indexes_added",
    DiffKind.INDEX_REMOVED: "indexes_removed",
    DiffKind.INDEX_MODIFIED: "indexes_modified",
    DiffKind.FK_ADDED: "fks_added",
    DiffKind.FK_REMOVED: "fks_removed",
    DiffKind.FK_MODIFIED: "fks_modified",
}


class SchemaDiff(BaseModel):
    """Ordered set of differences transforming target into source."""

    source_schema: str
    target_schema: str
    source_dialect: Dialect | None = None
    target_dialect: Dialect | None = None
    generated_at: datetime = Field(default_factory=_utcnow)
    items: list[DiffItem] = Field(default_factory=list)
    summary: DiffSummary = Field(default_factory=DiffSummary)

    @property
    def is_empty(self) -> bool:
        return not self.items

    def of_kind(self, *kinds: DiffKind) -> list[DiffItem]:
        return [item for item in self.items if item.kind in kinds]


# ============================================================================
# Migration Models
# ============================================================================


class MigrationScript(BaseModel):
    """Ordered DDL statements for one dialect."""

    dialect: Dialect
    statements: list[str] = Field(default_factory=list)

    @property
    def is_empty(self) -> bool:
        return not self.statements


class MigrationHistoryEntry(BaseModel):
    """Record of one migration attempt, handed to the history sink."""

    id: str = Field(default_factory=lambda: str(uuid.uuid4()))
    source_connection: str | None = None
    target_connection: str
    source_schema: str | None = None
    target_schema: str
    group_id: str | None = None
    description: str | None = None
    sql_statements: list[str] = Field(default_factory=list)
    statements_applied: int = 0
    applied_at: datetime = Field(default_factory=_utcnow)
    success: bool = False
    error: str | None = None
