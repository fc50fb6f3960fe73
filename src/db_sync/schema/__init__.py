"""Schema snapshots, diffing, dependency ordering, and DDL rendering.

Migration generation and live introspection live in
``db_sync.schema.migration`` and ``db_sync.schema.introspector``; import them
from their modules.

Usage:
    from db_sync.schema import SchemaSnapshot, diff_schemas, resolve_table_order
    from db_sync.schema.migration import generate_migration
"""

from db_sync.schema.comparator import diff_schemas
from db_sync.schema.dependencies import DependencyOrder, resolve_table_order
from db_sync.schema.dialects import DialectRenderer, canonical_type, get_renderer
from db_sync.schema.models import (
    ColumnDefinition,
    Dialect,
    DiffItem,
    DiffKind,
    DiffSummary,
    ForeignKeyDefinition,
    IndexDefinition,
    MigrationHistoryEntry,
    MigrationScript,
    SchemaDiff,
    SchemaSnapshot,
    TableDefinition,
)

__all__ = [
    "diff_schemas",
    "resolve_table_order",
    "DependencyOrder",
    "DialectRenderer",
    "canonical_type",
    "get_renderer",
    "ColumnDefinition",
    "Dialect",
    "DiffItem",
    "DiffKind",
    "DiffSummary",
    "ForeignKeyDefinition",
    "IndexDefinition",
    "MigrationHistoryEntry",
    "MigrationScript",
    "SchemaDiff",
    "SchemaSnapshot",
    "TableDefinition",
]
