"""Migration DDL generation and application.

Turns a ``SchemaDiff`` into a dependency-safe, dialect-specific sequence of
DDL statements and applies it through the ``DatabaseClient.execute()``
Protocol method.

Statement order within a script:

    0. drop foreign keys
    1. drop indexes
    2. create tables (no foreign keys, parents first)
    3. add / alter columns
    4. create indexes
    5. add foreign keys
    6. drop columns
    7. drop tables (children first)

Usage:
    from db_sync.schema.comparator import diff_schemas
    from db_sync.schema.migration import apply_migration, generate_migration

    diff = diff_schemas(source_snapshot, target_snapshot)
    script = generate_migration(diff, Dialect.POSTGRES)

    entry = await apply_migration(target, script, target_schema="public", confirm=True, dry_run=False)
"""

import logging
from enum import IntEnum

from db_sync.adapters.base import ConnectionHandle
from db_sync.errors import UnsupportedOperation
from db_sync.history import HistorySink
from db_sync.schema.dependencies import resolve_table_order
from db_sync.schema.dialects import DialectRenderer, get_renderer
from db_sync.schema.models import (
    Dialect,
    DiffItem,
    DiffKind,
    ForeignKeyDefinition,
    MigrationHistoryEntry,
    MigrationScript,
    SchemaDiff,
    SchemaSnapshot,
    TableDefinition,
)

logger = logging.getLogger(__name__)


class MigrationPhase(IntEnum):
    DROP_FOREIGN_KEYS = 0
    DROP_INDEXES = 1
    CREATE_TABLES = 2
    ALTER_COLUMNS = 3
    CREATE_INDEXES = 4
    ADD_FOREIGN_KEYS = 5
    DROP_COLUMNS = 6
    DROP_TABLES = 7


# ------------------------------------------------------------------
# Item rendering
# ------------------------------------------------------------------


def _referenced_schema(fk: ForeignKeyDefinition, diff: SchemaDiff, schema: str) -> str:
    # References into the source schema point at the same tables in the target schema
    if fk.referenced_schema in (None, diff.source_schema):
        return schema
    return fk.referenced_schema


def _render_item(
    item: DiffItem,
    diff: SchemaDiff,
    renderer: DialectRenderer,
) -> list[tuple[MigrationPhase, str]]:
    """Render one diff item as (phase, statement) pairs.

    Raises:
        UnsupportedOperation: If the dialect cannot express the item.
    """
    schema = item.schema_name or diff.target_schema
    source_dialect = diff.source_dialect
    table = item.table
    kind = item.kind

    if kind == DiffKind.TABLE_ADDED:
        table_def: TableDefinition = item.source
        inline_fks = []
        if renderer.inline_foreign_keys:
            inline_fks = [
                renderer.foreign_key_clause(fk, _referenced_schema(fk, diff, schema)) for fk in table_def.foreign_keys
            ]
        statements = [
            (
                MigrationPhase.CREATE_TABLES,
                renderer.create_table(
                    schema, table, table_def.columns, table_def.primary_key, source_dialect, inline_fks
                ),
            )
        ]
        for index in table_def.indexes:
            if not index.is_primary:
                statements.append((MigrationPhase.CREATE_INDEXES, renderer.create_index(schema, table, index)))
        if not renderer.inline_foreign_keys:
            for fk in table_def.foreign_keys:
                statements.append(
                    (
                        MigrationPhase.ADD_FOREIGN_KEYS,
                        renderer.add_foreign_key(schema, table, fk, _referenced_schema(fk, diff, schema)),
                    )
                )
        return statements

    if kind == DiffKind.TABLE_REMOVED:
        return [(MigrationPhase.DROP_TABLES, renderer.drop_table(schema, table))]

    if kind == DiffKind.COLUMN_ADDED:
        column = item.source
        if not renderer.supports_alter_column and not column.nullable and column.default is None:
            raise UnsupportedOperation(item, renderer.dialect, "NOT NULL column needs a default")
        return [(MigrationPhase.ALTER_COLUMNS, renderer.add_column(schema, table, column, source_dialect))]

    if kind == DiffKind.COLUMN_MODIFIED:
        if not renderer.supports_alter_column:
            raise UnsupportedOperation(item, renderer.dialect, "ALTER COLUMN is not supported")
        return [
            (MigrationPhase.ALTER_COLUMNS, sql)
            for sql in renderer.alter_column(schema, table, item.source, item.changes, source_dialect)
        ]

    if kind == DiffKind.COLUMN_REMOVED:
        if not renderer.supports_drop_column:
            raise UnsupportedOperation(item, renderer.dialect, "DROP COLUMN is not supported")
        return [(MigrationPhase.DROP_COLUMNS, renderer.drop_column(schema, table, item.name))]

    if kind == DiffKind.INDEX_ADDED:
        return [(MigrationPhase.CREATE_INDEXES, renderer.create_index(schema, table, item.source))]

    if kind == DiffKind.INDEX_REMOVED:
        return [(MigrationPhase.DROP_INDEXES, renderer.drop_index(schema, table, item.target))]

    if kind == DiffKind.INDEX_MODIFIED:
        return [
            (MigrationPhase.DROP_INDEXES, renderer.drop_index(schema, table, item.target)),
            (MigrationPhase.CREATE_INDEXES, renderer.create_index(schema, table, item.source)),
        ]

    # Foreign keys
    if not renderer.supports_alter_foreign_keys:
        raise UnsupportedOperation(item, renderer.dialect, "foreign keys cannot be altered in place")

    if kind == DiffKind.FK_ADDED:
        fk = item.source
        return [
            (
                MigrationPhase.ADD_FOREIGN_KEYS,
                renderer.add_foreign_key(schema, table, fk, _referenced_schema(fk, diff, schema)),
            )
        ]

    if kind == DiffKind.FK_REMOVED:
        return [(MigrationPhase.DROP_FOREIGN_KEYS, renderer.drop_foreign_key(schema, table, item.target))]

    if kind == DiffKind.FK_MODIFIED:
        fk = item.source
        return [
            (MigrationPhase.DROP_FOREIGN_KEYS, renderer.drop_foreign_key(schema, table, item.target)),
            (
                MigrationPhase.ADD_FOREIGN_KEYS,
                renderer.add_foreign_key(schema, table, fk, _referenced_schema(fk, diff, schema)),
            ),
        ]

    raise ValueError(f"Unknown diff kind: {kind}")


def _table_order(diff: SchemaDiff, kind: DiffKind) -> list[DiffItem]:
    """Added tables parent-first, removed tables child-first."""
    items = diff.of_kind(kind)
    if len(items) < 2:
        return items
    attr = "source" if kind == DiffKind.TABLE_ADDED else "target"
    snapshot = SchemaSnapshot(schema=diff.target_schema, tables=[getattr(i, attr) for i in items])
    order = resolve_table_order(snapshot)
    names = order.order if kind == DiffKind.TABLE_ADDED else order.reverse_order()
    by_name = {i.table: i for i in items}
    return [by_name[name] for name in names]


# ------------------------------------------------------------------
# Script generation
# ------------------------------------------------------------------


def generate_migration(diff: SchemaDiff, dialect: Dialect | str | None = None) -> MigrationScript:
    """Generate an ordered DDL script that turns the target into the source.

    Pure sync logic.  Either the whole script is produced or an error is
    raised; there is never a partial script.

    Args:
        diff: Diff from ``diff_schemas(source, target)``.
        dialect: Dialect to render for (default: ``diff.target_dialect``).

    Returns:
        ``MigrationScript`` (empty when the diff is empty).

    Raises:
        UnsupportedOperation: If any item cannot be expressed in the dialect.
        ValueError: If no dialect is given and the diff carries none.

    Example:
        script = generate_migration(diff, Dialect.MYSQL)
        for sql in script.statements:
            print(sql)
    """
    dialect = dialect or diff.target_dialect
    if dialect is None:
        raise ValueError("No dialect given and the diff does not record a target dialect")
    renderer = get_renderer(dialect)

    ordered_items = (
        _table_order(diff, DiffKind.TABLE_ADDED)
        + [i for i in diff.items if i.kind not in (DiffKind.TABLE_ADDED, DiffKind.TABLE_REMOVED)]
        + _table_order(diff, DiffKind.TABLE_REMOVED)
    )

    phases: dict[MigrationPhase, list[str]] = {phase: [] for phase in MigrationPhase}
    for item in ordered_items:
        for phase, sql in _render_item(item, diff, renderer):
            phases[phase].append(sql)

    statements = [sql for phase in MigrationPhase for sql in phases[phase]]
    logger.info(f"Generated {len(statements)} {renderer.dialect.value} statement(s) for {len(diff.items)} item(s)")
    return MigrationScript(dialect=renderer.dialect, statements=statements)


def annotate_diff(diff: SchemaDiff, dialect: Dialect | str | None = None) -> SchemaDiff:
    """Return a copy of ``diff`` with per-item statements attached.

    Unlike ``generate_migration`` this never raises for unsupported items:
    they get empty statements and a ``note`` explaining why.
    """
    dialect = dialect or diff.target_dialect
    if dialect is None:
        return diff
    renderer = get_renderer(dialect)

    items: list[DiffItem] = []
    for item in diff.items:
        try:
            statements = [sql for _, sql in sorted(_render_item(item, diff, renderer), key=lambda p: p[0])]
            items.append(item.model_copy(update={"statements": statements, "note": None}))
        except UnsupportedOperation as e:
            items.append(item.model_copy(update={"statements": [], "note": str(e)}))
    return diff.model_copy(update={"items": items})


# ------------------------------------------------------------------
# Migration application
# ------------------------------------------------------------------


async def apply_migration(
    target: ConnectionHandle,
    script: MigrationScript,
    *,
    target_schema: str,
    source_connection: str | None = None,
    source_schema: str | None = None,
    group_id: str | None = None,
    description: str | None = None,
    sink: HistorySink | None = None,
    dry_run: bool = True,
    confirm: bool = False,
) -> MigrationHistoryEntry:
    """Execute a migration script on the target, stopping at the first failure.

    Every executed attempt (successful or not) is written to ``sink``.

    Args:
        target: Connection to migrate.
        script: Script from ``generate_migration()``.
        target_schema: Schema the script applies to (for the history record).
        source_connection: Name of the connection the script was derived from.
        source_schema: Source schema name (for the history record).
        group_id: Optional group the migration belongs to.
        description: Free-form description for the history record.
        sink: Optional history sink.
        dry_run: If True, only report what would be done without executing.
        confirm: Must be True to actually execute (safety guard).

    Returns:
        ``MigrationHistoryEntry`` describing the outcome.

    Example:
        entry = await apply_migration(target, script, target_schema="public",
                                      dry_run=False, confirm=True)
        if not entry.success:
            print(entry.error)
    """
    entry = MigrationHistoryEntry(
        source_connection=source_connection,
        target_connection=target.name,
        source_schema=source_schema,
        target_schema=target_schema,
        group_id=group_id,
        description=description,
        sql_statements=list(script.statements),
    )

    if script.is_empty:
        entry.success = True
        return entry

    if dry_run:
        entry.success = True
        return entry

    if not confirm:
        entry.error = "Migration requires confirm=True"
        return entry

    for sql in script.statements:
        try:
            await target.client.execute(sql)
        except Exception as e:
            entry.error = f"Failed to apply migration: {e}"
            logger.error(f"Migration on {target.name} failed at statement {entry.statements_applied + 1}: {e}")
            break
        entry.statements_applied += 1
    else:
        entry.success = True
        logger.info(f"Applied {entry.statements_applied} statement(s) to {target.name}")

    if sink is not None:
        await sink.record_migration(entry)
    return entry
