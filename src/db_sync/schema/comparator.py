"""Structural comparison of two schema snapshots.

Tables and columns are matched by name.  Indexes and foreign keys are matched
by structure, so a renamed but otherwise identical index or constraint is not
reported.  The result describes how to turn the target into the source.

Pure logic -- no I/O, no database connections.

Usage:
    from db_sync.schema.comparator import diff_schemas

    diff = diff_schemas(source_snapshot, target_snapshot)
    for item in diff.items:
        print(item.kind.value, item.table, item.name)
"""

import logging
from collections import defaultdict

from db_sync.schema.models import (
    ColumnDefinition,
    DiffItem,
    DiffKind,
    DiffSummary,
    ForeignKeyDefinition,
    IndexDefinition,
    SchemaDiff,
    SchemaSnapshot,
    TableDefinition,
)

logger = logging.getLogger(__name__)

# Within one table: creations, then modifications, then removals
KIND_ORDER: dict[DiffKind, int] = {
    kind: position
    for position, kind in enumerate(
        [
            DiffKind.TABLE_ADDED,
            DiffKind.COLUMN_ADDED,
            DiffKind.INDEX_ADDED,
            DiffKind.FK_ADDED,
            DiffKind.COLUMN_MODIFIED,
            DiffKind.INDEX_MODIFIED,
            DiffKind.FK_MODIFIED,
            DiffKind.FK_REMOVED,
            DiffKind.INDEX_REMOVED,
            DiffKind.COLUMN_REMOVED,
            DiffKind.TABLE_REMOVED,
        ]
    )
}


# ------------------------------------------------------------------
# Match keys
# ------------------------------------------------------------------


def index_key(index: IndexDefinition) -> tuple[tuple[str, ...], bool]:
    """Structural identity of an index: its column set plus uniqueness."""
    return tuple(sorted(index.columns)), index.is_unique


def foreign_key_key(fk: ForeignKeyDefinition) -> tuple[tuple[str, ...], str, tuple[str, ...]]:
    """Structural identity of a foreign key.

    The referenced schema is deliberately excluded: source and target schemas
    are often named differently.
    """
    return tuple(fk.columns), fk.referenced_table, tuple(fk.referenced_columns)


def _normalize_default(default: str | None) -> str | None:
    return default.strip() if default is not None else None


def column_changes(source: ColumnDefinition, target: ColumnDefinition) -> list[str]:
    """Attributes that differ between two same-named columns."""
    changes: list[str] = []
    if source.data_type.lower() != target.data_type.lower():
        changes.append("data_type")
    if source.nullable != target.nullable:
        changes.append("nullable")
    if _normalize_default(source.default) != _normalize_default(target.default):
        changes.append("default")
    return changes


def _index_changes(source: IndexDefinition, target: IndexDefinition) -> list[str]:
    changes: list[str] = []
    if (source.method or "").lower() != (target.method or "").lower():
        changes.append("method")
    if source.index_type and target.index_type and source.index_type.lower() != target.index_type.lower():
        changes.append("index_type")
    return changes


def _fk_changes(source: ForeignKeyDefinition, target: ForeignKeyDefinition) -> list[str]:
    changes: list[str] = []
    if source.on_delete != target.on_delete:
        changes.append("on_delete")
    if source.on_update != target.on_update:
        changes.append("on_update")
    return changes


def _pair_by_key(source_items: list, target_items: list, key_fn) -> tuple[list, list, list]:
    """Match definitions by structural key, pairwise in declaration order.

    Returns:
        Tuple of (matched pairs, unmatched source items, unmatched target items).
    """
    buckets: dict = defaultdict(list)
    for item in target_items:
        buckets[key_fn(item)].append(item)

    matched: list[tuple] = []
    source_only: list = []
    for item in source_items:
        bucket = buckets.get(key_fn(item))
        if bucket:
            matched.append((item, bucket.pop(0)))
        else:
            source_only.append(item)

    target_only = [item for bucket in buckets.values() for item in bucket]
    # Keep target declaration order for removals
    target_only.sort(key=target_items.index)
    return matched, source_only, target_only


# ------------------------------------------------------------------
# Table comparison
# ------------------------------------------------------------------


def _diff_table(source: TableDefinition, target: TableDefinition, schema: str) -> list[DiffItem]:
    items: list[DiffItem] = []
    table = source.name

    def add(kind: DiffKind, name: str, src=None, tgt=None, changes=None) -> None:
        items.append(
            DiffItem(
                kind=kind,
                table=table,
                name=name,
                schema=schema,
                source=src,
                target=tgt,
                changes=changes or [],
            )
        )

    # Columns
    target_columns = {c.name: c for c in target.columns}
    source_names = {c.name for c in source.columns}
    for col in source.columns:
        existing = target_columns.get(col.name)
        if existing is None:
            add(DiffKind.COLUMN_ADDED, col.name, src=col)
            continue
        changes = column_changes(col, existing)
        if changes:
            add(DiffKind.COLUMN_MODIFIED, col.name, src=col, tgt=existing, changes=changes)
    for col in target.columns:
        if col.name not in source_names:
            add(DiffKind.COLUMN_REMOVED, col.name, tgt=col)

    # Indexes (primary-key indexes belong to the table definition)
    matched, source_only, target_only = _pair_by_key(
        [i for i in source.indexes if not i.is_primary],
        [i for i in target.indexes if not i.is_primary],
        index_key,
    )
    for idx in source_only:
        add(DiffKind.INDEX_ADDED, idx.name, src=idx)
    for src_idx, tgt_idx in matched:
        changes = _index_changes(src_idx, tgt_idx)
        if changes:
            add(DiffKind.INDEX_MODIFIED, src_idx.name, src=src_idx, tgt=tgt_idx, changes=changes)
    for idx in target_only:
        add(DiffKind.INDEX_REMOVED, idx.name, tgt=idx)

    # Foreign keys
    matched, source_only, target_only = _pair_by_key(source.foreign_keys, target.foreign_keys, foreign_key_key)
    for fk in source_only:
        add(DiffKind.FK_ADDED, fk.name, src=fk)
    for src_fk, tgt_fk in matched:
        changes = _fk_changes(src_fk, tgt_fk)
        if changes:
            add(DiffKind.FK_MODIFIED, src_fk.name, src=src_fk, tgt=tgt_fk, changes=changes)
    for fk in target_only:
        add(DiffKind.FK_REMOVED, fk.name, tgt=fk)

    return items


def diff_schemas(source: SchemaSnapshot, target: SchemaSnapshot) -> SchemaDiff:
    """Compute the ordered differences that turn ``target`` into ``source``.

    Items are grouped by table (in name order); within a table creations come
    before modifications, which come before removals.  The diff is symmetric:
    ``diff_schemas(b, a)`` reports every addition of ``diff_schemas(a, b)`` as
    a removal and vice versa.

    Args:
        source: Snapshot describing the desired structure.
        target: Snapshot describing the structure to be changed.

    Returns:
        ``SchemaDiff`` with items and per-kind summary counts.

    Example:
        >>> diff = diff_schemas(source, target)
        >>> diff.summary.columns_removed
        1
    """
    source_tables = {t.name: t for t in source.tables}
    target_tables = {t.name: t for t in target.tables}
    schema = target.schema_name

    items: list[DiffItem] = []
    for table_name in sorted(set(source_tables) | set(target_tables)):
        src = source_tables.get(table_name)
        tgt = target_tables.get(table_name)
        if tgt is None:
            table_items = [
                DiffItem(kind=DiffKind.TABLE_ADDED, table=table_name, name=table_name, schema=schema, source=src)
            ]
        elif src is None:
            table_items = [
                DiffItem(kind=DiffKind.TABLE_REMOVED, table=table_name, name=table_name, schema=schema, target=tgt)
            ]
        else:
            table_items = _diff_table(src, tgt, schema)
        # Stable sort keeps declaration order within a kind
        table_items.sort(key=lambda item: KIND_ORDER[item.kind])
        if table_items:
            logger.debug(f"{table_name}: {len(table_items)} difference(s)")
        items.extend(table_items)

    diff = SchemaDiff(
        source_schema=source.schema_name,
        target_schema=target.schema_name,
        source_dialect=source.dialect,
        target_dialect=target.dialect,
        items=items,
        summary=DiffSummary.from_items(items),
    )
    logger.info(f"Schema diff {source.schema_name} -> {target.schema_name}: {len(items)} difference(s)")
    return diff
