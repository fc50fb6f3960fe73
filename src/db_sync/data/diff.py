"""Row-level data comparison between two instances of a table.

Both sides are fetched ordered by the primary key, sorted locally on the
normalized key so the two engines agree on ordering, and merge-joined.
Non-key columns present on both sides are compared on normalized values so
that e.g. ``Decimal("1.50")`` from PostgreSQL equals ``1.5`` from SQLite.

Usage:
    from db_sync.data.diff import table_data_diff

    detail = await table_data_diff(source, target, "users", ["id"])
    print(len(detail.missing_in_target), len(detail.different))
"""

import json
import logging
from collections.abc import Iterator
from datetime import date, datetime, time
from decimal import Decimal, InvalidOperation
from typing import Any
from uuid import UUID

from db_sync.adapters.base import ConnectionHandle
from db_sync.data.models import RowDifference, RowKey, TableDataDetail, TableDataDiff
from db_sync.errors import InvalidPlan
from db_sync.schema.dialects import get_renderer

logger = logging.getLogger(__name__)


# ------------------------------------------------------------------
# Value normalization
# ------------------------------------------------------------------


def normalize_value(value: Any) -> Any:
    """Normalize a column value for cross-engine comparison."""
    if value is None:
        return None
    if isinstance(value, bool):
        value = int(value)
    if isinstance(value, (int, float, Decimal)):
        try:
            return Decimal(str(value))
        except InvalidOperation:
            return str(value)
    if isinstance(value, (datetime, date, time)):
        return value.isoformat()
    if isinstance(value, UUID):
        return str(value)
    if isinstance(value, (memoryview, bytearray)):
        return bytes(value)
    if isinstance(value, (dict, list)):
        return json.dumps(value, sort_keys=True, default=str)
    return value


def row_key(row: dict[str, Any], keys: list[str]) -> RowKey:
    """Raw primary-key values of ``row`` in key-column order."""
    return tuple(row[k] for k in keys)


def _match_key(row: dict[str, Any], keys: list[str]) -> tuple:
    return tuple(normalize_value(row[k]) for k in keys)


def _order_key(match_key: tuple) -> tuple:
    ordered = []
    for value in match_key:
        if value is None:
            ordered.append((0, ""))
        elif isinstance(value, Decimal):
            ordered.append((1, value))
        elif isinstance(value, bytes):
            ordered.append((2, value.hex()))
        else:
            ordered.append((2, str(value)))
    return tuple(ordered)


def changed_columns(source: dict[str, Any], target: dict[str, Any], keys: list[str]) -> list[str]:
    """Non-key columns present on both sides whose normalized values differ."""
    return [
        column
        for column in source
        if column in target and column not in keys and normalize_value(source[column]) != normalize_value(target[column])
    ]


def merge_join(
    source_rows: list[dict[str, Any]],
    target_rows: list[dict[str, Any]],
    keys: list[str],
) -> Iterator[tuple[dict[str, Any] | None, dict[str, Any] | None]]:
    """Pair rows by primary key.

    Yields ``(source_row, target_row)``; one side is ``None`` for rows that
    exist on the other side only.
    """
    src = sorted(((_match_key(r, keys), r) for r in source_rows), key=lambda p: _order_key(p[0]))
    tgt = sorted(((_match_key(r, keys), r) for r in target_rows), key=lambda p: _order_key(p[0]))

    i = j = 0
    while i < len(src) and j < len(tgt):
        src_key, src_row = src[i]
        tgt_key, tgt_row = tgt[j]
        if src_key == tgt_key:
            yield src_row, tgt_row
            i += 1
            j += 1
        elif _order_key(src_key) < _order_key(tgt_key):
            yield src_row, None
            i += 1
        else:
            yield None, tgt_row
            j += 1
    for _, row in src[i:]:
        yield row, None
    for _, row in tgt[j:]:
        yield None, row


# ------------------------------------------------------------------
# Fetching
# ------------------------------------------------------------------


async def fetch_ordered_rows(
    handle: ConnectionHandle, schema: str, table: str, keys: list[str] | None
) -> list[dict[str, Any]]:
    renderer = get_renderer(handle.dialect)
    return await handle.client.fetch(renderer.select_rows(schema, table, order_by=keys))


async def count_rows(handle: ConnectionHandle, schema: str, table: str) -> int:
    renderer = get_renderer(handle.dialect)
    rows = await handle.client.fetch(renderer.count_rows(schema, table))
    if not rows:
        return 0
    return int(next(iter(rows[0].values())))


# ------------------------------------------------------------------
# Public operations
# ------------------------------------------------------------------


async def table_data_diff(
    source: ConnectionHandle,
    target: ConnectionHandle,
    table: str,
    primary_keys: list[str],
    source_schema: str | None = None,
    target_schema: str | None = None,
) -> TableDataDetail:
    """Full row-level diff of one table.

    Args:
        source: Connection holding the authoritative rows.
        target: Connection to compare against.
        table: Table name (same on both sides).
        primary_keys: Key columns identifying a row.  Required.
        source_schema: Source schema (default: the handle's default).
        target_schema: Target schema (default: the handle's default).

    Returns:
        ``TableDataDetail`` with rows missing on either side and differing rows.

    Raises:
        InvalidPlan: If ``primary_keys`` is empty.
    """
    if not primary_keys:
        raise InvalidPlan(f"Data diff for '{table}' needs primary-key columns")
    source_schema = source.resolve_schema(source_schema)
    target_schema = target.resolve_schema(target_schema)

    source_rows = await fetch_ordered_rows(source, source_schema, table, primary_keys)
    target_rows = await fetch_ordered_rows(target, target_schema, table, primary_keys)

    detail = TableDataDetail(
        table=table,
        schema=target_schema,
        primary_keys=list(primary_keys),
        source_count=len(source_rows),
        target_count=len(target_rows),
    )
    for src_row, tgt_row in merge_join(source_rows, target_rows, primary_keys):
        if tgt_row is None:
            detail.missing_in_target.append(src_row)
        elif src_row is None:
            detail.missing_in_source.append(tgt_row)
        else:
            changed = changed_columns(src_row, tgt_row, primary_keys)
            if changed:
                detail.different.append(
                    RowDifference(
                        key=row_key(src_row, primary_keys),
                        source=src_row,
                        target=tgt_row,
                        changed_columns=changed,
                    )
                )

    logger.debug(
        f"{table}: {len(detail.missing_in_target)} missing in target, "
        f"{len(detail.missing_in_source)} missing in source, {len(detail.different)} different"
    )
    return detail


async def _count_table(
    source: ConnectionHandle,
    target: ConnectionHandle,
    table: str,
    keys: list[str] | None,
    source_schema: str,
    target_schema: str,
) -> TableDataDiff:
    if not keys:
        # No key to join on: only the count delta is known
        source_count = await count_rows(source, source_schema, table)
        target_count = await count_rows(target, target_schema, table)
        return TableDataDiff(
            table=table,
            schema=target_schema,
            source_count=source_count,
            target_count=target_count,
            missing_in_target=max(0, source_count - target_count),
            missing_in_source=max(0, target_count - source_count),
            exact=False,
        )

    source_rows = await fetch_ordered_rows(source, source_schema, table, keys)
    target_rows = await fetch_ordered_rows(target, target_schema, table, keys)
    counts = TableDataDiff(
        table=table,
        schema=target_schema,
        source_count=len(source_rows),
        target_count=len(target_rows),
    )
    for src_row, tgt_row in merge_join(source_rows, target_rows, keys):
        if tgt_row is None:
            counts.missing_in_target += 1
        elif src_row is None:
            counts.missing_in_source += 1
        elif changed_columns(src_row, tgt_row, keys):
            counts.different += 1
    return counts


async def table_row_counts(
    source: ConnectionHandle,
    target: ConnectionHandle,
    tables: list[str],
    primary_keys: dict[str, list[str]] | None = None,
    source_schema: str | None = None,
    target_schema: str | None = None,
) -> list[TableDataDiff]:
    """Per-table missing/different counts without keeping row detail.

    Tables with no entry in ``primary_keys`` fall back to ``COUNT(*)`` and are
    marked ``exact=False``.  A failure on one table is recorded in its
    ``error`` and the remaining tables are still counted.
    """
    primary_keys = primary_keys or {}
    source_schema = source.resolve_schema(source_schema)
    target_schema = target.resolve_schema(target_schema)

    results: list[TableDataDiff] = []
    for table in tables:
        try:
            results.append(
                await _count_table(source, target, table, primary_keys.get(table), source_schema, target_schema)
            )
        except Exception as e:
            logger.warning(f"Could not compare {table}: {e}")
            results.append(TableDataDiff(table=table, schema=target_schema, error=str(e)))
    return results
