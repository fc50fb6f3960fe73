"""Row-level data synchronization.

Applies a ``SyncPlan`` to one table: inserts rows missing in the target,
resolves rows that differ according to the conflict strategy, and optionally
deletes rows the source does not have.  Every row statement is isolated: a
failing row is recorded and the rest of its batch (and table) continues.

Usage:
    from db_sync.data.models import SyncPlan
    from db_sync.data.sync import sync_table

    plan = SyncPlan(table="users", source_schema="public", target_schema="public",
                    primary_keys=["id"])
    result = await sync_table(source, target, plan)
    print(result.status, result.inserted, result.updated, len(result.errors))
"""

import logging
from datetime import date, datetime, timezone
from typing import Any, Literal

from db_sync.adapters.base import ConnectionHandle
from db_sync.data.diff import row_key, table_data_diff
from db_sync.data.models import (
    ConflictStrategy,
    RowSyncResult,
    SyncError,
    SyncPhase,
    SyncPlan,
    SyncResult,
    SyncSkip,
    TableDataDetail,
)
from db_sync.data.scheduler import CancellationToken
from db_sync.errors import InvalidPlan, classify_error
from db_sync.schema.dialects import DialectRenderer, get_renderer

logger = logging.getLogger(__name__)


# ------------------------------------------------------------------
# Conflict resolution
# ------------------------------------------------------------------


def parse_timestamp(value: Any) -> datetime | None:
    """Interpret a timestamp column value; ``None`` if it cannot be read.

    Accepts datetimes, dates, ISO-8601 strings (``Z`` suffix included) and
    epoch seconds.  Naive values are taken as UTC.
    """
    if isinstance(value, datetime):
        parsed = value
    elif isinstance(value, date):
        parsed = datetime(value.year, value.month, value.day)
    elif isinstance(value, (int, float)) and not isinstance(value, bool):
        try:
            parsed = datetime.fromtimestamp(value, tz=timezone.utc)
        except (OverflowError, OSError, ValueError):
            return None
    elif isinstance(value, str) and value.strip():
        try:
            parsed = datetime.fromisoformat(value.strip().replace("Z", "+00:00"))
        except ValueError:
            return None
    else:
        return None
    if parsed.tzinfo is None:
        parsed = parsed.replace(tzinfo=timezone.utc)
    return parsed


def resolve_conflict(plan: SyncPlan, source_row: dict[str, Any], target_row: dict[str, Any]) -> str | None:
    """Decide whether a differing row should be overwritten from the source.

    Returns:
        ``None`` to update the target, or the reason the row is skipped.
    """
    if plan.conflict_strategy == ConflictStrategy.SOURCE_WINS:
        return None
    if plan.conflict_strategy == ConflictStrategy.TARGET_WINS:
        return "target_wins"

    source_ts = parse_timestamp(source_row.get(plan.timestamp_column))
    target_ts = parse_timestamp(target_row.get(plan.timestamp_column))
    if source_ts is None or target_ts is None:
        return f"timestamp '{plan.timestamp_column}' missing or unreadable"
    if source_ts > target_ts:
        return None
    return "target is newer or equal"


# ------------------------------------------------------------------
# Row statements
# ------------------------------------------------------------------


def _key_params(values: tuple) -> dict[str, Any]:
    return {f"w{i}": v for i, v in enumerate(values)}


async def _insert_row(
    target: ConnectionHandle,
    renderer: DialectRenderer,
    schema: str,
    table: str,
    row: dict[str, Any],
    target_columns: list[str] | None,
) -> None:
    columns = [c for c in row if target_columns is None or c in target_columns]
    params = {f"p{i}": row[c] for i, c in enumerate(columns)}
    await target.client.execute(renderer.insert_row(schema, table, columns), params)


async def _update_row(
    target: ConnectionHandle,
    renderer: DialectRenderer,
    schema: str,
    table: str,
    keys: list[str],
    source_row: dict[str, Any],
    target_row: dict[str, Any] | None,
) -> None:
    columns = [c for c in source_row if c not in keys and (target_row is None or c in target_row)]
    if not columns:
        return
    params = {f"p{i}": source_row[c] for i, c in enumerate(columns)}
    params.update(_key_params(row_key(source_row, keys)))
    await target.client.execute(renderer.update_row(schema, table, columns, keys), params)


async def _delete_row(
    target: ConnectionHandle,
    renderer: DialectRenderer,
    schema: str,
    table: str,
    keys: list[str],
    row: dict[str, Any],
) -> None:
    await target.client.execute(renderer.delete_row(schema, table, keys), _key_params(row_key(row, keys)))


def _batches(rows: list, size: int):
    for start in range(0, len(rows), size):
        yield start // size + 1, rows[start:start + size]


# ------------------------------------------------------------------
# Table sync
# ------------------------------------------------------------------


async def apply_into(
    result: SyncResult,
    target: ConnectionHandle,
    plan: SyncPlan,
    detail: TableDataDetail,
    target_columns: list[str] | None = None,
) -> SyncResult:
    """Apply ``detail`` to the target per ``plan``, accumulating into ``result``.

    Inserts run first, then updates, then deletes, each in batches of
    ``plan.batch_size``.  Row failures are recorded in ``result.errors``.
    """
    renderer = get_renderer(target.dialect)
    schema = plan.target_schema
    table = plan.table
    keys = plan.primary_keys
    result.phase = SyncPhase.APPLYING

    if plan.insert_missing:
        for number, batch in _batches(detail.missing_in_target, plan.batch_size):
            logger.debug(f"{table}: insert batch {number} ({len(batch)} rows)")
            for row in batch:
                try:
                    await _insert_row(target, renderer, schema, table, row, target_columns)
                    result.inserted += 1
                except Exception as e:
                    result.errors.append(
                        SyncError(operation="insert", key=row_key(row, keys), message=str(e), error_kind=classify_error(e))
                    )

    if plan.update_different:
        for number, batch in _batches(detail.different, plan.batch_size):
            logger.debug(f"{table}: update batch {number} ({len(batch)} rows)")
            for diff in batch:
                skip_reason = resolve_conflict(plan, diff.source, diff.target)
                if skip_reason is not None:
                    result.skipped.append(SyncSkip(key=diff.key, reason=skip_reason))
                    continue
                try:
                    await _update_row(target, renderer, schema, table, keys, diff.source, diff.target)
                    result.updated += 1
                except Exception as e:
                    result.errors.append(
                        SyncError(operation="update", key=diff.key, message=str(e), error_kind=classify_error(e))
                    )

    if plan.delete_extra:
        for number, batch in _batches(detail.missing_in_source, plan.batch_size):
            logger.debug(f"{table}: delete batch {number} ({len(batch)} rows)")
            for row in batch:
                try:
                    await _delete_row(target, renderer, schema, table, keys, row)
                    result.deleted += 1
                except Exception as e:
                    result.errors.append(
                        SyncError(operation="delete", key=row_key(row, keys), message=str(e), error_kind=classify_error(e))
                    )

    return result


async def apply_sync(
    target: ConnectionHandle,
    plan: SyncPlan,
    detail: TableDataDetail,
    target_columns: list[str] | None = None,
) -> SyncResult:
    """Apply an already computed diff to the target (the applying stage only)."""
    plan.check()
    result = SyncResult(table=plan.table, schema=plan.target_schema)
    await apply_into(result, target, plan, detail, target_columns)
    result.phase = SyncPhase.DONE
    result.completed_at = datetime.now(timezone.utc)
    return result


async def sync_table(
    source: ConnectionHandle,
    target: ConnectionHandle,
    plan: SyncPlan,
    *,
    cancel: CancellationToken | None = None,
    target_columns: list[str] | None = None,
) -> SyncResult:
    """Diff one table and apply the plan: ``diffing -> applying -> done``.

    Args:
        source: Connection holding the authoritative rows.
        target: Connection to write to.
        plan: What to apply.  Checked before any work starts.
        cancel: Optional token; a cancelled token skips the table.
        target_columns: Target column names; inserts drop other columns.

    Returns:
        ``SyncResult``.  A diffing failure is recorded in ``result.error``.

    Raises:
        InvalidPlan: If the plan is malformed.

    Example:
        result = await sync_table(source, target, plan)
        if result.status == "partial":
            for err in result.errors:
                print(err.key, err.message)
    """
    plan.check()
    result = SyncResult(table=plan.table, schema=plan.target_schema)

    if cancel is not None and cancel.cancelled:
        result.cancelled = True
        return result

    try:
        detail = await table_data_diff(
            source,
            target,
            plan.table,
            plan.primary_keys,
            source_schema=plan.source_schema,
            target_schema=plan.target_schema,
        )
    except Exception as e:
        logger.warning(f"Diffing {plan.table} failed: {e}")
        result.error = f"Failed to diff {plan.table}: {e}"
        result.errors.append(SyncError(operation="fetch", message=str(e), error_kind=classify_error(e)))
        result.phase = SyncPhase.DONE
        result.completed_at = datetime.now(timezone.utc)
        return result

    await apply_into(result, target, plan, detail, target_columns)
    result.phase = SyncPhase.DONE
    result.completed_at = datetime.now(timezone.utc)
    logger.info(
        f"Synced {plan.table}: {result.inserted} inserted, {result.updated} updated, "
        f"{result.deleted} deleted, {len(result.skipped)} skipped, {len(result.errors)} error(s)"
    )
    return result


# ------------------------------------------------------------------
# Explicit rows
# ------------------------------------------------------------------


async def sync_rows(
    source: ConnectionHandle,
    target: ConnectionHandle,
    table: str,
    keys: list[tuple | dict[str, Any]],
    primary_keys: list[str],
    mode: Literal["insert", "upsert"] = "upsert",
    source_schema: str | None = None,
    target_schema: str | None = None,
) -> RowSyncResult:
    """Copy specific rows (by key) from source to target.

    In ``insert`` mode rows already present in the target are left alone; in
    ``upsert`` mode they are updated.

    Raises:
        InvalidPlan: If ``primary_keys`` is empty or ``mode`` is unknown.
    """
    if not primary_keys:
        raise InvalidPlan(f"Row sync for '{table}' needs primary-key columns")
    if mode not in ("insert", "upsert"):
        raise InvalidPlan(f"Unknown row sync mode: {mode}")

    source_schema = source.resolve_schema(source_schema)
    target_schema = target.resolve_schema(target_schema)
    source_renderer = get_renderer(source.dialect)
    target_renderer = get_renderer(target.dialect)
    result = RowSyncResult(table=table)

    for key in keys:
        values = tuple(key[k] for k in primary_keys) if isinstance(key, dict) else tuple(key)
        params = _key_params(values)
        operation = "fetch"
        try:
            rows = await source.client.fetch(
                source_renderer.select_by_key(source_schema, table, primary_keys), params
            )
            if not rows:
                result.errors.append(SyncError(operation="fetch", key=values, message="Row not found in source"))
                continue
            source_row = rows[0]

            existing = await target.client.fetch(
                target_renderer.exists_by_key(target_schema, table, primary_keys), params
            )
            if existing:
                if mode == "upsert":
                    operation = "update"
                    await _update_row(target, target_renderer, target_schema, table, primary_keys, source_row, None)
                    result.updated += 1
            else:
                operation = "insert"
                await _insert_row(target, target_renderer, target_schema, table, source_row, None)
                result.inserted += 1
        except Exception as e:
            result.errors.append(
                SyncError(operation=operation, key=values, message=str(e), error_kind=classify_error(e))
            )

    return result
