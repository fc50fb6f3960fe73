"""Bulk copy of a schema's tables from one connection to another.

Target tables are emptied in reverse dependency order (children first), then
rows are copied in dependency order (parents first) through the
dependency-gated queue.  Each table is isolated: a failure is recorded in
that table's result and the remaining tables continue.

Foreign keys that close a cycle are deferred: their (nullable) columns are
inserted as NULL and patched with keyed UPDATEs after every table is copied.

Usage:
    from db_sync.backup.dump_restore import build_dump_restore_plan, run_dump_restore

    plan = build_dump_restore_plan(source_snapshot, target_schema="public")
    result = await run_dump_restore(source, target, plan, worker_limit=4)
    for table_result in result.table_results:
        print(table_result.table, table_result.status, table_result.rows_copied)
"""

import logging
from collections import defaultdict
from typing import Any

from db_sync.adapters.base import ConnectionHandle
from db_sync.backup.models import DumpRestorePlan, DumpRestoreResult, TableCopyResult
from db_sync.data.diff import row_key
from db_sync.data.scheduler import CancellationToken, run_dependency_gated
from db_sync.errors import InvalidPlan
from db_sync.schema.dependencies import resolve_table_order
from db_sync.schema.dialects import get_renderer
from db_sync.schema.models import MigrationScript, SchemaSnapshot

logger = logging.getLogger(__name__)


def build_dump_restore_plan(
    snapshot: SchemaSnapshot,
    *,
    target_schema: str | None = None,
    tables: list[str] | None = None,
    truncate_target: bool = True,
    truncate_overrides: dict[str, bool] | None = None,
    batch_size: int = 1000,
    include_schema: bool = False,
) -> DumpRestorePlan:
    """Build a copy plan from the source snapshot.

    Args:
        snapshot: Source schema snapshot.
        target_schema: Schema to restore into (default: the source schema name).
        tables: Optional subset of tables (default: every table).
        truncate_target: Default truncate flag for every table.
        truncate_overrides: Per-table truncate flags overriding the default.
        batch_size: Rows per page and insert batch.
        include_schema: Create tables missing on the target before copying.

    Returns:
        ``DumpRestorePlan`` with tables in dependency order.

    Raises:
        InvalidPlan: If the selection is empty, names unknown tables, or the
            batch size is not positive.
    """
    if batch_size < 1:
        raise InvalidPlan(f"Dump/restore batch_size must be positive, got {batch_size}")
    if tables is not None:
        unknown = sorted(set(tables) - set(snapshot.table_names))
        if unknown:
            raise InvalidPlan(f"Unknown table(s) in {snapshot.schema_name}: {', '.join(unknown)}")
    order = resolve_table_order(snapshot, tables)
    if not order.order:
        raise InvalidPlan(f"No tables selected for dump/restore of {snapshot.schema_name}")

    overrides = truncate_overrides or {}
    primary_keys: dict[str, list[str]] = {}
    for name in order.order:
        keys = snapshot.table(name).primary_key
        if keys:
            primary_keys[name] = keys

    deferred_columns: dict[str, list[str]] = defaultdict(list)
    for constraint in order.deferred:
        table_def = snapshot.table(constraint.table)
        columns = [table_def.column(c) for c in constraint.columns]
        if constraint.table in primary_keys and all(col is not None and col.nullable for col in columns):
            for col in constraint.columns:
                if col not in deferred_columns[constraint.table]:
                    deferred_columns[constraint.table].append(col)
        else:
            logger.warning(
                f"Cannot defer {constraint.constraint} on {constraint.table}: "
                f"needs a primary key and nullable columns"
            )

    return DumpRestorePlan(
        source_schema=snapshot.schema_name,
        target_schema=target_schema or snapshot.schema_name,
        tables=order.order,
        dependencies={t: sorted(deps) for t, deps in order.dependencies.items()},
        truncate={t: overrides.get(t, truncate_target) for t in order.order},
        batch_size=batch_size,
        primary_keys=primary_keys,
        deferred_columns=dict(deferred_columns),
        deferred_constraints=order.deferred,
        include_schema=include_schema,
    )


async def run_dump_restore(
    source: ConnectionHandle,
    target: ConnectionHandle,
    plan: DumpRestorePlan,
    *,
    schema_script: MigrationScript | None = None,
    cancel: CancellationToken | None = None,
    worker_limit: int = 4,
) -> DumpRestoreResult:
    """Execute a dump/restore plan.

    Args:
        source: Connection to read rows from.
        target: Connection to write rows to.
        plan: Plan from ``build_dump_restore_plan()``.
        schema_script: DDL creating missing target tables, run first when
            ``plan.include_schema`` is set.
        cancel: Optional token; once cancelled no new table is started.
        worker_limit: Maximum number of tables copied concurrently.

    Returns:
        ``DumpRestoreResult`` with one ``TableCopyResult`` per planned table.
    """
    result = DumpRestoreResult(deferred_constraints=list(plan.deferred_constraints))
    table_results = {t: TableCopyResult(table=t) for t in plan.tables}
    result.table_results = [table_results[t] for t in plan.tables]
    source_renderer = get_renderer(source.dialect)
    target_renderer = get_renderer(target.dialect)

    # 1. Create missing tables
    if plan.include_schema and schema_script is not None:
        for sql in schema_script.statements:
            try:
                await target.client.execute(sql)
            except Exception as e:
                result.errors.append(f"Schema creation failed: {e}")
                logger.error(f"Schema creation on {target.name} failed: {e}")
                for table_result in result.table_results:
                    table_result.status = "skipped"
                return result

    # 2. Truncate children first
    blocked: set[str] = set()
    for table in plan.reverse_tables():
        if cancel is not None and cancel.cancelled:
            break
        if not plan.truncate.get(table, False):
            continue
        try:
            await target.client.execute(target_renderer.delete_all(plan.target_schema, table))
            logger.debug(f"Truncated {table}")
        except Exception as e:
            table_results[table].error = f"Truncate failed: {e}"
            table_results[table].status = "failed"
            result.errors.append(f"{table}: truncate failed: {e}")
            blocked.add(table)

    # 3. Copy parents first
    patches: dict[str, list[tuple[tuple, dict[str, Any]]]] = defaultdict(list)

    async def copy(table: str) -> TableCopyResult:
        table_result = table_results[table]
        if table in blocked:
            return table_result
        keys = plan.primary_keys.get(table)
        deferred = plan.deferred_columns.get(table, [])
        first_error: str | None = None
        try:
            offset = 0
            while True:
                if keys:
                    page = await source.client.fetch(
                        source_renderer.select_page(plan.source_schema, table, keys, plan.batch_size, offset)
                    )
                else:
                    # Without a key there is no stable order to page on
                    page = await source.client.fetch(source_renderer.select_rows(plan.source_schema, table))
                for row in page:
                    patch = {c: row[c] for c in deferred if row.get(c) is not None}
                    values = {**row, **{c: None for c in patch}}
                    columns = list(values)
                    try:
                        await target.client.execute(
                            target_renderer.insert_row(plan.target_schema, table, columns),
                            {f"p{i}": values[c] for i, c in enumerate(columns)},
                        )
                        table_result.rows_copied += 1
                        if patch:
                            patches[table].append((row_key(row, keys), patch))
                    except Exception as e:
                        table_result.rows_failed += 1
                        first_error = first_error or str(e)
                if not keys or len(page) < plan.batch_size:
                    break
                offset += plan.batch_size
                logger.debug(f"{table}: copied {table_result.rows_copied} rows so far")
        except Exception as e:
            logger.warning(f"Copying {table} failed: {e}")
            table_result.error = str(e)
            table_result.status = "failed"
            return table_result

        if table_result.rows_failed:
            table_result.error = f"{table_result.rows_failed} row(s) failed; first error: {first_error}"
            table_result.status = "failed"
        return table_result

    dependencies = {t: set(deps) for t, deps in plan.dependencies.items()}
    outcome = await run_dependency_gated(
        plan.tables, dependencies, copy, worker_limit=worker_limit, cancel=cancel
    )
    for table in outcome.skipped:
        table_results[table].status = "skipped"
        result.skipped_tables.append(table)
    for table, exc in outcome.failed.items():
        table_results[table].error = str(exc)
        table_results[table].status = "failed"

    # 4. Patch deferred foreign-key columns
    for table, rows in patches.items():
        keys = plan.primary_keys[table]
        table_result = table_results[table]
        for key_values, patch in rows:
            columns = list(patch)
            params = {f"p{i}": patch[c] for i, c in enumerate(columns)}
            params.update({f"w{i}": v for i, v in enumerate(key_values)})
            try:
                await target.client.execute(
                    target_renderer.update_row(plan.target_schema, table, columns, keys), params
                )
            except Exception as e:
                table_result.status = "failed"
                table_result.error = table_result.error or f"Deferred foreign key patch failed: {e}"

    attempted = [r for r in result.table_results if r.status != "skipped"]
    result.tables_processed = len(attempted)
    result.rows_copied = sum(r.rows_copied for r in result.table_results)
    for table_result in attempted:
        if table_result.error and table_result.table not in blocked:
            result.errors.append(f"{table_result.table}: {table_result.error}")
    result.success = (
        not result.errors
        and not result.skipped_tables
        and any(r.status == "completed" for r in result.table_results)
    )
    logger.info(
        f"Dump/restore {plan.source_schema} -> {plan.target_schema}: "
        f"{result.tables_processed} table(s), {result.rows_copied} row(s), {len(result.errors)} error(s)"
    )
    return result
