"""Sync service: the engine's entry points for one source/target pair.

Wires introspection, schema diffing, migrations, data sync, and dump/restore
together over caller-owned ``ConnectionHandle`` objects.  Connection
lifecycle belongs to the caller; the service never opens or closes handles.

Usage:
    from db_sync.factory import open_connection
    from db_sync.history import InMemoryHistorySink
    from db_sync.schema.introspector import SchemaIntrospector
    from db_sync.service import DatabaseGroup, SyncService

    service = SyncService(SchemaIntrospector(), sink=InMemoryHistorySink())
    source = await open_connection("prod")
    target = await open_connection("staging")

    diff = await service.compare_schemas(source, target)
    script = await service.generate_migration_sql(source, target)
    entry = await service.apply_migration(source, target, dry_run=False, confirm=True)

    group = DatabaseGroup(id="main", name="Main", source=source)
    results = await service.sync_all_tables(group, target)
"""

import logging
from dataclasses import dataclass
from datetime import datetime, timezone
from typing import Any, Literal

from pydantic import BaseModel, Field

from db_sync.adapters.base import ConnectionHandle, Introspector
from db_sync.backup.dump_restore import build_dump_restore_plan, run_dump_restore
from db_sync.backup.models import DumpRestoreResult
from db_sync.config.models import SyncSettings
from db_sync.data.diff import table_data_diff, table_row_counts
from db_sync.data.models import (
    RowSyncResult,
    SyncAllOptions,
    SyncError,
    SyncPhase,
    SyncPlan,
    SyncResult,
    SyncRunLog,
    TableDataDetail,
    TableDataDiff,
)
from db_sync.data.scheduler import CancellationToken, run_dependency_gated
from db_sync.data.sync import apply_into, sync_rows, sync_table
from db_sync.errors import InvalidPlan, OperationCancelled, classify_error
from db_sync.history import HistorySink
from db_sync.schema.comparator import diff_schemas
from db_sync.schema.dependencies import resolve_table_order
from db_sync.schema.migration import annotate_diff, apply_migration, generate_migration
from db_sync.schema.models import (
    DiffKind,
    MigrationHistoryEntry,
    MigrationScript,
    SchemaDiff,
    SchemaSnapshot,
)

logger = logging.getLogger(__name__)


def _check_cancelled(cancel: CancellationToken | None, connection: str) -> None:
    if cancel is not None and cancel.cancelled:
        raise OperationCancelled(f"Cancelled before introspecting {connection}")


# ============================================================================
# Group Models
# ============================================================================


@dataclass
class DatabaseGroup:
    """A source connection whose targets are kept in sync with it.

    Attributes:
        id: Group identifier, recorded in history entries.
        name: Display name.
        source: Source connection handle.
        sync_schema: Whether status checks compare schemas.
        sync_data: Whether status checks compare row counts.
        target_schema: Schema on the targets (default: each target's default).
    """

    id: str
    name: str
    source: ConnectionHandle
    sync_schema: bool = True
    sync_data: bool = False
    target_schema: str | None = None


StatusValue = Literal["in_sync", "out_of_sync", "error", "unchecked"]


class GroupTargetStatus(BaseModel):
    """Schema and data status of one group target."""

    group_id: str
    target_connection: str
    schema_status: StatusValue = "unchecked"
    data_status: StatusValue = "unchecked"
    schema_differences: int = 0
    tables: list[TableDataDiff] = Field(default_factory=list)
    errors: list[str] = Field(default_factory=list)
    checked_at: datetime = Field(default_factory=lambda: datetime.now(timezone.utc))


# ============================================================================
# Service
# ============================================================================


class SyncService:
    """Entry points for schema and data synchronization.

    Args:
        introspector: Produces ``SchemaSnapshot`` objects for a handle.
        sink: Optional history sink for migrations and sync runs.
        settings: Defaults for worker limit, batch size, and truncation.
    """

    def __init__(
        self,
        introspector: Introspector,
        sink: HistorySink | None = None,
        settings: SyncSettings | None = None,
    ):
        self.introspector = introspector
        self.sink = sink
        self.settings = settings or SyncSettings()

    async def _snapshots(
        self,
        source: ConnectionHandle,
        target: ConnectionHandle,
        source_schema: str | None,
        target_schema: str | None,
        cancel: CancellationToken | None = None,
    ) -> tuple[SchemaSnapshot, SchemaSnapshot]:
        _check_cancelled(cancel, source.name)
        source_snapshot = await self.introspector.introspect(source, source.resolve_schema(source_schema))
        _check_cancelled(cancel, target.name)
        target_snapshot = await self.introspector.introspect(target, target.resolve_schema(target_schema))
        return source_snapshot, target_snapshot

    async def _record_run(
        self,
        result: SyncResult,
        source: ConnectionHandle,
        target: ConnectionHandle,
        group_id: str | None = None,
    ) -> None:
        if self.sink is None:
            return
        await self.sink.record_sync_run(SyncRunLog.from_result(result, source.name, target.name, group_id))

    # ------------------------------------------------------------------
    # Schema
    # ------------------------------------------------------------------

    async def compare_schemas(
        self,
        source: ConnectionHandle,
        target: ConnectionHandle,
        source_schema: str | None = None,
        target_schema: str | None = None,
        *,
        cancel: CancellationToken | None = None,
    ) -> SchemaDiff:
        """Introspect both sides and diff them.

        Items the target dialect cannot express carry a ``note`` instead of
        statements.

        Raises:
            OperationCancelled: If ``cancel`` is set before both sides are read.
        """
        source_snapshot, target_snapshot = await self._snapshots(source, target, source_schema, target_schema, cancel)
        diff = diff_schemas(source_snapshot, target_snapshot)
        return annotate_diff(diff, target.dialect)

    async def generate_migration_sql(
        self,
        source: ConnectionHandle,
        target: ConnectionHandle,
        source_schema: str | None = None,
        target_schema: str | None = None,
        *,
        cancel: CancellationToken | None = None,
    ) -> MigrationScript:
        """Build the ordered DDL that makes the target match the source.

        Raises:
            UnsupportedOperation: If a difference cannot be expressed in the
                target dialect.
            OperationCancelled: If ``cancel`` is set before both sides are read.
        """
        source_snapshot, target_snapshot = await self._snapshots(source, target, source_schema, target_schema, cancel)
        diff = diff_schemas(source_snapshot, target_snapshot)
        return generate_migration(diff, target.dialect)

    async def apply_migration(
        self,
        source: ConnectionHandle,
        target: ConnectionHandle,
        source_schema: str | None = None,
        target_schema: str | None = None,
        *,
        group_id: str | None = None,
        description: str | None = None,
        dry_run: bool = True,
        confirm: bool = False,
    ) -> MigrationHistoryEntry:
        """Generate and apply the migration from ``source`` to ``target``.

        Example:
            entry = await service.apply_migration(source, target, dry_run=False, confirm=True)
            if not entry.success:
                print(entry.error)
        """
        source_schema = source.resolve_schema(source_schema)
        target_schema = target.resolve_schema(target_schema)
        script = await self.generate_migration_sql(source, target, source_schema, target_schema)
        return await apply_migration(
            target,
            script,
            target_schema=target_schema,
            source_connection=source.name,
            source_schema=source_schema,
            group_id=group_id,
            description=description,
            sink=self.sink,
            dry_run=dry_run,
            confirm=confirm,
        )

    # ------------------------------------------------------------------
    # Data comparison
    # ------------------------------------------------------------------

    async def table_row_counts(
        self,
        source: ConnectionHandle,
        target: ConnectionHandle,
        source_schema: str | None = None,
        target_schema: str | None = None,
        *,
        tables: list[str] | None = None,
        primary_keys: dict[str, list[str]] | None = None,
        use_declared_primary_keys: bool = True,
    ) -> list[TableDataDiff]:
        """Per-table missing/different counts for every source table.

        Keys come from ``primary_keys`` first, then (optionally) from the
        source's declared primary keys.  Tables without keys get approximate
        counts.
        """
        source_schema = source.resolve_schema(source_schema)
        snapshot = await self.introspector.introspect(source, source_schema)
        selected = snapshot.table_names if tables is None else tables
        keys = self._resolve_keys(snapshot, selected, primary_keys or {}, use_declared_primary_keys)
        return await table_row_counts(
            source,
            target,
            selected,
            primary_keys=keys,
            source_schema=source_schema,
            target_schema=target_schema,
        )

    async def table_data_diff(
        self,
        source: ConnectionHandle,
        target: ConnectionHandle,
        table: str,
        primary_keys: list[str],
        source_schema: str | None = None,
        target_schema: str | None = None,
    ) -> TableDataDetail:
        """Row-level diff of one table (see ``db_sync.data.diff``)."""
        return await table_data_diff(source, target, table, primary_keys, source_schema, target_schema)

    @staticmethod
    def _resolve_keys(
        snapshot: SchemaSnapshot,
        tables: list[str],
        explicit: dict[str, list[str]],
        use_declared: bool,
    ) -> dict[str, list[str]]:
        keys: dict[str, list[str]] = {}
        for table in tables:
            if explicit.get(table):
                keys[table] = list(explicit[table])
                continue
            definition = snapshot.table(table)
            if use_declared and definition is not None and definition.primary_key:
                keys[table] = list(definition.primary_key)
        return keys

    # ------------------------------------------------------------------
    # Data sync
    # ------------------------------------------------------------------

    async def sync_table(
        self,
        source: ConnectionHandle,
        target: ConnectionHandle,
        plan: SyncPlan,
        *,
        group_id: str | None = None,
        cancel: CancellationToken | None = None,
    ) -> SyncResult:
        """Sync one table and record the run.

        Inserts carry only the columns the target table has.
        """
        plan.check()
        target_columns = None
        if cancel is None or not cancel.cancelled:
            snapshot = await self.introspector.introspect(target, target.resolve_schema(plan.target_schema))
            definition = snapshot.table(plan.table)
            if definition is not None:
                target_columns = [c.name for c in definition.columns]
        result = await sync_table(source, target, plan, cancel=cancel, target_columns=target_columns)
        if not result.cancelled:
            await self._record_run(result, source, target, group_id)
        return result

    async def sync_all_tables(
        self,
        group: DatabaseGroup,
        target: ConnectionHandle,
        schema: str | None = None,
        options: SyncAllOptions | None = None,
        cancel: CancellationToken | None = None,
    ) -> list[SyncResult]:
        """Sync every table of the group's source into ``target``.

        Inserts and updates run parent-first through the dependency-gated
        queue.  When ``delete_extra`` is set, deletes run afterwards in a
        second, child-first pass so no parent row is removed while a child
        still references it.

        Args:
            group: Group whose source is authoritative.
            target: Connection to write to.
            schema: Source schema (and target schema unless the group sets one).
            options: Sync options (default: settings-derived defaults).
            cancel: Optional token; tables not yet started are marked cancelled.

        Returns:
            One ``SyncResult`` per table, in dependency order.

        Raises:
            InvalidPlan: If the selection is empty or names unknown tables, or
                the options produce a malformed plan.
        """
        if options is None:
            options = SyncAllOptions(
                insert_missing=self.settings.insert_missing,
                update_different=self.settings.update_different,
                delete_extra=self.settings.delete_extra,
                conflict_strategy=self.settings.conflict_strategy,
                batch_size=self.settings.batch_size,
                worker_limit=self.settings.worker_limit,
            )
        source = group.source
        source_schema = source.resolve_schema(schema)
        target_schema = target.resolve_schema(group.target_schema or schema)

        source_snapshot, target_snapshot = await self._snapshots(source, target, source_schema, target_schema)
        if options.tables is not None:
            unknown = sorted(set(options.tables) - set(source_snapshot.table_names))
            if unknown:
                raise InvalidPlan(f"Unknown table(s) in {source_snapshot.schema_name}: {', '.join(unknown)}")
        order = resolve_table_order(source_snapshot, options.tables)
        if not order.order:
            raise InvalidPlan(f"No tables selected for sync of {source_snapshot.schema_name}")
        keys = self._resolve_keys(
            source_snapshot, order.order, options.primary_keys, options.use_declared_primary_keys
        )

        plans: dict[str, SyncPlan] = {}
        for table, table_keys in keys.items():
            plan = SyncPlan(
                table=table,
                source_schema=source_schema,
                target_schema=target_schema,
                primary_keys=table_keys,
                insert_missing=options.insert_missing,
                update_different=options.update_different,
                delete_extra=options.delete_extra,
                conflict_strategy=options.conflict_strategy,
                timestamp_column=options.timestamp_column,
                batch_size=options.batch_size,
            )
            plan.check()
            plans[table] = plan

        target_columns: dict[str, list[str]] = {}
        for table in order.order:
            definition = target_snapshot.table(table)
            if definition is not None:
                target_columns[table] = [c.name for c in definition.columns]

        results = {table: SyncResult(table=table, schema=target_schema) for table in order.order}
        details: dict[str, TableDataDetail] = {}

        async def upsert(table: str) -> SyncResult:
            result = results[table]
            plan = plans.get(table)
            if plan is None:
                message = f"No primary key for '{table}': declare one or pass primary_keys"
                result.error = message
                result.errors.append(SyncError(operation="fetch", message=message, error_kind="invalid_plan"))
                return result
            try:
                detail = await table_data_diff(
                    source, target, table, plan.primary_keys, source_schema, target_schema
                )
            except Exception as e:
                logger.warning(f"Diffing {table} failed: {e}")
                result.error = f"Failed to diff {table}: {e}"
                result.errors.append(SyncError(operation="fetch", message=str(e), error_kind=classify_error(e)))
                return result
            details[table] = detail
            forward = plan.model_copy(update={"delete_extra": False})
            await apply_into(result, target, forward, detail, target_columns.get(table))
            return result

        outcome = await run_dependency_gated(
            order.order, order.dependencies, upsert, worker_limit=options.worker_limit, cancel=cancel
        )
        self._absorb_outcome(results, outcome.skipped, outcome.failed)

        if options.delete_extra:
            delete_tables = [t for t in order.reverse_order() if t in details and not results[t].cancelled]
            children: dict[str, set[str]] = {t: set() for t in delete_tables}
            for table, deps in order.dependencies.items():
                for parent in deps:
                    if parent in children and table != parent:
                        children[parent].add(table)

            async def delete(table: str) -> SyncResult:
                backward = plans[table].model_copy(
                    update={"insert_missing": False, "update_different": False, "delete_extra": True}
                )
                return await apply_into(results[table], target, backward, details[table])

            delete_outcome = await run_dependency_gated(
                delete_tables, children, delete, worker_limit=options.worker_limit, cancel=cancel
            )
            for table in delete_outcome.skipped:
                results[table].error = "Cancelled before deletes were applied"
            self._absorb_outcome(results, [], delete_outcome.failed)

        now = datetime.now(timezone.utc)
        ordered = [results[table] for table in order.order]
        for result in ordered:
            result.phase = SyncPhase.DONE
            result.completed_at = now
            if not result.cancelled:
                await self._record_run(result, source, target, group.id)

        logger.info(
            f"Synced {len(ordered)} table(s) from {source.name} to {target.name}: "
            f"{sum(r.inserted for r in ordered)} inserted, {sum(r.updated for r in ordered)} updated, "
            f"{sum(r.deleted for r in ordered)} deleted"
        )
        return ordered

    @staticmethod
    def _absorb_outcome(
        results: dict[str, SyncResult],
        skipped: list[str],
        failed: dict[str, BaseException],
    ) -> None:
        for table in skipped:
            results[table].cancelled = True
        for table, exc in failed.items():
            results[table].error = str(exc)
            results[table].errors.append(
                SyncError(operation="fetch", message=str(exc), error_kind=classify_error(exc))
            )

    async def sync_rows(
        self,
        source: ConnectionHandle,
        target: ConnectionHandle,
        table: str,
        keys: list[tuple | dict[str, Any]],
        primary_keys: list[str],
        mode: Literal["insert", "upsert"] = "upsert",
        source_schema: str | None = None,
        target_schema: str | None = None,
    ) -> RowSyncResult:
        """Copy specific rows by key (see ``db_sync.data.sync.sync_rows``)."""
        return await sync_rows(source, target, table, keys, primary_keys, mode, source_schema, target_schema)

    # ------------------------------------------------------------------
    # Dump / restore
    # ------------------------------------------------------------------

    async def dump_restore(
        self,
        source: ConnectionHandle,
        target: ConnectionHandle,
        source_schema: str | None = None,
        target_schema: str | None = None,
        *,
        tables: list[str] | None = None,
        truncate_target: bool | None = None,
        truncate_overrides: dict[str, bool] | None = None,
        include_schema: bool = False,
        cancel: CancellationToken | None = None,
    ) -> DumpRestoreResult:
        """Copy whole tables from source to target in dependency order.

        With ``include_schema`` the tables missing on the target are created
        first from the source definitions.

        Raises:
            InvalidPlan: If the table selection is empty or unknown.
        """
        source_schema = source.resolve_schema(source_schema)
        target_schema = target.resolve_schema(target_schema)
        snapshot = await self.introspector.introspect(source, source_schema)
        plan = build_dump_restore_plan(
            snapshot,
            target_schema=target_schema,
            tables=tables,
            truncate_target=self.settings.truncate_target if truncate_target is None else truncate_target,
            truncate_overrides=truncate_overrides,
            batch_size=self.settings.batch_size,
            include_schema=include_schema,
        )

        schema_script = None
        if include_schema:
            target_snapshot = await self.introspector.introspect(target, target_schema)
            diff = diff_schemas(snapshot, target_snapshot)
            created = [i for i in diff.items if i.kind == DiffKind.TABLE_ADDED and i.table in plan.tables]
            schema_script = generate_migration(diff.model_copy(update={"items": created}), target.dialect)

        return await run_dump_restore(
            source,
            target,
            plan,
            schema_script=schema_script,
            cancel=cancel,
            worker_limit=self.settings.worker_limit,
        )

    # ------------------------------------------------------------------
    # Groups
    # ------------------------------------------------------------------

    async def check_group_status(
        self,
        group: DatabaseGroup,
        target: ConnectionHandle,
        schema: str | None = None,
        primary_keys: dict[str, list[str]] | None = None,
    ) -> GroupTargetStatus:
        """Check whether one group target matches the group's source.

        Failures are reported in the status rather than raised, so a status
        sweep over many targets never stops at the first unreachable one.
        """
        target_schema = group.target_schema or schema
        status = GroupTargetStatus(group_id=group.id, target_connection=target.name)

        if group.sync_schema:
            try:
                diff = await self.compare_schemas(group.source, target, schema, target_schema)
                status.schema_differences = diff.summary.total
                status.schema_status = "in_sync" if diff.is_empty else "out_of_sync"
            except Exception as e:
                logger.warning(f"Schema check of {target.name} failed: {e}")
                status.schema_status = "error"
                status.errors.append(f"schema: {e}")

        if group.sync_data:
            try:
                status.tables = await self.table_row_counts(
                    group.source, target, schema, target_schema, primary_keys=primary_keys
                )
                failed = [t for t in status.tables if t.error]
                if failed:
                    status.data_status = "error"
                    status.errors.extend(f"{t.table}: {t.error}" for t in failed)
                elif all(t.in_sync for t in status.tables):
                    status.data_status = "in_sync"
                else:
                    status.data_status = "out_of_sync"
            except Exception as e:
                logger.warning(f"Data check of {target.name} failed: {e}")
                status.data_status = "error"
                status.errors.append(f"data: {e}")

        return status
