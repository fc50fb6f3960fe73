"""Dump/restore plan and result models.

A ``DumpRestorePlan`` lists the tables to copy in dependency order (parents
first) together with the per-table truncate flags and the batch size used
for paging.  Results are reported per table so one failing table does not
hide the others.

Usage:
    from db_sync.backup.dump_restore import build_dump_restore_plan

    plan = build_dump_restore_plan(snapshot, target_schema="staging")
    plan.tables          # ["authors", "books", "reviews"]
"""

from typing import Literal

from pydantic import BaseModel, Field

from db_sync.schema.dependencies import DeferredConstraint


class DumpRestorePlan(BaseModel):
    """Declarative copy plan. Tables ordered by dependency (parents first)."""

    source_schema: str
    target_schema: str
    tables: list[str]                                       # dependency order
    dependencies: dict[str, list[str]] = Field(default_factory=dict)  # gating edges
    truncate: dict[str, bool] = Field(default_factory=dict)  # per-table truncate flag
    batch_size: int = 1000                                  # rows per page and insert batch
    primary_keys: dict[str, list[str]] = Field(default_factory=dict)  # page ordering, deferred patches
    deferred_columns: dict[str, list[str]] = Field(default_factory=dict)  # inserted NULL, patched last
    deferred_constraints: list[DeferredConstraint] = Field(default_factory=list)
    include_schema: bool = False                            # create missing tables first

    def reverse_tables(self) -> list[str]:
        """Children before parents (truncate order)."""
        return list(reversed(self.tables))


class TableCopyResult(BaseModel):
    """Outcome of copying one table."""

    table: str
    rows_copied: int = 0
    rows_failed: int = 0
    error: str | None = None
    status: Literal["completed", "failed", "skipped"] = "completed"


class DumpRestoreResult(BaseModel):
    """Outcome of a whole dump/restore run."""

    success: bool = False
    tables_processed: int = 0
    rows_copied: int = 0
    table_results: list[TableCopyResult] = Field(default_factory=list)
    skipped_tables: list[str] = Field(default_factory=list)  # cancelled before start
    deferred_constraints: list[DeferredConstraint] = Field(default_factory=list)
    errors: list[str] = Field(default_factory=list)

    @property
    def status(self) -> str:
        if self.success:
            return "success"
        if self.rows_copied > 0:
            return "partial"
        return "failed"
