"""Pydantic models for row-level data diffs and synchronization."""

import uuid
from datetime import datetime, timezone
from enum import Enum
from typing import Any, Literal

from pydantic import BaseModel, ConfigDict, Field

from db_sync.errors import InvalidPlan

RowKey = tuple  # Primary-key values in key-column order


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


# ============================================================================
# Data Diff Models
# ============================================================================


class TableDataDiff(BaseModel):
    """Row-count level comparison of one table on both sides.

    ``exact`` is False when no primary key was supplied and the numbers are
    derived from ``COUNT(*)`` alone.
    """

    table: str
    schema_name: str = Field(alias="schema")
    source_count: int = 0
    target_count: int = 0
    missing_in_target: int = 0
    missing_in_source: int = 0
    different: int = 0
    exact: bool = True
    error: str | None = None

    model_config = ConfigDict(populate_by_name=True)

    @property
    def in_sync(self) -> bool:
        return self.error is None and not (self.missing_in_target or self.missing_in_source or self.different)


class RowDifference(BaseModel):
    """A row present on both sides whose non-key values differ."""

    key: RowKey
    source: dict[str, Any]
    target: dict[str, Any]
    changed_columns: list[str] = Field(default_factory=list)


class TableDataDetail(BaseModel):
    """Full row-level diff of one table."""

    table: str
    schema_name: str = Field(alias="schema")
    primary_keys: list[str]
    source_count: int = 0
    target_count: int = 0
    missing_in_target: list[dict[str, Any]] = Field(default_factory=list)
    missing_in_source: list[dict[str, Any]] = Field(default_factory=list)
    different: list[RowDifference] = Field(default_factory=list)

    model_config = ConfigDict(populate_by_name=True)

    def summary(self) -> TableDataDiff:
        return TableDataDiff(
            table=self.table,
            schema=self.schema_name,
            source_count=self.source_count,
            target_count=self.target_count,
            missing_in_target=len(self.missing_in_target),
            missing_in_source=len(self.missing_in_source),
            different=len(self.different),
        )


# ============================================================================
# Sync Plan Models
# ============================================================================


class ConflictStrategy(str, Enum):
    """How to resolve rows that exist on both sides but differ."""

    SOURCE_WINS = "source_wins"
    TARGET_WINS = "target_wins"
    NEWEST_WINS = "newest_wins"


class SyncPlan(BaseModel):
    """What to apply for one table."""

    table: str
    source_schema: str
    target_schema: str
    primary_keys: list[str]
    insert_missing: bool = True
    update_different: bool = True
    delete_extra: bool = False
    conflict_strategy: ConflictStrategy = ConflictStrategy.SOURCE_WINS
    timestamp_column: str | None = None
    batch_size: int = 500

    def check(self) -> None:
        """Validate the plan before any work starts.

        Raises:
            InvalidPlan: If keys are missing, ``newest_wins`` has no timestamp
                column, or the batch size is not positive.
        """
        if not self.primary_keys:
            raise InvalidPlan(f"Sync plan for '{self.table}' has no primary-key columns")
        if self.conflict_strategy == ConflictStrategy.NEWEST_WINS and not self.timestamp_column:
            raise InvalidPlan(f"Sync plan for '{self.table}' uses newest_wins without a timestamp column")
        if self.batch_size < 1:
            raise InvalidPlan(f"Sync plan for '{self.table}' has batch_size {self.batch_size}")


# ============================================================================
# Sync Result Models
# ============================================================================


class SyncPhase(str, Enum):
    """Per-table sync lifecycle."""

    DIFFING = "diffing"
    APPLYING = "applying"
    DONE = "done"


class SyncError(BaseModel):
    """A row (or table) level failure recorded during sync."""

    operation: Literal["insert", "update", "delete", "fetch"]
    key: RowKey | None = None
    message: str
    error_kind: str = "unknown"


class SyncSkip(BaseModel):
    """A row deliberately left untouched (informational, not an error)."""

    key: RowKey
    reason: str


class SyncResult(BaseModel):
    """Outcome of syncing one table.

    A result with errors but non-zero counts is a partial success.
    """

    table: str
    schema_name: str = Field(alias="schema")
    inserted: int = 0
    updated: int = 0
    deleted: int = 0
    skipped: list[SyncSkip] = Field(default_factory=list)
    errors: list[SyncError] = Field(default_factory=list)
    phase: SyncPhase = SyncPhase.DIFFING
    cancelled: bool = False
    error: str | None = None
    started_at: datetime = Field(default_factory=_utcnow)
    completed_at: datetime | None = None

    model_config = ConfigDict(populate_by_name=True)

    @property
    def applied(self) -> int:
        return self.inserted + self.updated + self.deleted

    @property
    def status(self) -> str:
        if self.cancelled:
            return "skipped"
        if self.error is None and not self.errors:
            return "success"
        if self.applied > 0:
            return "partial"
        return "failed"


class RowSyncResult(BaseModel):
    """Outcome of syncing an explicit set of rows."""

    table: str
    inserted: int = 0
    updated: int = 0
    errors: list[SyncError] = Field(default_factory=list)

    @property
    def status(self) -> str:
        if not self.errors:
            return "success"
        return "partial" if self.inserted + self.updated else "failed"


class SyncAllOptions(BaseModel):
    """Options for syncing every table of a schema."""

    insert_missing: bool = True
    update_different: bool = True
    delete_extra: bool = False
    conflict_strategy: ConflictStrategy = ConflictStrategy.SOURCE_WINS
    timestamp_column: str | None = None
    batch_size: int = 500
    tables: list[str] | None = None
    primary_keys: dict[str, list[str]] = Field(default_factory=dict)
    use_declared_primary_keys: bool = True
    worker_limit: int = 4


class SyncRunLog(BaseModel):
    """History record for one table sync run."""

    id: str = Field(default_factory=lambda: str(uuid.uuid4()))
    group_id: str | None = None
    source_connection: str
    target_connection: str
    table: str
    status: str
    inserted: int = 0
    updated: int = 0
    deleted: int = 0
    errors: list[str] = Field(default_factory=list)
    started_at: datetime
    completed_at: datetime | None = None

    @classmethod
    def from_result(
        cls,
        result: SyncResult,
        source_connection: str,
        target_connection: str,
        group_id: str | None = None,
    ) -> "SyncRunLog":
        errors = [e.message for e in result.errors]
        if result.error:
            errors.insert(0, result.error)
        return cls(
            group_id=group_id,
            source_connection=source_connection,
            target_connection=target_connection,
            table=result.table,
            status=result.status,
            inserted=result.inserted,
            updated=result.updated,
            deleted=result.deleted,
            errors=errors,
            started_at=result.started_at,
            completed_at=result.completed_at,
        )
