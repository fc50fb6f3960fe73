"""Row-level comparison and data synchronization.

Usage:
    from db_sync.data import SyncPlan, sync_table, table_data_diff
"""

from db_sync.data.diff import table_data_diff, table_row_counts
from db_sync.data.models import (
    ConflictStrategy,
    RowSyncResult,
    SyncAllOptions,
    SyncPlan,
    SyncResult,
    SyncRunLog,
    TableDataDetail,
    TableDataDiff,
)
from db_sync.data.scheduler import CancellationToken, run_dependency_gated
from db_sync.data.sync import apply_sync, sync_rows, sync_table

__all__ = [
    "table_data_diff",
    "table_row_counts",
    "ConflictStrategy",
    "RowSyncResult",
    "SyncAllOptions",
    "SyncPlan",
    "SyncResult",
    "SyncRunLog",
    "TableDataDetail",
    "TableDataDiff",
    "CancellationToken",
    "run_dependency_gated",
    "apply_sync",
    "sync_rows",
    "sync_table",
]
