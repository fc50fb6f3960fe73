"""Dependency-ordered dump/restore between connections.

Usage:
    from db_sync.backup import build_dump_restore_plan, run_dump_restore
"""

from db_sync.backup.dump_restore import build_dump_restore_plan, run_dump_restore
from db_sync.backup.models import DumpRestorePlan, DumpRestoreResult, TableCopyResult

__all__ = [
    "build_dump_restore_plan",
    "run_dump_restore",
    "DumpRestorePlan",
    "DumpRestoreResult",
    "TableCopyResult",
]
