"""Write-only sink for migration and sync history records.

The engine produces history records but never stores or reads them back;
persistence belongs to the caller.  ``InMemoryHistorySink`` is enough for
the CLI and for tests.

Usage:
    from db_sync.history import InMemoryHistorySink

    sink = InMemoryHistorySink()
    service = SyncService(introspector, sink=sink)
    ...
    sink.migrations[-1].success
"""

from typing import Protocol

from db_sync.data.models import SyncRunLog
from db_sync.schema.models import MigrationHistoryEntry


class HistorySink(Protocol):
    """Persistence collaborator for history records."""

    async def record_migration(self, entry: MigrationHistoryEntry) -> None:
        ...

    async def record_sync_run(self, log: SyncRunLog) -> None:
        ...


class InMemoryHistorySink:
    """History sink that keeps records in lists."""

    def __init__(self) -> None:
        self.migrations: list[MigrationHistoryEntry] = []
        self.sync_runs: list[SyncRunLog] = []

    async def record_migration(self, entry: MigrationHistoryEntry) -> None:
        self.migrations.append(entry)

    async def record_sync_run(self, log: SyncRunLog) -> None:
        self.sync_runs.append(log)
