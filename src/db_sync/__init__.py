"""db-sync: Schema diff and data synchronization between SQL databases.

Compares schemas across PostgreSQL, MySQL/MariaDB, and SQLite, generates
dialect-specific migration DDL, and synchronizes rows in foreign-key
dependency order with bounded parallelism.

Usage:
    from db_sync import SyncService, SchemaIntrospector, open_connection
    from db_sync import diff_schemas, generate_migration, SyncPlan
    from db_sync import load_db_config, InMemoryHistorySink
"""

__version__ = "0.1.0"

# Errors
from db_sync.errors import (
    ConnectivityError,
    ConstraintViolation,
    CycleDetected,
    ExecutionError,
    InvalidPlan,
    OperationCancelled,
    SqlSyntaxError,
    SyncEngineError,
    UnsupportedOperation,
)

# Schema
from db_sync.schema.comparator import diff_schemas
from db_sync.schema.dependencies import resolve_table_order
from db_sync.schema.models import Dialect, SchemaDiff, SchemaSnapshot

# Adapters
from db_sync.adapters.async_sql import AsyncSqlAdapter
from db_sync.adapters.base import ConnectionHandle, DatabaseClient
from db_sync.schema.introspector import SchemaIntrospector
from db_sync.schema.migration import annotate_diff, apply_migration, generate_migration

# Data
from db_sync.data.models import ConflictStrategy, SyncAllOptions, SyncPlan, SyncResult
from db_sync.data.scheduler import CancellationToken
from db_sync.data.sync import sync_rows, sync_table

# History
from db_sync.history import HistorySink, InMemoryHistorySink

# Backup
from db_sync.backup.dump_restore import build_dump_restore_plan, run_dump_restore

# Config
from db_sync.config.loader import load_db_config
from db_sync.config.models import DatabaseConfig, DatabaseProfile

# Factory
from db_sync.factory import ProfileNotFoundError, get_adapter, open_connection, resolve_url

# Service
from db_sync.service import DatabaseGroup, SyncService

__all__ = [
    # Errors
    "SyncEngineError",
    "UnsupportedOperation",
    "InvalidPlan",
    "CycleDetected",
    "OperationCancelled",
    "ExecutionError",
    "ConnectivityError",
    "ConstraintViolation",
    "SqlSyntaxError",
    # Schema
    "Dialect",
    "SchemaSnapshot",
    "SchemaDiff",
    "diff_schemas",
    "resolve_table_order",
    "SchemaIntrospector",
    "generate_migration",
    "annotate_diff",
    "apply_migration",
    # Adapters
    "AsyncSqlAdapter",
    "ConnectionHandle",
    "DatabaseClient",
    # Data
    "ConflictStrategy",
    "SyncAllOptions",
    "SyncPlan",
    "SyncResult",
    "CancellationToken",
    "sync_table",
    "sync_rows",
    # History
    "HistorySink",
    "InMemoryHistorySink",
    # Backup
    "build_dump_restore_plan",
    "run_dump_restore",
    # Config
    "load_db_config",
    "DatabaseConfig",
    "DatabaseProfile",
    # Factory
    "ProfileNotFoundError",
    "get_adapter",
    "open_connection",
    "resolve_url",
    # Service
    "DatabaseGroup",
    "SyncService",
]
