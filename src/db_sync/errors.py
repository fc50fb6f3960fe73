"""Error taxonomy for schema diffing, migration, and data synchronization.

Structural errors (``UnsupportedOperation``, ``InvalidPlan``) abort an
operation before anything is executed.  Execution errors come from the
``DatabaseClient`` capability and are isolated per row or per table by the
sync and restore layers.

Usage:
    from db_sync.errors import ConstraintViolation, classify_error

    try:
        await client.execute(sql, params)
    except ConstraintViolation as e:
        kind = classify_error(e)  # "constraint_violation"
"""


class SyncEngineError(Exception):
    """Base class for all engine errors."""

    pass


class UnsupportedOperation(SyncEngineError):
    """Raised when a dialect cannot express a diff item as DDL.

    Attributes:
        item: The ``DiffItem`` that could not be rendered.
        dialect: The target dialect.
    """

    def __init__(self, item, dialect, reason: str = "") -> None:
        self.item = item
        self.dialect = dialect
        self.reason = reason
        dialect_name = getattr(dialect, "value", dialect)
        message = f"{dialect_name} cannot express {item.kind.value} on {item.table}.{item.name}"
        if reason:
            message = f"{message}: {reason}"
        super().__init__(message)


class InvalidPlan(SyncEngineError):
    """Raised when a sync or restore plan is malformed."""

    pass


class CycleDetected(SyncEngineError):
    """Raised in strict mode when foreign keys form a cycle."""

    def __init__(self, cycles: list[list[str]]) -> None:
        self.cycles = cycles
        rendered = "; ".join(" -> ".join(cycle) for cycle in cycles)
        super().__init__(f"Foreign key cycle detected: {rendered}")


class OperationCancelled(SyncEngineError):
    """Raised when a cancellation token stops an operation before it has a result."""

    pass


# ============================================================================
# Execution Errors
# ============================================================================


class ExecutionError(SyncEngineError):
    """Raised by a ``DatabaseClient`` when a statement fails."""

    pass


class ConnectivityError(ExecutionError):
    """The database could not be reached or the connection dropped."""

    pass


class ConstraintViolation(ExecutionError):
    """A statement violated a key, uniqueness, or NOT NULL constraint."""

    pass


class SqlSyntaxError(ExecutionError):
    """The database rejected a statement as malformed or referencing unknown objects."""

    pass


_ERROR_KINDS: list[tuple[type[Exception], str]] = [
    (ConnectivityError, "connectivity"),
    (ConstraintViolation, "constraint_violation"),
    (SqlSyntaxError, "sql_syntax"),
    (UnsupportedOperation, "unsupported_operation"),
    (InvalidPlan, "invalid_plan"),
    (CycleDetected, "cycle_detected"),
    (OperationCancelled, "cancelled"),
    (ExecutionError, "execution"),
]


def classify_error(exc: BaseException) -> str:
    """Name the taxonomy class of an exception (``"unknown"`` if untyped)."""
    for error_type, kind in _ERROR_KINDS:
        if isinstance(exc, error_type):
            return kind
    return "unknown"
