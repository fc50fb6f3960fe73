"""Foreign-key dependency ordering for bulk table operations.

Builds a graph from each table to the tables its foreign keys reference and
returns a parent-first order.  Cycles are broken by deferring the foreign keys
that close them; deferred constraints are reported so callers can handle
them after all tables have been processed.

Usage:
    from db_sync.schema.dependencies import resolve_table_order

    order = resolve_table_order(snapshot)
    for table in order.order:          # parents first
        ...
    for table in order.reverse_order():  # children first (truncate, delete)
        ...
"""

import logging
from dataclasses import dataclass, field

from pydantic import BaseModel, Field

from db_sync.errors import CycleDetected
from db_sync.schema.models import SchemaSnapshot

logger = logging.getLogger(__name__)


class DeferredConstraint(BaseModel):
    """A foreign key removed from the ordering graph to break a cycle."""

    table: str
    constraint: str
    referenced_table: str
    columns: list[str] = Field(default_factory=list)


@dataclass
class DependencyOrder:
    """Result of dependency resolution.

    Attributes:
        order: Tables with every table after the tables it references.
        dependencies: Remaining gating edges (table -> referenced tables)
            after cycle-closing foreign keys were deferred.
        deferred: Foreign keys deferred to break cycles.
        cycles: Each detected cycle as a path of table names.
    """

    order: list[str] = field(default_factory=list)
    dependencies: dict[str, set[str]] = field(default_factory=dict)
    deferred: list[DeferredConstraint] = field(default_factory=list)
    cycles: list[list[str]] = field(default_factory=list)

    @property
    def has_cycles(self) -> bool:
        return bool(self.cycles)

    def reverse_order(self) -> list[str]:
        """Children before parents."""
        return list(reversed(self.order))


def build_dependency_graph(snapshot: SchemaSnapshot, tables: list[str]) -> dict[str, set[str]]:
    """Map each table to the selected tables its foreign keys reference.

    Self-references and references outside ``tables`` are ignored.
    """
    selected = set(tables)
    graph: dict[str, set[str]] = {t: set() for t in tables}
    for table in snapshot.tables:
        if table.name not in selected:
            continue
        for fk in table.foreign_keys:
            if fk.referenced_table != table.name and fk.referenced_table in selected:
                graph[table.name].add(fk.referenced_table)
    return graph


def resolve_table_order(
    snapshot: SchemaSnapshot,
    tables: list[str] | None = None,
    strict: bool = False,
) -> DependencyOrder:
    """Order tables so that referenced tables come first.

    Depth-first post-order over tables in snapshot order, visiting each
    table's dependencies by name.  A back edge closes a cycle: the foreign
    keys behind it are deferred and the edge is dropped from the gating graph.

    Args:
        snapshot: Schema snapshot providing tables and foreign keys.
        tables: Optional subset of table names (default: all tables).
        strict: Raise ``CycleDetected`` instead of deferring.

    Returns:
        ``DependencyOrder`` with the order, remaining edges, and any deferrals.

    Raises:
        CycleDetected: If ``strict`` and the graph contains a cycle.
    """
    if tables is None:
        tables = snapshot.table_names
    else:
        wanted = set(tables)
        tables = [t for t in snapshot.table_names if t in wanted]

    graph = build_dependency_graph(snapshot, tables)
    result = DependencyOrder(dependencies={t: set(deps) for t, deps in graph.items()})

    visited: set[str] = set()
    visiting: list[str] = []  # Current DFS path, for cycle reporting

    def defer(table: str, referenced: str) -> None:
        result.dependencies[table].discard(referenced)
        table_def = snapshot.table(table)
        for fk in table_def.foreign_keys if table_def else []:
            if fk.referenced_table == referenced:
                result.deferred.append(
                    DeferredConstraint(
                        table=table,
                        constraint=fk.name,
                        referenced_table=referenced,
                        columns=list(fk.columns),
                    )
                )

    def visit(table: str) -> None:
        if table in visited:
            return
        visiting.append(table)
        for dep in sorted(graph[table]):
            if dep in visiting:
                cycle = visiting[visiting.index(dep):] + [dep]
                result.cycles.append(cycle)
                defer(table, dep)
                continue
            visit(dep)
        visiting.pop()
        visited.add(table)
        result.order.append(table)

    for table in tables:
        visit(table)

    if result.cycles:
        if strict:
            raise CycleDetected(result.cycles)
        for constraint in result.deferred:
            logger.warning(
                f"Deferring foreign key {constraint.constraint} "
                f"({constraint.table} -> {constraint.referenced_table}) to break a cycle"
            )

    return result
