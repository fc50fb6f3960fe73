"""Dependency-gated work queue for per-table units.

A table's unit starts only after the units of every table it depends on have
finished (successfully or not), with at most ``worker_limit`` units in
flight.  Cancellation stops new units from starting; units already running
finish normally.

Usage:
    from db_sync.data.scheduler import CancellationToken, run_dependency_gated

    token = CancellationToken()
    outcome = await run_dependency_gated(
        order.order, order.dependencies, copy_table, worker_limit=4, cancel=token
    )
    outcome.completed, outcome.skipped
"""

import asyncio
import logging
from collections import defaultdict
from collections.abc import Awaitable, Callable
from dataclasses import dataclass, field
from typing import Any

logger = logging.getLogger(__name__)


class CancellationToken:
    """Cooperative cancellation flag shared between a caller and the queue."""

    def __init__(self) -> None:
        self._event = asyncio.Event()

    def cancel(self) -> None:
        self._event.set()

    @property
    def cancelled(self) -> bool:
        return self._event.is_set()

    async def wait(self) -> None:
        await self._event.wait()


@dataclass
class ScheduleOutcome:
    """What happened to each table submitted to the queue.

    Attributes:
        results: Return value of the unit, per completed table.
        completed: Tables whose unit returned, in completion order.
        failed: Tables whose unit raised, with the exception.
        skipped: Tables never started because of cancellation.
    """

    results: dict[str, Any] = field(default_factory=dict)
    completed: list[str] = field(default_factory=list)
    failed: dict[str, BaseException] = field(default_factory=dict)
    skipped: list[str] = field(default_factory=list)


async def run_dependency_gated(
    tables: list[str],
    dependencies: dict[str, set[str]],
    work: Callable[[str], Awaitable[Any]],
    *,
    worker_limit: int = 4,
    cancel: CancellationToken | None = None,
) -> ScheduleOutcome:
    """Run ``work(table)`` for every table, respecting dependencies.

    Args:
        tables: Tables in preferred start order (normally dependency order).
        dependencies: Table -> tables that must finish first.  Edges to tables
            outside ``tables`` are ignored.
        work: Async unit of work for one table.
        worker_limit: Maximum number of units in flight.
        cancel: Optional token; once cancelled no new unit starts.

    Returns:
        ``ScheduleOutcome`` with per-table results, failures, and skips.
    """
    worker_limit = max(1, worker_limit)
    selected = set(tables)
    waiting_on = {t: (set(dependencies.get(t, set())) & selected) - {t} for t in tables}
    dependents: dict[str, set[str]] = defaultdict(set)
    for table, deps in waiting_on.items():
        for dep in deps:
            dependents[dep].add(table)

    pending = list(tables)
    running: dict[asyncio.Task, str] = {}
    outcome = ScheduleOutcome()

    try:
        while pending or running:
            if cancel is not None and cancel.cancelled:
                if pending:
                    logger.info(f"Cancelled: skipping {len(pending)} table(s) not yet started")
                    outcome.skipped.extend(pending)
                    pending.clear()
            else:
                for table in [t for t in pending if not waiting_on[t]]:
                    if len(running) >= worker_limit:
                        break
                    pending.remove(table)
                    running[asyncio.create_task(work(table))] = table

            if not running:
                if pending:
                    # Residual gating with nothing runnable: release the earliest table
                    stuck = pending[0]
                    logger.warning(f"Releasing {stuck} with unfinished dependencies {sorted(waiting_on[stuck])}")
                    waiting_on[stuck].clear()
                    continue
                break

            finished, _ = await asyncio.wait(running, return_when=asyncio.FIRST_COMPLETED)
            for task in finished:
                table = running.pop(task)
                exc = task.exception()
                if exc is not None:
                    logger.warning(f"{table} failed: {exc}")
                    outcome.failed[table] = exc
                else:
                    outcome.results[table] = task.result()
                    outcome.completed.append(table)
                for dependent in dependents[table]:
                    waiting_on[dependent].discard(table)
    finally:
        for task in running:
            task.cancel()
        if running:
            await asyncio.gather(*running, return_exceptions=True)

    return outcome
