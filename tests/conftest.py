"""Shared test fakes.

``FakeClient`` implements the ``DatabaseClient`` Protocol over in-memory
tables.  It understands the statement shapes the renderers produce
(``SELECT``/``INSERT``/``UPDATE``/``DELETE`` with ``:pN``/``:wN`` binds) and
records every executed statement.
"""

import re
from typing import Any, Callable

import pytest

from db_sync.adapters.base import ConnectionHandle
from db_sync.schema.models import Dialect

_TABLE_RE = re.compile(r'(?:FROM|INTO|UPDATE)\s+(?:"[^"]+"\.)?"([^"]+)"')
_WHERE_RE = re.compile(r'"([^"]+)" = :(w\d+)')
_SET_RE = re.compile(r'"([^"]+)" = :(p\d+)')
_INSERT_COLUMNS_RE = re.compile(r"\(([^)]*)\) VALUES")
_LIMIT_RE = re.compile(r"LIMIT (\d+)(?: OFFSET (\d+))?")


class FakeClient:
    """In-memory ``DatabaseClient``.

    Args:
        tables: Table name -> list of row dicts.  Rows are stored as given.
        fail: Optional hook ``fail(sql, params)`` returning an exception to
            raise for a statement (or ``None``).
    """

    def __init__(self, tables: dict[str, list[dict]] | None = None, fail: Callable | None = None):
        self.tables: dict[str, list[dict]] = {name: [dict(r) for r in rows] for name, rows in (tables or {}).items()}
        self.fail = fail
        self.executed: list[tuple[str, dict]] = []
        self.fetched: list[str] = []
        self.closed = False

    def _table(self, sql: str) -> list[dict]:
        match = _TABLE_RE.search(sql)
        if match is None:
            raise AssertionError(f"Unrecognized statement: {sql}")
        return self.tables.setdefault(match.group(1), [])

    @staticmethod
    def _matches(row: dict, sql: str, params: dict) -> bool:
        where = sql.split(" WHERE ", 1)[1] if " WHERE " in sql else ""
        return all(row.get(column) == params[bind] for column, bind in _WHERE_RE.findall(where))

    def _check(self, sql: str, params: dict) -> None:
        if self.fail is not None:
            error = self.fail(sql, params)
            if error is not None:
                raise error

    async def fetch(self, sql: str, params: dict[str, Any] | None = None) -> list[dict]:
        params = params or {}
        self.fetched.append(sql)
        self._check(sql, params)
        rows = self._table(sql)
        if "COUNT(*)" in sql:
            return [{"row_count": len(rows)}]
        if " WHERE " in sql:
            matched = [dict(r) for r in rows if self._matches(r, sql, params)]
            if sql.startswith("SELECT 1 AS present"):
                return [{"present": 1}] if matched else []
            return matched
        result = [dict(r) for r in rows]
        limit = _LIMIT_RE.search(sql)
        if limit:
            offset = int(limit.group(2) or 0)
            result = result[offset:offset + int(limit.group(1))]
        return result

    async def execute(self, sql: str, params: dict[str, Any] | None = None) -> int:
        params = params or {}
        self.executed.append((sql, params))
        self._check(sql, params)
        if not sql.startswith(("INSERT", "UPDATE", "DELETE")):
            return 0
        rows = self._table(sql)
        if sql.startswith("INSERT"):
            columns = [c.strip().strip('"') for c in _INSERT_COLUMNS_RE.search(sql).group(1).split(",")]
            rows.append({c: params[f"p{i}"] for i, c in enumerate(columns)})
            return 1
        matched = [r for r in rows if self._matches(r, sql, params)]
        if sql.startswith("UPDATE"):
            assignments = _SET_RE.findall(sql.split(" WHERE ", 1)[0])
            for row in matched:
                for column, bind in assignments:
                    row[column] = params[bind]
            return len(matched)
        for row in matched:
            rows.remove(row)
        return len(matched)

    async def close(self) -> None:
        self.closed = True

    def statements(self, prefix: str = "") -> list[str]:
        return [sql for sql, _ in self.executed if sql.startswith(prefix)]


@pytest.fixture
def make_handle():
    """Factory fixture building a ``ConnectionHandle`` over a ``FakeClient``."""

    def _make(
        name: str,
        tables: dict[str, list[dict]] | None = None,
        dialect: Dialect = Dialect.POSTGRES,
        fail: Callable | None = None,
    ) -> ConnectionHandle:
        return ConnectionHandle(name=name, dialect=dialect, client=FakeClient(tables, fail))

    return _make
