"""
In-memory RecordSource. Rows are held per table as plain dicts.

Used by tests and local development (DATABASE_URL unset). Semantics follow
the Postgres source: comparisons skip NULLs, COUNT(field) ignores NULLs,
AVG/MIN/MAX over no rows is None.
"""

from datetime import date, datetime
from numbers import Number
from typing import Any, Iterable

from autonomous_rag.records.query import AGGREGATE_OPERATIONS, Condition, RecordQuery
from autonomous_rag.records.source import Record


class InMemoryRecordSource:
    def __init__(
        self,
        tables: dict[str, Iterable[Record]] | None = None,
        columns: dict[str, Iterable[str]] | None = None,
    ):
        self._tables: dict[str, list[Record]] = {name: list(rows) for name, rows in (tables or {}).items()}
        self._columns: dict[str, set[str]] = {name: set(cols) for name, cols in (columns or {}).items()}

    def add(self, table: str, *rows: Record) -> None:
        self._tables.setdefault(table, []).extend(rows)

    def declare_columns(self, table: str, columns: Iterable[str]) -> None:
        self._columns[table] = set(columns)

    # ── RecordSource ──────────────────────────────────────────────────────────

    async def has_column(self, table: str, field: str) -> bool:
        if table in self._columns:
            return field in self._columns[table]
        return any(field in row for row in self._tables.get(table, []))

    async def count(self, query: RecordQuery) -> int:
        return len(self._matching(query))

    async def fetch(self, query: RecordQuery) -> list[Record]:
        rows = self._matching(query)

        if query.order_field:
            # stable sorts: id as tie-breaker first, then the order field
            rows.sort(key=lambda r: _sort_key(r.get("id")), reverse=query.descending)
            rows.sort(key=lambda r: _sort_key(r.get(query.order_field)), reverse=query.descending)

        end = None if query.limit is None else query.offset + query.limit
        rows = [dict(row) for row in rows[query.offset:end]]

        for relation in query.relations:
            related = {r.get("id"): r for r in self._tables.get(relation.table, [])}
            for row in rows:
                match = related.get(row.get(relation.foreign_key))
                row[relation.name] = dict(match) if match is not None else None

        return rows

    async def aggregate(self, query: RecordQuery, operation: str, field: str) -> float | int | None:
        if operation not in AGGREGATE_OPERATIONS:
            raise ValueError(f"Unsupported aggregate: {operation}")

        values = [row.get(field) for row in self._matching(query)]
        values = [v for v in values if v is not None]
        if operation == "count":
            return len(values)

        numbers = [_to_number(v) for v in values]
        numbers = [n for n in numbers if n is not None]
        if operation == "sum":
            return sum(numbers)
        if not numbers:
            return None
        if operation == "avg":
            return sum(numbers) / len(numbers)
        return min(numbers) if operation == "min" else max(numbers)

    # ── Helpers ───────────────────────────────────────────────────────────────

    def _matching(self, query: RecordQuery) -> list[Record]:
        return [
            row for row in self._tables.get(query.table, [])
            if all(_matches(row, cond) for cond in query.conditions)
        ]


def _matches(row: Record, cond: Condition) -> bool:
    actual = row.get(cond.field)
    if actual is None:
        return False

    if cond.op == "between":
        low, high = cond.value
        return _compare(actual, ">=", low, cond.date_only) and _compare(actual, "<=", high, cond.date_only)
    return _compare(actual, cond.op, cond.value, cond.date_only)


def _compare(actual: Any, op: str, expected: Any, date_only: bool) -> bool:
    if date_only:
        actual, expected = _to_date(actual), _to_date(expected)
        if actual is None or expected is None:
            return False
    elif isinstance(actual, Number) and not isinstance(actual, bool):
        expected = _to_number(expected)
        if expected is None:
            return False
    elif isinstance(actual, str) and not isinstance(expected, str):
        expected = str(expected)

    try:
        if op == "=":
            return actual == expected
        if op == ">=":
            return actual >= expected
        if op == "<=":
            return actual <= expected
        if op == ">":
            return actual > expected
        if op == "<":
            return actual < expected
    except TypeError:
        return False
    return False


def _to_date(value: Any) -> date | None:
    if isinstance(value, datetime):
        return value.date()
    if isinstance(value, date):
        return value
    if isinstance(value, str):
        try:
            return datetime.fromisoformat(value.strip()).date()
        except ValueError:
            return None
    return None


def _to_number(value: Any) -> float | int | None:
    if isinstance(value, bool):
        return None
    if isinstance(value, Number):
        return value
    try:
        return float(value)
    except (TypeError, ValueError):
        return None


def _sort_key(value: Any) -> tuple:
    # None sorts as the oldest value; mixed types are grouped by type name
    if value is None:
        return (0, "", 0)
    if isinstance(value, datetime):
        return (1, "datetime", value.isoformat())
    return (1, type(value).__name__, value)
