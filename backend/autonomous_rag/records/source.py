from typing import Any, Protocol

from autonomous_rag.records.query import RecordQuery

Record = dict[str, Any]


class RecordSource(Protocol):
    """Generic filterable / sortable / countable record store."""

    async def has_column(self, table: str, field: str) -> bool: ...

    async def count(self, query: RecordQuery) -> int: ...

    async def fetch(self, query: RecordQuery) -> list[Record]: ...

    async def aggregate(self, query: RecordQuery, operation: str, field: str) -> float | int | None: ...
