"""
RecordQuery — backend-neutral predicate builder.

The filter service and query executor build one of these; a RecordSource
(in-memory or Postgres) interprets it. Builder methods mutate and return
self so calls chain:

    query = RecordQuery("invoices").where("status", "paid").order_by("created_at")
"""

import copy
from dataclasses import dataclass, field
from typing import Any

COMPARISON_OPERATORS = ("=", ">=", "<=", ">", "<")
AGGREGATE_OPERATIONS = ("sum", "avg", "min", "max", "count")


@dataclass
class Condition:
    field: str
    op: str                 # one of COMPARISON_OPERATORS or "between"
    value: Any
    date_only: bool = False  # compare the date part only


@dataclass
class Relation:
    """Eager-load hint: attach tables[table][row[foreign_key]] as row[name]."""
    name: str
    foreign_key: str
    table: str


@dataclass
class RecordQuery:
    table: str
    conditions: list[Condition] = field(default_factory=list)
    relations: list[Relation] = field(default_factory=list)
    order_field: str | None = None
    descending: bool = True
    offset: int = 0
    limit: int | None = None

    def where(self, field_name: str, value: Any, op: str = "=", *, date_only: bool = False) -> "RecordQuery":
        if op not in COMPARISON_OPERATORS:
            raise ValueError(f"Unsupported operator: {op}")
        self.conditions.append(Condition(field_name, op, value, date_only))
        return self

    def where_between(self, field_name: str, low: Any, high: Any, *, date_only: bool = False) -> "RecordQuery":
        self.conditions.append(Condition(field_name, "between", (low, high), date_only))
        return self

    def with_related(self, name: str, foreign_key: str, table: str) -> "RecordQuery":
        self.relations.append(Relation(name, foreign_key, table))
        return self

    def order_by(self, field_name: str, descending: bool = True) -> "RecordQuery":
        self.order_field = field_name
        self.descending = descending
        return self

    def page(self, offset: int, limit: int) -> "RecordQuery":
        self.offset = max(0, offset)
        self.limit = limit
        return self

    def clone(self) -> "RecordQuery":
        return copy.deepcopy(self)

    def unpaged(self) -> "RecordQuery":
        """Copy without ordering/offset/limit, for counts and aggregates."""
        clone = self.clone()
        clone.order_field = None
        clone.offset = 0
        clone.limit = None
        return clone
