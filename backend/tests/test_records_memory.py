"""
Tests for RecordQuery and the in-memory record source.

Covers:
- Comparison operators, between, date-only comparison
- NULL handling in filters and aggregates
- Ordering with id tie-breaker, paging, unpaged copies
- Eager-loaded relations
"""

import pytest

from autonomous_rag.records.memory import InMemoryRecordSource
from autonomous_rag.records.query import RecordQuery

from tests.conftest import customer_rows, invoice_rows


@pytest.fixture
def records():
    source = InMemoryRecordSource({"invoices": invoice_rows(), "customers": customer_rows()})
    source.add("invoices", {"id": 105, "number": "INV-105", "status": "draft", "amount": None,
                            "created_at": "2024-03-01T18:30:00", "customer_id": 9, "user_id": 7})
    return source


def ids(rows):
    return [row["id"] for row in rows]


class TestRecordQuery:
    def test_rejects_unknown_operator(self):
        with pytest.raises(ValueError):
            RecordQuery("invoices").where("amount", 1, op="!=")

    def test_unpaged_copy(self):
        query = RecordQuery("invoices").where("status", "paid").order_by("created_at").page(10, 10)
        bare = query.unpaged()

        assert (bare.order_field, bare.offset, bare.limit) == (None, 0, None)
        assert bare.conditions == query.conditions
        assert query.limit == 10

    def test_negative_offset_clamped(self):
        assert RecordQuery("invoices").page(-5, 10).offset == 0


class TestFiltering:
    async def test_equality_and_user(self, records):
        query = RecordQuery("invoices").where("user_id", 7).where("status", "paid")
        assert sorted(ids(await records.fetch(query))) == [101, 103]

    async def test_numeric_range_skips_nulls(self, records):
        query = RecordQuery("invoices").where("amount", "100", op=">=")
        assert sorted(ids(await records.fetch(query))) == [101, 102, 104]

    async def test_between_date_only(self, records):
        query = RecordQuery("invoices").where_between("created_at", "2024-03-01", "2024-03-02", date_only=True)
        assert sorted(ids(await records.fetch(query))) == [102, 103, 105]

    async def test_id_match_coerces_strings(self, records):
        assert ids(await records.fetch(RecordQuery("invoices").where("id", "102"))) == [102]

    async def test_unknown_table_is_empty(self, records):
        assert await records.count(RecordQuery("nope")) == 0


class TestOrderingAndPaging:
    async def test_newest_first(self, records):
        rows = await records.fetch(RecordQuery("invoices").where("user_id", 7).order_by("created_at"))
        assert ids(rows) == [101, 102, 105, 103]

    async def test_page(self, records):
        query = RecordQuery("invoices").where("user_id", 7).order_by("created_at").page(1, 2)
        assert ids(await records.fetch(query)) == [102, 105]

    async def test_equal_keys_break_on_id(self):
        source = InMemoryRecordSource({"t": [
            {"id": 1, "created_at": "2024-01-01"},
            {"id": 3, "created_at": "2024-01-01"},
            {"id": 2, "created_at": "2024-01-01"},
        ]})
        assert ids(await source.fetch(RecordQuery("t").order_by("created_at"))) == [3, 2, 1]

    async def test_fetch_returns_copies(self, records):
        rows = await records.fetch(RecordQuery("invoices").where("id", 101))
        rows[0]["status"] = "void"
        again = await records.fetch(RecordQuery("invoices").where("id", 101))
        assert again[0]["status"] == "paid"


class TestRelations:
    async def test_related_rows_attached(self, records):
        query = RecordQuery("invoices").where("user_id", 7).order_by("created_at")
        query.with_related("customer", "customer_id", "customers")
        rows = {row["id"]: row for row in await records.fetch(query)}

        assert rows[102]["customer"] == {"id": 2, "name": "Globex"}
        assert rows[105]["customer"] is None


class TestAggregate:
    @pytest.mark.parametrize("operation, expected", [
        ("sum", 400.0),
        ("avg", 400.0 / 3),
        ("min", 49.5),
        ("max", 250.5),
        ("count", 3),
    ])
    async def test_operations_ignore_nulls(self, records, operation, expected):
        query = RecordQuery("invoices").where("user_id", 7)
        assert await records.aggregate(query, operation, "amount") == pytest.approx(expected)

    async def test_empty_set(self, records):
        query = RecordQuery("invoices").where("user_id", 99)
        assert await records.aggregate(query, "sum", "amount") == 0
        assert await records.aggregate(query, "avg", "amount") is None

    async def test_unsupported_operation(self, records):
        with pytest.raises(ValueError):
            await records.aggregate(RecordQuery("invoices"), "median", "amount")

    async def test_has_column(self, records):
        assert await records.has_column("invoices", "amount")
        assert not await records.has_column("invoices", "amount_with_tax")
        records.declare_columns("invoices", ["id"])
        assert not await records.has_column("invoices", "amount")
