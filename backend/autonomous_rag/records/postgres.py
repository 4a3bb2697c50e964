"""
Postgres RecordSource — compiles RecordQuery to SQL with psycopg.sql.

Identifiers are always composed via sql.Identifier; operators and aggregate
functions come from fixed whitelists. Column sets are read once per table
from information_schema and cached for the life of the source.
"""

from decimal import Decimal
from typing import Any

from psycopg import sql

from autonomous_rag.core.db import get_db
from autonomous_rag.core.logging import get_logger
from autonomous_rag.records.query import AGGREGATE_OPERATIONS, COMPARISON_OPERATORS, RecordQuery
from autonomous_rag.records.source import Record

log = get_logger(__name__)


class PostgresRecordSource:
    def __init__(self, database_url: str):
        self.database_url = database_url
        self._columns: dict[str, set[str]] = {}

    async def has_column(self, table: str, field: str) -> bool:
        if table not in self._columns:
            async with get_db(self.database_url) as conn:
                async with conn.cursor() as cur:
                    await cur.execute(
                        """
                        SELECT column_name
                        FROM   information_schema.columns
                        WHERE  table_name = %s
                        """,
                        (table,),
                    )
                    rows = await cur.fetchall()
            self._columns[table] = {row["column_name"] for row in rows}
        return field in self._columns[table]

    async def count(self, query: RecordQuery) -> int:
        where, params = _where_clause(query)
        statement = sql.SQL("SELECT count(*) AS n FROM {} {}").format(sql.Identifier(query.table), where)
        row = await self._fetchone(statement, params)
        return int(row["n"]) if row else 0

    async def fetch(self, query: RecordQuery) -> list[Record]:
        where, params = _where_clause(query)
        parts = [sql.SQL("SELECT * FROM {} {}").format(sql.Identifier(query.table), where)]

        if query.order_field:
            direction = sql.SQL("DESC") if query.descending else sql.SQL("ASC")
            parts.append(
                sql.SQL("ORDER BY {} {}, {} {}").format(
                    sql.Identifier(query.order_field), direction, sql.Identifier("id"), direction
                )
            )
        if query.limit is not None:
            parts.append(sql.SQL("LIMIT %s"))
            params.append(query.limit)
        if query.offset:
            parts.append(sql.SQL("OFFSET %s"))
            params.append(query.offset)

        async with get_db(self.database_url) as conn:
            async with conn.cursor() as cur:
                await cur.execute(sql.SQL(" ").join(parts), params)
                rows = [dict(r) for r in await cur.fetchall()]

                for relation in query.relations:
                    keys = list({row.get(relation.foreign_key) for row in rows} - {None})
                    related: dict[Any, Record] = {}
                    if keys:
                        await cur.execute(
                            sql.SQL("SELECT * FROM {} WHERE id = ANY(%s)").format(sql.Identifier(relation.table)),
                            (keys,),
                        )
                        related = {r["id"]: dict(r) for r in await cur.fetchall()}
                    for row in rows:
                        row[relation.name] = related.get(row.get(relation.foreign_key))

        return rows

    async def aggregate(self, query: RecordQuery, operation: str, field: str) -> float | int | None:
        if operation not in AGGREGATE_OPERATIONS:
            raise ValueError(f"Unsupported aggregate: {operation}")

        where, params = _where_clause(query)
        statement = sql.SQL("SELECT {}({}) AS value FROM {} {}").format(
            sql.SQL(operation.upper()), sql.Identifier(field), sql.Identifier(query.table), where
        )
        row = await self._fetchone(statement, params)
        value = row["value"] if row else None
        return float(value) if isinstance(value, Decimal) else value

    async def _fetchone(self, statement: sql.Composable, params: list) -> Record | None:
        async with get_db(self.database_url) as conn:
            async with conn.cursor() as cur:
                await cur.execute(statement, params)
                return await cur.fetchone()


def _where_clause(query: RecordQuery) -> tuple[sql.Composable, list]:
    clauses: list[sql.Composable] = []
    params: list = []

    for cond in query.conditions:
        column: sql.Composable = sql.Identifier(cond.field)
        if cond.date_only:
            column = sql.SQL("{}::date").format(column)

        if cond.op == "between":
            clauses.append(sql.SQL("{} BETWEEN %s AND %s").format(column))
            params.extend(cond.value)
        elif cond.op in COMPARISON_OPERATORS:
            clauses.append(sql.SQL("{} {} %s").format(column, sql.SQL(cond.op)))
            params.append(cond.value)
        else:
            log.warning("condition_skipped", field=cond.field, op=cond.op)

    if not clauses:
        return sql.SQL(""), params
    return sql.SQL("WHERE ") + sql.SQL(" AND ").join(clauses), params
