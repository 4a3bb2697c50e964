"""
Postgres connections for the record source.

The agent only ever reads business data, so connections default to
read-only sessions; a stray write in a compiled query fails in Postgres
instead of mutating records. Rows come back as dicts (dict_row).
"""

from contextlib import asynccontextmanager
from typing import AsyncGenerator

import psycopg
from psycopg.rows import dict_row

from autonomous_rag.core.config import get_settings


@asynccontextmanager
async def get_db(
    database_url: str | None = None,
    *,
    read_only: bool = True,
) -> AsyncGenerator[psycopg.AsyncConnection, None]:
    conn = await psycopg.AsyncConnection.connect(
        database_url or get_settings().database_url,
        autocommit=not read_only,   # read-only applies to explicit transactions only
        row_factory=dict_row,
    )
    try:
        if read_only:
            await conn.set_read_only(True)
        yield conn
    finally:
        await conn.close()
