"""Shared asyncpg helpers for repositories."""
from __future__ import annotations

from contextlib import asynccontextmanager
from typing import Any, AsyncIterator, Iterable

import asyncpg  # type: ignore[import-untyped]


class BaseRepository:
    """Thin wrapper over asyncpg pool operations.

    Every helper accepts an optional ``conn`` so callers can run the query
    inside a transaction they already hold (outbox writes ride on the
    business transaction this way).
    """

    def __init__(self, pool: asyncpg.Pool):
        self._pool = pool

    @asynccontextmanager
    async def _connection(self, conn: asyncpg.Connection | None = None) -> AsyncIterator[asyncpg.Connection]:
        if conn is not None:
            yield conn
            return
        async with self._pool.acquire() as acquired:
            yield acquired

    @asynccontextmanager
    async def _transaction(self) -> AsyncIterator[asyncpg.Connection]:
        async with self._pool.acquire() as conn:
            async with conn.transaction():
                yield conn

    async def _fetchrow(
        self, query: str, *args: Any, conn: asyncpg.Connection | None = None
    ) -> asyncpg.Record | None:
        async with self._connection(conn) as c:
            return await c.fetchrow(query, *args)

    async def _fetch(
        self, query: str, *args: Any, conn: asyncpg.Connection | None = None
    ) -> Iterable[asyncpg.Record]:
        async with self._connection(conn) as c:
            return await c.fetch(query, *args)

    async def _execute(self, query: str, *args: Any, conn: asyncpg.Connection | None = None) -> str:
        async with self._connection(conn) as c:
            return await c.execute(query, *args)

    @staticmethod
    def _affected(status: str) -> int:
        # asyncpg returns command tags like "UPDATE 3"
        return int(status.split()[-1])
