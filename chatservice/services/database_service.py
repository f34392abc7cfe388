from collections.abc import AsyncIterator, Sequence
from contextlib import asynccontextmanager
import logging
from typing import Any

import asyncpg

logger = logging.getLogger(__name__)


class DatabaseService:
    """asyncpg pool owner for the chat store.

    Single statements borrow a pooled connection for one call; ``transaction`` hands the
    caller a connection inside an open transaction so it can branch on statement results
    before committing.
    """

    def __init__(
        self,
        dsn: str,
        reshape_schema_query: str | None = None,
        pool_min_size: int = 1,
        pool_max_size: int = 10,
    ) -> None:
        self._dsn = dsn
        self._reshape_schema_query = (reshape_schema_query or "").strip()
        self._pool_min_size = pool_min_size
        self._pool_max_size = pool_max_size
        self._pool: asyncpg.Pool | None = None

    async def _on_connect(self, connection: asyncpg.Connection) -> None:
        # Schema migrations expose versioned schemas; point new connections at the current one.
        if self._reshape_schema_query:
            await connection.execute(self._reshape_schema_query)

    async def connect(self) -> None:
        if self._pool is not None:
            return
        logger.info(
            "opening chat database pool",
            extra={"min_size": self._pool_min_size, "max_size": self._pool_max_size},
        )
        self._pool = await asyncpg.create_pool(
            dsn=self._dsn,
            min_size=self._pool_min_size,
            max_size=self._pool_max_size,
            init=self._on_connect,
        )

    async def disconnect(self) -> None:
        pool, self._pool = self._pool, None
        if pool is not None:
            logger.info("closing chat database pool")
            await pool.close()

    @asynccontextmanager
    async def _connection(self) -> AsyncIterator[asyncpg.Connection]:
        if self._pool is None:
            raise RuntimeError("database service is not connected")
        async with self._pool.acquire() as connection:
            yield connection

    async def fetchrow(self, query: str, *args: Any) -> asyncpg.Record | None:
        async with self._connection() as connection:
            return await connection.fetchrow(query, *args)

    async def fetch(self, query: str, *args: Any) -> Sequence[asyncpg.Record]:
        async with self._connection() as connection:
            return await connection.fetch(query, *args)

    async def execute(self, query: str, *args: Any) -> str:
        async with self._connection() as connection:
            return await connection.execute(query, *args)

    @asynccontextmanager
    async def transaction(self) -> AsyncIterator[asyncpg.Connection]:
        async with self._connection() as connection:
            async with connection.transaction():
                logger.debug("chat database transaction started")
                yield connection
