"""
asyncpg pool shared by the document store and the pgvector backend.

Both the JSONB document container and PgVectorDocumentStore take a connected
Database; neither opens connections of its own. The pgvector extension is
created on connect unless enable_pgvector is turned off (a plain
PostgreSQL server serving only the document store).
"""

import logging
from collections.abc import AsyncIterator
from contextlib import asynccontextmanager
from types import TracebackType
from typing import Any

import asyncpg

from src.config.settings import Settings, get_settings

logger = logging.getLogger(__name__)


class Database:
    """
    Connection pool for the PostgreSQL-backed strategies.

    Usage:
        async with Database(settings) as db:
            container = PostgresDocumentContainer(db)
            store = PgVectorDocumentStore(db, index_config)
    """

    def __init__(
        self,
        settings: Settings | None = None,
        database_url: str | None = None,
        min_size: int | None = None,
        max_size: int | None = None,
        enable_pgvector: bool = True,
    ):
        settings = settings or get_settings()

        self._database_url = database_url or str(settings.database_url)
        self._min_size = min_size or settings.db_pool_min_size
        self._max_size = max_size or settings.db_pool_max_size
        self._command_timeout = settings.operation_timeout_seconds
        self._enable_pgvector = enable_pgvector

        self._pool: asyncpg.Pool | None = None

    @property
    def is_connected(self) -> bool:
        return self._pool is not None

    async def connect(self) -> None:
        """Open the pool; with enable_pgvector also create the vector extension."""
        if self._pool is not None:
            return
        try:
            pool = await asyncpg.create_pool(
                self._database_url,
                min_size=self._min_size,
                max_size=self._max_size,
                command_timeout=self._command_timeout,
            )
        except Exception as e:
            # The URL carries credentials; log only the error type
            logger.error(f"Failed to connect to database: {type(e).__name__}")
            raise

        if self._enable_pgvector:
            try:
                async with pool.acquire() as conn:
                    await conn.execute("CREATE EXTENSION IF NOT EXISTS vector")
            except Exception:
                await pool.close()
                raise

        self._pool = pool
        logger.info(
            f"Database connected (pool: {self._min_size}-{self._max_size}, "
            f"pgvector: {self._enable_pgvector})"
        )

    async def close(self) -> None:
        if self._pool:
            await self._pool.close()
            self._pool = None
            logger.info("Database connection closed")

    async def __aenter__(self) -> "Database":
        await self.connect()
        return self

    async def __aexit__(
        self,
        exc_type: type[BaseException] | None,
        exc_val: BaseException | None,
        exc_tb: TracebackType | None,
    ) -> None:
        await self.close()

    @property
    def pool(self) -> asyncpg.Pool:
        if self._pool is None:
            raise RuntimeError("Database not connected. Call connect() first.")
        return self._pool

    @asynccontextmanager
    async def transaction(self) -> AsyncIterator[asyncpg.Connection]:
        """
        Run the block on one connection inside a transaction.

        Usage:
            async with db.transaction() as conn:
                await conn.execute("DELETE FROM ...")
                await conn.executemany("INSERT INTO ...", rows)
        """
        async with self.pool.acquire() as conn:
            async with conn.transaction():
                yield conn

    async def execute(self, query: str, *args: Any) -> str:
        """Run a statement; returns the PostgreSQL status string."""
        async with self.pool.acquire() as conn:
            return await conn.execute(query, *args)

    async def fetch(self, query: str, *args: Any) -> list[asyncpg.Record]:
        async with self.pool.acquire() as conn:
            return await conn.fetch(query, *args)

    async def fetchval(self, query: str, *args: Any) -> Any:
        async with self.pool.acquire() as conn:
            return await conn.fetchval(query, *args)
