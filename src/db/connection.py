"""
Gemini Proxy - Database Connection Pool

Async PostgreSQL connection pool using asyncpg.

The pool is constructed in the server lifespan and handed to the store
that needs it; nothing in the request path reaches for a global.
"""

from typing import Optional
from contextlib import asynccontextmanager

import asyncpg


class DatabasePool:
    """
    Async PostgreSQL connection pool.

    Usage:
        pool = DatabasePool(settings.database_url)
        await pool.connect()

        async with pool.acquire() as conn:
            row = await conn.fetchrow("SELECT * FROM user_profiles WHERE user_id = $1", user_id)

        await pool.close()
    """

    def __init__(
        self,
        dsn: str,
        min_size: int = 2,
        max_size: int = 10,
        command_timeout: float = 30,
    ):
        """
        Initialize database pool configuration.

        Args:
            dsn: PostgreSQL connection string.
            min_size: Minimum number of connections in pool.
            max_size: Maximum number of connections in pool.
            command_timeout: Per-statement timeout in seconds.
        """
        self.dsn = dsn
        self.min_size = min_size
        self.max_size = max_size
        self.command_timeout = command_timeout
        self._pool: Optional[asyncpg.Pool] = None

    async def connect(self) -> None:
        """Create the connection pool."""
        if self._pool is not None:
            return

        self._pool = await asyncpg.create_pool(
            self.dsn,
            min_size=self.min_size,
            max_size=self.max_size,
            command_timeout=self.command_timeout,
        )

    async def close(self) -> None:
        """Close the connection pool."""
        if self._pool is not None:
            await self._pool.close()
            self._pool = None

    @asynccontextmanager
    async def acquire(self):
        """Acquire a connection from the pool."""
        if self._pool is None:
            raise RuntimeError("Database pool not connected. Call connect() first.")

        async with self._pool.acquire() as connection:
            yield connection

    async def execute(self, query: str, *args) -> str:
        """Execute a query and return status."""
        async with self.acquire() as conn:
            return await conn.execute(query, *args)

    async def fetchrow(self, query: str, *args) -> Optional[asyncpg.Record]:
        """Execute a query and return one row."""
        async with self.acquire() as conn:
            return await conn.fetchrow(query, *args)

    async def fetchval(self, query: str, *args):
        """Execute a query and return single value."""
        async with self.acquire() as conn:
            return await conn.fetchval(query, *args)

    @property
    def is_connected(self) -> bool:
        """Check if pool is connected."""
        return self._pool is not None
