"""
PostgreSQL access for the pipeline.

Activity records, alert rules, alerts, channels, and budgets all live in
one database reached through an asyncpg pool. Sessions are pinned to UTC
so ``timestamptz`` values round-trip as aware UTC datetimes.
"""

import asyncio
import logging
from collections.abc import AsyncIterator
from contextlib import asynccontextmanager
from types import TracebackType
from typing import Any

import asyncpg

from clawwatch.config.settings import get_settings
from clawwatch.services.backoff import ExponentialBackoff

logger = logging.getLogger(__name__)

_SERVER_SETTINGS = {"application_name": "clawwatch", "timezone": "UTC"}


class Database:
    """
    Pooled PostgreSQL connection manager.

    ``connect()`` retries with backoff so the pipeline can start before
    the database is accepting connections (e.g. both launched by compose).

    Usage:
        async with Database() as db:
            async with db.transaction() as conn:
                await conn.fetchval("UPDATE alert_rules ... RETURNING rule_id")
    """

    def __init__(
        self,
        database_url: str | None = None,
        min_size: int | None = None,
        max_size: int | None = None,
        connect_attempts: int | None = None,
    ):
        """
        Args:
            database_url: PostgreSQL connection URL (default from settings)
            min_size: Minimum pool size
            max_size: Maximum pool size
            connect_attempts: Tries before ``connect()`` gives up
        """
        settings = get_settings()

        self._database_url = database_url or str(settings.database_url)
        self._min_size = min_size or settings.db_pool_min_size
        self._max_size = max_size or settings.db_pool_max_size
        self._command_timeout = settings.db_command_timeout
        self._connect_attempts = connect_attempts or settings.db_connect_attempts

        self._pool: asyncpg.Pool | None = None

    async def connect(self) -> None:
        """Create the pool, retrying refused or failed connections."""
        backoff = ExponentialBackoff(base_delay=0.5, max_delay=10.0)

        for attempt in range(1, self._connect_attempts + 1):
            try:
                self._pool = await asyncpg.create_pool(
                    self._database_url,
                    min_size=self._min_size,
                    max_size=self._max_size,
                    command_timeout=self._command_timeout,
                    server_settings=_SERVER_SETTINGS,
                )
            except (OSError, asyncpg.PostgresError) as e:
                if attempt == self._connect_attempts:
                    logger.error(
                        "Failed to connect to database after %d attempts: %s", attempt, e,
                    )
                    raise
                delay = backoff.next_delay()
                logger.warning(
                    "Database connection attempt %d failed: %s; retrying in %.1fs",
                    attempt, e, delay,
                )
                await asyncio.sleep(delay)
            else:
                logger.info(
                    "Database connected (pool: %d-%d)", self._min_size, self._max_size,
                )
                return

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
        """Get connection pool, raising if not connected."""
        if self._pool is None:
            raise RuntimeError("Database not connected. Call connect() first.")
        return self._pool

    @asynccontextmanager
    async def acquire(self) -> AsyncIterator[asyncpg.Connection]:
        async with self.pool.acquire() as conn:
            yield conn

    @asynccontextmanager
    async def transaction(self) -> AsyncIterator[asyncpg.Connection]:
        """
        Run statements on one connection inside a transaction.

        Used where a check and a write must commit together, such as the
        cooldown claim and alert insert of a firing rule.
        """
        async with self.pool.acquire() as conn:
            async with conn.transaction():
                yield conn

    async def execute(self, query: str, *args: Any) -> str:
        async with self.acquire() as conn:
            return await conn.execute(query, *args)

    async def fetch(self, query: str, *args: Any) -> list[asyncpg.Record]:
        async with self.acquire() as conn:
            return await conn.fetch(query, *args)

    async def fetchrow(self, query: str, *args: Any) -> asyncpg.Record | None:
        async with self.acquire() as conn:
            return await conn.fetchrow(query, *args)

    async def fetchval(self, query: str, *args: Any) -> Any:
        async with self.acquire() as conn:
            return await conn.fetchval(query, *args)

    def pool_stats(self) -> dict[str, int] | None:
        """Current pool size and idle connections, or None when not connected."""
        if self._pool is None:
            return None
        return {"size": self._pool.get_size(), "idle": self._pool.get_idle_size()}

    async def health_check(self) -> bool:
        """
        Check if database is healthy.

        Returns:
            True if a trivial query succeeds
        """
        try:
            result = await self.fetchval("SELECT 1")
        except (OSError, RuntimeError, asyncpg.PostgresError) as e:
            logger.warning("Database health check failed: %s", e)
            return False
        return result == 1
