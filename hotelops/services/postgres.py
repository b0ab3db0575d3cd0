from __future__ import annotations

import asyncio
import logging
from contextlib import asynccontextmanager
from dataclasses import dataclass
from typing import AsyncIterator

import asyncpg

from hotelops.core.errors import TransientStoreError

logger = logging.getLogger(__name__)

# Errors that mean "try again", never "your request is wrong".
TRANSIENT_ERRORS: tuple[type[BaseException], ...] = (
    asyncpg.exceptions.DeadlockDetectedError,
    asyncpg.exceptions.LockNotAvailableError,
    asyncpg.exceptions.SerializationError,
    asyncpg.exceptions.TooManyConnectionsError,
    asyncpg.exceptions.ConnectionDoesNotExistError,
    asyncpg.exceptions.PostgresConnectionError,
    asyncpg.exceptions.InterfaceError,
    ConnectionError,
    asyncio.TimeoutError,
)


@asynccontextmanager
async def store_errors() -> AsyncIterator[None]:
    """Re-raise retryable driver errors as ``TransientStoreError``."""

    try:
        yield
    except TRANSIENT_ERRORS as exc:
        logger.warning("Transient store failure: %s", exc)
        raise TransientStoreError(str(exc) or exc.__class__.__name__) from exc


@asynccontextmanager
async def transaction(pool: asyncpg.Pool, *, lock_timeout_ms: int = 5000) -> AsyncIterator[asyncpg.Connection]:
    """Acquire a connection and run one atomic unit of work on it."""

    async with store_errors():
        async with pool.acquire() as connection:
            async with connection.transaction():
                # SET LOCAL does not accept bind parameters
                await connection.execute(f"SET LOCAL lock_timeout = {int(lock_timeout_ms)}")
                yield connection


@dataclass(slots=True)
class PostgresDatabase:
    """Owns the asyncpg pool for the process and offers a health check."""

    dsn: str
    min_size: int = 1
    max_size: int = 10
    _pool: asyncpg.Pool | None = None

    async def connect(self) -> asyncpg.Pool:
        if self._pool is None:
            async with store_errors():
                self._pool = await asyncpg.create_pool(dsn=self.dsn, min_size=self.min_size, max_size=self.max_size)
        return self._pool

    @property
    def pool(self) -> asyncpg.Pool:
        if self._pool is None:
            raise RuntimeError("Database pool is not connected")
        return self._pool

    async def ping(self) -> bool:
        pool = await self.connect()
        async with store_errors():
            async with pool.acquire() as connection:
                await connection.execute("SELECT 1")
        return True

    async def close(self) -> None:
        if self._pool is not None:
            await self._pool.close()
            self._pool = None
