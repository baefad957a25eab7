"""PostgreSQL connection management."""
from __future__ import annotations

from contextlib import asynccontextmanager
from typing import AsyncGenerator, Optional

import asyncpg
from asyncpg import Pool


def normalize_dsn(dsn: str) -> str:
    # Heroku/Railway style URLs
    if dsn.startswith("postgres://"):
        return dsn.replace("postgres://", "postgresql://", 1)
    return dsn


class Database:
    """Process-wide asyncpg pool, keyed by the DSN it was opened with."""

    _pool: Optional[Pool] = None
    _dsn: Optional[str] = None

    @classmethod
    async def get_pool(cls, dsn: str) -> Pool:
        """Get or create the connection pool."""
        dsn = normalize_dsn(dsn)
        if cls._pool is None or cls._dsn != dsn:
            pool_kwargs: dict = {
                "min_size": 1,
                "max_size": 10,
                "command_timeout": 30,
            }
            if "neon" in dsn:
                import ssl
                pool_kwargs.update({
                    "ssl": ssl.create_default_context(),
                    "statement_cache_size": 0,  # pgbouncer
                })
            cls._pool = await asyncpg.create_pool(dsn, **pool_kwargs)
            cls._dsn = dsn
        return cls._pool

    @classmethod
    async def close(cls) -> None:
        """Close the connection pool."""
        if cls._pool:
            await cls._pool.close()
            cls._pool = None
            cls._dsn = None

    @classmethod
    @asynccontextmanager
    async def connection(cls, dsn: str) -> AsyncGenerator[asyncpg.Connection, None]:
        """Get a connection from the pool."""
        pool = await cls.get_pool(dsn)
        async with pool.acquire() as conn:
            yield conn


__all__ = ["Database", "normalize_dsn"]
