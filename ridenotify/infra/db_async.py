# ridenotify/infra/db_async.py
"""
Process-wide asyncpg pool.

Repositories borrow connections through ``safe_db_conn``; only the
migration runner needs an explicit transaction.
"""
from __future__ import annotations
from contextlib import asynccontextmanager

import asyncpg
from ridenotify.config import settings
from ridenotify.infra.logging_config import get_logger

logger = get_logger(__name__)

_pool: asyncpg.Pool | None = None


async def init_pool() -> None:
    global _pool

    if _pool is not None:
        return

    _pool = await asyncpg.create_pool(
        dsn=settings.database_dsn,
        min_size=settings.pg_pool_min,
        max_size=settings.pg_pool_max,
        timeout=settings.pg_connect_timeout,
        server_settings={"application_name": "ridenotify"},
    )
    logger.info(f"Notification store pool ready: min={settings.pg_pool_min}, max={settings.pg_pool_max}")


async def close_pool() -> None:
    global _pool

    if _pool is None:
        return

    await _pool.close()
    _pool = None
    logger.info("Notification store pool closed")


def get_pool() -> asyncpg.Pool:
    if _pool is None:
        raise RuntimeError("Notification store pool not initialized; call init_pool() at startup")
    return _pool


@asynccontextmanager
async def transaction():
    """Pooled connection inside one transaction; rolled back if the block raises."""
    async with get_pool().acquire() as conn:
        async with conn.transaction():
            yield conn
