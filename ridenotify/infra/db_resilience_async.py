# ridenotify/infra/db_resilience_async.py
"""
Async database resilience utilities.

- ``safe_db_conn``: acquire a pooled connection, retrying transient
  acquisition failures with exponential backoff. Statements themselves are
  never replayed; a failed INSERT could otherwise create a duplicate row.
- ``persistence_errors``: turn driver-level failures into PersistenceError
  so the dispatcher can isolate them per recipient.
"""
from __future__ import annotations
import asyncio
from contextlib import asynccontextmanager
from typing import AsyncIterator

import asyncpg
from ridenotify.core.errors import PersistenceError
from ridenotify.infra import db_async
from ridenotify.infra.logging_config import get_logger
from ridenotify.infra.metrics import inc_counter

logger = get_logger(__name__)

_TRANSIENT_PATTERNS = (
    "connection",
    "timeout",
    "closed",
    "network",
    "too many connections",
    "connection reset",
)


def is_transient_error(exc: Exception) -> bool:
    """
    Check if database error is transient (should retry).

    Transient errors:
    - Connection errors
    - Server closed connection
    - Too many connections
    """
    if isinstance(exc, (asyncpg.PostgresConnectionError, asyncpg.TooManyConnectionsError)):
        return True
    if isinstance(exc, (ConnectionError, asyncio.TimeoutError)):
        return True

    error_message = str(exc).lower()
    return any(pattern in error_message for pattern in _TRANSIENT_PATTERNS)


async def _acquire_with_retry(max_retries: int, initial_delay: float) -> asyncpg.Connection:
    pool = db_async.get_pool()
    delay = initial_delay

    for attempt in range(max_retries + 1):
        try:
            return await pool.acquire()
        except Exception as exc:
            if not is_transient_error(exc) or attempt >= max_retries:
                raise

            logger.warning(
                f"Transient error getting connection (attempt {attempt + 1}/{max_retries}): {exc}. "
                f"Retrying in {delay:.2f}s..."
            )
            await asyncio.sleep(delay)
            delay = min(delay * 2.0, 5.0)

    raise RuntimeError("unreachable")  # pragma: no cover


@asynccontextmanager
async def safe_db_conn(max_retries: int = 3, initial_delay: float = 0.1) -> AsyncIterator[asyncpg.Connection]:
    """
    Pooled connection with retry on transient acquisition errors.

    Usage:
        async with safe_db_conn() as conn:
            await conn.execute("UPDATE notifications SET ... WHERE id = $1", notification_id)
    """
    conn = await _acquire_with_retry(max_retries, initial_delay)
    try:
        yield conn
    finally:
        await db_async.get_pool().release(conn)


@asynccontextmanager
async def persistence_errors(operation: str) -> AsyncIterator[None]:
    """Re-raise database/driver failures inside the block as PersistenceError."""
    try:
        yield
    except PersistenceError:
        raise
    except (asyncpg.PostgresError, asyncpg.InterfaceError, OSError, asyncio.TimeoutError, RuntimeError) as exc:
        logger.error(f"Database error during {operation}: {type(exc).__name__}: {exc}")
        inc_counter("database_errors_total", operation=operation)
        raise PersistenceError(f"{operation} failed: {type(exc).__name__}: {exc}") from exc
