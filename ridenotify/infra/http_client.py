# ridenotify/infra/http_client.py
"""
Shared HTTP client sessions for the dispatcher.

Provides named, lazy-initialized aiohttp.ClientSession singletons so a
warm process reuses TCP connections to Google between invocations.

Session profiles
~~~~~~~~~~~~~~~~
- **auth** – OAuth2 token exchange  (total=15 s, connect=5 s, pool limit=4)
- **push** – FCM HTTP v1 sends      (total=15 s, connect=5 s, pool limit=50)

Per-request timeouts from settings are passed on each call and are the
effective bound; the session timeout is only a backstop.

Shutdown
~~~~~~~~
Call ``close_all_sessions()`` once during application shutdown.
"""
from __future__ import annotations

import aiohttp

from ridenotify.infra.logging_config import get_logger

logger = get_logger(__name__)

_sessions: dict[str, aiohttp.ClientSession] = {}


def _get_or_create(
    name: str,
    timeout: aiohttp.ClientTimeout,
    limit: int = 10,
) -> aiohttp.ClientSession:
    """Return an existing session or create a new one."""
    session = _sessions.get(name)
    if session is None or session.closed:
        session = aiohttp.ClientSession(
            timeout=timeout,
            connector=aiohttp.TCPConnector(
                keepalive_timeout=30,
                limit=limit,
                enable_cleanup_closed=True,
            ),
        )
        _sessions[name] = session
        logger.debug("HTTP session '%s' created (limit=%d)", name, limit)
    return session


def get_auth_session() -> aiohttp.ClientSession:
    """Session for the OAuth2 token endpoint."""
    return _get_or_create(
        "auth",
        aiohttp.ClientTimeout(total=15, connect=5),
        limit=4,
    )


def get_push_session() -> aiohttp.ClientSession:
    """Session for FCM sends. Broadcasts fan out, so the pool is wide."""
    return _get_or_create(
        "push",
        aiohttp.ClientTimeout(total=15, connect=5),
        limit=50,
    )


async def close_all_sessions() -> None:
    """Gracefully close every managed session.  Call during app shutdown."""
    for name in list(_sessions):
        session = _sessions.pop(name, None)
        if session is not None and not session.closed:
            await session.close()
            logger.debug("HTTP session '%s' closed", name)
