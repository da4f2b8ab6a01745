# ridenotify/infra/pg_profile_repo_async.py
"""
Async PostgreSQL profile lookups (asyncpg).
Only the FCM registration token is read here; clients write it themselves.
"""
from __future__ import annotations
from typing import Optional

from ridenotify.config import settings
from ridenotify.infra.db_resilience_async import persistence_errors, safe_db_conn


class AsyncPostgresProfileRepository:
    """Async PostgreSQL implementation of AsyncProfileRepository."""

    def __init__(self, query_timeout: float | None = None) -> None:
        self._timeout = query_timeout or settings.db_query_timeout_seconds

    async def get_device_token(self, user_id: str) -> Optional[str]:
        async with persistence_errors("get_device_token"):
            async with safe_db_conn() as conn:
                token = await conn.fetchval(
                    "SELECT fcm_token FROM profiles WHERE id = $1::uuid",
                    user_id,
                    timeout=self._timeout,
                )
        return token or None
