# ridenotify/infra/pg_notification_repo_async.py
"""
Async PostgreSQL notification repository (asyncpg).

Tables:
- ``notifications``: one row per recipient per event; push status columns
  are updated once per delivery attempt.
- ``notification_delivery_log``: append-only, one row per attempt.
"""
from __future__ import annotations
import json
from typing import Any, Optional

from ridenotify.config import settings
from ridenotify.core.domain import DeliveryLogEntry, NotificationIntent, NotificationRecord
from ridenotify.core.errors import PersistenceError
from ridenotify.infra.db_resilience_async import persistence_errors, safe_db_conn
from ridenotify.infra.logging_config import get_logger

logger = get_logger(__name__)

_SELECT_COLUMNS = """
    id, user_id, notification_type, category, priority, title, message,
    action_url, ride_id, context_data, push_sent, push_sent_at,
    push_delivery_confirmed, push_error, retry_count, created_at
"""


def _row_to_notification(row: Any) -> NotificationRecord:
    """Map an asyncpg Record (or dict) to NotificationRecord."""
    context = row["context_data"]
    if isinstance(context, str):
        context = json.loads(context)

    return NotificationRecord(
        id=str(row["id"]),
        user_id=str(row["user_id"]),
        notification_type=row["notification_type"],
        category=row["category"],
        priority=row["priority"],
        title=row["title"],
        message=row["message"],
        action_url=row["action_url"],
        ride_id=str(row["ride_id"]) if row["ride_id"] is not None else None,
        context_data=context or {},
        push_sent=bool(row["push_sent"]),
        push_sent_at=row["push_sent_at"],
        push_delivery_confirmed=bool(row["push_delivery_confirmed"]),
        push_error=row["push_error"],
        retry_count=row["retry_count"] or 0,
        created_at=row["created_at"],
    )


class AsyncPostgresNotificationRepository:
    """Async PostgreSQL implementation of AsyncNotificationRepository."""

    def __init__(self, query_timeout: float | None = None) -> None:
        self._timeout = query_timeout or settings.db_query_timeout_seconds

    async def create(self, intent: NotificationIntent) -> str:
        """
        Insert a notification for one recipient.

        Returns:
            The new notification id

        Raises:
            PersistenceError: insert failed
        """
        async with persistence_errors("create_notification"):
            async with safe_db_conn() as conn:
                notification_id = await conn.fetchval(
                    """
                    INSERT INTO notifications (
                        user_id, notification_type, category, priority,
                        title, message, action_url, ride_id, context_data
                    )
                    VALUES ($1::uuid, $2, $3, $4, $5, $6, $7, $8::uuid, $9::jsonb)
                    RETURNING id
                    """,
                    intent.recipient_id,
                    intent.notification_type.value,
                    intent.category.value,
                    intent.priority.value,
                    intent.title,
                    intent.message,
                    intent.action_reference,
                    intent.ride_id,
                    json.dumps(intent.context_data, default=str),
                    timeout=self._timeout,
                )

        if notification_id is None:
            raise PersistenceError("create_notification returned no id")

        logger.debug(
            f"Notification created: id={notification_id}, user={intent.recipient_id}, "
            f"type={intent.notification_type.value}"
        )
        return str(notification_id)

    async def get(self, notification_id: str) -> Optional[NotificationRecord]:
        async with persistence_errors("get_notification"):
            async with safe_db_conn() as conn:
                row = await conn.fetchrow(
                    f"SELECT {_SELECT_COLUMNS} FROM notifications WHERE id = $1::uuid",
                    notification_id,
                    timeout=self._timeout,
                )
        return _row_to_notification(row) if row else None

    async def mark_push_sent(self, notification_id: str) -> None:
        async with persistence_errors("mark_push_sent"):
            async with safe_db_conn() as conn:
                await conn.execute(
                    """
                    UPDATE notifications
                    SET push_sent = TRUE,
                        push_sent_at = NOW(),
                        push_delivery_confirmed = TRUE,
                        push_delivery_confirmed_at = NOW(),
                        push_error = NULL
                    WHERE id = $1::uuid
                    """,
                    notification_id,
                    timeout=self._timeout,
                )

    async def mark_push_failed(self, notification_id: str, error: str) -> None:
        """Record the gateway error; push_sent stays as it was (false)."""
        async with persistence_errors("mark_push_failed"):
            async with safe_db_conn() as conn:
                await conn.execute(
                    "UPDATE notifications SET push_error = $2 WHERE id = $1::uuid",
                    notification_id,
                    error,
                    timeout=self._timeout,
                )

    async def increment_retry_count(self, notification_id: str) -> int:
        async with persistence_errors("increment_retry_count"):
            async with safe_db_conn() as conn:
                value = await conn.fetchval(
                    """
                    UPDATE notifications
                    SET retry_count = COALESCE(retry_count, 0) + 1
                    WHERE id = $1::uuid
                    RETURNING retry_count
                    """,
                    notification_id,
                    timeout=self._timeout,
                )
        if value is None:
            raise PersistenceError(f"notification {notification_id} vanished during retry bump")
        return int(value)

    async def append_delivery_log(self, entry: DeliveryLogEntry) -> None:
        async with persistence_errors("append_delivery_log"):
            async with safe_db_conn() as conn:
                await conn.execute(
                    """
                    INSERT INTO notification_delivery_log (
                        notification_id, attempt_number, delivery_method, success, error_message
                    )
                    VALUES ($1::uuid, $2, $3, $4, $5)
                    """,
                    entry.notification_id,
                    entry.attempt_number,
                    entry.delivery_method,
                    entry.success,
                    entry.error_message,
                    timeout=self._timeout,
                )
