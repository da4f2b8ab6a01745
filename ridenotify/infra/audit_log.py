# ridenotify/infra/audit_log.py
"""
Audit logging for push delivery attempts.

Every attempt is also persisted to ``notification_delivery_log``; this
logger mirrors those rows to a dedicated "audit" logger so operators can
route them to a separate sink without querying the database.
"""
from __future__ import annotations

import logging
from typing import Any

_audit_logger = logging.getLogger("audit")


def audit_event(
    action: str,
    *,
    notification_id: str | None = None,
    user_id: str | None = None,
    detail: str = "",
    extra: dict[str, Any] | None = None,
) -> None:
    """
    Record an audit event.

    Args:
        action: Action name (e.g., "push.delivered", "push.failed")
        notification_id: Notification row affected
        user_id: Recipient
        detail: Human-readable detail
        extra: Additional structured context
    """
    record = {
        "audit_action": action,
        "notification_id": notification_id or "",
        "user_id": user_id or "",
        "detail": detail,
    }
    if extra:
        record.update(extra)

    _audit_logger.info(
        f"AUDIT: {action} notification={notification_id or '-'} user={user_id or '-'} {detail}",
        extra=record,
    )
