# ridenotify/core/delivery.py
"""
Push delivery for one persisted notification.

Looks up the recipient's device token, sends through the push gateway and
records the outcome on the notification row and in the delivery log.
A missing token is a skip, not a failure.
"""
from __future__ import annotations

import logging
from typing import Any, Optional

from ridenotify.core.domain import DeliveryLogEntry, DeliveryOutcome, Priority
from ridenotify.core.errors import AuthenticationError, DeliveryError, PersistenceError
from ridenotify.core.ports import AsyncNotificationRepository, AsyncProfileRepository, PushGateway
from ridenotify.infra.audit_log import audit_event
from ridenotify.infra.fcm_sender import build_message
from ridenotify.infra.metrics import inc_counter

logger = logging.getLogger(__name__)


class PushDeliveryService:
    def __init__(
        self,
        notifications: AsyncNotificationRepository,
        profiles: AsyncProfileRepository,
        gateway: PushGateway,
    ) -> None:
        self.notifications = notifications
        self.profiles = profiles
        self.gateway = gateway

    async def deliver(
        self,
        recipient_id: str,
        notification_id: str,
        title: str,
        message: str,
        action_reference: Optional[str],
        priority: Priority | str,
        context_data: Optional[dict[str, Any]] = None,
        *,
        notification_type: str = "",
        ride_id: Optional[str] = None,
        attempt_number: int = 1,
        access_token: Optional[str] = None,
    ) -> DeliveryOutcome:
        """
        Send one push notification and record what happened.

        Args:
            recipient_id: User whose device token is looked up
            notification_id: Persisted notification row
            attempt_number: Written to the delivery log (1 for first delivery)
            access_token: Token fetched once for the whole fan-out

        Returns:
            DeliveryOutcome. Gateway and token failures are recorded on the
            row and reported in ``error``, never raised.

        Raises:
            PersistenceError: device token lookup failed
        """
        device_token = await self.profiles.get_device_token(recipient_id)
        if not device_token:
            logger.info(
                "No FCM token for user=%s, push skipped (notification=%s)",
                recipient_id, notification_id,
            )
            inc_counter("push_skipped_no_token")
            return DeliveryOutcome(notification_id=notification_id, push_sent=False, skipped=True)

        fcm_message = build_message(
            device_token,
            notification_id=notification_id,
            notification_type=notification_type,
            title=title,
            body=message,
            action_url=action_reference,
            priority=priority,
            ride_id=ride_id,
        )

        try:
            await self.gateway.send(fcm_message, access_token=access_token)
        except (DeliveryError, AuthenticationError) as exc:
            error_text = str(exc)
            logger.warning(
                "Push failed: notification=%s, user=%s, status=%s",
                notification_id, recipient_id, exc.status,
            )
            inc_counter("push_failed")
            await self._record(
                notification_id,
                DeliveryLogEntry(
                    notification_id=notification_id,
                    attempt_number=attempt_number,
                    success=False,
                    error_message=error_text,
                ),
                error=error_text,
            )
            audit_event(
                "push.failed",
                notification_id=notification_id,
                user_id=recipient_id,
                detail=f"attempt={attempt_number} status={exc.status}",
            )
            return DeliveryOutcome(notification_id=notification_id, push_sent=False, error=error_text)

        inc_counter("push_sent")
        await self._record(
            notification_id,
            DeliveryLogEntry(notification_id=notification_id, attempt_number=attempt_number, success=True),
        )
        audit_event(
            "push.delivered",
            notification_id=notification_id,
            user_id=recipient_id,
            detail=f"attempt={attempt_number}",
            extra={"context": context_data or {}},
        )
        return DeliveryOutcome(notification_id=notification_id, push_sent=True)

    async def _record(
        self,
        notification_id: str,
        entry: DeliveryLogEntry,
        *,
        error: Optional[str] = None,
    ) -> None:
        """Update the row and append the log entry; bookkeeping errors are logged only."""
        try:
            if entry.success:
                await self.notifications.mark_push_sent(notification_id)
            else:
                await self.notifications.mark_push_failed(notification_id, error or "")
        except PersistenceError:
            logger.error("Failed to update push status: notification=%s", notification_id, exc_info=True)

        try:
            await self.notifications.append_delivery_log(entry)
        except PersistenceError:
            logger.error("Failed to append delivery log: notification=%s", notification_id, exc_info=True)
