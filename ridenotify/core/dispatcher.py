# ridenotify/core/dispatcher.py
"""
Notification fan-out.

Each intent is persisted and delivered in its own task. A failure in one
recipient's path is caught inside that task and reported in its result; it
never cancels siblings. Only credential problems abort the whole run. They
are checked once up front, before anything is persisted, and the access
token obtained there is shared by every delivery in the run.
"""
from __future__ import annotations

import asyncio
import logging
from typing import Optional

from ridenotify.config import settings
from ridenotify.core.delivery import PushDeliveryService
from ridenotify.core.domain import (
    BroadcastResult,
    DispatchResult,
    GeoPoint,
    NotificationCategory,
    NotificationIntent,
    NotificationType,
    Priority,
    RecipientResult,
    Ride,
    RideEvent,
)
from ridenotify.core.eligibility import build_broadcast_intents, build_offer_rejected_intents, filter_eligible
from ridenotify.core.errors import DispatcherError, NotFoundError, PersistenceError
from ridenotify.core.ports import AccessTokenProvider, AsyncNotificationRepository, AsyncRideRepository
from ridenotify.core.routing import resolve_intents
from ridenotify.infra.metrics import inc_counter

logger = logging.getLogger(__name__)

APP_UPDATE_ACTION_URL = "/?update=true"


class NotificationDispatcher:
    def __init__(
        self,
        notifications: AsyncNotificationRepository,
        rides: AsyncRideRepository,
        delivery: PushDeliveryService,
        token_provider: AccessTokenProvider,
    ) -> None:
        self.notifications = notifications
        self.rides = rides
        self.delivery = delivery
        self.token_provider = token_provider

    # ------------------------------------------------------------------
    # Fan-out
    # ------------------------------------------------------------------

    async def dispatch(self, intents: list[NotificationIntent]) -> DispatchResult:
        """
        Persist and deliver every intent concurrently.

        Raises:
            ConfigurationError: no usable service account
            AuthenticationError: access token could not be obtained
        """
        if not intents:
            return DispatchResult(results=[])

        self.token_provider.ensure_configured()
        access_token = await self.token_provider.get_access_token()

        results = await asyncio.gather(*(self._notify_one(intent, access_token) for intent in intents))
        result = DispatchResult(results=list(results))
        logger.info(
            "Dispatch complete: attempted=%d, notified=%d, persisted=%d",
            result.attempted, result.notified, result.persisted,
        )
        return result

    async def _notify_one(self, intent: NotificationIntent, access_token: str) -> RecipientResult:
        try:
            notification_id = await self.notifications.create(intent)
        except PersistenceError as exc:
            logger.error("Failed to persist notification for user=%s: %s", intent.recipient_id, exc)
            inc_counter("notification_persist_failed")
            return RecipientResult(recipient_id=intent.recipient_id, success=False, error=str(exc))

        try:
            outcome = await self.delivery.deliver(
                intent.recipient_id,
                notification_id,
                intent.title,
                intent.message,
                intent.action_reference,
                intent.priority,
                intent.context_data,
                notification_type=intent.notification_type.value,
                ride_id=intent.ride_id,
                access_token=access_token,
            )
        except DispatcherError as exc:
            logger.error(
                "Delivery aborted: notification=%s, user=%s: %s",
                notification_id, intent.recipient_id, exc,
            )
            return RecipientResult(
                recipient_id=intent.recipient_id,
                success=False,
                notification_id=notification_id,
                error=str(exc),
            )
        except Exception as exc:
            logger.error(
                "Unexpected delivery error: notification=%s, user=%s",
                notification_id, intent.recipient_id,
                exc_info=True,
            )
            return RecipientResult(
                recipient_id=intent.recipient_id,
                success=False,
                notification_id=notification_id,
                error=f"{type(exc).__name__}: {exc}",
            )

        return RecipientResult(
            recipient_id=intent.recipient_id,
            success=not outcome.failed,
            notification_id=notification_id,
            push_sent=outcome.push_sent,
            skipped=outcome.skipped,
            error=outcome.error,
        )

    # ------------------------------------------------------------------
    # Use cases
    # ------------------------------------------------------------------

    async def handle_status_change(self, event: RideEvent) -> DispatchResult:
        intents = resolve_intents(event)
        logger.info(
            "Ride status change: ride=%s, %s -> %s, intents=%d",
            event.ride_id, event.old_status, event.new_status, len(intents),
        )
        return await self.dispatch(intents)

    async def broadcast_new_ride(
        self,
        ride: Ride,
        point: GeoPoint,
        radius_km: Optional[float] = None,
    ) -> BroadcastResult:
        """
        Offer a new instant ride to eligible drivers near the pickup point.

        Raises:
            PersistenceError: nearby-driver query failed
        """
        if not ride.is_broadcastable:
            logger.info(
                "Ride %s not broadcast: timing=%s, status=%s",
                ride.id, ride.ride_timing, ride.ride_status,
            )
            return BroadcastResult(
                drivers_notified=0, eligible_drivers=0, total_nearby=0,
                message="Ride is not instant or not pending",
            )

        radius = radius_km if radius_km and radius_km > 0 else settings.default_broadcast_radius_km
        candidates = await self.rides.find_nearby_candidates(point, radius)
        inc_counter("broadcast_candidates", amount=len(candidates))

        if not candidates:
            return BroadcastResult(
                drivers_notified=0, eligible_drivers=0, total_nearby=0,
                message="No nearby drivers",
            )

        eligible = filter_eligible(candidates)
        if not eligible:
            return BroadcastResult(
                drivers_notified=0, eligible_drivers=0, total_nearby=len(candidates),
                message="No eligible drivers (online and available)",
            )

        result = await self.dispatch(build_broadcast_intents(ride, eligible))
        return BroadcastResult(
            drivers_notified=result.notified,
            eligible_drivers=len(eligible),
            total_nearby=len(candidates),
            message=f"Notified {result.notified} eligible drivers",
            results=result.results,
        )

    async def broadcast_ride_by_id(
        self,
        ride_id: str,
        point: GeoPoint,
        radius_km: Optional[float] = None,
    ) -> BroadcastResult:
        ride = await self.rides.get(ride_id)
        if ride is None:
            raise NotFoundError("Ride not found")
        return await self.broadcast_new_ride(ride, point, radius_km)

    async def notify_offer_rejected(
        self,
        ride_id: str,
        accepted_driver_id: str,
        bidder_ids: list[str],
        dropoff_location: Optional[str] = None,
    ) -> DispatchResult:
        """Tell the other bidders on a ride that another driver's offer was accepted."""
        intents = build_offer_rejected_intents(ride_id, accepted_driver_id, bidder_ids, dropoff_location)
        logger.info(
            "Offer accepted: ride=%s, driver=%s, competing bidders=%d",
            ride_id, accepted_driver_id, len(intents),
        )
        return await self.dispatch(intents)

    async def notify_app_update(
        self,
        user_id: str,
        new_version: str,
        current_version: Optional[str] = None,
    ) -> DispatchResult:
        intent = NotificationIntent(
            recipient_id=user_id,
            notification_type=NotificationType.APP_UPDATE,
            category=NotificationCategory.SYSTEM,
            priority=Priority.HIGH,
            title="New Version Available",
            message=(
                f"TaxiCab v{new_version} is ready! "
                "Update now for the latest features and improvements."
            ),
            action_reference=APP_UPDATE_ACTION_URL,
            context_data={"new_version": new_version, "current_version": current_version},
        )
        return await self.dispatch([intent])

    async def redeliver(self, notification_id: str) -> RecipientResult:
        """
        Push an existing notification again (maintenance path).

        Bumps ``retry_count`` first; the delivery log gets
        ``attempt_number = retry_count + 1`` so the first delivery stays 1.

        Raises:
            NotFoundError: no such notification
            ConfigurationError, AuthenticationError: see ``dispatch``
        """
        record = await self.notifications.get(notification_id)
        if record is None:
            raise NotFoundError(f"Notification not found: {notification_id}")

        self.token_provider.ensure_configured()
        access_token = await self.token_provider.get_access_token()

        retry_count = await self.notifications.increment_retry_count(notification_id)
        outcome = await self.delivery.deliver(
            record.user_id,
            record.id,
            record.title,
            record.message,
            record.action_url,
            record.priority,
            record.context_data,
            notification_type=record.notification_type,
            ride_id=record.ride_id,
            attempt_number=retry_count + 1,
            access_token=access_token,
        )
        logger.info(
            "Redelivery: notification=%s, attempt=%d, sent=%s",
            notification_id, retry_count + 1, outcome.push_sent,
        )
        return RecipientResult(
            recipient_id=record.user_id,
            success=not outcome.failed,
            notification_id=record.id,
            push_sent=outcome.push_sent,
            skipped=outcome.skipped,
            error=outcome.error,
        )
