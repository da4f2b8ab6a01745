# ridenotify/core/routing.py
"""
Ride status -> notification routing.

The table is plain data: a canonical status (and, for cancellations, who
cancelled) maps to the intent templates to fan out. ``resolve_intents``
only canonicalizes the event, looks the key up and fills in recipient ids;
it does no I/O and never raises on unknown input.
"""
from __future__ import annotations

from dataclasses import dataclass
from enum import Enum
from types import MappingProxyType
from typing import Any, Mapping, Optional

from ridenotify.core.domain import (
    CancelledBy,
    NotificationCategory,
    NotificationIntent,
    NotificationType,
    Priority,
    RideEvent,
    RideStatus,
)


class Audience(str, Enum):
    PASSENGER = "passenger"
    DRIVER = "driver"


@dataclass(frozen=True)
class IntentTemplate:
    audience: Audience
    notification_type: NotificationType
    category: NotificationCategory
    priority: Priority
    title: str
    message: str


def _progress(
    audience: Audience,
    notification_type: NotificationType,
    priority: Priority,
    title: str,
    message: str,
) -> tuple[IntentTemplate, ...]:
    return (
        IntentTemplate(
            audience=audience,
            notification_type=notification_type,
            category=NotificationCategory.RIDE_PROGRESS,
            priority=priority,
            title=title,
            message=message,
        ),
    )


def _cancelled(notification_type: NotificationType, *audiences: Audience) -> tuple[IntentTemplate, ...]:
    return tuple(
        IntentTemplate(
            audience=audience,
            notification_type=notification_type,
            category=NotificationCategory.CANCELLATIONS,
            priority=Priority.HIGH,
            title="Ride Cancelled",
            message="The ride has been cancelled",
        )
        for audience in audiences
    )


RouteKey = tuple[RideStatus, Optional[CancelledBy]]

ROUTING_TABLE: Mapping[RouteKey, tuple[IntentTemplate, ...]] = MappingProxyType({
    # New rides are broadcast to nearby drivers, not routed
    (RideStatus.PENDING, None): (),
    (RideStatus.ACCEPTED, None): _progress(
        Audience.DRIVER, NotificationType.OFFER_ACCEPTED, Priority.HIGH,
        "Ride Accepted",
        "Your ride has been accepted! Start heading to the pickup location.",
    ),
    (RideStatus.DRIVER_ASSIGNED, None): _progress(
        Audience.PASSENGER, NotificationType.RIDE_ACTIVATED, Priority.HIGH,
        "Driver Assigned",
        "A driver has been assigned to your ride",
    ),
    (RideStatus.DRIVER_ON_WAY, None): _progress(
        Audience.PASSENGER, NotificationType.DRIVER_ON_THE_WAY, Priority.HIGH,
        "Driver On The Way",
        "Your driver is heading to the pickup location",
    ),
    (RideStatus.DRIVER_ARRIVED, None): _progress(
        Audience.PASSENGER, NotificationType.DRIVER_ARRIVED, Priority.URGENT,
        "Driver Arrived",
        "Your driver has arrived at the pickup location",
    ),
    (RideStatus.TRIP_STARTED, None): _progress(
        Audience.PASSENGER, NotificationType.TRIP_STARTED, Priority.NORMAL,
        "Trip Started",
        "Your trip has started",
    ),
    (RideStatus.TRIP_COMPLETED, None): _progress(
        Audience.PASSENGER, NotificationType.TRIP_COMPLETED, Priority.NORMAL,
        "Trip Completed",
        "Your trip has been completed",
    ),
    (RideStatus.CANCELLED, CancelledBy.DRIVER): _cancelled(
        NotificationType.RIDE_CANCELLED_BY_DRIVER, Audience.PASSENGER,
    ),
    (RideStatus.CANCELLED, CancelledBy.PASSENGER): _cancelled(
        NotificationType.RIDE_CANCELLED_BY_PASSENGER, Audience.DRIVER,
    ),
    (RideStatus.CANCELLED, CancelledBy.SYSTEM): _cancelled(
        NotificationType.RIDE_CANCELLED_BY_SYSTEM, Audience.PASSENGER, Audience.DRIVER,
    ),
})


def passenger_action_url(ride_id: str) -> str:
    return f"/user/dashboard?rideId={ride_id}"


def driver_action_url(ride_id: str) -> str:
    return f"/driver/rides?rideId={ride_id}"


def route_key(event: RideEvent) -> RouteKey | None:
    """Canonical lookup key for an event, or None when nothing should be sent."""
    new_status = RideStatus.canonicalize(event.new_status)
    if new_status is None:
        return None

    # Synonyms count as the same status: completed -> trip_completed is not a transition
    if event.old_status is not None and RideStatus.canonicalize(event.old_status) is new_status:
        return None

    if new_status is not RideStatus.CANCELLED:
        return new_status, None

    try:
        cancelled_by = CancelledBy(event.cancelled_by) if event.cancelled_by else CancelledBy.SYSTEM
    except ValueError:
        cancelled_by = CancelledBy.SYSTEM
    return new_status, cancelled_by


def _context_for(event: RideEvent, key: RouteKey) -> dict[str, Any]:
    if key == (RideStatus.CANCELLED, CancelledBy.SYSTEM):
        return {"cancelled_by": event.cancelled_by or CancelledBy.SYSTEM.value}

    context: dict[str, Any] = {
        "status": event.new_status,
        "previous_status": event.old_status,
        "service_type": event.service_type,
    }
    if key[1] is not None:
        context["cancelled_by"] = key[1].value
    return context


def resolve_intents(event: RideEvent) -> list[NotificationIntent]:
    """Map a ride status transition to zero, one or two notification intents."""
    key = route_key(event)
    if key is None:
        return []

    intents: list[NotificationIntent] = []
    for template in ROUTING_TABLE.get(key, ()):
        if template.audience is Audience.PASSENGER:
            recipient_id = event.passenger_id
            action_url = passenger_action_url(event.ride_id)
        else:
            recipient_id = event.driver_id
            action_url = driver_action_url(event.ride_id)

        if not recipient_id:
            continue

        intents.append(
            NotificationIntent(
                recipient_id=recipient_id,
                notification_type=template.notification_type,
                category=template.category,
                priority=template.priority,
                title=template.title,
                message=template.message,
                action_reference=action_url,
                ride_id=event.ride_id,
                context_data=_context_for(event, key),
            )
        )
    return intents
