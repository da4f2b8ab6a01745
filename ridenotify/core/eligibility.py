# ridenotify/core/eligibility.py
"""
Broadcast eligibility, new-offer content and competing-offer notices.

Used when a new instant ride goes out to nearby drivers, and when an
accepted offer closes the ride to the other bidders. Status changes have
explicit recipients and never come through here.
"""
from __future__ import annotations

from ridenotify.core.domain import (
    NearbyCandidate,
    NotificationCategory,
    NotificationIntent,
    NotificationType,
    Priority,
    Ride,
)
from ridenotify.core.routing import driver_action_url

SERVICE_TYPE_DISPLAY = {
    "taxi": "Taxi",
    "courier": "Courier",
    "errands": "Errands",
    "school_run": "School Run",
}

PICKUP_PREVIEW_CHARS = 50


def is_eligible(candidate: NearbyCandidate) -> bool:
    """Online, available, and not already on another ride."""
    return (
        candidate.is_online is True
        and candidate.is_available is True
        and not candidate.active_assignment_id
    )


def filter_eligible(candidates: list[NearbyCandidate]) -> list[NearbyCandidate]:
    return [c for c in candidates if is_eligible(c)]


def offer_title(service_type: str | None) -> str:
    return f"New {SERVICE_TYPE_DISPLAY.get(service_type or '', 'Ride')} Request"


def offer_message(pickup_location: str | None) -> str:
    if not pickup_location:
        return "New ride request nearby"
    preview = pickup_location[:PICKUP_PREVIEW_CHARS]
    if len(pickup_location) > PICKUP_PREVIEW_CHARS:
        preview += "..."
    return f"Pickup: {preview}"


def build_broadcast_intents(ride: Ride, eligible: list[NearbyCandidate]) -> list[NotificationIntent]:
    """One ``new_offer`` intent per eligible driver."""
    title = offer_title(ride.service_type)
    message = offer_message(ride.pickup_location)
    action_url = driver_action_url(ride.id)

    return [
        NotificationIntent(
            recipient_id=candidate.provider_id,
            notification_type=NotificationType.NEW_OFFER,
            category=NotificationCategory.OFFERS,
            priority=Priority.HIGH,
            title=title,
            message=message,
            action_reference=action_url,
            ride_id=ride.id,
            context_data={
                "service_type": ride.service_type,
                "estimated_fare": ride.estimated_fare,
                "pickup_location": ride.pickup_location,
                "distance_km": candidate.distance_km,
            },
        )
        for candidate in eligible
    ]


AVAILABLE_RIDES_ACTION_URL = "/driver/rides?tab=available"


def offer_rejected_message(dropoff_location: str | None) -> str:
    return f"The ride to {dropoff_location or 'destination'} has been accepted by another driver."


def build_offer_rejected_intents(
    ride_id: str,
    accepted_driver_id: str,
    bidder_ids: list[str],
    dropoff_location: str | None = None,
) -> list[NotificationIntent]:
    """One ``offer_rejected`` intent per losing bidder, in first-seen order."""
    message = offer_rejected_message(dropoff_location)
    losers = [
        driver_id
        for driver_id in dict.fromkeys(bidder_ids)
        if driver_id and driver_id != accepted_driver_id
    ]

    return [
        NotificationIntent(
            recipient_id=driver_id,
            notification_type=NotificationType.OFFER_REJECTED,
            category=NotificationCategory.OFFERS,
            priority=Priority.NORMAL,
            title="Ride accepted by another driver",
            message=message,
            action_reference=AVAILABLE_RIDES_ACTION_URL,
            ride_id=ride_id,
        )
        for driver_id in losers
    ]
