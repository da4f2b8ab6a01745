# ridenotify/core/domain.py
from __future__ import annotations

from dataclasses import dataclass, field
from datetime import datetime
from enum import Enum
from typing import Any, Optional


# ============================================================================
# ENUMERATIONS
# ============================================================================

class RideStatus(str, Enum):
    """Canonical ride lifecycle states."""
    PENDING = "pending"
    ACCEPTED = "accepted"
    DRIVER_ASSIGNED = "driver_assigned"
    DRIVER_ON_WAY = "driver_on_way"
    DRIVER_ARRIVED = "driver_arrived"
    TRIP_STARTED = "trip_started"
    TRIP_COMPLETED = "trip_completed"
    CANCELLED = "cancelled"

    @classmethod
    def canonicalize(cls, raw: str | None) -> Optional["RideStatus"]:
        """Resolve a raw status string (including legacy synonyms).

        Returns None for empty or unknown values instead of raising.
        """
        if not raw:
            return None
        value = raw.strip().lower()
        value = _STATUS_SYNONYMS.get(value, value)
        try:
            return cls(value)
        except ValueError:
            return None


# Legacy and execution-sub-state spellings seen in ride rows
_STATUS_SYNONYMS = {
    "driver_on_the_way": "driver_on_way",
    "in_progress": "trip_started",
    "completed": "trip_completed",
}


class CancelledBy(str, Enum):
    DRIVER = "driver"
    PASSENGER = "passenger"
    SYSTEM = "system"


class Priority(str, Enum):
    LOW = "low"
    NORMAL = "normal"
    HIGH = "high"
    URGENT = "urgent"

    @property
    def is_urgent(self) -> bool:
        """High and urgent notifications ring and vibrate immediately."""
        return self in (Priority.HIGH, Priority.URGENT)


class NotificationCategory(str, Enum):
    OFFERS = "offers"
    RIDE_PROGRESS = "ride_progress"
    CANCELLATIONS = "cancellations"
    SYSTEM = "system"


class NotificationType(str, Enum):
    NEW_OFFER = "new_offer"
    OFFER_ACCEPTED = "offer_accepted"
    OFFER_REJECTED = "offer_rejected"
    RIDE_ACTIVATED = "ride_activated"
    DRIVER_ON_THE_WAY = "driver_on_the_way"
    DRIVER_ARRIVED = "driver_arrived"
    TRIP_STARTED = "trip_started"
    TRIP_COMPLETED = "trip_completed"
    RIDE_CANCELLED_BY_DRIVER = "ride_cancelled_by_driver"
    RIDE_CANCELLED_BY_PASSENGER = "ride_cancelled_by_passenger"
    RIDE_CANCELLED_BY_SYSTEM = "ride_cancelled_by_system"
    APP_UPDATE = "app_update"


class RideTiming(str, Enum):
    INSTANT = "instant"
    SCHEDULED_SINGLE = "scheduled_single"
    SCHEDULED_RECURRING = "scheduled_recurring"


# ============================================================================
# INPUTS
# ============================================================================

@dataclass(frozen=True)
class GeoPoint:
    lat: float
    lng: float


@dataclass(frozen=True)
class RideEvent:
    """A ride row transition, as delivered by the database webhook."""
    ride_id: str
    new_status: str
    passenger_id: Optional[str] = None
    driver_id: Optional[str] = None
    old_status: Optional[str] = None
    service_type: Optional[str] = None
    pickup_location: Optional[str] = None
    cancelled_by: Optional[str] = None
    estimated_fare: Optional[float] = None


@dataclass(frozen=True)
class Ride:
    """The subset of a ride row the broadcast path needs."""
    id: str
    ride_status: str
    ride_timing: str = RideTiming.INSTANT.value
    service_type: Optional[str] = None
    pickup_location: Optional[str] = None
    estimated_fare: Optional[float] = None

    @property
    def is_broadcastable(self) -> bool:
        """Only instant rides still waiting for a driver go out to nearby drivers."""
        return (
            self.ride_timing == RideTiming.INSTANT.value
            and RideStatus.canonicalize(self.ride_status) is RideStatus.PENDING
        )


@dataclass(frozen=True)
class NearbyCandidate:
    """A driver returned by the radius query."""
    provider_id: str
    distance_km: float
    is_online: bool
    is_available: bool
    active_assignment_id: Optional[str] = None


# ============================================================================
# DERIVED / PERSISTED
# ============================================================================

@dataclass(frozen=True)
class NotificationIntent:
    """Who gets notified, and with what, for one recipient."""
    recipient_id: str
    notification_type: NotificationType
    category: NotificationCategory
    priority: Priority
    title: str
    message: str
    action_reference: str
    ride_id: Optional[str] = None
    context_data: dict[str, Any] = field(default_factory=dict)


@dataclass
class NotificationRecord:
    """A row of the ``notifications`` table."""
    id: str
    user_id: str
    notification_type: str
    category: str
    priority: str
    title: str
    message: str
    action_url: Optional[str] = None
    ride_id: Optional[str] = None
    context_data: dict[str, Any] = field(default_factory=dict)
    push_sent: bool = False
    push_sent_at: Optional[datetime] = None
    push_delivery_confirmed: bool = False
    push_error: Optional[str] = None
    retry_count: int = 0
    created_at: Optional[datetime] = None


@dataclass(frozen=True)
class DeliveryLogEntry:
    """A row of the append-only ``notification_delivery_log`` table."""
    notification_id: str
    attempt_number: int
    success: bool
    error_message: Optional[str] = None
    delivery_method: str = "push"


# ============================================================================
# RESULTS
# ============================================================================

@dataclass(frozen=True)
class DeliveryOutcome:
    """What happened to one push attempt.

    ``skipped`` means the recipient has no device token: nothing was sent
    and nothing is wrong.
    """
    notification_id: str
    push_sent: bool
    skipped: bool = False
    error: Optional[str] = None

    @property
    def failed(self) -> bool:
        return self.error is not None


@dataclass(frozen=True)
class RecipientResult:
    recipient_id: str
    success: bool
    notification_id: Optional[str] = None
    push_sent: bool = False
    skipped: bool = False
    error: Optional[str] = None

    def to_dict(self) -> dict[str, Any]:
        return {
            "recipientId": self.recipient_id,
            "success": self.success,
            "notificationId": self.notification_id,
            "pushSent": self.push_sent,
            "skipped": self.skipped,
            "error": self.error,
        }


@dataclass(frozen=True)
class DispatchResult:
    results: list[RecipientResult] = field(default_factory=list)

    @property
    def attempted(self) -> int:
        return len(self.results)

    @property
    def notified(self) -> int:
        return sum(1 for r in self.results if r.success)

    @property
    def persisted(self) -> int:
        return sum(1 for r in self.results if r.notification_id is not None)


@dataclass(frozen=True)
class BroadcastResult:
    drivers_notified: int
    eligible_drivers: int
    total_nearby: int
    message: str
    results: list[RecipientResult] = field(default_factory=list)
