# ridenotify/core/ports.py
from __future__ import annotations
from typing import Any, Optional, Protocol

from ridenotify.core.domain import (
    DeliveryLogEntry,
    GeoPoint,
    NearbyCandidate,
    NotificationIntent,
    NotificationRecord,
    Ride,
)


# ============================================================================
# ASYNC PROTOCOLS (asyncpg / aiohttp backed)
# ============================================================================

class AsyncNotificationRepository(Protocol):
    async def create(self, intent: NotificationIntent) -> str:
        """Insert a notification row and return its id. Raises PersistenceError."""
        ...

    async def get(self, notification_id: str) -> Optional[NotificationRecord]: ...
    async def mark_push_sent(self, notification_id: str) -> None: ...
    async def mark_push_failed(self, notification_id: str, error: str) -> None: ...
    async def increment_retry_count(self, notification_id: str) -> int: ...
    async def append_delivery_log(self, entry: DeliveryLogEntry) -> None: ...


class AsyncProfileRepository(Protocol):
    async def get_device_token(self, user_id: str) -> Optional[str]:
        """FCM registration token for a user, or None when they have none."""
        ...


class AsyncRideRepository(Protocol):
    async def get(self, ride_id: str) -> Optional[Ride]: ...

    async def find_nearby_candidates(self, point: GeoPoint, radius_km: float) -> list[NearbyCandidate]:
        """Drivers within ``radius_km`` of ``point``; [] when none. Raises PersistenceError."""
        ...


class AccessTokenProvider(Protocol):
    def ensure_configured(self) -> None:
        """Raise ConfigurationError when no usable credential is available."""
        ...

    @property
    def project_id(self) -> str: ...

    async def get_access_token(self) -> str: ...


class PushGateway(Protocol):
    async def send(self, message: dict[str, Any], access_token: Optional[str] = None) -> dict[str, Any]:
        """Send one FCM v1 message. Raises DeliveryError (AuthenticationError when no token is given)."""
        ...
