# ridenotify/transport/schemas.py
from __future__ import annotations

import json
import uuid
from typing import Annotated, Any, Optional

from pydantic import AfterValidator, AliasChoices, BaseModel, ConfigDict, Field, field_validator

from ridenotify.core.domain import GeoPoint, Ride, RideEvent, RideTiming


def _canonical_uuid(value: str) -> str:
    try:
        return str(uuid.UUID(value))
    except ValueError:
        raise ValueError("must be a UUID") from None


# Ids that are looked up by primary key must be valid before they reach SQL
UuidStr = Annotated[str, AfterValidator(_canonical_uuid)]


class Coordinates(BaseModel):
    lat: float = Field(ge=-90, le=90)
    lng: float = Field(ge=-180, le=180)

    def to_point(self) -> GeoPoint:
        return GeoPoint(lat=self.lat, lng=self.lng)


class BroadcastIn(BaseModel):
    model_config = ConfigDict(populate_by_name=True)

    ride_id: UuidStr = Field(alias="rideId")
    pickup_coordinates: Coordinates = Field(alias="pickupCoordinates")
    radius_km: Optional[float] = Field(default=None, alias="radiusKm", gt=0, le=100)


class RideRecordIn(BaseModel):
    """A ``rides`` row as sent by the database webhook (unknown columns ignored)."""
    model_config = ConfigDict(extra="ignore")

    id: str = Field(min_length=1)
    ride_status: Optional[str] = None
    ride_timing: Optional[str] = None
    user_id: Optional[str] = None
    driver_id: Optional[str] = None
    cancelled_by: Optional[str] = None
    service_type: Optional[str] = None
    pickup_location: Optional[str] = Field(
        default=None,
        validation_alias=AliasChoices("pickup_location", "pickup_address"),
    )
    estimated_fare: Optional[float] = None
    pickup_coordinates: Optional[Coordinates] = None
    pickup_lat: Optional[float] = None
    pickup_lng: Optional[float] = None

    @field_validator("pickup_coordinates", mode="before")
    @classmethod
    def _decode_coordinates(cls, value: Any) -> Any:
        # jsonb columns may arrive as a JSON string
        if isinstance(value, str):
            return json.loads(value) if value.strip() else None
        return value

    def pickup_point(self) -> Optional[GeoPoint]:
        if self.pickup_coordinates is not None:
            return self.pickup_coordinates.to_point()
        if self.pickup_lat is not None and self.pickup_lng is not None:
            return GeoPoint(lat=self.pickup_lat, lng=self.pickup_lng)
        return None

    def to_ride(self) -> Ride:
        return Ride(
            id=self.id,
            ride_status=self.ride_status or "",
            ride_timing=self.ride_timing or RideTiming.INSTANT.value,
            service_type=self.service_type,
            pickup_location=self.pickup_location,
            estimated_fare=self.estimated_fare,
        )


class OldRecordIn(BaseModel):
    model_config = ConfigDict(extra="ignore")

    ride_status: Optional[str] = None


class RideCreatedWebhookIn(BaseModel):
    type: Optional[str] = None
    table: Optional[str] = None
    record: RideRecordIn


class RideStatusChangeIn(BaseModel):
    type: Optional[str] = None
    table: Optional[str] = None
    record: RideRecordIn
    old_record: Optional[OldRecordIn] = None

    def to_event(self) -> RideEvent:
        return RideEvent(
            ride_id=self.record.id,
            new_status=self.record.ride_status or "",
            passenger_id=self.record.user_id,
            driver_id=self.record.driver_id,
            old_status=self.old_record.ride_status if self.old_record else None,
            service_type=self.record.service_type,
            pickup_location=self.record.pickup_location,
            cancelled_by=self.record.cancelled_by,
            estimated_fare=self.record.estimated_fare,
        )


class AppUpdateIn(BaseModel):
    user_id: UuidStr
    new_version: str = Field(min_length=1, max_length=32)
    current_version: Optional[str] = Field(default=None, max_length=32)


class NotificationRef(BaseModel):
    model_config = ConfigDict(extra="ignore")

    id: UuidStr


class RedeliverIn(BaseModel):
    """Either ``{notification_id}`` or a webhook-style ``{record: {id}}``."""
    notification_id: Optional[UuidStr] = None
    record: Optional[NotificationRef] = None

    def resolved_id(self) -> Optional[str]:
        if self.notification_id:
            return self.notification_id
        return self.record.id if self.record else None


class OfferRejectedIn(BaseModel):
    """Sent after an offer is accepted; ``bidder_ids`` may include the winner."""
    model_config = ConfigDict(populate_by_name=True)

    ride_id: UuidStr = Field(alias="rideId")
    accepted_driver_id: UuidStr = Field(alias="acceptedDriverId")
    bidder_ids: list[UuidStr] = Field(alias="bidderIds", max_length=200)
    dropoff_location: Optional[str] = Field(default=None, alias="dropoffLocation", max_length=500)
