# ridenotify/infra/pg_ride_repo_async.py
"""
Async PostgreSQL ride repository (asyncpg).

Wraps the ``find_drivers_within_radius`` SQL function (see
sql/003_find_drivers_within_radius.sql) and single-ride reads.
"""
from __future__ import annotations
from typing import Any, Optional

from ridenotify.config import settings
from ridenotify.core.domain import GeoPoint, NearbyCandidate, Ride
from ridenotify.infra.db_resilience_async import persistence_errors, safe_db_conn
from ridenotify.infra.logging_config import get_logger, mask_coordinates

logger = get_logger(__name__)


def _row_to_candidate(row: Any) -> NearbyCandidate:
    active = row["active_ride_id"]
    return NearbyCandidate(
        provider_id=str(row["driver_id"]),
        distance_km=float(row["distance_km"]),
        is_online=bool(row["is_online"]),
        is_available=bool(row["is_available"]),
        active_assignment_id=str(active) if active is not None else None,
    )


def _row_to_ride(row: Any) -> Ride:
    fare = row["estimated_fare"]
    return Ride(
        id=str(row["id"]),
        ride_status=row["ride_status"],
        ride_timing=row["ride_timing"],
        service_type=row["service_type"],
        pickup_location=row["pickup_address"],
        estimated_fare=float(fare) if fare is not None else None,
    )


class AsyncPostgresRideRepository:
    """Async PostgreSQL implementation of AsyncRideRepository."""

    def __init__(self, query_timeout: float | None = None) -> None:
        self._timeout = query_timeout or settings.db_query_timeout_seconds

    async def get(self, ride_id: str) -> Optional[Ride]:
        async with persistence_errors("get_ride"):
            async with safe_db_conn() as conn:
                row = await conn.fetchrow(
                    """
                    SELECT id, ride_status, ride_timing, service_type,
                           pickup_address, estimated_fare
                    FROM rides
                    WHERE id = $1::uuid
                    """,
                    ride_id,
                    timeout=self._timeout,
                )
        return _row_to_ride(row) if row else None

    async def find_nearby_candidates(self, point: GeoPoint, radius_km: float) -> list[NearbyCandidate]:
        """
        Drivers within ``radius_km`` of ``point``, nearest first.

        Raises:
            PersistenceError: query failed or timed out
        """
        async with persistence_errors("find_drivers_within_radius"):
            async with safe_db_conn() as conn:
                rows = await conn.fetch(
                    """
                    SELECT driver_id, distance_km, is_online, is_available, active_ride_id
                    FROM find_drivers_within_radius($1, $2, $3)
                    ORDER BY distance_km
                    """,
                    point.lat,
                    point.lng,
                    radius_km,
                    timeout=self._timeout,
                )

        candidates = [_row_to_candidate(row) for row in rows]
        logger.info(
            f"Nearby drivers: {len(candidates)} within {radius_km}km of "
            f"{mask_coordinates(point.lat, point.lng)}"
        )
        return candidates
