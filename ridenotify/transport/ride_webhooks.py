# ridenotify/transport/ride_webhooks.py
"""
Handlers behind the ``/functions/*`` endpoints.

Each handler turns a validated payload into one dispatcher call and the
JSON body the callers (database webhooks, the web app) expect. Errors
that abort an invocation propagate as DispatcherError and are rendered by
the app-level exception handler.
"""
from __future__ import annotations

from typing import Any

from fastapi import Request
from fastapi.responses import JSONResponse

from ridenotify.core.dispatcher import NotificationDispatcher
from ridenotify.core.domain import DispatchResult, RecipientResult
from ridenotify.core.errors import ValidationError
from ridenotify.infra.logging_config import LogContext, get_logger
from ridenotify.transport.schemas import (
    AppUpdateIn,
    BroadcastIn,
    OfferRejectedIn,
    RedeliverIn,
    RideCreatedWebhookIn,
    RideStatusChangeIn,
)

logger = get_logger(__name__)


def _request_id(request: Request | None) -> str | None:
    if request is None:
        return None
    return getattr(request.state, "request_id", None)


def _nothing_persisted(result: DispatchResult) -> bool:
    return result.attempted > 0 and result.persisted == 0


def _broadcast_response(broadcast) -> JSONResponse:
    body: dict[str, Any] = {
        "success": True,
        "driversNotified": broadcast.drivers_notified,
        "eligibleDrivers": broadcast.eligible_drivers,
        "totalNearby": broadcast.total_nearby,
        "message": broadcast.message,
    }
    if broadcast.results:
        body["results"] = [r.to_dict() for r in broadcast.results]
        if all(r.notification_id is None for r in broadcast.results):
            body["success"] = False
            body["error"] = "Failed to create notifications"
            return JSONResponse(status_code=500, content=body)
    return JSONResponse(content=body)


# ---------------------------------------------------------------------------
# New rides
# ---------------------------------------------------------------------------

async def broadcast_ride_handler(
    payload: BroadcastIn,
    dispatcher: NotificationDispatcher,
    request: Request | None = None,
) -> JSONResponse:
    """Broadcast an existing ride (looked up by id) to nearby drivers."""
    LogContext(logger, request_id=_request_id(request), ride_id=payload.ride_id).info(
        f"Broadcast requested: radius={payload.radius_km or 'default'}"
    )
    broadcast = await dispatcher.broadcast_ride_by_id(
        payload.ride_id,
        payload.pickup_coordinates.to_point(),
        payload.radius_km,
    )
    return _broadcast_response(broadcast)


async def ride_created_handler(
    payload: RideCreatedWebhookIn,
    dispatcher: NotificationDispatcher,
    request: Request | None = None,
) -> JSONResponse:
    """Broadcast straight from the inserted ``rides`` row."""
    record = payload.record
    log_ctx = LogContext(logger, request_id=_request_id(request), ride_id=record.id)

    ride = record.to_ride()
    if not ride.is_broadcastable:
        log_ctx.info(f"Ride not broadcast: timing={ride.ride_timing}, status={ride.ride_status}")
        return JSONResponse(content={"success": True, "message": "Ride is not instant or not pending"})

    point = record.pickup_point()
    if point is None:
        raise ValidationError("No pickup coordinates available")

    log_ctx.info("New instant ride, broadcasting to nearby drivers")
    broadcast = await dispatcher.broadcast_new_ride(ride, point)
    return _broadcast_response(broadcast)


# ---------------------------------------------------------------------------
# Status changes
# ---------------------------------------------------------------------------

async def ride_status_change_handler(
    payload: RideStatusChangeIn,
    dispatcher: NotificationDispatcher,
    request: Request | None = None,
) -> JSONResponse:
    event = payload.to_event()
    if not event.new_status:
        raise ValidationError("record.ride_status is required")

    if event.old_status is not None and event.old_status == event.new_status:
        return JSONResponse(content={"success": True, "message": "Status unchanged, skipping"})

    result = await dispatcher.handle_status_change(event)
    LogContext(logger, request_id=_request_id(request), ride_id=event.ride_id).info(
        f"Status change handled: {event.old_status} -> {event.new_status}, "
        f"notified={result.notified}/{result.attempted}"
    )

    if result.attempted == 0:
        return JSONResponse(content={
            "success": True,
            "notified": 0,
            "message": f"No notifications for status '{event.new_status}', skipping",
        })

    body: dict[str, Any] = {
        "success": result.persisted == result.attempted,
        "notified": result.notified,
        "results": [r.to_dict() for r in result.results],
    }
    if _nothing_persisted(result):
        body["error"] = "Failed to create notifications"
        return JSONResponse(status_code=500, content=body)

    if result.attempted == 1:
        body["notificationId"] = result.results[0].notification_id
        body["message"] = "Notification sent"
    else:
        body["message"] = "Notifications sent to both parties"
    return JSONResponse(content=body)


# ---------------------------------------------------------------------------
# Competing offers
# ---------------------------------------------------------------------------

async def offer_rejected_handler(
    payload: OfferRejectedIn,
    dispatcher: NotificationDispatcher,
    request: Request | None = None,
) -> JSONResponse:
    result = await dispatcher.notify_offer_rejected(
        payload.ride_id,
        payload.accepted_driver_id,
        payload.bidder_ids,
        payload.dropoff_location,
    )
    LogContext(logger, request_id=_request_id(request), ride_id=payload.ride_id).info(
        f"Competing bidders notified: {result.notified}/{result.attempted}"
    )

    if result.attempted == 0:
        return JSONResponse(content={"success": True, "notified": 0, "message": "No competing offers"})

    body: dict[str, Any] = {
        "success": result.persisted == result.attempted,
        "notified": result.notified,
        "results": [r.to_dict() for r in result.results],
    }
    if _nothing_persisted(result):
        body["error"] = "Failed to create notifications"
        return JSONResponse(status_code=500, content=body)
    return JSONResponse(content=body)


# ---------------------------------------------------------------------------
# App update
# ---------------------------------------------------------------------------

async def app_update_handler(
    payload: AppUpdateIn,
    dispatcher: NotificationDispatcher,
    request: Request | None = None,
) -> JSONResponse:
    result = await dispatcher.notify_app_update(
        payload.user_id, payload.new_version, payload.current_version,
    )
    recipient = result.results[0]
    body = {
        "success": recipient.notification_id is not None,
        "notificationId": recipient.notification_id,
        "pushSent": recipient.push_sent,
    }
    if recipient.notification_id is None:
        body["error"] = recipient.error or "Failed to create notification"
        return JSONResponse(status_code=500, content=body)

    body["message"] = "App update notification sent"
    return JSONResponse(content=body)


# ---------------------------------------------------------------------------
# Redelivery
# ---------------------------------------------------------------------------

async def _redeliver_payload(request: Request) -> RedeliverIn:
    query_id = request.query_params.get("notification_id")
    if query_id:
        try:
            return RedeliverIn(notification_id=query_id)
        except ValueError as exc:
            raise ValidationError("notification_id must be a UUID") from exc
    if request.method != "POST":
        return RedeliverIn()

    raw = await request.body()
    if not raw.strip():
        return RedeliverIn()
    try:
        return RedeliverIn.model_validate_json(raw)
    except ValueError as exc:
        raise ValidationError(f"Invalid request body: {exc}") from exc


async def redeliver_handler(request: Request, dispatcher: NotificationDispatcher) -> JSONResponse:
    payload = await _redeliver_payload(request)
    notification_id = payload.resolved_id()
    if not notification_id:
        raise ValidationError("notification_id is required")

    outcome: RecipientResult = await dispatcher.redeliver(notification_id)
    body = outcome.to_dict()
    body["message"] = (
        "No FCM token for user" if outcome.skipped
        else "Push notification sent" if outcome.push_sent
        else "Push notification failed"
    )
    return JSONResponse(content=body)
