# ridenotify/transport/http_app.py
"""
HTTP entry points for the notification dispatcher.

Callers:
- database webhooks on ``rides`` insert/update (ride created, status change)
- the web app (explicit broadcast, app update)
- the offer-acceptance flow (competing bidders)
- operators (redelivery of a stored notification)

All dispatcher endpoints accept an optional shared secret (see security.py).
"""
from __future__ import annotations

from contextlib import asynccontextmanager

from fastapi import Depends, FastAPI, Request
from fastapi.exceptions import RequestValidationError
from fastapi.responses import JSONResponse
from starlette.exceptions import HTTPException as StarletteHTTPException

from ridenotify import __version__
from ridenotify.config import settings
from ridenotify.core.delivery import PushDeliveryService
from ridenotify.core.dispatcher import NotificationDispatcher
from ridenotify.core.errors import DispatcherError
from ridenotify.infra.db_async import close_pool, init_pool
from ridenotify.infra.fcm_auth import get_token_manager
from ridenotify.infra.fcm_sender import FcmSender
from ridenotify.infra.http_client import close_all_sessions
from ridenotify.infra.logging_config import get_logger, setup_logging
from ridenotify.infra.metrics import get_metrics_collector, inc_counter
from ridenotify.infra.pg_notification_repo_async import AsyncPostgresNotificationRepository
from ridenotify.infra.pg_profile_repo_async import AsyncPostgresProfileRepository
from ridenotify.infra.pg_ride_repo_async import AsyncPostgresRideRepository
from ridenotify.transport.middleware import (
    ErrorHandlingMiddleware,
    RequestIDMiddleware,
    RequestLoggingMiddleware,
)
from ridenotify.transport.ride_webhooks import (
    app_update_handler,
    broadcast_ride_handler,
    offer_rejected_handler,
    redeliver_handler,
    ride_created_handler,
    ride_status_change_handler,
)
from ridenotify.transport.schemas import (
    AppUpdateIn,
    BroadcastIn,
    OfferRejectedIn,
    RideCreatedWebhookIn,
    RideStatusChangeIn,
)
from ridenotify.transport.security import require_webhook_secret, sanitize_error_message

# Initialize logging first
setup_logging(
    level=settings.log_level,
    use_json=settings.is_production,
)

logger = get_logger(__name__)


# ============================================================================
# WIRING
# ============================================================================

def build_dispatcher() -> NotificationDispatcher:
    """Dispatcher backed by PostgreSQL and FCM HTTP v1."""
    notifications = AsyncPostgresNotificationRepository()
    token_manager = get_token_manager()
    delivery = PushDeliveryService(
        notifications=notifications,
        profiles=AsyncPostgresProfileRepository(),
        gateway=FcmSender(token_manager),
    )
    return NotificationDispatcher(
        notifications=notifications,
        rides=AsyncPostgresRideRepository(),
        delivery=delivery,
        token_provider=token_manager,
    )


def get_dispatcher(request: Request) -> NotificationDispatcher:
    return request.app.state.dispatcher


# ============================================================================
# LIFESPAN
# ============================================================================

@asynccontextmanager
async def lifespan(fastapi_app: FastAPI):
    logger.info(f"Starting ridenotify {__version__}: env={settings.app_env}")

    if settings.is_production:
        missing = settings.validate_required_for_production()
        if missing:
            logger.critical(f"Missing required production settings: {missing}")
            raise RuntimeError(f"Missing production config: {missing}")

    await init_pool()
    fastapi_app.state.dispatcher = build_dispatcher()

    if not get_token_manager().is_configured():
        logger.warning("Firebase service account not configured: dispatches will fail with 500")

    try:
        yield
    finally:
        logger.info("Shutting down")
        await close_all_sessions()
        await close_pool()


# ============================================================================
# CREATE APP
# ============================================================================

app = FastAPI(
    title="ridenotify",
    description="Ride-lifecycle push notification dispatcher",
    version=__version__,
    lifespan=lifespan,
    docs_url=None if settings.is_production else "/docs",
    redoc_url=None if settings.is_production else "/redoc",
    openapi_url=None if settings.is_production else "/openapi.json",
)

app.add_middleware(ErrorHandlingMiddleware)
app.add_middleware(RequestLoggingMiddleware, enabled=settings.enable_request_logging)
app.add_middleware(RequestIDMiddleware)


# ============================================================================
# EXCEPTION HANDLERS
# ============================================================================

@app.exception_handler(DispatcherError)
async def dispatcher_error_handler(request: Request, exc: DispatcherError):
    if exc.http_status >= 500:
        logger.error(f"Dispatch aborted: {exc.__class__.__name__}: {exc}")
    else:
        logger.info(f"Request rejected: {exc.__class__.__name__}: {exc}")
    inc_counter("dispatch_errors", error=exc.__class__.__name__)

    return JSONResponse(
        status_code=exc.http_status,
        content={"success": False, "error": str(exc)},
    )


@app.exception_handler(RequestValidationError)
async def request_validation_handler(request: Request, exc: RequestValidationError):
    errors = exc.errors()
    first = errors[0] if errors else {}
    field = ".".join(str(p) for p in first.get("loc", ()) if p != "body")
    message = first.get("msg", "Invalid request")
    return JSONResponse(
        status_code=400,
        content={"success": False, "error": f"{field}: {message}" if field else message},
    )


@app.exception_handler(StarletteHTTPException)
async def http_exception_handler(request: Request, exc: StarletteHTTPException):
    if exc.status_code >= 500:
        logger.error(f"Server error: {exc.detail}", extra={"status_code": exc.status_code})

    error = "Method not allowed" if exc.status_code == 405 else exc.detail
    return JSONResponse(
        status_code=exc.status_code,
        content={"success": False, "error": error},
        headers=getattr(exc, "headers", None),
    )


@app.exception_handler(Exception)
async def general_exception_handler(request: Request, exc: Exception):
    logger.error(f"Unhandled exception: {exc.__class__.__name__}", exc_info=True)
    return JSONResponse(
        status_code=500,
        content={"success": False, "error": sanitize_error_message(exc, settings.is_production)},
    )


# ============================================================================
# PUBLIC ENDPOINTS
# ============================================================================

@app.get("/health")
def health():
    return {"status": "healthy", "version": __version__}


@app.get("/metrics", dependencies=[Depends(require_webhook_secret)])
def metrics():
    if not settings.enable_metrics:
        return JSONResponse(status_code=404, content={"success": False, "error": "Not found"})
    return get_metrics_collector().get_metrics()


# ============================================================================
# DISPATCHER ENDPOINTS
# ============================================================================

@app.post("/functions/broadcast-ride-notifications", dependencies=[Depends(require_webhook_secret)])
async def broadcast_ride_notifications(
    payload: BroadcastIn,
    request: Request,
    dispatcher: NotificationDispatcher = Depends(get_dispatcher),
):
    return await broadcast_ride_handler(payload, dispatcher, request)


@app.post("/functions/notify-drivers-on-ride-created", dependencies=[Depends(require_webhook_secret)])
async def notify_drivers_on_ride_created(
    payload: RideCreatedWebhookIn,
    request: Request,
    dispatcher: NotificationDispatcher = Depends(get_dispatcher),
):
    return await ride_created_handler(payload, dispatcher, request)


@app.post("/functions/notify-ride-status-change", dependencies=[Depends(require_webhook_secret)])
async def notify_ride_status_change(
    payload: RideStatusChangeIn,
    request: Request,
    dispatcher: NotificationDispatcher = Depends(get_dispatcher),
):
    return await ride_status_change_handler(payload, dispatcher, request)


@app.post("/functions/notify-offer-rejected", dependencies=[Depends(require_webhook_secret)])
async def notify_offer_rejected(
    payload: OfferRejectedIn,
    request: Request,
    dispatcher: NotificationDispatcher = Depends(get_dispatcher),
):
    return await offer_rejected_handler(payload, dispatcher, request)


@app.post("/functions/send-app-update-notification", dependencies=[Depends(require_webhook_secret)])
async def send_app_update_notification(
    payload: AppUpdateIn,
    request: Request,
    dispatcher: NotificationDispatcher = Depends(get_dispatcher),
):
    return await app_update_handler(payload, dispatcher, request)


@app.api_route(
    "/functions/push-notification-handler",
    methods=["GET", "POST"],
    dependencies=[Depends(require_webhook_secret)],
)
async def push_notification_handler(
    request: Request,
    dispatcher: NotificationDispatcher = Depends(get_dispatcher),
):
    return await redeliver_handler(request, dispatcher)


if __name__ == "__main__":
    import uvicorn

    uvicorn.run(
        "ridenotify.transport.http_app:app",
        host="0.0.0.0",
        port=8099,
        reload=not settings.is_production,
        log_level=settings.log_level.lower(),
        access_log=not settings.is_production,  # request logging middleware covers prod
        server_header=False,
        date_header=False,
    )
