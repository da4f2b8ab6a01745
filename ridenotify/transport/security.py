# ridenotify/transport/security.py
"""
Shared-secret check for the database webhooks calling the dispatcher.

When ``webhook_secret`` is configured every dispatcher endpoint requires
``Authorization: Bearer <secret>``. Unset means no auth (dev, or a private
network where only the database can reach us).
"""
import hmac

from fastapi import Depends, HTTPException, Request, status
from fastapi.security import HTTPAuthorizationCredentials, HTTPBearer

from ridenotify.config import settings
from ridenotify.infra.logging_config import get_logger
from ridenotify.infra.metrics import inc_counter

logger = get_logger(__name__)

webhook_bearer_scheme = HTTPBearer(
    scheme_name="Webhook Secret",
    description="Shared secret configured as DISPATCHER_WEBHOOK_SECRET",
    auto_error=False,
)


def verify_webhook_secret(provided: str | None, expected: str | None) -> bool:
    """Constant-time comparison; any value passes when no secret is configured."""
    if not expected:
        return True
    if not provided:
        return False
    return hmac.compare_digest(provided.encode("utf-8"), expected.encode("utf-8"))


def require_webhook_secret(
    request: Request,
    credentials: HTTPAuthorizationCredentials | None = Depends(webhook_bearer_scheme),
) -> None:
    provided = credentials.credentials if credentials else None
    if verify_webhook_secret(provided, settings.webhook_secret):
        return

    logger.warning(
        f"Rejected webhook call: path={request.url.path}, token={'present' if provided else 'missing'}"
    )
    inc_counter("webhook_auth_rejected")
    raise HTTPException(
        status_code=status.HTTP_401_UNAUTHORIZED,
        detail="Unauthorized",
        headers={"WWW-Authenticate": "Bearer"},
    )


def sanitize_error_message(exc: Exception, is_production: bool) -> str:
    """Hide internals of unexpected errors in production."""
    if is_production:
        return "Internal server error"
    return f"{exc.__class__.__name__}: {exc}"
