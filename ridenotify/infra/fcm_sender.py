# ridenotify/infra/fcm_sender.py
"""
Firebase Cloud Messaging HTTP v1 sender.

The legacy endpoint (fcm.googleapis.com/fcm/send with a server key) is
deprecated; this uses the per-project v1 endpoint with an OAuth2 bearer
token from ``FcmTokenManager``.

Message shape:
- ``notification``: title/body shown by the OS
- ``data``: string-only map the client uses for deep links
- ``webpush`` / ``android``: urgency, vibration and sound by priority

Errors:
- non-2xx, timeout or connection failure -> DeliveryError (status 0 for
  transport failures). FCM 401 also drops the cached access token so the
  next invocation re-mints it.

HTTP session lifecycle:
- Uses the shared push session from ridenotify.infra.http_client.
"""
from __future__ import annotations

import asyncio
import json
from typing import Any

import aiohttp

from ridenotify.config import settings
from ridenotify.core.domain import Priority
from ridenotify.core.errors import DeliveryError
from ridenotify.core.ports import AccessTokenProvider
from ridenotify.infra.http_client import get_push_session
from ridenotify.infra.logging_config import get_logger, mask_token
from ridenotify.infra.metrics import Timer, inc_counter

logger = get_logger(__name__)

URGENT_SOUND = "default"
NORMAL_SOUND = "notification_sound.mp3"
URGENT_VIBRATE = [200, 100, 200]
NORMAL_VIBRATE = [100]
WEB_ICON = "/icon-192x192.png"
WEB_BADGE = "/badge-72x72.png"


# ---------------------------------------------------------------------------
# Message building
# ---------------------------------------------------------------------------

def stringify_data(data: dict[str, Any] | None) -> dict[str, str]:
    """FCM data values must be strings; drop nulls, JSON-encode the rest."""
    out: dict[str, str] = {}
    for key, value in (data or {}).items():
        if value is None:
            continue
        out[key] = value if isinstance(value, str) else json.dumps(value)
    return out


def build_message(
    device_token: str,
    *,
    notification_id: str,
    notification_type: str,
    title: str,
    body: str,
    action_url: str | None,
    priority: Priority | str,
    ride_id: str | None = None,
) -> dict[str, Any]:
    """Build the ``message`` object for ``messages:send``."""
    priority = Priority(priority)
    urgent = priority.is_urgent
    sound = URGENT_SOUND if urgent else NORMAL_SOUND
    url = action_url or "/"

    return {
        "token": device_token,
        "notification": {"title": title, "body": body},
        "data": stringify_data({
            "notification_id": notification_id,
            "notification_type": notification_type,
            "action_url": url,
            "priority": priority.value,
            "sound": sound,
            "ride_id": ride_id,
        }),
        "webpush": {
            "headers": {"Urgency": "high" if urgent else "normal"},
            "notification": {
                "title": title,
                "body": body,
                "icon": WEB_ICON,
                "badge": WEB_BADGE,
                "vibrate": URGENT_VIBRATE if urgent else NORMAL_VIBRATE,
                "data": {"url": url, "action_url": url, "notification_id": notification_id},
                "actions": [
                    {"action": "open", "title": "View"},
                    {"action": "close", "title": "Dismiss"},
                ],
            },
        },
        "android": {
            "priority": "HIGH" if urgent else "NORMAL",
            "notification": {"sound": sound, "channel_id": "default"},
        },
    }


# ---------------------------------------------------------------------------
# Sender
# ---------------------------------------------------------------------------

async def _safe_response_text(resp: aiohttp.ClientResponse, max_len: int = 500) -> str:
    """Read response body as text, truncated for safe logging."""
    try:
        text = await resp.text()
        return text[:max_len]
    except (aiohttp.ClientError, UnicodeDecodeError):
        return "<unreadable>"


class FcmSender:
    """Sends FCM v1 messages for the configured Firebase project."""

    def __init__(
        self,
        token_provider: AccessTokenProvider,
        *,
        timeout_s: float | None = None,
        send_url_template: str | None = None,
        session_factory=get_push_session,
    ) -> None:
        self._token_provider = token_provider
        self._timeout_s = timeout_s or settings.push_request_timeout_seconds
        self._send_url_template = send_url_template or settings.fcm_send_url_template
        self._session_factory = session_factory

    def send_url(self) -> str:
        return self._send_url_template.format(project_id=self._token_provider.project_id)

    async def send(self, message: dict[str, Any], access_token: str | None = None) -> dict[str, Any]:
        """
        Send one message.

        Args:
            message: FCM v1 ``message`` object
            access_token: Bearer token already fetched for this fan-out;
                fetched from the token provider when omitted

        Returns:
            FCM response JSON (``{"name": "projects/.../messages/..."}``)

        Raises:
            DeliveryError: gateway rejected the message or timed out
            AuthenticationError / ConfigurationError: from the token provider
        """
        if access_token is None:
            access_token = await self._token_provider.get_access_token()
        url = self.send_url()
        to = mask_token(message.get("token"))

        try:
            session = self._session_factory()
            with Timer("fcm_send_seconds"):
                async with session.post(
                    url,
                    json={"message": message},
                    headers={
                        "Authorization": f"Bearer {access_token}",
                        "Content-Type": "application/json",
                    },
                    timeout=aiohttp.ClientTimeout(total=self._timeout_s),
                ) as resp:
                    text = await _safe_response_text(resp)

                    if 200 <= resp.status < 300:
                        try:
                            body = json.loads(text) if text else {}
                        except ValueError:
                            body = {}
                        logger.debug(f"FCM message sent: to={to}, name={body.get('name', '?')}")
                        inc_counter("fcm_outbound_sent")
                        return body

                    if resp.status == 401:
                        invalidate = getattr(self._token_provider, "invalidate", None)
                        if invalidate is not None:
                            invalidate()

                    logger.warning(f"FCM send rejected: status={resp.status}, to={to}")
                    inc_counter("fcm_outbound_error", status=resp.status)
                    raise DeliveryError(resp.status, text)

        except DeliveryError:
            raise
        except asyncio.TimeoutError:
            logger.warning(f"FCM send timed out after {self._timeout_s}s: to={to}")
            inc_counter("fcm_outbound_timeout")
            raise DeliveryError(0, f"timeout after {self._timeout_s}s")
        except aiohttp.ClientError as exc:
            logger.warning(f"FCM connection error: {type(exc).__name__}, to={to}")
            inc_counter("fcm_outbound_connection_error")
            raise DeliveryError(0, type(exc).__name__)
