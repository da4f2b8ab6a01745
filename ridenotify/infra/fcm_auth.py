# ridenotify/infra/fcm_auth.py
"""
OAuth2 access tokens for FCM HTTP v1, minted from the service account.

Flow:
1. Build a JWT assertion (RS256) claiming the firebase.messaging scope
2. Exchange it at the Google token endpoint (jwt-bearer grant)
3. Cache the access token until it is within the safety margin of expiry

Concurrency:
    The cache read and the swap are lock-guarded; the refresh itself runs
    outside the lock. Two invocations racing on an expired token may both
    refresh. Token issuance is idempotent, so the later swap simply wins.

No retries here: callers decide.
"""
from __future__ import annotations

import asyncio
import json
import time
from dataclasses import dataclass
from threading import Lock
from typing import Callable

import aiohttp
import jwt
from jwt.exceptions import InvalidKeyError

from ridenotify.config import settings
from ridenotify.core.errors import AuthenticationError, ConfigurationError
from ridenotify.infra.http_client import get_auth_session
from ridenotify.infra.logging_config import get_logger
from ridenotify.infra.metrics import inc_counter
from ridenotify.infra.service_account import ServiceAccountCredential, load_service_account

logger = get_logger(__name__)

JWT_BEARER_GRANT = "urn:ietf:params:oauth:grant-type:jwt-bearer"
DEFAULT_EXPIRES_IN_S = 3600


@dataclass(frozen=True)
class AccessToken:
    token: str
    expires_at_ms: int

    def is_fresh(self, now_ms: int, safety_margin_ms: int) -> bool:
        return self.expires_at_ms - now_ms > safety_margin_ms


# ---------------------------------------------------------------------------
# JWT assertion
# ---------------------------------------------------------------------------

def build_assertion(
    credential: ServiceAccountCredential,
    *,
    issued_at: int,
    scope: str,
    audience: str,
    lifetime_s: int,
) -> str:
    """Return the RS256-signed JWT for the jwt-bearer grant."""
    claims = {
        "iss": credential.client_email,
        "scope": scope,
        "aud": audience,
        "iat": issued_at,
        "exp": issued_at + lifetime_s,
    }

    try:
        return jwt.encode(
            claims,
            credential.private_key_pem,
            algorithm="RS256",
            headers={"typ": "JWT"},
        )
    except (InvalidKeyError, ValueError, TypeError) as exc:
        raise ConfigurationError("Service account private_key is not a valid PEM key") from exc


# ---------------------------------------------------------------------------
# Token manager
# ---------------------------------------------------------------------------

class FcmTokenManager:
    """Mints and caches FCM access tokens for one service account."""

    def __init__(
        self,
        credential_loader: Callable[[], ServiceAccountCredential] = load_service_account,
        *,
        token_url: str | None = None,
        scope: str | None = None,
        safety_margin_ms: int | None = None,
        assertion_lifetime_s: int | None = None,
        timeout_s: float | None = None,
        clock: Callable[[], float] = time.time,
        session_factory: Callable[[], aiohttp.ClientSession] = get_auth_session,
    ) -> None:
        self._credential_loader = credential_loader
        self._credential: ServiceAccountCredential | None = None
        self._token_url = token_url or settings.fcm_token_url
        self._scope = scope or settings.fcm_scope
        self._safety_margin_ms = (
            settings.token_safety_margin_ms if safety_margin_ms is None else safety_margin_ms
        )
        self._lifetime_s = assertion_lifetime_s or settings.assertion_lifetime_seconds
        self._timeout_s = timeout_s or settings.token_request_timeout_seconds
        self._clock = clock
        self._session_factory = session_factory
        self._cached: AccessToken | None = None
        self._lock = Lock()

    # -- credential ---------------------------------------------------------

    @property
    def credential(self) -> ServiceAccountCredential:
        """Loaded once, then reused. Raises ConfigurationError."""
        self.ensure_configured()
        return self._credential

    @property
    def project_id(self) -> str:
        return self.credential.project_id

    def ensure_configured(self) -> None:
        if self._credential is None:
            self._credential = self._credential_loader()

    def is_configured(self) -> bool:
        try:
            self.ensure_configured()
        except ConfigurationError:
            return False
        return True

    # -- cache --------------------------------------------------------------

    def cached_token(self) -> AccessToken | None:
        with self._lock:
            return self._cached

    def invalidate(self) -> None:
        with self._lock:
            self._cached = None

    def _now_ms(self) -> int:
        return int(self._clock() * 1000)

    async def get_access_token(self) -> str:
        """
        Return a valid access token, refreshing it when needed.

        Raises:
            ConfigurationError: no usable service account
            AuthenticationError: token endpoint rejected the assertion
        """
        now_ms = self._now_ms()
        cached = self.cached_token()
        if cached is not None and cached.is_fresh(now_ms, self._safety_margin_ms):
            return cached.token

        credential = self.credential
        assertion = build_assertion(
            credential,
            issued_at=now_ms // 1000,
            scope=self._scope,
            audience=self._token_url,
            lifetime_s=self._lifetime_s,
        )
        fresh = await self._exchange(assertion, now_ms)

        with self._lock:
            self._cached = fresh

        inc_counter("fcm_token_refreshed")
        logger.info(
            "FCM access token refreshed: project=%s, expires_in=%ds",
            credential.project_id, (fresh.expires_at_ms - now_ms) // 1000,
        )
        return fresh.token

    async def _exchange(self, assertion: str, now_ms: int) -> AccessToken:
        session = self._session_factory()
        try:
            async with session.post(
                self._token_url,
                data={"grant_type": JWT_BEARER_GRANT, "assertion": assertion},
                headers={"Content-Type": "application/x-www-form-urlencoded"},
                timeout=aiohttp.ClientTimeout(total=self._timeout_s),
            ) as resp:
                text = await resp.text()
                if not 200 <= resp.status < 300:
                    logger.error(f"Token exchange rejected: status={resp.status}")
                    inc_counter("fcm_token_errors", reason="rejected")
                    raise AuthenticationError(resp.status, text[:500])
                status = resp.status

        except AuthenticationError:
            raise
        except asyncio.TimeoutError:
            logger.error(f"Token exchange timed out after {self._timeout_s}s")
            inc_counter("fcm_token_errors", reason="timeout")
            raise AuthenticationError(0, "timeout")
        except aiohttp.ClientError as exc:
            logger.error(f"Token exchange connection error: {type(exc).__name__}")
            inc_counter("fcm_token_errors", reason="connection")
            raise AuthenticationError(0, type(exc).__name__)

        try:
            payload = json.loads(text)
        except ValueError:
            raise AuthenticationError(status, f"non-JSON token response: {text[:200]}")

        token = payload.get("access_token") if isinstance(payload, dict) else None
        if not token:
            raise AuthenticationError(status, "token response has no access_token")

        expires_in = int(payload.get("expires_in") or DEFAULT_EXPIRES_IN_S)
        return AccessToken(token=token, expires_at_ms=now_ms + expires_in * 1000)


_token_manager: FcmTokenManager | None = None


def get_token_manager() -> FcmTokenManager:
    """Process-wide token manager (shared cache across invocations)."""
    global _token_manager
    if _token_manager is None:
        _token_manager = FcmTokenManager()
    return _token_manager
