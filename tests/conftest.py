# tests/conftest.py
"""Pytest configuration, fakes and fixtures"""
from __future__ import annotations

import json
import uuid
from typing import Any, Callable

import pytest
from cryptography.hazmat.primitives import serialization
from cryptography.hazmat.primitives.asymmetric import rsa

from ridenotify.core.domain import (
    DeliveryLogEntry,
    NearbyCandidate,
    NotificationIntent,
    NotificationRecord,
    Ride,
)
from ridenotify.core.errors import PersistenceError
from ridenotify.infra.metrics import get_metrics_collector
from ridenotify.infra.service_account import ServiceAccountCredential


# ============================================================================
# Repositories
# ============================================================================

class FakeNotificationRepository:
    """In-memory notifications + delivery log."""

    def __init__(self, fail_create_for: set[str] | None = None):
        self.records: dict[str, NotificationRecord] = {}
        self.log: list[DeliveryLogEntry] = []
        self.fail_create_for = fail_create_for or set()
        self.fail_bookkeeping = False

    async def create(self, intent: NotificationIntent) -> str:
        if intent.recipient_id in self.fail_create_for:
            raise PersistenceError("create_notification failed: connection refused")
        notification_id = str(uuid.uuid4())
        self.records[notification_id] = NotificationRecord(
            id=notification_id,
            user_id=intent.recipient_id,
            notification_type=intent.notification_type.value,
            category=intent.category.value,
            priority=intent.priority.value,
            title=intent.title,
            message=intent.message,
            action_url=intent.action_reference,
            ride_id=intent.ride_id,
            context_data=dict(intent.context_data),
        )
        return notification_id

    async def get(self, notification_id: str) -> NotificationRecord | None:
        return self.records.get(notification_id)

    async def mark_push_sent(self, notification_id: str) -> None:
        if self.fail_bookkeeping:
            raise PersistenceError("mark_push_sent failed")
        record = self.records[notification_id]
        record.push_sent = True
        record.push_delivery_confirmed = True
        record.push_error = None

    async def mark_push_failed(self, notification_id: str, error: str) -> None:
        if self.fail_bookkeeping:
            raise PersistenceError("mark_push_failed failed")
        self.records[notification_id].push_error = error

    async def increment_retry_count(self, notification_id: str) -> int:
        record = self.records[notification_id]
        record.retry_count += 1
        return record.retry_count

    async def append_delivery_log(self, entry: DeliveryLogEntry) -> None:
        if self.fail_bookkeeping:
            raise PersistenceError("append_delivery_log failed")
        self.log.append(entry)

    def by_user(self, user_id: str) -> NotificationRecord:
        return next(r for r in self.records.values() if r.user_id == user_id)

    def log_for(self, notification_id: str) -> list[DeliveryLogEntry]:
        return [e for e in self.log if e.notification_id == notification_id]


class FakeProfileRepository:
    def __init__(self, tokens: dict[str, str | None] | None = None):
        self.tokens = tokens or {}

    async def get_device_token(self, user_id: str) -> str | None:
        return self.tokens.get(user_id)


class FakeRideRepository:
    def __init__(self, rides: list[Ride] | None = None, candidates: list[NearbyCandidate] | None = None):
        self.rides = {r.id: r for r in rides or []}
        self.candidates = candidates or []
        self.queries: list[tuple[Any, float]] = []

    async def get(self, ride_id: str) -> Ride | None:
        return self.rides.get(ride_id)

    async def find_nearby_candidates(self, point, radius_km: float) -> list[NearbyCandidate]:
        self.queries.append((point, radius_km))
        return list(self.candidates)


# ============================================================================
# Push gateway / token provider
# ============================================================================

class FakeGateway:
    """Records messages; device tokens listed in ``failures`` raise the mapped error."""

    def __init__(self, failures: dict[str, Exception] | None = None):
        self.failures = failures or {}
        self.sent: list[dict[str, Any]] = []
        self.access_tokens: list[str | None] = []

    async def send(self, message: dict[str, Any], access_token: str | None = None) -> dict[str, Any]:
        self.access_tokens.append(access_token)
        error = self.failures.get(message["token"])
        if error is not None:
            raise error
        self.sent.append(message)
        return {"name": f"projects/test-project/messages/{len(self.sent)}"}


class FakeTokenProvider:
    def __init__(self, error: Exception | None = None):
        self.error = error
        self.calls = 0
        self.invalidated = 0

    def ensure_configured(self) -> None:
        if self.error is not None:
            raise self.error

    @property
    def project_id(self) -> str:
        return "test-project"

    async def get_access_token(self) -> str:
        self.ensure_configured()
        self.calls += 1
        return "access-token"

    def invalidate(self) -> None:
        self.invalidated += 1


# ============================================================================
# aiohttp stand-ins
# ============================================================================

class FakeResponse:
    def __init__(self, status: int = 200, body: Any = None):
        self.status = status
        self._text = body if isinstance(body, str) else json.dumps(body or {})

    async def text(self) -> str:
        return self._text


class _FakeRequest:
    def __init__(self, outcome: FakeResponse | BaseException):
        self._outcome = outcome

    async def __aenter__(self) -> FakeResponse:
        if isinstance(self._outcome, BaseException):
            raise self._outcome
        return self._outcome

    async def __aexit__(self, *exc_info) -> bool:
        return False


class FakeSession:
    """``session.post(...)`` driven by a responder ``(url, kwargs) -> response | exception``."""

    def __init__(self, responder: Callable[[str, dict], FakeResponse | BaseException]):
        self.responder = responder
        self.calls: list[tuple[str, dict]] = []

    def post(self, url: str, **kwargs) -> _FakeRequest:
        self.calls.append((url, kwargs))
        return _FakeRequest(self.responder(url, kwargs))


# ============================================================================
# Fixtures
# ============================================================================

@pytest.fixture(scope="session")
def rsa_private_key():
    return rsa.generate_private_key(public_exponent=65537, key_size=2048)


@pytest.fixture(scope="session")
def private_key_pem(rsa_private_key) -> str:
    return rsa_private_key.private_bytes(
        encoding=serialization.Encoding.PEM,
        format=serialization.PrivateFormat.PKCS8,
        encryption_algorithm=serialization.NoEncryption(),
    ).decode("utf-8")


@pytest.fixture
def credential(private_key_pem) -> ServiceAccountCredential:
    return ServiceAccountCredential(
        project_id="test-project",
        client_email="dispatcher@test-project.iam.gserviceaccount.com",
        private_key_pem=private_key_pem,
    )


@pytest.fixture
def service_account_json(private_key_pem) -> str:
    return json.dumps({
        "type": "service_account",
        "project_id": "test-project",
        "client_email": "dispatcher@test-project.iam.gserviceaccount.com",
        "private_key": private_key_pem,
    })


@pytest.fixture(autouse=True)
def reset_metrics():
    get_metrics_collector().reset()
    yield
