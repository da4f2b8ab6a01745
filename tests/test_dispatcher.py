# tests/test_dispatcher.py
"""Tests for NotificationDispatcher fan-out and use cases."""
import asyncio

import pytest

from conftest import (
    FakeGateway,
    FakeNotificationRepository,
    FakeProfileRepository,
    FakeResponse,
    FakeRideRepository,
    FakeSession,
    FakeTokenProvider,
)
from ridenotify.core.delivery import PushDeliveryService
from ridenotify.core.dispatcher import NotificationDispatcher
from ridenotify.core.domain import (
    GeoPoint,
    NearbyCandidate,
    NotificationCategory,
    NotificationIntent,
    NotificationType,
    Priority,
    Ride,
    RideEvent,
)
from ridenotify.core.errors import AuthenticationError, ConfigurationError, DeliveryError, NotFoundError
from ridenotify.infra.fcm_sender import FcmSender
from ridenotify.infra.metrics import get_metrics_collector

PICKUP = GeoPoint(lat=-17.8292, lng=31.0522)


def _intent(recipient_id: str) -> NotificationIntent:
    return NotificationIntent(
        recipient_id=recipient_id,
        notification_type=NotificationType.NEW_OFFER,
        category=NotificationCategory.OFFERS,
        priority=Priority.HIGH,
        title="New Taxi Request",
        message="Pickup: Harare CBD",
        action_reference="/driver/rides?rideId=ride-1",
        ride_id="ride-1",
    )


def _dispatcher(
    repo=None,
    tokens=None,
    gateway=None,
    rides=None,
    token_provider=None,
):
    repo = repo or FakeNotificationRepository()
    delivery = PushDeliveryService(repo, FakeProfileRepository(tokens or {}), gateway or FakeGateway())
    return NotificationDispatcher(
        notifications=repo,
        rides=rides or FakeRideRepository(),
        delivery=delivery,
        token_provider=token_provider or FakeTokenProvider(),
    )


# ---------------------------------------------------------------------------
# dispatch
# ---------------------------------------------------------------------------

class TestDispatch:
    @pytest.mark.asyncio
    async def test_empty_does_not_touch_credentials(self):
        provider = FakeTokenProvider(error=ConfigurationError("not configured"))
        result = await _dispatcher(token_provider=provider).dispatch([])

        assert result.attempted == 0
        assert result.notified == 0
        assert provider.calls == 0

    @pytest.mark.asyncio
    async def test_all_delivered(self):
        repo = FakeNotificationRepository()
        dispatcher = _dispatcher(repo, tokens={"u1": "t1", "u2": "t2"})

        result = await dispatcher.dispatch([_intent("u1"), _intent("u2")])

        assert result.attempted == 2
        assert result.notified == 2
        assert result.persisted == 2
        assert all(r.push_sent for r in result.results)

    @pytest.mark.asyncio
    async def test_partial_failure_isolation_with_real_timeout(self):
        """Recipient 2's gateway call times out; 1 and 3 are unaffected."""
        repo = FakeNotificationRepository()

        def responder(url, kwargs):
            if kwargs["json"]["message"]["token"] == "t2":
                return asyncio.TimeoutError()
            return FakeResponse(200, {"name": "projects/test-project/messages/x"})

        provider = FakeTokenProvider()
        sender = FcmSender(provider, timeout_s=10, session_factory=lambda: FakeSession(responder))
        dispatcher = _dispatcher(repo, tokens={"u1": "t1", "u2": "t2", "u3": "t3"}, gateway=sender,
                                 token_provider=provider)

        result = await dispatcher.dispatch([_intent("u1"), _intent("u2"), _intent("u3")])

        assert [r.recipient_id for r in result.results] == ["u1", "u2", "u3"]
        assert result.notified == 2

        for user_id in ("u1", "u3"):
            record = repo.by_user(user_id)
            assert record.push_sent is True
            [entry] = repo.log_for(record.id)
            assert entry.success is True

        failed = repo.by_user("u2")
        assert failed.push_sent is False
        assert failed.push_error is not None
        assert "timeout" in failed.push_error
        [entry] = repo.log_for(failed.id)
        assert entry.success is False

        second = result.results[1]
        assert second.success is False
        assert second.notification_id == failed.id
        assert second.error == failed.push_error

    @pytest.mark.asyncio
    async def test_persistence_failure_isolated(self):
        repo = FakeNotificationRepository(fail_create_for={"u2"})
        dispatcher = _dispatcher(repo, tokens={"u1": "t1", "u2": "t2", "u3": "t3"})

        result = await dispatcher.dispatch([_intent("u1"), _intent("u2"), _intent("u3")])

        assert result.attempted == 3
        assert result.persisted == 2
        assert result.notified == 2
        failed = result.results[1]
        assert failed.notification_id is None
        assert "create_notification failed" in failed.error
        assert get_metrics_collector().get_counter("notification_persist_failed") == 1

    @pytest.mark.asyncio
    async def test_missing_token_counts_as_notified(self):
        repo = FakeNotificationRepository()
        dispatcher = _dispatcher(repo, tokens={"u1": "t1"})

        result = await dispatcher.dispatch([_intent("u1"), _intent("u2")])

        assert result.notified == 2
        skipped = result.results[1]
        assert skipped.skipped is True
        assert skipped.push_sent is False
        assert skipped.error is None
        assert repo.by_user("u2").push_error is None
        assert repo.log_for(skipped.notification_id) == []

    @pytest.mark.asyncio
    async def test_configuration_error_aborts_before_persisting(self):
        repo = FakeNotificationRepository()
        provider = FakeTokenProvider(error=ConfigurationError("FCM v1 not configured"))

        with pytest.raises(ConfigurationError):
            await _dispatcher(repo, tokens={"u1": "t1"}, token_provider=provider).dispatch([_intent("u1")])
        assert repo.records == {}

    @pytest.mark.asyncio
    async def test_authentication_error_aborts(self):
        class RejectingProvider(FakeTokenProvider):
            async def get_access_token(self):
                raise AuthenticationError(400, "invalid_grant")

        repo = FakeNotificationRepository()
        with pytest.raises(AuthenticationError):
            await _dispatcher(repo, token_provider=RejectingProvider()).dispatch([_intent("u1")])
        assert repo.records == {}

    @pytest.mark.asyncio
    async def test_sibling_401_does_not_refetch_token(self):
        """An FCM 401 drops the cached token; siblings keep the token fetched up front."""

        class RevokedProvider(FakeTokenProvider):
            async def get_access_token(self):
                if self.invalidated:
                    raise AuthenticationError(400, "invalid_grant")
                return await super().get_access_token()

        def responder(url, kwargs):
            if kwargs["json"]["message"]["token"] == "t1":
                return FakeResponse(401, "UNAUTHENTICATED")
            return FakeResponse(200, {"name": "projects/test-project/messages/x"})

        repo = FakeNotificationRepository()
        provider = RevokedProvider()
        sender = FcmSender(provider, timeout_s=10, session_factory=lambda: FakeSession(responder))
        dispatcher = _dispatcher(repo, tokens={"u1": "t1", "u2": "t2", "u3": "t3"}, gateway=sender,
                                 token_provider=provider)

        result = await dispatcher.dispatch([_intent("u1"), _intent("u2"), _intent("u3")])

        assert provider.calls == 1
        assert provider.invalidated == 1
        assert result.notified == 2

        rejected = repo.by_user("u1")
        assert "401" in rejected.push_error
        [entry] = repo.log_for(rejected.id)
        assert entry.success is False

        for user_id in ("u2", "u3"):
            record = repo.by_user(user_id)
            assert record.push_sent is True
            assert record.push_error is None

    @pytest.mark.asyncio
    async def test_access_token_shared_by_all_deliveries(self):
        gateway = FakeGateway()
        provider = FakeTokenProvider()
        dispatcher = _dispatcher(tokens={"u1": "t1", "u2": "t2"}, gateway=gateway, token_provider=provider)

        await dispatcher.dispatch([_intent("u1"), _intent("u2")])

        assert provider.calls == 1
        assert gateway.access_tokens == ["access-token", "access-token"]

    @pytest.mark.asyncio
    async def test_unexpected_error_reported_per_recipient(self):
        class ExplodingGateway(FakeGateway):
            async def send(self, message, access_token=None):
                if message["token"] == "t1":
                    raise KeyError("boom")
                return await super().send(message, access_token)

        dispatcher = _dispatcher(tokens={"u1": "t1", "u2": "t2"}, gateway=ExplodingGateway())

        result = await dispatcher.dispatch([_intent("u1"), _intent("u2")])

        assert result.results[0].success is False
        assert "KeyError" in result.results[0].error
        assert result.results[1].success is True


# ---------------------------------------------------------------------------
# Status changes
# ---------------------------------------------------------------------------

class TestHandleStatusChange:
    @pytest.mark.asyncio
    async def test_system_cancellation_reaches_both(self):
        repo = FakeNotificationRepository()
        dispatcher = _dispatcher(repo, tokens={"p1": "tp", "d1": "td"})
        event = RideEvent(ride_id="ride-1", new_status="cancelled", old_status="accepted",
                          passenger_id="p1", driver_id="d1")

        result = await dispatcher.handle_status_change(event)

        assert result.notified == 2
        assert {r.user_id for r in repo.records.values()} == {"p1", "d1"}
        assert {r.notification_type for r in repo.records.values()} == {"ride_cancelled_by_system"}

    @pytest.mark.asyncio
    async def test_unchanged_status_sends_nothing(self):
        provider = FakeTokenProvider()
        dispatcher = _dispatcher(token_provider=provider)
        event = RideEvent(ride_id="ride-1", new_status="accepted", old_status="accepted", driver_id="d1")

        result = await dispatcher.handle_status_change(event)

        assert result.attempted == 0
        assert provider.calls == 0


# ---------------------------------------------------------------------------
# Broadcast
# ---------------------------------------------------------------------------

def _candidates():
    return [
        NearbyCandidate("offline-1", 0.4, is_online=False, is_available=True),
        NearbyCandidate("ok-1", 0.9, is_online=True, is_available=True),
        NearbyCandidate("offline-2", 1.3, is_online=False, is_available=False),
        NearbyCandidate("engaged", 2.0, is_online=True, is_available=True, active_assignment_id="ride-7"),
        NearbyCandidate("ok-2", 3.4, is_online=True, is_available=True),
    ]


class TestBroadcast:
    @pytest.mark.asyncio
    async def test_five_nearby_two_eligible(self):
        repo = FakeNotificationRepository()
        ride = Ride(id="ride-1", ride_status="pending", service_type="taxi", pickup_location="Harare CBD")
        rides = FakeRideRepository([ride], _candidates())
        dispatcher = _dispatcher(repo, tokens={"ok-1": "t1", "ok-2": "t2"}, rides=rides)

        result = await dispatcher.broadcast_new_ride(ride, PICKUP, 5.0)

        assert result.drivers_notified == 2
        assert result.eligible_drivers == 2
        assert result.total_nearby == 5
        assert result.message == "Notified 2 eligible drivers"
        assert {r.user_id for r in repo.records.values()} == {"ok-1", "ok-2"}
        assert rides.queries == [(PICKUP, 5.0)]
        assert get_metrics_collector().get_counter("broadcast_candidates") == 5

    @pytest.mark.asyncio
    async def test_default_radius(self):
        rides = FakeRideRepository(candidates=[])
        ride = Ride(id="ride-1", ride_status="pending")

        await _dispatcher(rides=rides).broadcast_new_ride(ride, PICKUP)

        assert rides.queries[0][1] == 5.0

    @pytest.mark.asyncio
    async def test_no_nearby(self):
        ride = Ride(id="ride-1", ride_status="pending")
        result = await _dispatcher(rides=FakeRideRepository(candidates=[])).broadcast_new_ride(ride, PICKUP)

        assert result.total_nearby == 0
        assert result.drivers_notified == 0
        assert result.message == "No nearby drivers"

    @pytest.mark.asyncio
    async def test_none_eligible(self):
        candidates = [c for c in _candidates() if not c.provider_id.startswith("ok")]
        ride = Ride(id="ride-1", ride_status="pending")
        provider = FakeTokenProvider()

        result = await _dispatcher(rides=FakeRideRepository(candidates=candidates),
                                   token_provider=provider).broadcast_new_ride(ride, PICKUP)

        assert result.total_nearby == 3
        assert result.eligible_drivers == 0
        assert result.message == "No eligible drivers (online and available)"
        assert provider.calls == 0

    @pytest.mark.asyncio
    async def test_scheduled_ride_not_broadcast(self):
        rides = FakeRideRepository(candidates=_candidates())
        ride = Ride(id="ride-1", ride_status="pending", ride_timing="scheduled_single")

        result = await _dispatcher(rides=rides).broadcast_new_ride(ride, PICKUP)

        assert result.drivers_notified == 0
        assert result.message == "Ride is not instant or not pending"
        assert rides.queries == []

    @pytest.mark.asyncio
    async def test_by_id_missing_ride(self):
        with pytest.raises(NotFoundError):
            await _dispatcher().broadcast_ride_by_id("nope", PICKUP)

    @pytest.mark.asyncio
    async def test_failed_push_not_counted(self):
        ride = Ride(id="ride-1", ride_status="pending")
        gateway = FakeGateway(failures={"t2": DeliveryError(404, "UNREGISTERED")})
        dispatcher = _dispatcher(tokens={"ok-1": "t1", "ok-2": "t2"}, gateway=gateway,
                                 rides=FakeRideRepository([ride], _candidates()))

        result = await dispatcher.broadcast_ride_by_id("ride-1", PICKUP)

        assert result.eligible_drivers == 2
        assert result.drivers_notified == 1


# ---------------------------------------------------------------------------
# App update / redelivery
# ---------------------------------------------------------------------------

class TestAppUpdate:
    @pytest.mark.asyncio
    async def test_single_system_intent(self):
        repo = FakeNotificationRepository()
        gateway = FakeGateway()
        dispatcher = _dispatcher(repo, tokens={"u1": "t1"}, gateway=gateway)

        result = await dispatcher.notify_app_update("u1", "2.4.0", "2.3.1")

        assert result.notified == 1
        record = repo.by_user("u1")
        assert record.notification_type == "app_update"
        assert record.category == "system"
        assert record.priority == "high"
        assert record.title == "New Version Available"
        assert "TaxiCab v2.4.0 is ready!" in record.message
        assert record.action_url == "/?update=true"
        assert record.context_data == {"new_version": "2.4.0", "current_version": "2.3.1"}
        assert gateway.sent[0]["android"]["priority"] == "HIGH"


class TestOfferRejected:
    @pytest.mark.asyncio
    async def test_notifies_competing_bidders(self):
        repo = FakeNotificationRepository()
        gateway = FakeGateway()
        dispatcher = _dispatcher(repo, tokens={"d-2": "t2", "d-3": "t3", "d-win": "tw"}, gateway=gateway)

        result = await dispatcher.notify_offer_rejected("ride-1", "d-win", ["d-win", "d-2", "d-3"], "Avondale")

        assert result.attempted == 2
        assert result.notified == 2
        assert sorted(m["token"] for m in gateway.sent) == ["t2", "t3"]
        assert repo.by_user("d-2").notification_type == "offer_rejected"

    @pytest.mark.asyncio
    async def test_no_competitors_touches_nothing(self):
        provider = FakeTokenProvider()
        dispatcher = _dispatcher(token_provider=provider)

        result = await dispatcher.notify_offer_rejected("ride-1", "d-win", [])

        assert result.attempted == 0
        assert provider.calls == 0


class TestRedeliver:
    @pytest.mark.asyncio
    async def test_bumps_retry_and_logs_attempt(self):
        repo = FakeNotificationRepository()
        gateway = FakeGateway(failures={"t1": DeliveryError(503, "UNAVAILABLE")})
        dispatcher = _dispatcher(repo, tokens={"u1": "t1"}, gateway=gateway)
        first = await dispatcher.dispatch([_intent("u1")])
        notification_id = first.results[0].notification_id

        gateway.failures.clear()
        outcome = await dispatcher.redeliver(notification_id)

        assert outcome.push_sent is True
        assert repo.records[notification_id].retry_count == 1
        assert repo.records[notification_id].push_error is None
        attempts = [(e.attempt_number, e.success) for e in repo.log_for(notification_id)]
        assert attempts == [(1, False), (2, True)]

    @pytest.mark.asyncio
    async def test_missing_notification(self):
        with pytest.raises(NotFoundError):
            await _dispatcher().redeliver("n-404")
