# ridenotify/core/errors.py
"""
Dispatcher error taxonomy.

Each error knows the HTTP status it surfaces as. Configuration and
authentication errors abort the whole invocation; persistence and
delivery errors are scoped to a single recipient and only ever show up
in per-recipient results, on the notification row and in the delivery log.
"""
from __future__ import annotations


class DispatcherError(Exception):
    """Base class for all dispatcher errors."""

    http_status: int = 500


class ConfigurationError(DispatcherError):
    """Service-account credential missing or malformed."""

    http_status = 500


class AuthenticationError(DispatcherError):
    """Token endpoint rejected the signed assertion (or was unreachable).

    Attributes:
        status: HTTP status from the token endpoint (0 for transport errors).
        body:   Response body, truncated.
    """

    http_status = 500

    def __init__(self, status: int, body: str):
        self.status = status
        self.body = body
        super().__init__(f"Failed to get Firebase access token: {status} {body}")


class ValidationError(DispatcherError):
    """Malformed inbound event."""

    http_status = 400


class NotFoundError(DispatcherError):
    """Referenced ride or notification does not exist."""

    http_status = 404


class PersistenceError(DispatcherError):
    """Data store read or write failed."""

    http_status = 500


class DeliveryError(DispatcherError):
    """Push gateway rejected the message or did not answer in time.

    Attributes:
        status: HTTP status from FCM (0 for timeouts and connection errors).
        body:   Response body, truncated.
    """

    http_status = 502

    def __init__(self, status: int, body: str):
        self.status = status
        self.body = body
        super().__init__(f"FCM v1 send failed: {status} {body}")
