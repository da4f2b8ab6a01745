"""Ride-lifecycle push notification dispatcher."""

__version__ = "0.3.0"
