# ridenotify/infra/service_account.py
"""
Firebase service-account credential loading.

The credential is the full service account JSON, stringified into one
environment variable (FIREBASE_SERVICE_ACCOUNT_JSON). Only three fields
matter: project_id, client_email and private_key (PEM, PKCS#8).
"""
from __future__ import annotations

import json
from dataclasses import dataclass, field

from ridenotify.config import Settings, settings as default_settings
from ridenotify.core.errors import ConfigurationError
from ridenotify.infra.logging_config import get_logger

logger = get_logger(__name__)

_REQUIRED_FIELDS = ("project_id", "client_email", "private_key")


@dataclass(frozen=True)
class ServiceAccountCredential:
    project_id: str
    client_email: str
    private_key_pem: str = field(repr=False)

    @classmethod
    def from_json(cls, raw: str, *, project_id_override: str | None = None) -> "ServiceAccountCredential":
        """
        Parse a stringified service account JSON.

        Raises:
            ConfigurationError: invalid JSON or a required field is missing
        """
        try:
            data = json.loads(raw)
        except (TypeError, ValueError) as exc:
            raise ConfigurationError(
                "Invalid FIREBASE_SERVICE_ACCOUNT_JSON (must be a JSON string)"
            ) from exc

        if not isinstance(data, dict):
            raise ConfigurationError("Invalid FIREBASE_SERVICE_ACCOUNT_JSON (expected a JSON object)")

        missing = [name for name in _REQUIRED_FIELDS if not data.get(name)]
        if missing:
            raise ConfigurationError(
                f"Service account JSON is missing: {', '.join(missing)}"
            )

        # Secrets managers often store the key with literal "\n" sequences
        private_key = data["private_key"].replace("\\n", "\n")

        return cls(
            project_id=project_id_override or data["project_id"],
            client_email=data["client_email"],
            private_key_pem=private_key,
        )


def load_service_account(s: Settings | None = None) -> ServiceAccountCredential:
    """
    Load the service account from settings.

    Raises:
        ConfigurationError: credential not set or malformed
    """
    s = s or default_settings
    raw = s.firebase_service_account_json
    if not raw:
        raise ConfigurationError(
            "FCM v1 not configured: set FIREBASE_SERVICE_ACCOUNT_JSON (service account JSON string)"
        )

    credential = ServiceAccountCredential.from_json(raw, project_id_override=s.firebase_project_id)
    logger.info(
        "Service account loaded: project=%s, client=%s",
        credential.project_id, credential.client_email,
    )
    return credential
