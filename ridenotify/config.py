# ridenotify/config.py
from pydantic import AliasChoices, Field
from pydantic_settings import BaseSettings, SettingsConfigDict
from typing import Literal


class Settings(BaseSettings):
    model_config = SettingsConfigDict(
        env_file=".env",
        env_file_encoding="utf-8",
        case_sensitive=False,
        extra="ignore"
    )

    # Application
    app_env: Literal["dev", "staging", "prod"] = "dev"
    log_level: str = "INFO"

    # Database
    database_url: str | None = None
    pghost: str = "localhost"
    pgport: int = 5432
    pguser: str = "postgres"
    pgpassword: str = ""
    pgdatabase: str = "postgres"
    pg_pool_min: int = 1
    pg_pool_max: int = 10
    pg_connect_timeout: int = 5
    db_query_timeout_seconds: float = 10.0  # Bounds the nearby-drivers query and row writes

    # Firebase service account (full JSON, stringified).
    # FIREBASE_SERVICE_ACCOUNT is accepted for older deployments.
    firebase_service_account_json: str | None = Field(
        default=None,
        validation_alias=AliasChoices(
            "firebase_service_account_json",
            "firebase_service_account",
        ),
    )
    firebase_project_id: str | None = None  # Overrides project_id from the service account JSON

    # FCM HTTP v1
    fcm_token_url: str = "https://oauth2.googleapis.com/token"
    fcm_scope: str = "https://www.googleapis.com/auth/firebase.messaging"
    fcm_send_url_template: str = "https://fcm.googleapis.com/v1/projects/{project_id}/messages:send"
    token_request_timeout_seconds: float = 10.0
    push_request_timeout_seconds: float = 10.0
    token_safety_margin_ms: int = 60_000  # Refresh when the cached token has less than this left
    assertion_lifetime_seconds: int = 55 * 60

    # Broadcast
    default_broadcast_radius_km: float = 5.0

    # Security
    # Shared secret for the database webhooks calling us (Authorization: Bearer <secret>).
    # Unset = no auth (dev / private network only).
    webhook_secret: str | None = Field(
        default=None,
        validation_alias=AliasChoices("dispatcher_webhook_secret", "webhook_secret"),
    )

    # Monitoring
    enable_metrics: bool = True
    enable_request_logging: bool = True

    @property
    def is_production(self) -> bool:
        return self.app_env == "prod"

    @property
    def database_dsn(self) -> str:
        if self.database_url:
            return self.database_url

        return (
            f"postgresql://{self.pguser}:{self.pgpassword}"
            f"@{self.pghost}:{self.pgport}/{self.pgdatabase}"
        )

    @property
    def fcm_configured(self) -> bool:
        return bool(self.firebase_service_account_json)

    def validate_required_for_production(self) -> list[str]:
        """Validate that required settings exist for production"""
        if not self.is_production:
            return []

        required_fields = [
            ("database_url", self.database_url),
            ("firebase_service_account_json", self.firebase_service_account_json),
        ]
        return [name for name, value in required_fields if not value]


def warn_on_risky_config(s: "Settings") -> list[str]:
    warnings: list[str] = []

    if not s.fcm_configured:
        warnings.append(
            "firebase_service_account_json is not set: every dispatch will fail with a configuration error."
        )

    if s.is_production and not s.webhook_secret:
        warnings.append("prod: webhook_secret is missing (dispatcher endpoints are unauthenticated).")

    if s.token_safety_margin_ms >= s.assertion_lifetime_seconds * 1000:
        warnings.append("token_safety_margin_ms exceeds the token lifetime: tokens will never be reused.")

    if s.default_broadcast_radius_km <= 0:
        warnings.append("default_broadcast_radius_km must be positive.")

    return warnings


def validate_or_warn(s: "Settings") -> None:
    """
    In prod: enforce required settings (hard fail).
    In non-prod: warn only.
    """
    missing = s.validate_required_for_production()

    if missing:
        raise RuntimeError(f"Missing required settings for production: {', '.join(missing)}")

    for msg in warn_on_risky_config(s):
        print(f"[WARN][config] {msg}")


settings = Settings()
validate_or_warn(settings)
