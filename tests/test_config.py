# tests/test_config.py
"""Tests for settings loading and validation."""
import pytest

from ridenotify.config import Settings, validate_or_warn, warn_on_risky_config
from ridenotify.infra.migrations_async import migration_files


class TestSettings:
    def test_defaults(self):
        s = Settings(_env_file=None)
        assert s.token_safety_margin_ms == 60_000
        assert s.assertion_lifetime_seconds == 3300
        assert s.default_broadcast_radius_km == 5.0
        assert "{project_id}" in s.fcm_send_url_template

    def test_legacy_service_account_env_name(self, monkeypatch):
        monkeypatch.delenv("FIREBASE_SERVICE_ACCOUNT_JSON", raising=False)
        monkeypatch.setenv("FIREBASE_SERVICE_ACCOUNT", '{"project_id": "p"}')

        s = Settings(_env_file=None)

        assert s.firebase_service_account_json == '{"project_id": "p"}'
        assert s.fcm_configured is True

    def test_webhook_secret_env_name(self, monkeypatch):
        monkeypatch.setenv("DISPATCHER_WEBHOOK_SECRET", "abc")
        assert Settings(_env_file=None).webhook_secret == "abc"

    def test_dsn_from_parts(self):
        s = Settings(_env_file=None, database_url=None, pguser="u", pgpassword="p", pghost="db",
                     pgport=6543, pgdatabase="rides")
        assert s.database_dsn == "postgresql://u:p@db:6543/rides"

    def test_database_url_wins(self):
        s = Settings(_env_file=None, database_url="postgresql://x/y")
        assert s.database_dsn == "postgresql://x/y"


class TestValidation:
    def test_prod_requires_database_and_service_account(self):
        s = Settings(_env_file=None, app_env="prod", database_url=None, firebase_service_account_json=None)

        assert s.validate_required_for_production() == ["database_url", "firebase_service_account_json"]
        with pytest.raises(RuntimeError, match="database_url"):
            validate_or_warn(s)

    def test_dev_only_warns(self, capsys):
        s = Settings(_env_file=None, app_env="dev", firebase_service_account_json=None)

        validate_or_warn(s)

        assert "firebase_service_account_json is not set" in capsys.readouterr().out

    def test_margin_exceeding_lifetime_warns(self):
        s = Settings(_env_file=None, token_safety_margin_ms=4_000_000, firebase_service_account_json="{}")
        assert any("never be reused" in w for w in warn_on_risky_config(s))


class TestMigrations:
    def test_files_in_order(self):
        names = [p.name for p in migration_files()]
        assert names == sorted(names)
        assert names[0] == "001_notifications.sql"
        assert "003_find_drivers_within_radius.sql" in names

    def test_radius_function_signature(self):
        sql = migration_files()[-1].read_text(encoding="utf-8")
        assert "find_drivers_within_radius" in sql
        assert "active_ride_id" in sql

    def test_only_radius_function_references_rides(self):
        # `rides` belongs to the ride app; nothing here may need it at apply time
        for path in migration_files():
            sql = path.read_text(encoding="utf-8")
            assert "CREATE TABLE IF NOT EXISTS rides" not in sql
            if path.name.startswith("003_"):
                assert "LANGUAGE plpgsql" in sql
                assert "LANGUAGE sql" not in sql
            else:
                assert "FROM rides" not in sql
