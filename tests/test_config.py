"""
Tests for configuration loading and startup validation.
"""

from unittest.mock import patch

import pytest

from app.config import ConfigurationError, Settings
from app.db.migration_runner import run_migrations, sync_database_url

VALID = {
    "database_url": "postgresql+asyncpg://u:p@db:5432/entitlements",
    "api_key": "k",
    "GOOGLE_PLAY_PACKAGE_NAME": "com.example.reader",
}


def make_settings(**overrides) -> Settings:
    return Settings(_env_file=None, **{**VALID, **overrides})


class TestSettings:
    """Tests for Settings validation."""

    def test_valid(self):
        settings = make_settings()

        assert settings.storefront_max_attempts == 4
        assert settings.read_database_url == VALID["database_url"]

    def test_read_replica(self):
        replica = "postgresql+asyncpg://u:p@replica:5432/entitlements"

        assert make_settings(database_read_url=replica).read_database_url == replica

    @pytest.mark.parametrize(
        ("overrides", "message"),
        [
            ({"database_url": ""}, "DATABASE_URL is required"),
            ({"database_url": "mysql://u:p@db/x"}, "must be a PostgreSQL URL"),
            ({"api_key": ""}, "API_KEY is required"),
            ({"GOOGLE_PLAY_PACKAGE_NAME": ""}, "GOOGLE_PLAY_PACKAGE_NAME is required"),
            ({"storefront_max_attempts": 0}, "STOREFRONT_MAX_ATTEMPTS"),
        ],
    )
    def test_fails_fast(self, overrides, message):
        with pytest.raises(ConfigurationError, match=message):
            make_settings(**overrides)

    def test_all_errors_reported_together(self):
        with pytest.raises(ConfigurationError) as exc_info:
            make_settings(api_key="", GOOGLE_PLAY_PACKAGE_NAME="")

        assert "API_KEY" in str(exc_info.value)
        assert "GOOGLE_PLAY_PACKAGE_NAME" in str(exc_info.value)


class TestMigrationRunner:
    """Tests for the startup migration helpers."""

    def test_sync_database_url(self):
        assert (
            sync_database_url("postgresql+asyncpg://u:p@db:5432/x")
            == "postgresql+psycopg2://u:p@db:5432/x"
        )

    def test_failed_migration_stops_startup(self):
        with patch("app.db.migration_runner.create_engine", side_effect=OSError("refused")):
            with pytest.raises(RuntimeError, match="Database migration failed"):
                run_migrations()

    def test_up_to_date_schema_skips_upgrade(self):
        with (
            patch("app.db.migration_runner.create_engine"),
            patch("app.db.migration_runner._get_current_revision", return_value="0001"),
            patch("app.db.migration_runner._get_head_revision", return_value="0001"),
            patch("app.db.migration_runner.command.upgrade") as mock_upgrade,
        ):
            run_migrations()

        mock_upgrade.assert_not_called()

    def test_pending_revision_upgrades(self):
        with (
            patch("app.db.migration_runner.create_engine"),
            patch(
                "app.db.migration_runner._get_current_revision", side_effect=[None, "0001"]
            ),
            patch("app.db.migration_runner._get_head_revision", return_value="0001"),
            patch("app.db.migration_runner.command.upgrade") as mock_upgrade,
        ):
            run_migrations()

        mock_upgrade.assert_called_once()
        assert mock_upgrade.call_args.args[1] == "head"
