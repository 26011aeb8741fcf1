"""
Application Configuration - Pydantic Settings for type-safe config.

NO DICTIONARIES - All configuration is strongly typed.
FAIL FAST - Critical config is validated at startup.
"""

import sys

from pydantic import model_validator
from pydantic_settings import BaseSettings, SettingsConfigDict


class ConfigurationError(Exception):
    """Raised when critical configuration is missing or invalid."""

    pass


class Settings(BaseSettings):
    """Application settings loaded from environment variables."""

    # Database Configuration - NO DEFAULT for production safety
    database_url: str = ""
    database_read_url: str | None = None  # Optional read replica
    database_pool_size: int = 25
    database_max_overflow: int = 10
    database_pool_timeout: int = 30
    database_pool_recycle: int = 3600
    auto_migrate: bool = True

    # API Configuration
    api_host: str = "0.0.0.0"
    api_port: int = 8000
    api_title: str = "Subscription Entitlements API"
    api_version: str = "0.1.0"
    api_description: str = "Play subscription receipt verification and entitlement state"

    # Security - shared key for backend callers of the verify/lookup endpoints
    api_key: str = ""

    # Google Play
    GOOGLE_PLAY_PACKAGE_NAME: str = ""  # e.g., "com.example.reader"
    # Path to service account JSON, or the raw JSON. Empty = application default credentials
    GOOGLE_PLAY_SERVICE_ACCOUNT: str = ""

    # Storefront calls
    storefront_timeout_seconds: float = 10.0
    storefront_max_attempts: int = 4
    storefront_backoff_initial_seconds: float = 0.5
    storefront_backoff_max_seconds: float = 8.0
    verification_dedup_window_seconds: float = 30.0

    # Pub/Sub push authentication (RTDN)
    PUBSUB_AUDIENCE: str = ""  # Audience configured on the push subscription
    PUBSUB_SERVICE_ACCOUNT_EMAIL: str = ""  # Optional: expected push identity

    # Reconciliation / notification inbox
    reconcile_conflict_retries: int = 3
    inbox_poll_interval_seconds: float = 5.0
    inbox_batch_size: int = 50
    inbox_max_attempts: int = 10

    # Logging
    log_level: str = "INFO"
    log_format: str = "json"  # json or console

    # Observability - Metrics
    metrics_enabled: bool = True

    # Observability - Tracing
    tracing_enabled: bool = True
    otlp_endpoint: str = "http://otel-collector:4317"
    otlp_insecure: bool = True
    service_name: str = "subscription-entitlements"

    model_config = SettingsConfigDict(
        env_file=".env",
        env_file_encoding="utf-8",
        case_sensitive=False,
    )

    @model_validator(mode="after")
    def validate_critical_config(self) -> "Settings":
        """
        FAIL FAST: Validate critical configuration at startup.

        The app MUST NOT start if critical config is missing.
        """
        errors: list[str] = []

        if not self.database_url:
            errors.append("DATABASE_URL is required but empty or missing")
        elif not self.database_url.startswith(("postgresql", "postgres")):
            errors.append(
                f"DATABASE_URL must be a PostgreSQL URL, got: {self.database_url[:20]}..."
            )

        if not self.api_key:
            errors.append("API_KEY is required but empty or missing")

        if not self.GOOGLE_PLAY_PACKAGE_NAME:
            errors.append("GOOGLE_PLAY_PACKAGE_NAME is required but empty or missing")

        if self.storefront_max_attempts < 1:
            errors.append("STOREFRONT_MAX_ATTEMPTS must be at least 1")

        if errors:
            error_msg = "\n".join(
                [
                    "",
                    "=" * 60,
                    "CRITICAL CONFIGURATION ERROR - APPLICATION CANNOT START",
                    "=" * 60,
                    *[f"  ✗ {e}" for e in errors],
                    "=" * 60,
                    "",
                ]
            )
            print(error_msg, file=sys.stderr)
            raise ConfigurationError(error_msg)

        return self

    @property
    def read_database_url(self) -> str:
        """Get read database URL (fallback to primary if no replica)."""
        return self.database_read_url or self.database_url


# Global settings instance - validates at import time
settings = Settings()


def get_settings() -> Settings:
    """Get application settings instance."""
    return settings
