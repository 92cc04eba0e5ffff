from functools import lru_cache
from threading import Lock
from typing import Optional
import structlog
from pydantic_settings import BaseSettings, SettingsConfigDict
from pydantic import model_validator

# Environment Constants
ENV_PRODUCTION = "production"
ENV_STAGING = "staging"
ENV_DEVELOPMENT = "development"
ENV_LOCAL = "local"


@lru_cache
def get_settings() -> "Settings":
    """Returns a singleton instance of the application settings."""
    return Settings()


_settings_reload_lock = Lock()


def reload_settings_from_environment() -> "Settings":
    """
    Atomically rebuild and replace cached settings from environment values.

    This avoids mutating the cached singleton instance in-place.
    """
    logger = structlog.get_logger()
    with _settings_reload_lock:
        logger.info("settings_reload_started")
        get_settings.cache_clear()
        refreshed = get_settings()
        logger.info("settings_reload_completed")
        return refreshed


class Settings(BaseSettings):
    """
    Main configuration for the billing webhook service.
    Uses Pydantic-Settings for environment variable parsing from .env.
    """

    APP_NAME: str = "Billing Webhooks"
    VERSION: str = "0.1.0"
    DEBUG: bool = False
    # ENVIRONMENT options: local, development, staging, production
    ENVIRONMENT: str = ENV_DEVELOPMENT
    TESTING: bool = False

    # Database
    DATABASE_URL: str = ""
    DB_ECHO: bool = False
    DB_POOL_SIZE: int = 20
    DB_MAX_OVERFLOW: int = 10
    DB_POOL_TIMEOUT: int = 30
    DB_POOL_RECYCLE: int = 3600
    DB_SLOW_QUERY_THRESHOLD_SECONDS: float = 0.2

    # Paystack
    PAYSTACK_SECRET_KEY: Optional[str] = None
    WEBHOOK_SECRET_PAYSTACK: Optional[str] = None
    PAYSTACK_BASE_URL: str = "https://api.paystack.co"

    # Flutterwave
    FLUTTERWAVE_SECRET_KEY: Optional[str] = None
    WEBHOOK_SECRET_FLW: Optional[str] = None
    FLUTTERWAVE_BASE_URL: str = "https://api.flutterwave.com/v3"

    # Payment initiation
    PAYMENT_CALLBACK_URL: str = "http://localhost:3000/payment/callback"
    PAYMENT_VERIFY_MAX_ATTEMPTS: int = 3
    PAYMENT_HTTP_TIMEOUT_SECONDS: float = 10.0

    # Webhook replay and idempotency controls
    WEBHOOK_ALLOWED_SKEW_SECONDS: int = 300
    WEBHOOK_REPLAY_TTL_SECONDS: int = 600
    WEBHOOK_PROCESSING_TIMEOUT_SECONDS: float = 10.0
    # Acknowledge events for organizations that do not exist instead of 404.
    # Only meant for test and staging fixtures that skip org seeding.
    WEBHOOK_ACK_UNKNOWN_ORG: bool = False

    # Entitlement
    BILLING_GRACE_PERIOD_DAYS: int = 3

    # Notifications
    NOTIFICATION_TIMEOUT_SECONDS: float = 5.0
    NOTIFICATION_WEBHOOK_URL: Optional[str] = None

    # Distributed replay registry (Upstash Redis)
    UPSTASH_REDIS_URL: Optional[str] = None
    UPSTASH_REDIS_TOKEN: Optional[str] = None

    @model_validator(mode="after")
    def validate_all_config(self) -> "Settings":
        """Centralized validation orchestrator, grouped by concern."""
        if self.TESTING and self.ENVIRONMENT in {ENV_PRODUCTION, ENV_STAGING}:
            raise ValueError(
                "TESTING must be false in staging/production runtime environments."
            )

        self._validate_webhook_windows()
        self._validate_billing_config()
        return self

    def _validate_webhook_windows(self) -> None:
        """Validates replay, TTL and timeout windows."""
        if self.WEBHOOK_ALLOWED_SKEW_SECONDS <= 0:
            raise ValueError("WEBHOOK_ALLOWED_SKEW_SECONDS must be > 0.")
        if self.WEBHOOK_REPLAY_TTL_SECONDS <= 0:
            raise ValueError("WEBHOOK_REPLAY_TTL_SECONDS must be > 0.")
        if self.WEBHOOK_PROCESSING_TIMEOUT_SECONDS <= 0:
            raise ValueError("WEBHOOK_PROCESSING_TIMEOUT_SECONDS must be > 0.")
        if self.NOTIFICATION_TIMEOUT_SECONDS <= 0:
            raise ValueError("NOTIFICATION_TIMEOUT_SECONDS must be > 0.")
        if self.BILLING_GRACE_PERIOD_DAYS < 0:
            raise ValueError("BILLING_GRACE_PERIOD_DAYS must be >= 0.")
        if self.PAYMENT_VERIFY_MAX_ATTEMPTS < 1:
            raise ValueError("PAYMENT_VERIFY_MAX_ATTEMPTS must be >= 1.")
        if self.DB_SLOW_QUERY_THRESHOLD_SECONDS <= 0:
            raise ValueError("DB_SLOW_QUERY_THRESHOLD_SECONDS must be > 0.")

    def _validate_billing_config(self) -> None:
        """Validates webhook secrets and production-only guardrails."""
        if not self.is_production:
            return

        if self.WEBHOOK_ACK_UNKNOWN_ORG:
            raise ValueError("WEBHOOK_ACK_UNKNOWN_ORG must be false in production.")

        if not any(
            [
                self.WEBHOOK_SECRET_PAYSTACK,
                self.PAYSTACK_SECRET_KEY,
                self.WEBHOOK_SECRET_FLW,
                self.FLUTTERWAVE_SECRET_KEY,
            ]
        ):
            raise ValueError(
                "At least one provider webhook secret must be configured in production."
            )

        if not self.DATABASE_URL:
            raise ValueError("DATABASE_URL is required in production.")

    @property
    def paystack_webhook_secret(self) -> Optional[str]:
        return self.WEBHOOK_SECRET_PAYSTACK or self.PAYSTACK_SECRET_KEY or None

    @property
    def flutterwave_webhook_secret(self) -> Optional[str]:
        return self.WEBHOOK_SECRET_FLW or self.FLUTTERWAVE_SECRET_KEY or None

    model_config = SettingsConfigDict(env_file=".env", env_ignore_empty=True)

    @property
    def is_production(self) -> bool:
        """
        True only when ENVIRONMENT is explicitly set to 'production'.
        Staging/Development are NOT 'production'.
        """
        return self.ENVIRONMENT == ENV_PRODUCTION
