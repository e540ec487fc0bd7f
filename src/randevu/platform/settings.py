"""Centralized configuration using pydantic-settings.

All configuration is loaded from environment variables and .env files.
This is the single source of truth for all platform configuration.
"""

from decimal import Decimal
from enum import Enum
from typing import Any

from pydantic import BaseModel, Field, field_validator
from pydantic_settings import BaseSettings, SettingsConfigDict


class Environment(str, Enum):
    """Application environment."""

    DEVELOPMENT = "development"
    STAGING = "staging"
    PRODUCTION = "production"
    TEST = "test"


class LogLevel(str, Enum):
    """Log levels."""

    DEBUG = "DEBUG"
    INFO = "INFO"
    WARNING = "WARNING"
    ERROR = "ERROR"
    CRITICAL = "CRITICAL"


class Settings(BaseSettings):
    """Main application settings.

    All settings can be overridden via environment variables.
    For nested settings, use double underscore: BILLING__TRIAL_DAYS=30
    """

    model_config = SettingsConfigDict(
        env_file=".env",
        env_file_encoding="utf-8",
        case_sensitive=False,
        env_nested_delimiter="__",
        extra="ignore",
    )

    # ============================================================
    # Core Application Settings
    # ============================================================

    app_name: str = Field("randevu-platform", description="Application name")
    app_version: str = Field("1.0.0", description="Application version")
    environment: Environment = Field(Environment.DEVELOPMENT, description="Deployment environment")
    debug: bool = Field(False, description="Debug mode")
    testing: bool = Field(False, description="Testing mode")

    # ============================================================
    # Database Configuration
    # ============================================================

    class DatabaseSettings(BaseModel):
        """Database configuration."""

        url: str | None = Field(None, description="Full database URL")
        host: str = Field("localhost", description="Database host")
        port: int = Field(5432, description="Database port")
        database: str = Field("randevu", description="Database name")
        username: str = Field("randevu", description="Database username")
        password: str = Field("", description="Database password")

        # Connection pool
        pool_size: int = Field(10, description="Connection pool size")
        max_overflow: int = Field(20, description="Max overflow connections")
        pool_timeout: int = Field(30, description="Pool timeout in seconds")
        pool_recycle: int = Field(3600, description="Recycle connections after seconds")
        pool_pre_ping: bool = Field(True, description="Test connections before use")

        echo: bool = Field(False, description="Echo SQL statements")

    database: DatabaseSettings = DatabaseSettings()  # type: ignore[call-arg]

    # ============================================================
    # Celery & Task Queue
    # ============================================================

    class CelerySettings(BaseModel):
        """Celery configuration."""

        broker_url: str = Field("redis://localhost:6379/0", description="Broker URL")
        result_backend: str = Field("redis://localhost:6379/1", description="Result backend")
        task_serializer: str = Field("json", description="Task serializer")
        result_serializer: str = Field("json", description="Result serializer")
        accept_content: list[str] = Field(
            default_factory=lambda: ["json"], description="Accept content types"
        )
        timezone: str = Field("UTC", description="Timezone")
        enable_utc: bool = Field(True, description="Enable UTC")

        worker_prefetch_multiplier: int = Field(1, description="Prefetch multiplier")
        task_soft_time_limit: int = Field(300, description="Soft time limit")
        task_time_limit: int = Field(600, description="Hard time limit")

        # Schedules (seconds)
        renewal_interval_seconds: float = Field(
            3600.0, description="How often the renewal sweep runs"
        )
        expiry_interval_seconds: float = Field(
            3600.0, description="How often the expiry-only sweep runs"
        )
        dunning_interval_seconds: float = Field(
            86400.0, description="How often delinquent subscriptions are cleaned up"
        )

    celery: CelerySettings = CelerySettings()  # type: ignore[call-arg]

    # ============================================================
    # Observability
    # ============================================================

    class ObservabilitySettings(BaseModel):
        """Observability configuration."""

        log_level: LogLevel = Field(LogLevel.INFO, description="Log level")
        log_format: str = Field("json", description="Log format (json or text)")
        enable_correlation_ids: bool = Field(True, description="Enable correlation IDs")
        enable_metrics: bool = Field(True, description="Enable metrics collection")
        otel_service_name: str = Field("randevu-platform", description="Service name")

    observability: ObservabilitySettings = ObservabilitySettings()  # type: ignore[call-arg]

    # ============================================================
    # Payment Service
    # ============================================================

    class PaymentSettings(BaseModel):
        """Payment service client configuration."""

        base_url: str = Field("http://localhost:8002", description="Payment service base URL")
        api_key: str = Field("", description="API key sent to the payment service")
        timeout_seconds: float = Field(15.0, description="Per-request timeout")

    payments: PaymentSettings = PaymentSettings()  # type: ignore[call-arg]

    # ============================================================
    # Billing Configuration
    # ============================================================

    class BillingSettings(BaseModel):
        """Subscription billing configuration."""

        default_currency: str = Field("TRY", description="Default currency for plans")

        # Subscription settings
        trial_days: int = Field(14, description="Trial period in days")
        monthly_period_days: int = Field(30, description="Nominal length of a monthly period")
        yearly_period_days: int = Field(365, description="Nominal length of a yearly period")
        cancel_at_period_end_default: bool = Field(
            True, description="Default cancellation behavior"
        )
        min_proration_charge: Decimal = Field(
            Decimal("0.00"), description="Charges at or below this amount are not collected"
        )

        # Renewal processing
        renewal_batch_size: int = Field(100, description="Subscriptions fetched per sweep page")
        renewal_lease_ttl_seconds: int = Field(
            900, description="Age after which a pending renewal lease may be reclaimed"
        )
        max_failed_payments: int = Field(
            3, description="Failed renewal charges before auto-renewal is disabled"
        )
        dunning_cancel_after_days: int = Field(
            30, description="Days past period end before delinquent subscriptions are canceled"
        )

        # Notifications / reporting
        trial_ending_reminder_days: int = Field(
            3, description="Window used when listing trials that end soon"
        )

        # Catalog cache
        plan_cache_ttl_seconds: int = Field(3600, description="Plan cache TTL")
        plan_cache_max_size: int = Field(256, description="Plan cache size")

    billing: BillingSettings = BillingSettings()  # type: ignore[call-arg]

    # ============================================================
    # Validation & Helpers
    # ============================================================

    @field_validator("environment", mode="before")
    @classmethod
    def validate_environment(cls, v: Any) -> Any:
        """Validate environment."""
        if isinstance(v, str):
            return Environment(v.lower())
        return v

    @property
    def is_production(self) -> bool:
        """Check if running in production."""
        return self.environment == Environment.PRODUCTION

    @property
    def is_development(self) -> bool:
        """Check if running in development."""
        return self.environment == Environment.DEVELOPMENT

    @property
    def is_testing(self) -> bool:
        """Check if running in test mode."""
        return self.testing or self.environment == Environment.TEST


# Global settings instance
_settings: Settings | None = None


def get_settings() -> Settings:
    """Get global settings instance (singleton)."""
    global _settings
    if _settings is None:
        _settings = Settings()  # type: ignore
    return _settings


def reset_settings() -> None:
    """Reset settings (mainly for testing)."""
    global _settings
    _settings = None


# Convenience export
settings = get_settings()
