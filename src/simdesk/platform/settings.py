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
    For nested settings, use double underscore: RELIABILITY__MAX_RECOVERY_ATTEMPTS=10
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

    app_name: str = Field("simdesk-platform", description="Application name")
    app_version: str = Field("1.0.0", description="Application version")
    environment: Environment = Field(Environment.DEVELOPMENT, description="Deployment environment")

    # ============================================================
    # Database Configuration
    # ============================================================

    class DatabaseSettings(BaseModel):
        """Database configuration."""

        url: str | None = Field(None, description="Full SQLAlchemy database URL")
        host: str = Field("localhost", description="Database host")
        port: int = Field(5432, description="Database port")
        database: str = Field("simdesk", description="Database name")
        username: str = Field("simdesk", description="Database username")
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
    # Celery
    # ============================================================

    class CelerySettings(BaseModel):
        """Celery configuration."""

        broker_url: str = Field("redis://localhost:6379/0", description="Broker URL")
        result_backend: str = Field("redis://localhost:6379/1", description="Result backend")
        task_soft_time_limit: int = Field(240, description="Soft time limit")
        task_time_limit: int = Field(300, description="Hard time limit")

    celery: CelerySettings = CelerySettings()  # type: ignore[call-arg]

    # ============================================================
    # Observability
    # ============================================================

    class ObservabilitySettings(BaseModel):
        """Logging configuration."""

        log_level: LogLevel = Field(LogLevel.INFO, description="Log level")
        log_format: str = Field("json", description="Log format (json or text)")
        enable_correlation_ids: bool = Field(True, description="Add thread name to log records")

    observability: ObservabilitySettings = ObservabilitySettings()  # type: ignore[call-arg]

    # ============================================================
    # Email & SMTP Settings
    # ============================================================

    class EmailSettings(BaseModel):
        """Email configuration."""

        smtp_host: str = Field("localhost", description="SMTP server host")
        smtp_port: int = Field(587, description="SMTP server port")
        smtp_username: str = Field("", description="SMTP username")
        smtp_password: str = Field("", description="SMTP password")
        use_tls: bool = Field(True, description="Use TLS for SMTP")

        from_address: str = Field("billing@example.com", description="Default from email")
        from_name: str = Field("SimDesk Billing", description="Default from name")

        enabled: bool = Field(True, description="Enable email sending")
        timeout: int = Field(30, description="SMTP timeout in seconds")

    email: EmailSettings = EmailSettings()  # type: ignore[call-arg]

    # ============================================================
    # Billing
    # ============================================================

    class BillingSettings(BaseModel):
        """Billing, VAT and currency configuration."""

        default_currency: str = Field("USD", description="Currency plan prices are stored in")
        supported_currencies: list[str] = Field(
            default_factory=lambda: ["USD", "AED"], description="Currencies kept in the rate table"
        )
        business_timezone: str = Field(
            "UTC", description="Timezone that defines a billing calendar day"
        )

        # VAT
        vat_rate: Decimal = Field(Decimal("0.05"), description="VAT rate for liable companies")
        vat_countries: list[str] = Field(
            default_factory=lambda: ["UAE", "United Arab Emirates", "AE"],
            description="Company countries that are VAT-liable",
        )

        # Credit notes
        credit_note_prefix: str = Field("CN", description="Credit note number prefix")
        credit_note_reason: str = Field(
            "eSIM cancellation refund", description="Reason recorded on generated credit notes"
        )
        credit_note_run_hour: int = Field(23, description="Hour of the daily credit note run")
        credit_note_run_minute: int = Field(50, description="Minute of the daily credit note run")
        credit_note_number_retries: int = Field(
            3, description="Attempts to allocate a unique credit note number"
        )

        # Exchange rates
        exchange_rate_cache_seconds: int = Field(
            300, description="Freshness window of the in-memory rate cache"
        )
        exchange_rate_refresh_minutes: int = Field(
            60, description="Interval between rate refreshes from the external source"
        )
        exchange_rate_source_url: str | None = Field(
            None, description="HTTP endpoint returning {'rates': {...}} for a base currency"
        )
        exchange_rate_timeout_seconds: float = Field(10.0, description="Rate source timeout")

    billing: BillingSettings = BillingSettings()  # type: ignore[call-arg]

    # ============================================================
    # Provisioning provider (eSIM Access)
    # ============================================================

    class ProviderSettings(BaseModel):
        """Provisioning provider API configuration."""

        base_url: str = Field(
            "https://api.esimaccess.com/api/v1/open", description="Provider API base URL"
        )
        access_code: str | None = Field(None, description="RT-AccessCode credential")
        secret_key: str | None = Field(None, description="HMAC signing secret")
        timeout_seconds: float = Field(30.0, description="Per-request timeout")
        max_retries: int = Field(3, description="Attempts per status query")
        retry_backoff_seconds: float = Field(1.0, description="Base backoff between attempts")

    provider: ProviderSettings = ProviderSettings()  # type: ignore[call-arg]

    # ============================================================
    # Webhook reliability
    # ============================================================

    class ReliabilitySettings(BaseModel):
        """Webhook failure detection and recovery configuration."""

        max_consecutive_failures: int = Field(
            3, description="Consecutive failures that trigger recovery"
        )
        max_recovery_attempts: int = Field(5, description="Recovery attempts before giving up")
        sweep_interval_seconds: int = Field(3600, description="Interval of the recovery sweep")
        recovery_cooldown_seconds: int = Field(
            1800, description="Quiet period before a sweep re-attempts recovery"
        )
        recovery_timeout_seconds: float = Field(
            300.0, description="Time allowed for one recovery reconciliation"
        )
        orphan_batch_size: int = Field(10, description="Records checked by a recovery sync")
        monitor_interval_seconds: int = Field(30, description="Health scoring interval")
        monitored_endpoints: list[str] = Field(
            default_factory=lambda: ["/api/esim/webhook", "/api/webhooks/esim/webhook"],
            description="Endpoints tracked from startup",
        )

    reliability: ReliabilitySettings = ReliabilitySettings()  # type: ignore[call-arg]

    # ============================================================
    # Safety nets
    # ============================================================

    class SafetyNetSettings(BaseModel):
        """Fallback polling configuration."""

        activation_threshold_seconds: int = Field(
            300, description="Failure duration before a safety net activates"
        )
        deactivation_threshold_seconds: int = Field(
            3600, description="Continuous health required before deactivation"
        )
        evaluation_interval_seconds: int = Field(900, description="Activation evaluation interval")
        check_interval_seconds: int = Field(900, description="Per-endpoint check interval")
        recent_window_hours: int = Field(24, description="Age window of records checked")
        check_batch_size: int = Field(5, description="Records checked per safety check")
        check_timeout_seconds: float = Field(120.0, description="Time allowed for one check")
        max_concurrency: int = Field(3, description="Concurrent provider calls per check")

    safety_net: SafetyNetSettings = SafetyNetSettings()  # type: ignore[call-arg]

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
    def is_development(self) -> bool:
        """Check if running in development."""
        return self.environment == Environment.DEVELOPMENT


# Global settings instance
_settings: Settings | None = None


def get_settings() -> Settings:
    """Get global settings instance (singleton)."""
    global _settings
    if _settings is None:
        _settings = Settings()  # type: ignore
    return _settings


# Convenience export
settings = get_settings()
