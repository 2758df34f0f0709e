"""Queue configuration with validation."""

from enum import Enum
from pydantic_settings import BaseSettings
from pydantic import Field, field_validator


class Environment(str, Enum):
    """Deployment environment."""
    DEVELOPMENT = "development"
    PRODUCTION = "production"


class ConfigurationError(Exception):
    """Raised when queue configuration is invalid for the environment."""
    pass


class Settings(BaseSettings):
    """
    Queue settings with validation.

    Every tuning constant of the queue core (retry bound, backoff curve,
    staleness window, duplicate threshold, alert cooldown) is read from
    here so deployments can adjust them without code changes.
    """

    # Environment
    environment: Environment = Field(
        default=Environment.DEVELOPMENT,
        description="Deployment environment (development/production)"
    )

    # Database Configuration
    database_url: str = Field(
        default="sqlite:///./contentqueue.db",
        description="Database connection URL"
    )
    # Connection pool tuning (PostgreSQL only; ignored for SQLite).
    db_pool_size: int = Field(
        default=5,
        description="Number of persistent database connections"
    )
    db_max_overflow: int = Field(
        default=10,
        description="Extra connections allowed during bursts"
    )
    db_pool_timeout: int = Field(
        default=30,
        description="Seconds to wait for a connection from the pool before raising"
    )
    db_pool_recycle: int = Field(
        default=1800,
        description="Seconds before a connection is recycled"
    )

    # Retry / backoff
    # MAX_RETRIES is also baked into the content_jobs CHECK constraint (0..3).
    max_retries: int = Field(
        default=3,
        description="Failed attempts after which a job moves to error"
    )
    backoff_base_seconds: float = Field(
        default=60.0,
        description="Delay before the first retry; doubles per attempt"
    )
    backoff_cap_seconds: float = Field(
        default=3600.0,
        description="Upper bound for any single retry delay"
    )
    backoff_jitter: float = Field(
        default=0.1,
        description="Maximum random jitter as a fraction of the delay"
    )

    # Stale claim sweeping
    stale_claim_minutes: int = Field(
        default=10,
        description="Processing jobs claimed longer ago than this are reclaimed"
    )

    # Duplicate detection
    similarity_threshold: float = Field(
        default=0.8,
        description="Topic token-overlap similarity above which a job is a duplicate"
    )
    duplicate_window_days: int = Field(
        default=7,
        description="Completed jobs within this window are duplicate candidates"
    )
    idempotency_ttl_hours: int = Field(
        default=24,
        description="Lifetime of per-job idempotency keys"
    )

    # Failure-rate monitoring
    monitor_window_hours: int = Field(
        default=24,
        description="Trailing window for the failure-rate computation"
    )
    alert_cooldown_seconds: int = Field(
        default=3600,
        description="Default cooldown for seeded alert rules"
    )

    # Worker loop timers
    poll_interval_seconds: float = Field(default=10.0)
    sweep_interval_seconds: float = Field(default=60.0)
    monitor_interval_seconds: float = Field(default=300.0)

    # Content generator (LiteLLM)
    generation_api_key: str = Field(
        default="",
        description="API key for the generation provider"
    )
    generation_api_base: str = Field(
        default="",
        description="Base URL for the generation provider (optional)"
    )
    generation_timeout_seconds: int = Field(default=120)

    # Publisher (WordPress REST API, draft posts)
    wordpress_url: str = Field(default="", description="WordPress site base URL")
    wordpress_username: str = Field(default="")
    wordpress_app_password: str = Field(default="")
    publish_timeout_seconds: int = Field(default=30)

    # Per-worker request limits (0 = no limit)
    generation_requests_per_minute: int = Field(default=60, ge=0)
    generation_requests_per_hour: int = Field(default=3600, ge=0)
    generation_burst_limit: int = Field(
        default=10, ge=0,
        description="Generation requests allowed within generation_burst_seconds"
    )
    generation_burst_seconds: float = Field(default=10.0, gt=0)
    publish_requests_per_minute: int = Field(default=100, ge=0)
    publish_requests_per_hour: int = Field(default=1000, ge=0)
    publish_burst_limit: int = Field(default=20, ge=0)
    publish_burst_seconds: float = Field(default=5.0, gt=0)

    # Notifications
    alert_webhook_url: str = Field(
        default="",
        description="Webhook receiving alert payloads (empty = log only)"
    )

    # Logging Configuration
    log_level: str = Field(
        default="INFO",
        description="Logging level (DEBUG, INFO, WARNING, ERROR, CRITICAL)"
    )
    log_format: str = Field(
        default="json",
        description="Log output format: 'json' for structured, 'text' for human-readable"
    )

    @field_validator('log_level')
    @classmethod
    def validate_log_level(cls, v: str) -> str:
        """Validate log level is one of the standard Python logging levels."""
        valid_levels = ['DEBUG', 'INFO', 'WARNING', 'ERROR', 'CRITICAL']
        v_upper = v.upper()
        if v_upper not in valid_levels:
            raise ValueError(f"Invalid log level. Must be one of: {valid_levels}")
        return v_upper

    @field_validator('similarity_threshold', 'backoff_jitter')
    @classmethod
    def validate_fraction(cls, v: float) -> float:
        """Thresholds and jitter are fractions in [0, 1]."""
        if not 0.0 <= v <= 1.0:
            raise ValueError("Value must be between 0 and 1")
        return v

    @field_validator('max_retries')
    @classmethod
    def validate_max_retries(cls, v: int) -> int:
        """The schema constrains retry_count to 0..3."""
        if not 1 <= v <= 3:
            raise ValueError("max_retries must be between 1 and 3")
        return v

    def validate_production_config(self) -> None:
        """Validate configuration for the production environment.

        Raises:
            ConfigurationError: If production config is unsafe.
        """
        errors: list[str] = []

        if self.database_url.startswith("sqlite"):
            errors.append(
                "DATABASE_URL points at SQLite. Production workers need "
                "PostgreSQL for SKIP LOCKED claiming across processes."
            )

        if self.backoff_cap_seconds < self.backoff_base_seconds:
            errors.append("BACKOFF_CAP_SECONDS is smaller than BACKOFF_BASE_SECONDS.")

        if self.stale_claim_minutes <= 0:
            errors.append("STALE_CLAIM_MINUTES must be positive.")

        if errors and self.environment == Environment.PRODUCTION:
            raise ConfigurationError(
                "Production configuration is invalid:\n  - " + "\n  - ".join(errors)
            )

    class Config:
        """Pydantic configuration."""
        env_file = ".env"
        env_file_encoding = "utf-8"
        case_sensitive = False


def get_settings() -> Settings:
    """Build settings from the environment.

    Called by entry points; components receive the instance explicitly.
    """
    return Settings()
