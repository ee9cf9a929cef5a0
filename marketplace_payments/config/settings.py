"""Application settings using Pydantic for environment-based configuration."""
from functools import lru_cache
from typing import List, Optional

from pydantic import Field, field_validator
from pydantic_settings import BaseSettings, SettingsConfigDict

MPESA_BASE_URLS = {
    "sandbox": "https://sandbox.safaricom.co.ke",
    "production": "https://api.safaricom.co.ke",
}


class Settings(BaseSettings):
    """Application settings loaded from environment variables."""

    # Database Configuration
    database_url: str = Field(
        default="sqlite+aiosqlite:///./marketplace_payments.db",
        description="Async SQLAlchemy connection URL",
    )
    database_pool_size: int = Field(default=20, description="Database connection pool size")
    database_max_overflow: int = Field(default=50, description="Max database connection overflow")
    database_echo: bool = Field(default=False, description="Echo SQL queries (debug)")

    # Redis Configuration
    redis_url: Optional[str] = Field(
        default=None,
        description="Redis URL for shared rate-limit windows (in-process store when unset)",
    )

    # Application Configuration
    app_name: str = Field(default="marketplace-payments", description="Application name")
    app_env: str = Field(default="development", description="Environment (development/production)")
    log_level: str = Field(default="INFO", description="Logging level")
    debug: bool = Field(default=False, description="Debug mode")

    # API Configuration
    api_host: str = Field(default="0.0.0.0", description="API host")
    api_port: int = Field(default=8000, description="API port")
    api_workers: int = Field(default=4, description="Number of API workers")
    allowed_origins: str = Field(
        default="http://localhost:3000,http://localhost:8000",
        description="CORS allowed origins (comma-separated)"
    )
    trust_forwarded_for: bool = Field(
        default=False, description="Take the client IP from X-Forwarded-For"
    )
    user_id_header: str = Field(
        default="X-User-ID", description="Header carrying the authenticated user id"
    )
    admin_user_ids: str = Field(
        default="", description="User ids allowed on /admin routes (comma-separated)"
    )

    # Rate Limiting
    payment_rate_limit_window_seconds: int = Field(default=15 * 60)
    payment_rate_limit_max_requests: int = Field(default=5)
    stk_push_rate_limit_window_seconds: int = Field(default=60 * 60)
    stk_push_rate_limit_max_requests: int = Field(default=3)
    refund_rate_limit_window_seconds: int = Field(default=24 * 60 * 60)
    refund_rate_limit_max_requests: int = Field(default=2)

    # Amount limits and fraud heuristics
    suspicious_amount_threshold: float = Field(default=10_000_000)
    kes_min_amount: float = Field(default=10)
    kes_max_amount: float = Field(default=5_000_000)
    usd_min_amount: float = Field(default=1)
    usd_max_amount: float = Field(default=50_000)
    failed_payments_lockout_threshold: int = Field(default=3)
    rapid_payments_threshold: int = Field(default=5)
    round_amount_threshold: float = Field(default=10_000)
    suspicious_ip_ranges: str = Field(
        default="185.156.172.,185.156.173.",
        description="Suspicious IP prefixes (comma-separated)",
    )

    # Refunds
    refund_window_days: int = Field(default=30, description="Refund eligibility window")

    # M-Pesa (Daraja) Configuration
    mpesa_environment: str = Field(default="sandbox", description="sandbox or production")
    mpesa_consumer_key: Optional[str] = Field(default=None)
    mpesa_consumer_secret: Optional[str] = Field(default=None)
    mpesa_shortcode: str = Field(default="174379", description="Business shortcode")
    mpesa_passkey: Optional[str] = Field(default=None)
    mpesa_callback_url: Optional[str] = Field(default=None)
    mpesa_request_timeout: float = Field(default=30.0, description="Daraja HTTP timeout (seconds)")

    # Stripe Configuration
    stripe_secret_key: Optional[str] = Field(default=None, description="Stripe secret API key")
    stripe_api_version: str = Field(default="2023-10-16", description="Stripe API version")

    # Flutterwave Configuration
    flutterwave_secret_key: Optional[str] = Field(default=None)
    flutterwave_base_url: str = Field(default="https://api.flutterwave.com")
    flutterwave_redirect_url: Optional[str] = Field(
        default=None, description="Frontend URL the hosted checkout returns to"
    )
    flutterwave_request_timeout: float = Field(default=30.0)

    # Processing sweeper
    processing_timeout_minutes: int = Field(
        default=5, description="Age before a PROCESSING payment is queried"
    )
    processing_expiry_minutes: int = Field(
        default=60, description="Age after which an unresolved PROCESSING payment fails"
    )
    sweep_interval_seconds: int = Field(default=120, description="Sweeper poll interval")
    sweep_batch_size: int = Field(default=100)

    model_config = SettingsConfigDict(
        env_file=".env",
        env_file_encoding="utf-8",
        case_sensitive=False,
        extra="ignore"
    )

    @field_validator("stripe_secret_key")
    @classmethod
    def validate_stripe_key(cls, v: Optional[str]) -> Optional[str]:
        """Validate that a configured Stripe secret key has a known prefix."""
        if v is not None and not v.startswith("sk_test_") and not v.startswith("sk_live_"):
            raise ValueError(
                "Invalid Stripe secret key format. Must start with 'sk_test_' or 'sk_live_'"
            )
        return v

    @field_validator("log_level")
    @classmethod
    def validate_log_level(cls, v: str) -> str:
        """Validate log level."""
        valid_levels = ["DEBUG", "INFO", "WARNING", "ERROR", "CRITICAL"]
        if v.upper() not in valid_levels:
            raise ValueError(f"Invalid log level. Must be one of: {valid_levels}")
        return v.upper()

    @field_validator("mpesa_environment")
    @classmethod
    def validate_mpesa_environment(cls, v: str) -> str:
        """Validate the Daraja environment name."""
        if v.lower() not in MPESA_BASE_URLS:
            raise ValueError(f"Invalid M-Pesa environment. Must be one of: {list(MPESA_BASE_URLS)}")
        return v.lower()

    def get_allowed_origins_list(self) -> List[str]:
        """Parse allowed origins from comma-separated string."""
        return [origin.strip() for origin in self.allowed_origins.split(",")]

    def get_admin_user_ids(self) -> List[str]:
        """Parse admin user ids from comma-separated string."""
        return [u.strip() for u in self.admin_user_ids.split(",") if u.strip()]

    def get_suspicious_ip_ranges(self) -> List[str]:
        """Parse suspicious IP prefixes from comma-separated string."""
        return [r.strip() for r in self.suspicious_ip_ranges.split(",") if r.strip()]

    @property
    def mpesa_base_url(self) -> str:
        """Daraja API base URL for the configured environment."""
        return MPESA_BASE_URLS[self.mpesa_environment]

    @property
    def is_production(self) -> bool:
        """Check if running in production environment."""
        return self.app_env.lower() == "production"

    @property
    def is_sqlite(self) -> bool:
        """Check if the database URL points at SQLite."""
        return self.database_url.startswith("sqlite")


@lru_cache()
def get_settings() -> Settings:
    """
    Get cached settings instance.

    Uses lru_cache to ensure settings are only loaded once.
    """
    return Settings()
