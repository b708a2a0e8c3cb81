"""Dashboard core settings using Pydantic for environment-based configuration."""
from functools import lru_cache
from typing import List

from pydantic import Field, field_validator
from pydantic_settings import BaseSettings, SettingsConfigDict


class Settings(BaseSettings):
    """Settings loaded from ``PAYLO_``-prefixed environment variables."""

    # Backend API
    api_base_url: str = Field(default="http://localhost:8080", description="Backend REST base URL")
    request_timeout: float = Field(default=30.0, description="Per-request timeout (seconds)")

    # Local rate limiting
    rate_limit_max_requests: int = Field(
        default=60, description="Requests allowed per caller key per window"
    )
    rate_limit_window_seconds: float = Field(
        default=60.0, description="Rolling rate limit window (seconds)"
    )

    # Retry policy for 429 and transport errors
    retry_max_retries: int = Field(default=3, description="Retries after the first attempt")
    retry_base_delay: float = Field(default=1.0, description="Base delay for retry backoff (seconds)")
    retry_max_delay: float = Field(default=30.0, description="Upper bound for a single backoff delay")

    # Entity store
    wallet_history_limit: int = Field(default=100, description="Wallet change records retained")
    transaction_history_limit: int = Field(
        default=50, description="Transaction change records retained"
    )
    invoice_history_limit: int = Field(default=50, description="Invoice change records retained")
    deferred_update_limit: int = Field(
        default=500, description="Push updates held for entities not yet fetched"
    )

    # Real-time channel
    reconnect_base_delay: float = Field(default=5.0, description="First reconnect delay (seconds)")
    reconnect_max_delay: float = Field(default=300.0, description="Reconnect delay ceiling (seconds)")
    max_reconnect_attempts: int = Field(default=10, description="Consecutive reconnect attempts")
    subscriber_queue_size: int = Field(
        default=1000, description="Buffered events per subscriber before dropping oldest"
    )

    # Workflows
    supported_blockchains: List[str] = Field(
        default=["bitcoin", "ethereum", "solana"], description="Chains with default wallets"
    )
    health_check_interval_seconds: float = Field(
        default=60.0, description="Interval between periodic system health checks"
    )
    critical_usage_threshold: float = Field(
        default=0.9, description="Load/memory/disk ratio treated as critical"
    )

    # Credential vault
    vault_secret: str = Field(default="", description="Passphrase for the encrypted credential vault")

    # Application
    app_name: str = Field(default="paylo-core", description="Application name")
    app_env: str = Field(default="development", description="Environment (development/production)")
    log_level: str = Field(default="INFO", description="Logging level")

    model_config = SettingsConfigDict(
        env_prefix="PAYLO_",
        env_file=".env",
        env_file_encoding="utf-8",
        case_sensitive=False,
        extra="ignore",
    )

    @field_validator("log_level")
    @classmethod
    def validate_log_level(cls, v: str) -> str:
        """Validate log level."""
        valid_levels = ["DEBUG", "INFO", "WARNING", "ERROR", "CRITICAL"]
        if v.upper() not in valid_levels:
            raise ValueError(f"Invalid log level. Must be one of: {valid_levels}")
        return v.upper()

    @field_validator(
        "rate_limit_max_requests",
        "wallet_history_limit",
        "transaction_history_limit",
        "invoice_history_limit",
        "deferred_update_limit",
        "subscriber_queue_size",
    )
    @classmethod
    def validate_positive(cls, v: int) -> int:
        """Capacities and limits must be positive."""
        if v <= 0:
            raise ValueError("must be positive")
        return v

    @field_validator("retry_max_retries", "max_reconnect_attempts")
    @classmethod
    def validate_non_negative(cls, v: int) -> int:
        if v < 0:
            raise ValueError("must not be negative")
        return v

    @field_validator("api_base_url")
    @classmethod
    def strip_trailing_slash(cls, v: str) -> str:
        return v.rstrip("/")

    @property
    def is_production(self) -> bool:
        """Check if running in production environment."""
        return self.app_env.lower() == "production"


@lru_cache()
def get_settings() -> Settings:
    """
    Get cached settings instance.

    Uses lru_cache to ensure settings are only loaded once. Components take an
    explicit ``Settings`` and only fall back to this when none is given.
    """
    return Settings()
