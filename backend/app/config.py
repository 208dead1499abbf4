"""Application configuration using pydantic-settings."""

from functools import lru_cache
from typing import Literal

from pydantic_settings import BaseSettings, SettingsConfigDict


class Settings(BaseSettings):
    """Application settings loaded from environment variables."""

    model_config = SettingsConfigDict(
        env_file=".env",
        env_file_encoding="utf-8",
        case_sensitive=False,
        extra="ignore",
    )

    # Supabase API Keys
    supabase_url: str
    supabase_secret_key: str
    supabase_publishable_key: str  # Anon/publishable key for client requests
    supabase_service_role_key: str = ""  # Bypasses RLS, used by the sync core

    # App
    app_name: str = "MoneyFlow"
    app_env: str = "development"
    debug: bool = True

    # Server
    host: str = "0.0.0.0"
    port: int = 8000

    # API
    api_v1_prefix: str = "/app/v1"

    # Encryption
    encryption_key: str  # Fernet key for provider secrets stored on connections

    # Scheduler
    enable_cron_jobs: bool = True
    scheduler_token: str | None = None  # Bearer token accepted by POST /sync/process
    queue_poll_seconds: int = 30
    max_chunks_per_tick: int = 20
    lease_sweep_seconds: int = 300
    lease_timeout_minutes: int = 15
    incremental_sync_seconds: int = 60 * 60

    # Sync policy
    sync_chunk_months: int = 1
    max_attempts: int = 5
    writer_batch_size: int = 500
    session_failure_policy: Literal["partial", "fail"] = "partial"
    webhook_window_hours: int = 2
    incremental_default_days: int = 1
    sync_now_max_days: int = 30
    http_timeout_seconds: float = 30.0

    # Historical lookback per provider
    paypal_lookback_years: int = 3
    stripe_lookback_years: int = 5
    wise_lookback_years: int = 5

    # Webhooks
    stripe_webhook_secret: str | None = None
    stripe_webhook_tolerance_seconds: int = 300
    wise_webhook_secret: str | None = None

    @property
    def is_development(self) -> bool:
        """Check if running in development mode."""
        return self.app_env == "development"

    def lookback_years(self, provider: str) -> int:
        """Historical backfill depth for a provider."""
        return {
            "paypal": self.paypal_lookback_years,
            "stripe": self.stripe_lookback_years,
            "wise": self.wise_lookback_years,
        }[provider]


@lru_cache
def get_settings() -> Settings:
    """Get cached settings instance."""
    return Settings()
