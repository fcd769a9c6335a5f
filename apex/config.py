"""
Application configuration using pydantic-settings.
All config is validated at startup - fail fast if anything is missing.
"""
from pydantic_settings import BaseSettings
from functools import lru_cache


class Settings(BaseSettings):
    # Application
    app_env: str = "development"
    app_host: str = "0.0.0.0"
    app_port: int = 8000
    app_base_url: str = "http://localhost:8000"
    log_level: str = "INFO"

    # Database
    database_url: str
    database_pool_size: int = 20
    database_max_overflow: int = 10

    # Redis (alert cooldowns, worker heartbeats)
    redis_url: str = "redis://localhost:6379/0"

    # Encryption (Fernet key for Vapi private keys at rest)
    encryption_key: str = ""

    # Sentry
    sentry_dsn: str = ""

    # Vapi
    vapi_base_url: str = "https://api.vapi.ai"
    vapi_timeout_seconds: float = 15.0
    vapi_webhook_secret: str = ""

    # Stripe
    stripe_webhook_secret: str = ""
    stripe_signature_tolerance_seconds: int = 300

    # Webhook policy
    allow_unsigned_webhooks: bool = False

    # Idempotency
    idempotency_ttl_hours: int = 24
    idempotency_reservation_ttl_seconds: int = 300
    idempotency_wait_seconds: float = 10.0
    idempotency_poll_interval_seconds: float = 0.1
    idempotency_sweeper_enabled: bool = True
    idempotency_cleanup_interval_seconds: int = 3600

    # Cron trigger (Authorization: Bearer <secret> when set)
    cron_secret: str = ""

    # Campaign execution defaults
    campaign_default_max_concurrent_calls: int = 5
    campaign_max_call_attempts: int = 3
    campaign_default_timezone: str = "America/New_York"
    campaign_leads_per_tick: int = 50

    # Alerting
    alert_webhook_url: str = ""  # Discord/Slack webhook URL for critical alerts

    class Config:
        env_file = ".env"
        env_file_encoding = "utf-8"


@lru_cache()
def get_settings() -> Settings:
    return Settings()
