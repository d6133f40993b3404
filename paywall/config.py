"""
Settings for the webhook service, read from the environment and .env.
Values are validated once at startup; get_settings() caches the result.
"""
from pydantic_settings import BaseSettings
from functools import lru_cache

# Stripe's published webhook source ranges (https://stripe.com/docs/ips).
# Needs periodic review against the published list.
DEFAULT_STRIPE_IP_RANGES = (
    "3.18.12.32/27,"
    "3.130.192.128/26,"
    "13.235.14.128/26,"
    "13.235.122.128/26,"
    "18.211.135.32/27,"
    "35.154.171.0/26,"
    "52.15.183.32/28,"
    "54.187.174.160/27,"
    "54.187.205.224/27,"
    "54.187.216.64/26"
)


class Settings(BaseSettings):
    # Application
    app_env: str = "development"
    app_base_url: str = "http://localhost:3000"
    log_level: str = "INFO"

    # Database
    database_url: str = "postgresql+asyncpg://localhost:5432/paywall"
    database_pool_size: int = 10
    database_max_overflow: int = 5

    # Redis
    redis_url: str = "redis://localhost:6379/0"

    # Stripe
    stripe_webhook_secret: str = ""
    stripe_webhook_tolerance_seconds: int = 300
    stripe_webhook_ip_ranges: str = DEFAULT_STRIPE_IP_RANGES  # Comma-separated CIDRs

    # Webhook ingress rate limiting
    rate_limiter_backend: str = "memory"  # memory, redis
    webhook_rate_limit: int = 10
    webhook_rate_window_seconds: int = 60

    # Webhook monitoring
    webhook_monitor_enabled: bool = True
    webhook_monitor_interval_seconds: int = 300
    webhook_metrics_window_hours: int = 24
    anomaly_window_hours: int = 1
    anomaly_min_events: int = 10
    anomaly_error_rate_threshold: float = 0.10
    anomaly_avg_processing_ms: int = 3000
    slow_webhook_warning_ms: int = 5000
    stale_claim_minutes: int = 15

    # Alerting
    alert_webhook_url: str = ""  # Discord/Slack webhook URL for alerts
    admin_api_key: str = ""

    # Transactional email (payment failure notices)
    sendgrid_api_key: str = ""
    from_email_transactional: str = "noreply@example.com"
    from_name_transactional: str = "Crypto Media"

    # Sentry
    sentry_dsn: str = ""

    class Config:
        env_file = ".env"
        env_file_encoding = "utf-8"

    @property
    def is_production(self) -> bool:
        return self.app_env == "production"

    @property
    def stripe_ip_range_list(self) -> list[str]:
        return [r.strip() for r in self.stripe_webhook_ip_ranges.split(",") if r.strip()]


@lru_cache()
def get_settings() -> Settings:
    return Settings()
