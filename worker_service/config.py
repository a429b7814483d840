"""Configuration settings for the worker service."""

from pydantic_settings import BaseSettings
from functools import lru_cache


class Settings(BaseSettings):
    """Application settings loaded from environment variables."""

    # Redis (backing store)
    redis_url: str = "redis://localhost:6379"
    queue_prefix: str = "myfamily:queue"

    # Server
    port: int = 5005
    debug: bool = False
    log_level: str = "INFO"
    log_format: str = "json"  # "json" or "text"

    # Default job options
    default_attempts: int = 5
    backoff_base_seconds: float = 5.0
    backoff_max_seconds: float = 60.0
    backoff_jitter: bool = False
    remove_on_complete: bool = True
    remove_on_fail: bool = False
    job_timeout_seconds: float = 30.0

    # Worker / lock settings
    lock_duration_seconds: float = 30.0
    lock_renew_seconds: float = 15.0
    stalled_interval_seconds: float = 30.0
    max_stalled_count: int = 3
    poll_interval_seconds: float = 1.0
    promote_interval_seconds: float = 1.0

    # Monitoring
    monitor_interval_seconds: float = 30.0
    health_check_interval_seconds: float = 15.0
    alert_stalled_count: int = 10
    alert_waiting_count: int = 100
    alert_failed_count: int = 50
    alert_delayed_count: int = 200
    retention_seconds: int = 86400  # completed/failed entries kept 24h

    # Lifecycle
    shutdown_timeout_seconds: float = 30.0

    # Collaborators (excluded services)
    media_service_url: str = "http://localhost:4001"
    translation_service_url: str = "http://localhost:4001"
    layout_service_url: str = "http://localhost:4002"
    document_status_url: str = "http://localhost:4002"
    notification_service_url: str = "http://localhost:4003"
    collaborator_timeout_seconds: float = 30.0

    # Circuit breaker defaults
    breaker_error_threshold_percentage: float = 50.0
    breaker_rolling_window_seconds: float = 10.0
    breaker_rolling_buckets: int = 10
    breaker_reset_timeout_seconds: float = 30.0
    breaker_call_timeout_seconds: float = 30.0
    breaker_volume_threshold: int = 5

    # Notification rate limits (tokens per minute)
    rate_limit_email_per_minute: int = 100
    rate_limit_push_per_minute: int = 200
    rate_limit_sms_per_minute: int = 50

    class Config:
        env_file = ".env"
        env_file_encoding = "utf-8"


@lru_cache()
def get_settings() -> Settings:
    """Get cached settings instance."""
    return Settings()


def clear_settings_cache():
    """Clear settings cache (useful for testing)."""
    get_settings.cache_clear()
