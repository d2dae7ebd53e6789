"""
Application Configuration
"""

from pydantic_settings import BaseSettings
from typing import Optional


class Settings(BaseSettings):
    """Repository settings loaded from environment variables"""

    # Environment
    environment: str = "development"
    log_level: str = "INFO"

    # Document store
    mongodb_url: Optional[str] = None
    mongodb_database: str = "milo"

    # Persisted cache (Redis wins when both are configured)
    redis_url: Optional[str] = None
    persisted_cache_path: str = "milo_nudge_cache.sqlite3"
    cache_key_prefix: str = "nudge_cache_"

    # Identity for background callers without a signed-in session
    default_user_id: Optional[str] = None

    # Cache TTLs
    entity_cache_ttl_minutes: int = 15
    list_cache_ttl_minutes: int = 15
    active_nudges_cache_ttl_minutes: int = 5  # time-sensitive queries
    settings_cache_ttl_minutes: int = 60
    template_cache_ttl_hours: int = 24
    cache_sweep_interval_minutes: int = 5

    # Rate limiting
    rate_limit_per_minute: int = 100

    # Retry policy
    retry_max_attempts: int = 3
    retry_initial_delay_ms: int = 200
    stream_max_backoff_seconds: float = 30.0

    # Batching and scans
    batch_chunk_size: int = 500  # hard store limit per atomic batch
    stats_scan_limit: int = 1000

    # Scheduling (weekday and minute-of-day of active nudges)
    schedule_timezone: str = "UTC"

    # Circuit Breaker Configuration
    circuit_breaker_fail_max: int = 5  # Consecutive failures before opening circuit
    circuit_breaker_reset_timeout: int = 60  # Seconds before auto-recovery attempt

    # Sentry Error Tracking
    sentry_dsn: Optional[str] = None  # Sentry project DSN
    sentry_environment: Optional[str] = None  # Defaults to environment setting

    class Config:
        env_file = ".env"
        env_prefix = "MILO_"
        case_sensitive = False


settings = Settings()
