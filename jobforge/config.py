"""
Application configuration using Pydantic Settings.
Loads configuration from environment variables with sensible defaults.
"""

from functools import lru_cache

from pydantic_settings import BaseSettings, SettingsConfigDict


class Settings(BaseSettings):
    """Application settings loaded from environment variables."""

    model_config = SettingsConfigDict(
        env_file=".env",
        env_file_encoding="utf-8",
        case_sensitive=False,
        extra="ignore",
    )

    # Redis broker
    redis_url: str = "redis://localhost:6379/0"
    redis_key_prefix: str = "jobforge"
    redis_consumer_group: str = "workers"
    redis_batch_size: int = 10
    redis_status_ttl_seconds: int = 86400
    redis_completed_job_retention_seconds: int = 3600
    redis_max_stream_size: int = 1000
    redis_cleanup_interval_seconds: float = 300.0
    redis_cleanup_enabled: bool = True
    redis_poll_interval_seconds: float = 1.0
    redis_claim_idle_seconds: float = 60.0
    redis_lock_duration_seconds: float = 60.0

    # Worker Configuration
    worker_id: str | None = None
    worker_queues: list[str] = ["default"]
    worker_concurrency: int = 1
    worker_max_retries: int = 3
    worker_retry_delay_seconds: float = 5.0
    worker_pause_on_error: bool = False
    worker_batch_size: int = 10
    worker_heartbeat_interval_seconds: float = 10.0
    worker_registration_ttl_seconds: int = 60
    worker_scheduled_job_interval_seconds: float = 1.0
    worker_lock_retry_seconds: float = 1.0
    worker_stop_poll_interval_seconds: float = 0.1
    worker_job_modules: list[str] = []

    # Reaper Configuration
    reaper_interval_seconds: int = 300

    # Observability
    otel_enabled: bool = False
    otel_exporter_otlp_endpoint: str = "http://localhost:4317"
    otel_service_name: str = "jobforge"
    prometheus_port: int = 9090
    log_level: str = "INFO"
    log_format: str = "json"  # json or console


@lru_cache
def get_settings() -> Settings:
    """Get cached settings instance."""
    return Settings()
