"""Configuration settings for the job queue service."""

from typing import Optional
from functools import lru_cache

from pydantic import Field
from pydantic_settings import BaseSettings, SettingsConfigDict


class Settings(BaseSettings):
    """Application settings loaded from environment variables."""

    model_config = SettingsConfigDict(
        env_prefix="JOBQUEUE_",
        env_file=".env",
        env_file_encoding="utf-8",
        extra="ignore",
    )

    # Redis
    redis_url: str = "redis://localhost:6379"
    key_prefix: str = "jobqueue:"

    # Server
    port: int = 5000
    debug: bool = False
    log_level: str = "INFO"
    log_format: str = "json"  # "json" or "text"

    # Job defaults (applied when enqueue omits them)
    default_max_retries: int = 3
    default_initial_delay_ms: int = 1000
    default_backoff_multiplier: float = 2.0
    default_priority: int = 0

    # Backoff shaping: delays are exact up to the cap, jitter is off by default
    max_backoff_ms: int = Field(default=3_600_000, gt=0)  # 1h
    retry_jitter: bool = False

    # Retention
    idempotency_ttl_seconds: int = 86400  # 24h
    completed_ttl_seconds: int = 3600  # 1h
    failed_ttl_seconds: int = 86400  # 24h, kept for postmortems

    # Leases: disabled unless the embedding system sets a duration
    lease_seconds: Optional[float] = None
    lease_sweep_interval: float = 30.0

    # Worker loop
    worker_max_concurrent: int = 1
    worker_poll_interval: float = 1.0  # seconds, when the queue is empty
    worker_busy_interval: float = 0.1  # seconds, when at max concurrency
    worker_queues: str = ""  # comma-separated job types; empty = all registered
    handler_modules: str = ""  # comma-separated modules that register handlers on import

    @property
    def worker_queue_list(self) -> list[str]:
        return _split_csv(self.worker_queues)

    @property
    def handler_module_list(self) -> list[str]:
        return _split_csv(self.handler_modules)


def _split_csv(value: str) -> list[str]:
    return [item.strip() for item in value.split(",") if item.strip()]


@lru_cache()
def get_settings() -> Settings:
    """Get cached settings instance."""
    return Settings()


def clear_settings_cache():
    """Clear settings cache (useful for testing)."""
    get_settings.cache_clear()
