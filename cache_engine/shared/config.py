"""
Shared configuration management for the cache coordination engine.
"""

from typing import Optional

from pydantic import Field
from pydantic_settings import BaseSettings, SettingsConfigDict


class CacheSettings(BaseSettings):
    """Engine configuration, read from CACHE_* environment variables."""

    model_config = SettingsConfigDict(
        env_prefix="CACHE_",
        env_file=".env",
        case_sensitive=False,
        extra="ignore"
    )

    # Logging
    log_level: str = Field(default="info")

    # Backend
    redis_url: str = Field(default="redis://localhost:6379/0")
    namespace: str = Field(default="default", min_length=1)
    socket_timeout_seconds: float = Field(default=5.0, gt=0)
    connect_timeout_seconds: float = Field(default=5.0, gt=0)
    breaker_failure_threshold: int = Field(default=5, ge=1)
    breaker_recovery_seconds: float = Field(default=30.0, ge=0)

    # Entry TTLs
    default_ttl_seconds: float = Field(default=300.0, gt=0)
    max_ttl_seconds: float = Field(default=86400.0, gt=0)
    min_ttl_seconds: float = Field(default=1.0, gt=0)
    cache_none_values: bool = Field(default=False)

    # Write-behind
    write_behind_batch_size: int = Field(default=100, ge=1)
    write_behind_flush_interval_seconds: float = Field(default=1.0, gt=0)
    write_behind_max_attempts: int = Field(default=5, ge=1)
    write_behind_base_delay_seconds: float = Field(default=0.5, ge=0)
    write_behind_max_delay_seconds: float = Field(default=30.0, ge=0)
    dead_letter_history: int = Field(default=100, ge=0)

    # Distributed locks
    lock_default_ttl_seconds: float = Field(default=30.0, gt=0)
    lock_retry_base_delay_seconds: float = Field(default=0.05, gt=0)
    lock_retry_max_delay_seconds: float = Field(default=1.0, gt=0)

    # Rate limiting
    rate_limit_fail_open: bool = Field(default=True)

    # Invalidation broadcast
    invalidation_channel: str = Field(default="cache-invalidation")
    broadcast_invalidations: bool = Field(default=False)

    # Metrics
    metrics_port: Optional[int] = Field(default=None)


def get_settings(**overrides) -> CacheSettings:
    """Build settings from the environment, with explicit overrides."""
    return CacheSettings(**overrides)
