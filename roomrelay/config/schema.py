"""Configuration schema using Pydantic."""

from pathlib import Path

from pydantic import BaseModel, ConfigDict, Field
from pydantic.alias_generators import to_camel


class Base(BaseModel):
    """Base model that accepts both camelCase and snake_case keys."""

    model_config = ConfigDict(alias_generator=to_camel, populate_by_name=True)


class CacheConfig(Base):
    """On-disk resource cache."""
    enabled: bool = True
    dir_name: str = "cache"
    ttl_seconds: int = 2 * 60 * 60
    max_bytes: int = 1024 * 1024 * 1024
    max_entries: int = 2000
    shard_count: int = 16
    verify_checksums: bool = True
    cleanup_interval_s: int = 30 * 60


class FetchConfig(Base):
    """Resource download behaviour."""
    timeout_s: float = 30.0
    max_retries: int = 3
    backoff_base_ms: int = 500
    backoff_cap_ms: int = 5000
    user_agent: str = (
        "Mozilla/5.0 (Windows NT 10.0; Win64; x64) AppleWebKit/537.36 "
        "(KHTML, like Gecko) Chrome/120.0 Safari/537.36"
    )
    referer: str = ""


class RateLimitConfig(Base):
    """Per-channel send limit."""
    max_per_window: int = 3
    window_ms: int = 1000
    max_wait_ms: int = 30_000
    forced_sleep_ms: int = 200


class SchedulerConfig(Base):
    """Batching thresholds and pacing delays (milliseconds)."""
    sequential_threshold: int = 8
    max_text_batch: int = 8
    max_media_batch: int = 3
    max_mixed_batch: int = 5
    text_to_text_delay_ms: int = 300
    media_delay_ms: int = 800
    intra_batch_delay_ms: int = 100
    inter_batch_delay_ms: int = 500
    inter_batch_media_delay_ms: int = 1500


class RetryConfig(Base):
    """Send retry/backoff."""
    max_retries: int = 3
    base_delay_ms: int = 1000
    multiplier: float = 2.0
    max_delay_ms: int = 30_000
    send_timeout_s: float = 30.0
    recent_errors_limit: int = 1000


class CircuitBreakerConfig(Base):
    enabled: bool = True
    failure_threshold: int = 5
    open_timeout_s: float = 60.0
    success_threshold: int = 3


class IntegrityConfig(Base):
    """Duplicate and time-continuity checks."""
    max_seen_ids: int = 1000
    duplicate_window_s: int = 5 * 60
    time_gap_threshold_s: int = 6 * 60 * 60
    history_size: int = 50


class ActivityConfig(Base):
    """Traffic tracking used by the tuning policy."""
    window_s: int = 5 * 60
    active_threshold: int = 10
    inactive_threshold: int = 3
    check_interval_s: int = 30
    adaptive: bool = False


class PoolConfig(Base):
    """Worker pool sizes and shutdown grace."""
    media_workers: int = 4
    text_workers: int = 3
    shutdown_grace_s: float = 10.0


class TransportConfig(Base):
    """HTTP bot API used to deliver notifications."""
    base_url: str = ""
    token: str = ""
    send_path: str = "/api/send"
    upload_path: str = "/api/upload"
    timeout_s: float = 30.0


class Config(Base):
    """Root configuration for roomrelay."""
    data_dir: str = "~/.roomrelay"
    cache: CacheConfig = Field(default_factory=CacheConfig)
    fetch: FetchConfig = Field(default_factory=FetchConfig)
    rate_limit: RateLimitConfig = Field(default_factory=RateLimitConfig)
    scheduler: SchedulerConfig = Field(default_factory=SchedulerConfig)
    retry: RetryConfig = Field(default_factory=RetryConfig)
    circuit_breaker: CircuitBreakerConfig = Field(default_factory=CircuitBreakerConfig)
    integrity: IntegrityConfig = Field(default_factory=IntegrityConfig)
    activity: ActivityConfig = Field(default_factory=ActivityConfig)
    pools: PoolConfig = Field(default_factory=PoolConfig)
    transport: TransportConfig = Field(default_factory=TransportConfig)

    @property
    def data_path(self) -> Path:
        """Expanded data directory path."""
        return Path(self.data_dir).expanduser()

    @property
    def cache_path(self) -> Path:
        return self.data_path / self.cache.dir_name
