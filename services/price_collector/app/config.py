"""
Price Collector Configuration

Pydantic Settings for the Price Collector service.
Loads from environment variables with sensible defaults.
"""

from datetime import timedelta
from typing import Literal, Optional

from pydantic import Field
from pydantic_settings import BaseSettings

from ..core.constants import UPSTREAM_MAX_IDS_PER_CALL
from ..core.rate_limiter import BackoffStrategy
from ..core.types import CollectionMode, Granularity


class Settings(BaseSettings):
    """Price Collector service configuration."""

    # Service identity
    service_name: str = Field(default="price-collector", description="Service name for logging/metrics")
    environment: Literal["local", "staging", "production"] = Field(default="local")
    service_version: str = Field(default="0.1.0")
    log_level: str = Field(default="INFO")

    # Upstream (CoinGecko)
    coingecko_api_tier: Literal["demo", "pro"] = Field(default="demo")
    coingecko_api_key: str = Field(default="", description="API key; empty is allowed only for local")
    coingecko_base_url: str = Field(default="", description="Override; empty selects the tier default")
    upstream_timeout_seconds: float = Field(default=30.0, description="Per-call HTTP timeout")

    # Rate limiting and retries
    calls_per_minute: int = Field(default=30, ge=1, description="Upstream call ceiling shared by all calls")
    min_call_interval_seconds: float = Field(default=1.0, ge=0)
    max_retries: int = Field(default=3, ge=1, description="Attempts per upstream call")
    backoff_base_seconds: float = Field(default=5.0, gt=0)
    backoff_multiplier: float = Field(default=2.0, ge=1)
    backoff_max_seconds: float = Field(default=60.0, gt=0)
    backoff_jitter: float = Field(default=0.0, ge=0, le=1)

    # Collection
    collection_mode: str = Field(default="top100", description="top10, top100, top250, top1000 or all")
    batch_size: int = Field(default=250, ge=1, description="Ids per snapshot call (clamped to 250)")
    inter_batch_delay_seconds: float = Field(default=0.0, ge=0)
    resume_missing_passes: int = Field(default=1, ge=0, description="Extra passes over ids the upstream omitted")
    failure_tolerance: float = Field(default=0.05, ge=0, le=1, description="Max failed fraction of a completed run")
    clock_skew_tolerance_seconds: float = Field(default=300.0, gt=0)
    persistence_retries: int = Field(default=3, ge=1)

    # Priorities
    pinned_assets: str = Field(default="bitcoin,ethereum", description="Comma-separated pinned asset ids")
    priority_refresh_hour: int = Field(default=0, ge=0, le=23, description="UTC hour of the daily refresh")
    priority_stale_after_hours: float = Field(default=26.0, gt=0)
    ranking_max_pages: int = Field(default=40, ge=1)

    # Retention horizons
    retention_minute_minutes: int = Field(default=60, ge=1)
    retention_hour_hours: int = Field(default=24, ge=1)
    retention_day_days: int = Field(default=7, ge=1)
    retention_week_weeks: int = Field(default=52, ge=1)

    # Gap recovery
    gap_max_attempts: int = Field(default=3, ge=1)
    gap_backoff_base_seconds: float = Field(default=30.0, gt=0)
    gap_lookback_minutes: int = Field(default=60, ge=1)
    gap_drain_max_per_tick: int = Field(default=5, ge=1)

    # Database
    database_url: str = Field(default="", description="PostgreSQL connection string (empty = in-memory)")
    db_pool_min_size: int = Field(default=2, ge=1)
    db_pool_max_size: int = Field(default=10, ge=1)
    db_command_timeout_seconds: float = Field(default=30.0, gt=0)

    # Server
    host: str = Field(default="0.0.0.0")
    port: int = Field(default=8000)

    class Config:
        env_prefix = ""
        case_sensitive = False
        env_file = ".env"
        extra = "ignore"

    @property
    def pinned_asset_list(self) -> list[str]:
        """Parse pinned assets string to list."""
        return [a.strip().lower() for a in self.pinned_assets.split(",") if a.strip()]

    @property
    def collection_mode_enum(self) -> CollectionMode:
        return CollectionMode(self.collection_mode.strip().lower())

    @property
    def effective_batch_size(self) -> int:
        return min(self.batch_size, UPSTREAM_MAX_IDS_PER_CALL)

    @property
    def retention_horizons(self) -> dict[Granularity, Optional[timedelta]]:
        return {
            Granularity.MINUTE: timedelta(minutes=self.retention_minute_minutes),
            Granularity.HOUR: timedelta(hours=self.retention_hour_hours),
            Granularity.DAY: timedelta(days=self.retention_day_days),
            Granularity.WEEK: timedelta(weeks=self.retention_week_weeks),
            Granularity.MONTH: None,
        }

    def backoff_strategy(self) -> BackoffStrategy:
        return BackoffStrategy(
            base_delay=self.backoff_base_seconds,
            multiplier=self.backoff_multiplier,
            max_delay=self.backoff_max_seconds,
            jitter=self.backoff_jitter,
        )

    def gap_backoff_strategy(self) -> BackoffStrategy:
        return BackoffStrategy(
            base_delay=self.gap_backoff_base_seconds,
            multiplier=self.backoff_multiplier,
            max_delay=max(self.gap_backoff_base_seconds, self.retention_minute_minutes * 60 / 4),
        )


# Global settings instance
settings = Settings()
