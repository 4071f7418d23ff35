"""
Component Wiring

Builds the collector pipeline from Settings. Shared by the service
lifespan and the one-shot collection script.
"""

import logging
from dataclasses import dataclass
from datetime import timedelta
from typing import Optional

from ..aggregator import AggregationCascade
from ..backfill import GapRecoveryQueue
from ..collector import CollectionRun, PriorityStore, Scheduler, SnapshotFetcher
from ..connectors import CoinGeckoSource, MarketDataSource
from ..core.rate_limiter import RateLimiter
from ..core.types import Granularity
from ..persistence import (
    DatabasePool,
    GapQueueRepository,
    InMemoryGapQueueRepository,
    InMemoryPriorityRepository,
    InMemoryRunRepository,
    InMemorySnapshotRepository,
    PriorityRepository,
    RunRepository,
    SnapshotRepository,
)
from .config import Settings

logger = logging.getLogger(__name__)


@dataclass
class Repositories:
    snapshots: object
    priorities: object
    runs: object
    gaps: object


@dataclass
class Components:
    """Every long-lived object of one collector process."""

    settings: Settings
    repositories: Repositories
    source: MarketDataSource
    limiter: RateLimiter
    priorities: PriorityStore
    fetcher: SnapshotFetcher
    collection_run: CollectionRun
    cascade: AggregationCascade
    gap_queue: GapRecoveryQueue
    scheduler: Scheduler
    db_pool: Optional[DatabasePool] = None

    async def close(self) -> None:
        await self.source.close()
        if self.db_pool:
            await self.db_pool.close()


def in_memory_repositories() -> Repositories:
    return Repositories(
        snapshots=InMemorySnapshotRepository(),
        priorities=InMemoryPriorityRepository(),
        runs=InMemoryRunRepository(),
        gaps=InMemoryGapQueueRepository(),
    )


def postgres_repositories(pool: DatabasePool) -> Repositories:
    return Repositories(
        snapshots=SnapshotRepository(pool),
        priorities=PriorityRepository(pool),
        runs=RunRepository(pool),
        gaps=GapQueueRepository(pool),
    )


async def open_repositories(settings: Settings) -> tuple[Repositories, Optional[DatabasePool]]:
    """
    Connect to PostgreSQL when DATABASE_URL is set, else use in-memory stores.

    Raises:
        RuntimeError: the database is configured but the schema is unusable
    """
    if not settings.database_url:
        logger.warning("No DATABASE_URL configured - using in-memory stores (data is lost on restart)")
        return in_memory_repositories(), None

    pool = DatabasePool()
    await pool.connect(
        settings.database_url,
        min_size=settings.db_pool_min_size,
        max_size=settings.db_pool_max_size,
        command_timeout=settings.db_command_timeout_seconds,
    )
    logger.info("Database connection established")

    if not await pool.initialize_schema():
        await pool.close()
        raise RuntimeError("Database schema initialization failed")
    logger.info("Database schema verified")
    return postgres_repositories(pool), pool


def build_components(
    settings: Settings,
    repositories: Repositories,
    source: Optional[MarketDataSource] = None,
    db_pool: Optional[DatabasePool] = None,
) -> Components:
    """Wire the pipeline. Nothing is started or fetched here."""
    if source is None:
        if not settings.coingecko_api_key and settings.environment != "local":
            raise ValueError("COINGECKO_API_KEY is required outside local")
        source = CoinGeckoSource(
            api_key=settings.coingecko_api_key,
            api_tier=settings.coingecko_api_tier,
            base_url=settings.coingecko_base_url,
            timeout_seconds=settings.upstream_timeout_seconds,
        )

    limiter = RateLimiter(
        calls_per_minute=settings.calls_per_minute,
        min_interval_seconds=settings.min_call_interval_seconds,
        backoff=settings.backoff_strategy(),
        max_attempts=settings.max_retries,
    )
    priorities = PriorityStore(
        source,
        limiter,
        repositories.priorities,
        pinned_assets=settings.pinned_asset_list,
        stale_after=timedelta(hours=settings.priority_stale_after_hours),
        max_pages=settings.ranking_max_pages,
    )
    fetcher = SnapshotFetcher(source, clock_skew_tolerance_seconds=settings.clock_skew_tolerance_seconds)
    collection_run = CollectionRun(
        priorities,
        fetcher,
        limiter,
        repositories.snapshots,
        repositories.runs,
        batch_size=settings.effective_batch_size,
        inter_batch_delay_seconds=settings.inter_batch_delay_seconds,
        failure_tolerance=settings.failure_tolerance,
        persistence_retries=settings.persistence_retries,
        resume_missing_passes=settings.resume_missing_passes,
    )
    retention = settings.retention_horizons
    cascade = AggregationCascade(repositories.snapshots, retention=retention)
    gap_queue = GapRecoveryQueue(
        repositories.gaps,
        repositories.runs,
        collection_run,
        cascade=cascade,
        backoff=settings.gap_backoff_strategy(),
        max_attempts=settings.gap_max_attempts,
        lookback_minutes=settings.gap_lookback_minutes,
        minute_retention=retention[Granularity.MINUTE],
    )
    scheduler = Scheduler(
        priorities,
        collection_run,
        gap_queue,
        cascade,
        repositories.runs,
        mode=settings.collection_mode_enum,
        priority_refresh_hour=settings.priority_refresh_hour,
        gap_drain_max_per_tick=settings.gap_drain_max_per_tick,
    )

    return Components(
        settings=settings,
        repositories=repositories,
        source=source,
        limiter=limiter,
        priorities=priorities,
        fetcher=fetcher,
        collection_run=collection_run,
        cascade=cascade,
        gap_queue=gap_queue,
        scheduler=scheduler,
        db_pool=db_pool,
    )
