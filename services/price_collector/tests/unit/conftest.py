"""
Shared fixtures for price collector unit tests.

Time is fully simulated: FakeClock drives both the wall clock and the
rate limiter's monotonic clock, and FakeSleeper advances it instead of
sleeping.
"""

import asyncio
from datetime import datetime, timedelta, timezone
from decimal import Decimal
from types import SimpleNamespace
from typing import Any, Optional

import pytest

from services.price_collector.aggregator import AggregationCascade
from services.price_collector.backfill import GapRecoveryQueue
from services.price_collector.collector import (
    CollectionRun,
    PriorityStore,
    Scheduler,
    SnapshotFetcher,
)
from services.price_collector.connectors.base import MarketDataSource, RankedAsset
from services.price_collector.core.rate_limiter import BackoffStrategy, RateLimiter
from services.price_collector.core.types import CollectionMode
from services.price_collector.persistence import (
    InMemoryGapQueueRepository,
    InMemoryPriorityRepository,
    InMemoryRunRepository,
    InMemorySnapshotRepository,
)


# Monday 2025-01-06 10:00:30 UTC
T0 = datetime(2025, 1, 6, 10, 0, 30, tzinfo=timezone.utc)

DEFAULT_RANKING = [
    ("bitcoin", 1),
    ("ethereum", 2),
    ("tether", 3),
    ("solana", 4),
]


class FakeClock:
    """Settable UTC clock. Also usable as a monotonic float clock."""

    def __init__(self, start: datetime = T0):
        self.start = start
        self.now = start

    def __call__(self) -> datetime:
        return self.now

    def monotonic(self) -> float:
        return (self.now - self.start).total_seconds()

    def advance(self, **kwargs) -> None:
        self.now += timedelta(**kwargs)

    def set(self, value: datetime) -> None:
        self.now = value


class FakeSleeper:
    """Records requested sleeps and advances the clock by that amount."""

    def __init__(self, clock: FakeClock):
        self.clock = clock
        self.calls: list[float] = []

    async def __call__(self, seconds: float) -> None:
        self.calls.append(seconds)
        self.clock.advance(seconds=seconds)


class FakeSource(MarketDataSource):
    """
    In-process upstream.

    Attributes to steer behaviour:
        quote_errors: exceptions raised by the next quote calls, in order
        ranking_errors: exceptions raised by the next ranking calls
        omit_ids: ids never returned by quote calls
        omit_once: ids omitted from the next quote call only
        prices: asset_id -> price (default 1.0)
        gate: if set, quote calls wait on this event
    """

    name = "fake"

    def __init__(
        self,
        clock: FakeClock,
        ranking: Optional[list[tuple[str, int]]] = None,
        page_size: int = 250,
        latency_seconds: float = 1.0,
    ):
        self.clock = clock
        self.ranking = list(DEFAULT_RANKING if ranking is None else ranking)
        self.page_size = page_size
        self.latency_seconds = latency_seconds
        self.prices: dict[str, Any] = {}
        self.quote_errors: list[BaseException] = []
        self.ranking_errors: list[BaseException] = []
        self.omit_ids: set[str] = set()
        self.omit_once: set[str] = set()
        self.gate: Optional[asyncio.Event] = None
        self.quote_calls: list[list[str]] = []
        self.page_calls: list[int] = []
        self.closed = False

    async def fetch_ranked_page(self, page: int, per_page: Optional[int] = None) -> list[RankedAsset]:
        self.page_calls.append(page)
        if self.ranking_errors:
            raise self.ranking_errors.pop(0)
        size = per_page or self.page_size
        rows = self.ranking[(page - 1) * size:page * size]
        return [
            RankedAsset(asset_id=a, rank=r, weight_metric=Decimal(1_000_000 // r), symbol=a[:3].upper())
            for a, r in rows
        ]

    async def fetch_quotes(self, asset_ids: list[str]) -> dict[str, dict[str, Any]]:
        self.quote_calls.append(list(asset_ids))
        if self.gate is not None:
            await self.gate.wait()
        self.clock.advance(seconds=self.latency_seconds)
        if self.quote_errors:
            raise self.quote_errors.pop(0)

        omitted = self.omit_ids | self.omit_once
        self.omit_once = set()
        now = self.clock()
        return {
            a: {
                "price": self.prices.get(a, "1.0"),
                "market_cap": "1000000",
                "total_volume": "5000",
                "price_change_24h": "-1.5",
                "last_updated_at": int(now.timestamp()),
            }
            for a in asset_ids
            if a not in omitted
        }

    async def close(self) -> None:
        self.closed = True


@pytest.fixture
def clock():
    return FakeClock()


@pytest.fixture
def sleeper(clock):
    return FakeSleeper(clock)


@pytest.fixture
def source(clock):
    return FakeSource(clock)


@pytest.fixture
def make_source(clock):
    def _make(ranking: Optional[list[tuple[str, int]]] = None, page_size: int = 250) -> FakeSource:
        return FakeSource(clock, ranking=ranking, page_size=page_size)
    return _make


@pytest.fixture
def make_limiter(clock, sleeper):
    def _make(calls_per_minute: int = 1000, max_attempts: int = 3, **kwargs) -> RateLimiter:
        return RateLimiter(
            calls_per_minute=calls_per_minute,
            backoff=kwargs.pop("backoff", BackoffStrategy()),
            max_attempts=max_attempts,
            clock=clock.monotonic,
            sleep=sleeper,
            **kwargs,
        )
    return _make


@pytest.fixture
def make_pipeline(clock, sleeper, source, make_limiter):
    """
    Build the full pipeline on in-memory stores around the fake source.

    Returns a namespace with every component and repository.
    """

    def _make(
        pinned: Optional[list[str]] = None,
        batch_size: int = 2,
        mode: CollectionMode = CollectionMode.TOP_10,
        max_attempts: int = 3,
        gap_max_attempts: int = 3,
        failure_tolerance: float = 0.05,
    ) -> SimpleNamespace:
        snapshots = InMemorySnapshotRepository()
        priority_repo = InMemoryPriorityRepository()
        runs = InMemoryRunRepository()
        gaps = InMemoryGapQueueRepository()

        limiter = make_limiter(max_attempts=max_attempts)
        priorities = PriorityStore(
            source,
            limiter,
            priority_repo,
            pinned_assets=[] if pinned is None else pinned,
            clock=clock,
        )
        fetcher = SnapshotFetcher(source, clock=clock)
        collection_run = CollectionRun(
            priorities,
            fetcher,
            limiter,
            snapshots,
            runs,
            batch_size=batch_size,
            failure_tolerance=failure_tolerance,
            clock=clock,
            sleep=sleeper,
        )
        cascade = AggregationCascade(snapshots, clock=clock)
        gap_queue = GapRecoveryQueue(
            gaps,
            runs,
            collection_run,
            cascade=cascade,
            backoff=BackoffStrategy(base_delay=30.0, multiplier=2.0, max_delay=600.0),
            max_attempts=gap_max_attempts,
            clock=clock,
        )
        scheduler = Scheduler(
            priorities,
            collection_run,
            gap_queue,
            cascade,
            runs,
            mode=mode,
            clock=clock,
            sleep=sleeper,
        )
        return SimpleNamespace(
            clock=clock,
            sleeper=sleeper,
            source=source,
            limiter=limiter,
            priorities=priorities,
            fetcher=fetcher,
            collection_run=collection_run,
            cascade=cascade,
            gap_queue=gap_queue,
            scheduler=scheduler,
            mode=mode,
            snapshots=snapshots,
            priority_repo=priority_repo,
            runs=runs,
            gaps=gaps,
        )

    return _make
