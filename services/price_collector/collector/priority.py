"""
Priority Store

Holds the ranked list of tracked assets and partitions it into batches.

The cached ranking is an immutable FreshRanking or StaleRanking value that
is swapped in a single assignment after a successful refresh has been
persisted. A failed refresh keeps serving the last good ranking, tagged
stale; collection is never blocked on a refresh.

Usage:
    store = PriorityStore(source, limiter, repository, pinned_assets=["bitcoin"])
    await store.load()
    await store.refresh(CollectionMode.TOP_100)
    for batch in store.batches(CollectionMode.TOP_100, batch_size=250):
        ...
"""

import logging
import math
from dataclasses import dataclass
from datetime import datetime, timedelta
from typing import Callable, Optional, Union

from ..connectors.base import MarketDataSource, RankedAsset
from ..core.buckets import utc_now
from ..core.constants import DEFAULT_PINNED_ASSETS, get_scope_size
from ..core.metrics import set_priority_stale
from ..core.rate_limiter import RateLimiter
from ..core.types import AssetPriority, CollectionMode

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class FreshRanking:
    entries: tuple[AssetPriority, ...]
    refreshed_at: datetime


@dataclass(frozen=True)
class StaleRanking:
    entries: tuple[AssetPriority, ...]
    refreshed_at: Optional[datetime]
    age: Optional[timedelta]
    reason: str


RankingState = Union[FreshRanking, StaleRanking]


class PriorityStore:
    """
    Ranked priority list with batch partitioning.

    Pinned assets are always placed at the front of the first batch,
    whatever their rank and even when the upstream ranking omits them.
    """

    def __init__(
        self,
        source: MarketDataSource,
        limiter: RateLimiter,
        repository,
        pinned_assets: Optional[list[str]] = None,
        stale_after: timedelta = timedelta(hours=26),
        max_pages: int = 40,
        max_attempts: Optional[int] = None,
        clock: Callable[[], datetime] = utc_now,
    ):
        self.source = source
        self.limiter = limiter
        self.repository = repository
        pinned = list(DEFAULT_PINNED_ASSETS) if pinned_assets is None else pinned_assets
        self.pinned_assets: list[str] = list(dict.fromkeys(a for a in pinned if a))
        if len(self.pinned_assets) > source.max_ids_per_call:
            raise ValueError(
                f"{len(self.pinned_assets)} pinned assets exceed the {source.max_ids_per_call}-id call limit"
            )
        self.stale_after = stale_after
        self.max_pages = max_pages
        self.max_attempts = max_attempts
        self._clock = clock
        self._state: RankingState = StaleRanking(
            entries=(), refreshed_at=None, age=None, reason="ranking not loaded"
        )

    # =========================================================================
    # State
    # =========================================================================

    @property
    def state(self) -> RankingState:
        """Current ranking, downgraded to stale once it outlives stale_after."""
        state = self._state
        if isinstance(state, FreshRanking):
            age = self._clock() - state.refreshed_at
            if age > self.stale_after:
                return StaleRanking(
                    entries=state.entries,
                    refreshed_at=state.refreshed_at,
                    age=age,
                    reason=f"ranking older than {self.stale_after}",
                )
        return state

    @property
    def is_stale(self) -> bool:
        return isinstance(self.state, StaleRanking)

    @property
    def entries(self) -> list[AssetPriority]:
        return list(self._state.entries)

    @property
    def refreshed_at(self) -> Optional[datetime]:
        return self._state.refreshed_at

    def _age(self, refreshed_at: Optional[datetime]) -> Optional[timedelta]:
        return self._clock() - refreshed_at if refreshed_at else None

    # =========================================================================
    # Load / Refresh
    # =========================================================================

    async def load(self) -> list[AssetPriority]:
        """Load the persisted ranking (startup)."""
        entries = await self.repository.get_all()
        if not entries:
            logger.info("No persisted ranking found")
            set_priority_stale(True)
            return []

        refreshed_at = max(e.last_refreshed for e in entries)
        self._state = FreshRanking(entries=tuple(entries), refreshed_at=refreshed_at)
        set_priority_stale(self.is_stale)
        logger.info(f"Loaded {len(entries)} ranked assets (refreshed {refreshed_at.isoformat()})")
        return entries

    def _pages_for(self, mode: Optional[CollectionMode]) -> int:
        scope = get_scope_size(mode) if mode else None
        if scope is None:
            return self.max_pages
        return max(1, min(self.max_pages, math.ceil(scope / self.source.page_size)))

    async def refresh(self, mode: Optional[CollectionMode] = None) -> list[AssetPriority]:
        """
        Fetch the full ranked list and replace the cached ranking wholesale.

        Walks pages until a short page or the page cap for `mode`. The new
        ranking is persisted before it is swapped in. On any failure the
        previous ranking is kept and flagged stale, and the error re-raised.
        """
        pages = self._pages_for(mode)
        now = self._clock()
        try:
            ranked: dict[str, RankedAsset] = {}
            for page in range(1, pages + 1):
                rows = await self.limiter.execute_with_retry(
                    lambda page=page: self.source.fetch_ranked_page(page),
                    max_attempts=self.max_attempts,
                    description=f"ranking page {page}",
                )
                for row in rows:
                    current = ranked.get(row.asset_id)
                    if current is None or row.rank < current.rank:
                        ranked[row.asset_id] = row
                if len(rows) < self.source.page_size:
                    break

            if not ranked:
                raise ValueError("upstream returned an empty ranking")

            entries = [
                AssetPriority(
                    asset_id=row.asset_id,
                    rank=row.rank,
                    weight_metric=row.weight_metric,
                    symbol=row.symbol,
                    last_refreshed=now,
                )
                for row in sorted(ranked.values(), key=lambda r: (r.rank, r.asset_id))
            ]
            await self.repository.replace_all(entries)

        except Exception as e:
            previous = self._state
            self._state = StaleRanking(
                entries=previous.entries,
                refreshed_at=previous.refreshed_at,
                age=self._age(previous.refreshed_at),
                reason=f"refresh failed: {e}",
            )
            set_priority_stale(True)
            logger.error(
                f"Priority refresh failed, serving {len(previous.entries)} cached entries: {e}"
            )
            raise

        self._state = FreshRanking(entries=tuple(entries), refreshed_at=now)
        set_priority_stale(False)
        logger.info(f"Priority ranking refreshed: {len(entries)} assets over {pages} page(s) max")
        return entries

    # =========================================================================
    # Batching
    # =========================================================================

    def scope(self, mode: CollectionMode) -> list[str]:
        """Asset ids in scope for `mode`: pinned ids first, then by rank."""
        size = get_scope_size(mode)
        ranked = [e.asset_id for e in self._state.entries]
        if size is not None:
            ranked = ranked[:size]
        pinned = set(self.pinned_assets)
        return self.pinned_assets + [a for a in ranked if a not in pinned]

    def batches(self, mode: CollectionMode, batch_size: int) -> list[list[str]]:
        """
        Partition the scope into ordered batches.

        The first batch holds every pinned asset, filled up to batch_size
        with the best-ranked remaining ids.
        """
        if batch_size < 1:
            raise ValueError("batch_size must be >= 1")
        batch_size = min(batch_size, self.source.max_ids_per_call)

        ids = self.scope(mode)
        if not ids:
            return []

        first_size = max(batch_size, len(self.pinned_assets))
        batches = [ids[:first_size]]
        for start in range(first_size, len(ids), batch_size):
            batches.append(ids[start:start + batch_size])
        return batches

    def rank_lookup(self) -> dict[str, int]:
        return {e.asset_id: e.rank for e in self._state.entries}
