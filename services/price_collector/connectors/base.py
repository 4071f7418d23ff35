"""
Base Market Data Source

Abstract base class for upstream market-data sources. A source exposes the
two calls the collector needs:
- a paginated ranked list of assets
- a batched current-quote lookup for a list of asset ids

Both calls count against the same upstream per-minute ceiling; callers are
expected to run them through the shared RateLimiter.
"""

from abc import ABC, abstractmethod
from dataclasses import dataclass
from decimal import Decimal
from typing import Any, Optional

from ..core.constants import RANKING_PAGE_SIZE, UPSTREAM_MAX_IDS_PER_CALL


@dataclass
class RankedAsset:
    """One row of the upstream ranked list."""

    asset_id: str
    rank: int
    weight_metric: Optional[Decimal] = None
    symbol: Optional[str] = None


class MarketDataSource(ABC):
    """
    Abstract upstream source.

    Subclasses must implement:
    - fetch_ranked_page(): one page of (asset_id, rank, weight_metric)
    - fetch_quotes(): current quotes for up to max_ids_per_call ids

    Quotes are normalized dicts with keys price, market_cap, total_volume,
    price_change_24h and last_updated_at. Ids the upstream does not return
    are simply absent from the result.
    """

    name: str = "source"
    page_size: int = RANKING_PAGE_SIZE
    max_ids_per_call: int = UPSTREAM_MAX_IDS_PER_CALL

    @abstractmethod
    async def fetch_ranked_page(self, page: int, per_page: Optional[int] = None) -> list[RankedAsset]:
        """Fetch one 1-based page of the ranked list."""
        pass

    @abstractmethod
    async def fetch_quotes(self, asset_ids: list[str]) -> dict[str, dict[str, Any]]:
        """Fetch current quotes for a batch of asset ids."""
        pass

    async def close(self) -> None:
        """Release any held resources."""
        pass
