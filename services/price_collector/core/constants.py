"""
Price Collector Constants

Upstream limits, collection scopes, cascade wiring and default retention
horizons. Runtime-tunable values live in app.config.Settings; the values
here are the defaults and the hard limits the settings are clamped to.
"""

from datetime import timedelta
from typing import Optional

from .types import CollectionMode, Granularity


# =============================================================================
# Upstream Limits
# =============================================================================

# Max asset ids per batched snapshot call. This is the constraint that forces batching.
UPSTREAM_MAX_IDS_PER_CALL: int = 250

# Max rows per page of the ranked-list call
RANKING_PAGE_SIZE: int = 250

# Default per-minute call ceiling (demo tier is 30/min)
DEFAULT_CALLS_PER_MINUTE: int = 30

# Rate limit window length
RATE_LIMIT_WINDOW_SECONDS: float = 60.0

# Reason recorded when the upstream omitted an id from a batch response
MISSING_FROM_RESPONSE: str = "missing_from_response"


# =============================================================================
# Collection Scope
# =============================================================================

# Number of ranked assets in scope per mode (None = entire catalog)
COLLECTION_MODE_SCOPES: dict[CollectionMode, Optional[int]] = {
    CollectionMode.TOP_10: 10,
    CollectionMode.TOP_100: 100,
    CollectionMode.TOP_250: 250,
    CollectionMode.TOP_1000: 1000,
    CollectionMode.ALL: None,
}

DEFAULT_PINNED_ASSETS: tuple[str, ...] = ("bitcoin", "ethereum")

# A run is `completed` when failed / attempted stays at or below this
RUN_FAILURE_TOLERANCE: float = 0.05

# Allowed distance between an upstream captured_at and local now
CLOCK_SKEW_TOLERANCE_SECONDS: int = 300


def get_scope_size(mode: CollectionMode) -> Optional[int]:
    """Get the number of ranked assets covered by a collection mode."""
    return COLLECTION_MODE_SCOPES[mode]


# =============================================================================
# Aggregation Cascade
# =============================================================================

# Derived granularities, in the order they must be rolled up
CASCADE_ORDER: tuple[Granularity, ...] = (
    Granularity.HOUR,
    Granularity.DAY,
    Granularity.WEEK,
    Granularity.MONTH,
)

# Source store for each derived granularity.
# Week and month both close from the day store: week boundaries do not
# align with month boundaries, so month cannot be derived from week.
ROLLUP_SOURCES: dict[Granularity, Granularity] = {
    Granularity.HOUR: Granularity.MINUTE,
    Granularity.DAY: Granularity.HOUR,
    Granularity.WEEK: Granularity.DAY,
    Granularity.MONTH: Granularity.DAY,
}

# Retention horizon per granularity (None = never swept)
DEFAULT_RETENTION: dict[Granularity, Optional[timedelta]] = {
    Granularity.MINUTE: timedelta(minutes=60),
    Granularity.HOUR: timedelta(hours=24),
    Granularity.DAY: timedelta(days=7),
    Granularity.WEEK: timedelta(weeks=52),
    Granularity.MONTH: None,
}

# One table per granularity store
SNAPSHOT_TABLES: dict[Granularity, str] = {
    g: f"price_snapshots_{g.value}" for g in Granularity
}


# =============================================================================
# Gap Recovery
# =============================================================================

GAP_MAX_ATTEMPTS: int = 3
GAP_LOOKBACK_MINUTES: int = 60
PERSISTENCE_RETRIES: int = 3
