# Price Collector Core Modules
"""
Core building blocks for the price collection pipeline.

Modules:
- types: Canonical type definitions (Pydantic models)
- constants: Upstream limits, scopes, cascade wiring, retention defaults
- buckets: Bucket arithmetic for the five granularities
- errors: Collector error taxonomy
- rate_limiter: Shared call budget and retry/backoff policy
- validation: Quote -> PriceSnapshot conversion and plausibility checks
"""

from .types import (
    AssetPriority,
    BatchResult,
    CollectionMode,
    GapReason,
    Granularity,
    PriceSnapshot,
    QueueEntry,
    QueueStatus,
    RunKind,
    RunRecord,
    RunStatus,
)

from .constants import (
    CASCADE_ORDER,
    COLLECTION_MODE_SCOPES,
    DEFAULT_PINNED_ASSETS,
    DEFAULT_RETENTION,
    MISSING_FROM_RESPONSE,
    RANKING_PAGE_SIZE,
    ROLLUP_SOURCES,
    UPSTREAM_MAX_IDS_PER_CALL,
    get_scope_size,
)

from .buckets import (
    floor_to_bucket,
    floor_to_minute,
    is_closed,
    iter_buckets,
    last_closed_bucket,
    next_bucket,
    previous_bucket,
    utc_now,
)

from .errors import (
    AuthError,
    CollectorError,
    ErrorClass,
    NetworkError,
    PersistenceError,
    RetryExhaustedError,
    SnapshotValidationError,
    ThrottledError,
    UpstreamError,
    UpstreamServerError,
)

from .rate_limiter import BackoffStrategy, RateLimiter, classify_error

from .validation import build_snapshot, validate_snapshot

__all__ = [
    # Types
    "AssetPriority",
    "BatchResult",
    "CollectionMode",
    "GapReason",
    "Granularity",
    "PriceSnapshot",
    "QueueEntry",
    "QueueStatus",
    "RunKind",
    "RunRecord",
    "RunStatus",
    # Constants
    "CASCADE_ORDER",
    "COLLECTION_MODE_SCOPES",
    "DEFAULT_PINNED_ASSETS",
    "DEFAULT_RETENTION",
    "MISSING_FROM_RESPONSE",
    "RANKING_PAGE_SIZE",
    "ROLLUP_SOURCES",
    "UPSTREAM_MAX_IDS_PER_CALL",
    "get_scope_size",
    # Buckets
    "floor_to_bucket",
    "floor_to_minute",
    "is_closed",
    "iter_buckets",
    "last_closed_bucket",
    "next_bucket",
    "previous_bucket",
    "utc_now",
    # Errors
    "AuthError",
    "CollectorError",
    "ErrorClass",
    "NetworkError",
    "PersistenceError",
    "RetryExhaustedError",
    "SnapshotValidationError",
    "ThrottledError",
    "UpstreamError",
    "UpstreamServerError",
    # Rate limiting
    "BackoffStrategy",
    "RateLimiter",
    "classify_error",
    # Validation
    "build_snapshot",
    "validate_snapshot",
]
