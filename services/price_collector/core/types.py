"""
Price Collector Core Types

Canonical type definitions shared by the collector, the cascade, the gap
queue and the persistence layer.

IDENTITY CONTRACT:
    A PriceSnapshot is identified by (asset_id, granularity, bucket_timestamp).
    Every store write is an upsert on that key, so replaying a write is safe.
"""

from datetime import datetime
from decimal import Decimal
from enum import Enum
from typing import Optional

from pydantic import BaseModel, Field


# =============================================================================
# Core Enums
# =============================================================================

class Granularity(str, Enum):
    """Time resolution of a snapshot store."""
    MINUTE = "minute"
    HOUR = "hour"
    DAY = "day"
    WEEK = "week"
    MONTH = "month"


class CollectionMode(str, Enum):
    """How many ranked assets a collection run covers."""
    TOP_10 = "top10"
    TOP_100 = "top100"
    TOP_250 = "top250"
    TOP_1000 = "top1000"
    ALL = "all"


class RunKind(str, Enum):
    """What a RunRecord was opened for."""
    SCHEDULED = "scheduled"
    GAP_RECOVERY = "gap-recovery"
    PRIORITY_REFRESH = "priority-refresh"


class RunStatus(str, Enum):
    """Lifecycle status of a RunRecord."""
    RUNNING = "running"
    COMPLETED = "completed"
    FAILED = "failed"
    CANCELLED = "cancelled"

    @property
    def is_terminal(self) -> bool:
        return self is not RunStatus.RUNNING


class GapReason(str, Enum):
    """Why a minute bucket ended up in the gap queue."""
    PROCESS_DOWN = "process_down"
    PARTIAL_FAILURE = "partial_failure"
    RUN_FAILED = "run_failed"
    RUN_CANCELLED = "run_cancelled"
    OVERLAP = "overlap"


class QueueStatus(str, Enum):
    """Gap queue entry status. Recovered entries are deleted, not kept."""
    PENDING = "pending"
    FAILED = "failed"


# =============================================================================
# Priority Types
# =============================================================================

class AssetPriority(BaseModel):
    """One entry of the ranked priority list (lower rank = larger market value)."""

    asset_id: str = Field(..., description="Upstream asset identifier (unique)")
    rank: int = Field(..., gt=0, description="Market rank, 1 = largest")
    weight_metric: Optional[Decimal] = Field(None, description="Market capitalization in quote currency")
    symbol: Optional[str] = Field(None, description="Ticker symbol, informational only")
    last_refreshed: datetime = Field(..., description="When the ranking containing this entry was fetched")


# =============================================================================
# Snapshot Types
# =============================================================================

class PriceSnapshot(BaseModel):
    """A price observation stored in one granularity store."""

    asset_id: str
    granularity: Granularity
    bucket_timestamp: datetime = Field(..., description="Aligned bucket start (UTC)")
    price: Decimal = Field(..., description="Price in quote currency")

    # Secondary metrics (nullable magnitudes)
    market_cap: Optional[Decimal] = None
    total_volume: Optional[Decimal] = None
    price_change_24h: Optional[Decimal] = Field(None, description="24h change in percent")

    rank_at_capture: Optional[int] = None
    captured_at: datetime = Field(..., description="Upstream observation time")

    @property
    def key(self) -> tuple[str, Granularity, datetime]:
        return (self.asset_id, self.granularity, self.bucket_timestamp)

    def rebucket(self, granularity: Granularity, bucket_timestamp: datetime) -> "PriceSnapshot":
        """Copy this observation into a coarser bucket (closing value semantics)."""
        return self.model_copy(update={"granularity": granularity, "bucket_timestamp": bucket_timestamp})


class BatchResult(BaseModel):
    """Outcome of one batched snapshot fetch."""

    snapshots: list[PriceSnapshot] = Field(default_factory=list)
    failed: dict[str, str] = Field(default_factory=dict, description="asset_id -> failure reason")

    @property
    def failed_ids(self) -> list[str]:
        return list(self.failed.keys())

    @property
    def succeeded_ids(self) -> list[str]:
        return [s.asset_id for s in self.snapshots]


# =============================================================================
# Run & Queue Types
# =============================================================================

class RunRecord(BaseModel):
    """
    Statistics of one run. Created at start, mutated only by the owning run,
    immutable once terminal. Source of truth for gap detection.
    """

    run_id: str
    kind: RunKind
    mode: Optional[CollectionMode] = None
    bucket_timestamp: Optional[datetime] = Field(None, description="Minute bucket covered (collection runs)")
    started_at: datetime
    ended_at: Optional[datetime] = None
    assets_attempted: int = 0
    assets_succeeded: int = 0
    assets_failed: int = 0
    failed_asset_ids: list[str] = Field(default_factory=list)
    fully_attempted: bool = Field(default=False, description="True if every batch in scope was attempted")
    terminal_status: RunStatus = RunStatus.RUNNING
    failure_detail: Optional[str] = None

    @property
    def is_terminal(self) -> bool:
        return self.terminal_status.is_terminal

    @property
    def covers_fully(self) -> bool:
        """True if the bucket needs no recovery."""
        return (
            self.terminal_status == RunStatus.COMPLETED
            and self.fully_attempted
            and self.assets_failed == 0
        )

    @property
    def duration_seconds(self) -> Optional[float]:
        if self.ended_at is None:
            return None
        return (self.ended_at - self.started_at).total_seconds()


class QueueEntry(BaseModel):
    """A minute bucket awaiting gap recovery."""

    target_bucket_timestamp: datetime
    reason: GapReason
    attempts: int = 0
    next_retry_at: datetime
    status: QueueStatus = QueueStatus.PENDING
    asset_ids: Optional[list[str]] = Field(None, description="Subset to recover; None = whole scope")
    last_error: Optional[str] = None
    created_at: datetime
