"""
Price Collector V0 API Endpoints

Read-only status surface over the collector's stores. The collector never
accepts writes through this API.

Endpoints:
- GET /v0/status - Scheduler state, ranking freshness, queue depth, last run
- GET /v0/runs - Recent RunRecords
- GET /v0/gaps - Gap queue entries
- GET /v0/priorities - Current ranking
- GET /v0/snapshots - Rows from one granularity store
"""

import logging
from datetime import datetime, timedelta, timezone
from typing import Annotated, Optional

from fastapi import APIRouter, HTTPException, Query, Request
from pydantic import BaseModel, Field

from ...collector.priority import StaleRanking
from ...core.buckets import ensure_utc
from ...core.types import (
    AssetPriority,
    Granularity,
    PriceSnapshot,
    QueueEntry,
    QueueStatus,
    RunKind,
    RunRecord,
)


logger = logging.getLogger(__name__)
router = APIRouter(prefix="/v0", tags=["v0"])


# =============================================================================
# Response Models
# =============================================================================

class PriorityStatus(BaseModel):
    """Freshness of the cached ranking."""

    fresh: bool
    entries: int
    refreshed_at: Optional[datetime] = None
    age_seconds: Optional[float] = None
    stale_reason: Optional[str] = None
    refreshing: bool = False


class StatusResponse(BaseModel):
    """Response for /v0/status endpoint."""

    scheduler_state: str
    scheduler_running: bool
    collection_mode: str
    skipped_ticks: int = 0
    priorities: PriorityStatus
    gap_queue_pending: int
    gap_queue_failed: int
    last_run: Optional[RunRecord] = None
    timestamp: datetime


class RunsResponse(BaseModel):
    runs: list[RunRecord]
    count: int


class GapsResponse(BaseModel):
    entries: list[QueueEntry]
    count: int


class PrioritiesResponse(BaseModel):
    priorities: list[AssetPriority]
    count: int
    fresh: bool


class SnapshotsResponse(BaseModel):
    asset_id: str
    granularity: Granularity
    start: datetime
    end: datetime
    snapshots: list[PriceSnapshot]
    count: int = Field(..., description="Rows returned")


# =============================================================================
# Dependencies
# =============================================================================

def _require_state(request: Request, name: str):
    value = getattr(request.app.state, name, None)
    if value is None:
        raise HTTPException(status_code=503, detail=f"{name} not initialized")
    return value


# =============================================================================
# Endpoints
# =============================================================================

@router.get("/status", response_model=StatusResponse)
async def get_status(request: Request) -> StatusResponse:
    """Collector status for monitoring."""
    scheduler = _require_state(request, "scheduler")
    priorities = _require_state(request, "priorities")
    queue_repo = _require_state(request, "queue_repo")

    state = priorities.state
    age = None
    if state.refreshed_at is not None:
        age = (datetime.now(timezone.utc) - state.refreshed_at).total_seconds()

    return StatusResponse(
        scheduler_state=scheduler.state.value,
        scheduler_running=scheduler.is_running,
        collection_mode=scheduler.mode.value,
        skipped_ticks=scheduler.skipped_ticks,
        priorities=PriorityStatus(
            fresh=not isinstance(state, StaleRanking),
            entries=len(state.entries),
            refreshed_at=state.refreshed_at,
            age_seconds=age,
            stale_reason=state.reason if isinstance(state, StaleRanking) else None,
            refreshing=scheduler.refreshing,
        ),
        gap_queue_pending=await queue_repo.count(QueueStatus.PENDING),
        gap_queue_failed=await queue_repo.count(QueueStatus.FAILED),
        last_run=scheduler.last_run,
        timestamp=datetime.now(timezone.utc),
    )


@router.get("/runs", response_model=RunsResponse)
async def get_runs(
    request: Request,
    kind: Annotated[
        Optional[RunKind],
        Query(description="Filter by run kind (scheduled, gap-recovery, priority-refresh)")
    ] = None,
    limit: Annotated[int, Query(ge=1, le=1000)] = 50,
) -> RunsResponse:
    """Most recent runs first."""
    run_repo = _require_state(request, "run_repo")
    runs = await run_repo.list_recent(limit=limit, kind=kind)
    return RunsResponse(runs=runs, count=len(runs))


@router.get("/gaps", response_model=GapsResponse)
async def get_gaps(
    request: Request,
    status: Annotated[
        Optional[QueueStatus],
        Query(description="Filter by entry status (pending, failed)")
    ] = None,
    limit: Annotated[int, Query(ge=1, le=5000)] = 500,
) -> GapsResponse:
    """Gap queue entries, oldest bucket first. Failed entries are permanent failures."""
    queue_repo = _require_state(request, "queue_repo")
    entries = await queue_repo.list_entries(status=status, limit=limit)
    return GapsResponse(entries=entries, count=len(entries))


@router.get("/priorities", response_model=PrioritiesResponse)
async def get_priorities(
    request: Request,
    limit: Annotated[int, Query(ge=1, le=20000)] = 100,
) -> PrioritiesResponse:
    """Current ranking as served to collection runs."""
    priorities = _require_state(request, "priorities")
    entries = priorities.entries[:limit]
    return PrioritiesResponse(priorities=entries, count=len(entries), fresh=not priorities.is_stale)


@router.get("/snapshots", response_model=SnapshotsResponse)
async def get_snapshots(
    request: Request,
    asset_id: Annotated[str, Query(min_length=1, description="Upstream asset id (e.g. bitcoin)")],
    granularity: Annotated[Granularity, Query()] = Granularity.MINUTE,
    start: Annotated[Optional[datetime], Query(description="Inclusive start (ISO 8601, default: end - 1 day)")] = None,
    end: Annotated[Optional[datetime], Query(description="Exclusive end (ISO 8601, default: now)")] = None,
    limit: Annotated[int, Query(ge=1, le=10000)] = 1440,
) -> SnapshotsResponse:
    """Stored rows for one asset in one granularity store."""
    snapshot_repo = _require_state(request, "snapshot_repo")

    end = ensure_utc(end) if end else datetime.now(timezone.utc)
    start = ensure_utc(start) if start else end - timedelta(days=1)
    if start >= end:
        raise HTTPException(status_code=400, detail="start must be before end")

    snapshots = await snapshot_repo.get_range(granularity, asset_id, start, end, limit=limit)
    return SnapshotsResponse(
        asset_id=asset_id,
        granularity=granularity,
        start=start,
        end=end,
        snapshots=snapshots,
        count=len(snapshots),
    )
