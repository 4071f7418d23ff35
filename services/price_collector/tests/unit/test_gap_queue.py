"""
Unit tests for the gap recovery queue.

Tests cover:
- Gap detection after downtime (coverage, lookback bound)
- Queueing outcomes of scheduled runs
- Draining: recovery, backoff, subset narrowing, permanent failure, expiry
"""

from datetime import timedelta

import pytest

from services.price_collector.core.buckets import floor_to_minute
from services.price_collector.core.errors import UpstreamServerError
from services.price_collector.core.types import (
    GapReason,
    Granularity,
    QueueStatus,
    RunKind,
    RunRecord,
    RunStatus,
)


async def _ready(make_pipeline, **kwargs):
    pipeline = make_pipeline(**kwargs)
    await pipeline.priorities.refresh(pipeline.mode)
    return pipeline


def _record(p, status: RunStatus, kind: RunKind = RunKind.SCHEDULED, **kwargs) -> RunRecord:
    data = {
        "run_id": f"run-{status.value}",
        "kind": kind,
        "bucket_timestamp": floor_to_minute(p.clock()) - timedelta(minutes=1),
        "started_at": p.clock(),
        "terminal_status": status,
    }
    data.update(kwargs)
    return RunRecord(**data)


# =============================================================================
# Detection
# =============================================================================


class TestDetectGaps:

    @pytest.mark.asyncio
    async def test_missed_buckets_queued(self, make_pipeline):
        p = await _ready(make_pipeline)
        current = floor_to_minute(p.clock())

        entries = await p.gap_queue.detect_gaps(current - timedelta(minutes=4))

        assert [e.target_bucket_timestamp for e in entries] == [
            current - timedelta(minutes=3),
            current - timedelta(minutes=2),
            current - timedelta(minutes=1),
        ]
        assert all(e.reason == GapReason.PROCESS_DOWN for e in entries)
        assert all(e.asset_ids is None for e in entries)
        assert await p.gap_queue.depth() == 3

    @pytest.mark.asyncio
    async def test_no_history_no_gaps(self, make_pipeline):
        p = make_pipeline()
        assert await p.gap_queue.detect_gaps(None) == []

    @pytest.mark.asyncio
    async def test_up_to_date_no_gaps(self, make_pipeline):
        p = make_pipeline()
        current = floor_to_minute(p.clock())
        assert await p.gap_queue.detect_gaps(current - timedelta(minutes=1)) == []

    @pytest.mark.asyncio
    async def test_covered_buckets_skipped(self, make_pipeline):
        p = await _ready(make_pipeline)
        current = floor_to_minute(p.clock())
        covered = current - timedelta(minutes=2)
        record = await p.collection_run.execute(p.mode, bucket_timestamp=covered)
        assert record.covers_fully

        entries = await p.gap_queue.detect_gaps(current - timedelta(minutes=4), now=p.clock())

        assert [e.target_bucket_timestamp for e in entries] == [
            current - timedelta(minutes=3),
            current - timedelta(minutes=1),
        ]

    @pytest.mark.asyncio
    async def test_lookback_bounds_window(self, make_pipeline):
        p = make_pipeline()
        current = floor_to_minute(p.clock())

        entries = await p.gap_queue.detect_gaps(current - timedelta(hours=3))

        assert len(entries) == 60
        assert entries[0].target_bucket_timestamp == current - timedelta(minutes=60)


# =============================================================================
# Enqueue / record_outcome
# =============================================================================


class TestEnqueue:

    @pytest.mark.asyncio
    async def test_subsets_merge(self, make_pipeline):
        p = make_pipeline()
        bucket = floor_to_minute(p.clock()) - timedelta(minutes=1)

        await p.gap_queue.enqueue(bucket, GapReason.PARTIAL_FAILURE, ["tether"])
        merged = await p.gap_queue.enqueue(bucket, GapReason.PARTIAL_FAILURE, ["solana", "tether"])

        assert merged.asset_ids == ["solana", "tether"]
        assert await p.gaps.count() == 1

    @pytest.mark.asyncio
    async def test_whole_scope_wins(self, make_pipeline):
        p = make_pipeline()
        bucket = floor_to_minute(p.clock()) - timedelta(minutes=1)

        await p.gap_queue.enqueue(bucket, GapReason.PARTIAL_FAILURE, ["tether"])
        await p.gap_queue.enqueue(bucket, GapReason.OVERLAP)
        entry = await p.gap_queue.enqueue(bucket, GapReason.PARTIAL_FAILURE, ["solana"])

        assert entry.asset_ids is None
        # First reason is kept
        assert entry.reason == GapReason.PARTIAL_FAILURE

    @pytest.mark.asyncio
    async def test_full_coverage_not_queued(self, make_pipeline):
        p = make_pipeline()
        record = _record(p, RunStatus.COMPLETED, fully_attempted=True)
        assert await p.gap_queue.record_outcome(record) is None
        assert await p.gaps.count() == 0

    @pytest.mark.asyncio
    async def test_partial_failure_queues_subset(self, make_pipeline):
        p = make_pipeline()
        record = _record(
            p, RunStatus.COMPLETED, fully_attempted=True, assets_failed=1, failed_asset_ids=["tether"]
        )

        entry = await p.gap_queue.record_outcome(record)

        assert entry.reason == GapReason.PARTIAL_FAILURE
        assert entry.asset_ids == ["tether"]
        assert entry.target_bucket_timestamp == record.bucket_timestamp

    @pytest.mark.asyncio
    async def test_cancelled_run_queues_whole_scope(self, make_pipeline):
        p = make_pipeline()
        record = _record(
            p, RunStatus.CANCELLED, fully_attempted=False, assets_failed=1, failed_asset_ids=["bitcoin"]
        )

        entry = await p.gap_queue.record_outcome(record)

        assert entry.reason == GapReason.RUN_CANCELLED
        assert entry.asset_ids is None

    @pytest.mark.asyncio
    async def test_failed_run_without_ids_queues_whole_scope(self, make_pipeline):
        p = make_pipeline()
        record = _record(p, RunStatus.FAILED, fully_attempted=True, failure_detail="no assets in scope")

        entry = await p.gap_queue.record_outcome(record)

        assert entry.reason == GapReason.RUN_FAILED
        assert entry.asset_ids is None

    @pytest.mark.asyncio
    async def test_gap_recovery_runs_ignored(self, make_pipeline):
        p = make_pipeline()
        record = _record(p, RunStatus.FAILED, kind=RunKind.GAP_RECOVERY)
        assert await p.gap_queue.record_outcome(record) is None


# =============================================================================
# Drain
# =============================================================================


class TestDrain:

    @pytest.mark.asyncio
    async def test_drain_recovers_missed_buckets(self, make_pipeline):
        p = await _ready(make_pipeline)
        current = floor_to_minute(p.clock())
        await p.gap_queue.detect_gaps(current - timedelta(minutes=4))

        result = await p.gap_queue.drain(p.mode)

        assert result.attempted == 3
        assert result.recovered == 3
        assert await p.gap_queue.depth() == 0
        for minutes in (1, 2, 3):
            bucket = current - timedelta(minutes=minutes)
            assert p.snapshots.get(Granularity.MINUTE, "bitcoin", bucket) is not None

        recovery_runs = await p.runs.list_recent(kind=RunKind.GAP_RECOVERY)
        assert len(recovery_runs) == 3
        assert all(r.covers_fully for r in recovery_runs)
        # Recovered buckets count as covered now
        assert await p.runs.last_good_bucket() == current - timedelta(minutes=1)

    @pytest.mark.asyncio
    async def test_drain_rerolls_closed_hour(self, make_pipeline):
        p = await _ready(make_pipeline)
        current = floor_to_minute(p.clock())
        # 09:59 belongs to the hour that closed at 10:00
        await p.gap_queue.enqueue(current - timedelta(minutes=1), GapReason.PROCESS_DOWN)

        await p.gap_queue.drain(p.mode)

        hour = p.snapshots.get(Granularity.HOUR, "bitcoin", current - timedelta(hours=1))
        assert hour is not None

    @pytest.mark.asyncio
    async def test_partial_recovery_narrows_subset(self, make_pipeline):
        p = await _ready(make_pipeline)
        bucket = floor_to_minute(p.clock()) - timedelta(minutes=1)
        await p.gap_queue.enqueue(bucket, GapReason.RUN_FAILED)
        p.source.omit_ids = {"tether"}

        result = await p.gap_queue.drain(p.mode)

        assert result.rescheduled == 1
        entry = await p.gaps.get(bucket)
        assert entry.attempts == 1
        assert entry.asset_ids == ["tether"]
        assert entry.next_retry_at == p.clock() + timedelta(seconds=30)

        # Not due yet
        assert (await p.gap_queue.drain(p.mode)).attempted == 0

        p.source.omit_ids = set()
        p.clock.advance(minutes=1)
        result = await p.gap_queue.drain(p.mode)

        assert result.recovered == 1
        assert p.source.quote_calls[-1] == ["tether"]
        assert await p.gaps.get(bucket) is None

    @pytest.mark.asyncio
    async def test_permanent_failure_after_max_attempts(self, make_pipeline):
        p = await _ready(make_pipeline, max_attempts=1, gap_max_attempts=2)
        bucket = floor_to_minute(p.clock()) - timedelta(minutes=1)
        await p.gap_queue.enqueue(bucket, GapReason.RUN_FAILED)
        p.source.quote_errors = [UpstreamServerError("503", 503) for _ in range(10)]

        first = await p.gap_queue.drain(p.mode)
        assert first.rescheduled == 1

        p.clock.advance(minutes=10)
        second = await p.gap_queue.drain(p.mode)

        assert second.permanently_failed == 1
        entry = await p.gaps.get(bucket)
        assert entry.status == QueueStatus.FAILED
        assert entry.attempts == 2
        assert entry.last_error.startswith("gap recovery exhausted after 2 attempts")
        assert await p.gap_queue.depth() == 0

        failed = [
            r for r in await p.runs.list_recent(kind=RunKind.GAP_RECOVERY)
            if r.failure_detail and r.failure_detail.startswith("gap recovery exhausted")
        ]
        assert len(failed) == 1
        assert failed[0].terminal_status == RunStatus.FAILED
        assert failed[0].bucket_timestamp == bucket

        # Failed entries are kept and not retried
        assert (await p.gap_queue.drain(p.mode)).attempted == 0
        again = await p.gap_queue.enqueue(bucket, GapReason.OVERLAP)
        assert again.status == QueueStatus.FAILED

    @pytest.mark.asyncio
    async def test_expired_entry_marked_failed(self, make_pipeline):
        p = await _ready(make_pipeline)
        bucket = floor_to_minute(p.clock()) - timedelta(hours=2)
        await p.gap_queue.enqueue(bucket, GapReason.PROCESS_DOWN)

        result = await p.gap_queue.drain(p.mode)

        assert result.expired == 1
        assert result.attempted == 0
        assert p.source.quote_calls == []
        entry = await p.gaps.get(bucket)
        assert entry.status == QueueStatus.FAILED
        assert entry.last_error.startswith("expired")

    @pytest.mark.asyncio
    async def test_drain_limit(self, make_pipeline):
        p = await _ready(make_pipeline)
        current = floor_to_minute(p.clock())
        await p.gap_queue.detect_gaps(current - timedelta(minutes=6))

        result = await p.gap_queue.drain(p.mode, limit=2)

        assert result.attempted == 2
        assert await p.gap_queue.depth() == 3
        # Oldest first
        remaining = await p.gaps.list_entries(QueueStatus.PENDING)
        assert remaining[0].target_bucket_timestamp == current - timedelta(minutes=3)
