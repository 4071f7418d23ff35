"""
Gap Recovery Queue

Tracks minute buckets without full coverage and replays them.

A bucket enters the queue when:
- the process was down over it (detect_gaps)
- its scheduled run failed, was cancelled, or left assets failed
  (record_outcome)
- its scheduler tick was skipped because a run was still in flight

drain() runs one gap-recovery CollectionRun per due entry through the same
rate limiter. A fully covered bucket leaves the queue and its closed
coarse buckets are re-rolled. After max_attempts the entry is marked
failed, kept, and surfaced through a failed gap-recovery RunRecord.

Usage:
    queue = GapRecoveryQueue(queue_repo, run_repo, collection_run, cascade)
    await queue.detect_gaps(await run_repo.last_good_bucket())
    result = await queue.drain(CollectionMode.TOP_100)
"""

import logging
import uuid
from dataclasses import dataclass
from datetime import datetime, timedelta
from typing import TYPE_CHECKING, Callable, Optional

from ..aggregator.cascade import AggregationCascade
from ..core.buckets import floor_to_minute, iter_buckets, next_bucket, utc_now
from ..core.constants import DEFAULT_RETENTION, GAP_LOOKBACK_MINUTES, GAP_MAX_ATTEMPTS
from ..core.metrics import increment_gap_permanent_failures, set_gap_queue_depth
from ..core.rate_limiter import BackoffStrategy
from ..core.types import (
    CollectionMode,
    GapReason,
    Granularity,
    QueueEntry,
    QueueStatus,
    RunKind,
    RunRecord,
    RunStatus,
)

if TYPE_CHECKING:
    from ..collector.run import CollectionRun

logger = logging.getLogger(__name__)


@dataclass
class DrainResult:
    """Outcome of one drain() call."""

    attempted: int = 0
    recovered: int = 0
    rescheduled: int = 0
    permanently_failed: int = 0
    expired: int = 0


class GapRecoveryQueue:
    """Durable queue of missed buckets, drained with exponential backoff."""

    def __init__(
        self,
        queue_repo,
        run_repo,
        collection_run: "CollectionRun",
        cascade: Optional[AggregationCascade] = None,
        backoff: Optional[BackoffStrategy] = None,
        max_attempts: int = GAP_MAX_ATTEMPTS,
        lookback_minutes: int = GAP_LOOKBACK_MINUTES,
        minute_retention: Optional[timedelta] = DEFAULT_RETENTION[Granularity.MINUTE],
        clock: Callable[[], datetime] = utc_now,
    ):
        self.queue_repo = queue_repo
        self.run_repo = run_repo
        self.collection_run = collection_run
        self.cascade = cascade
        self.backoff = backoff or BackoffStrategy(base_delay=30.0, multiplier=2.0, max_delay=600.0)
        self.max_attempts = max(1, max_attempts)
        self.lookback = timedelta(minutes=lookback_minutes)
        self.minute_retention = minute_retention
        self._clock = clock

    # =========================================================================
    # Detection
    # =========================================================================

    async def detect_gaps(
        self,
        last_known_good: Optional[datetime],
        now: Optional[datetime] = None,
        reason: GapReason = GapReason.PROCESS_DOWN,
    ) -> list[QueueEntry]:
        """
        Enqueue every expected minute bucket after last_known_good and before
        the current minute that no run fully covers.

        Buckets older than the lookback window are dropped with a warning.
        Buckets already queued keep their state.

        Returns:
            One QueueEntry per missing bucket, oldest first
        """
        if last_known_good is None:
            return []

        now = now or self._clock()
        current = floor_to_minute(now)
        first = next_bucket(floor_to_minute(last_known_good), Granularity.MINUTE)
        window_start = current - self.lookback
        if first < window_start:
            dropped = int((window_start - first).total_seconds() // 60)
            logger.warning(f"[gap] {dropped} missed buckets before {window_start.isoformat()} are beyond lookback")
            first = window_start
        if first >= current:
            return []

        covered = await self.run_repo.covered_buckets(first, current)
        entries = []
        for bucket in iter_buckets(first, current, Granularity.MINUTE):
            if bucket in covered:
                continue
            entries.append(await self.enqueue(bucket, reason, now=now))

        if entries:
            logger.warning(
                f"[gap] detected {len(entries)} missed buckets "
                f"{entries[0].target_bucket_timestamp.isoformat()} .. {entries[-1].target_bucket_timestamp.isoformat()}"
            )
        await self.depth()
        return entries

    async def enqueue(
        self,
        bucket: datetime,
        reason: GapReason,
        asset_ids: Optional[list[str]] = None,
        now: Optional[datetime] = None,
    ) -> QueueEntry:
        """
        Add a bucket, or merge into its existing entry.

        asset_ids None means the whole scope. Merging a subset into a
        whole-scope entry keeps the whole scope. Attempts are never reset.
        """
        now = now or self._clock()
        bucket = floor_to_minute(bucket)
        existing = await self.queue_repo.get(bucket)

        if existing is not None:
            if existing.status == QueueStatus.FAILED:
                return existing
            if existing.asset_ids is not None:
                if asset_ids is None:
                    existing.asset_ids = None
                else:
                    existing.asset_ids = sorted(set(existing.asset_ids) | set(asset_ids))
            await self.queue_repo.upsert(existing)
            return existing

        entry = QueueEntry(
            target_bucket_timestamp=bucket,
            reason=reason,
            next_retry_at=now,
            asset_ids=sorted(set(asset_ids)) if asset_ids is not None else None,
            created_at=now,
        )
        await self.queue_repo.upsert(entry)
        logger.info(f"[gap] queued {bucket.isoformat()} ({reason.value})")
        return entry

    async def record_outcome(self, record: RunRecord) -> Optional[QueueEntry]:
        """Queue the bucket of a scheduled run that did not cover it fully."""
        if record.kind != RunKind.SCHEDULED or record.bucket_timestamp is None:
            return None
        if record.covers_fully:
            return None

        if record.terminal_status == RunStatus.COMPLETED:
            reason = GapReason.PARTIAL_FAILURE
        elif record.terminal_status == RunStatus.CANCELLED:
            reason = GapReason.RUN_CANCELLED
        else:
            reason = GapReason.RUN_FAILED

        if record.fully_attempted and record.failed_asset_ids:
            asset_ids: Optional[list[str]] = record.failed_asset_ids
        else:
            asset_ids = None

        entry = await self.enqueue(record.bucket_timestamp, reason, asset_ids)
        await self.depth()
        return entry

    # =========================================================================
    # Recovery
    # =========================================================================

    async def drain(self, mode: CollectionMode, limit: Optional[int] = None) -> DrainResult:
        """
        Attempt one recovery run per due entry, oldest bucket first.

        Runs are sequential and share the collection run's rate limiter.
        """
        result = DrainResult()
        now = self._clock()
        due = await self.queue_repo.get_due(now, limit or 100)

        for entry in due:
            bucket = entry.target_bucket_timestamp
            if self.minute_retention is not None and bucket < floor_to_minute(now) - self.minute_retention:
                await self._mark_failed(entry, "expired: bucket is older than minute retention")
                result.expired += 1
                continue

            result.attempted += 1
            record = await self.collection_run.execute(
                mode,
                bucket_timestamp=bucket,
                kind=RunKind.GAP_RECOVERY,
                asset_ids=entry.asset_ids,
            )
            if self.cascade and record.assets_succeeded:
                await self.cascade.refresh_for(bucket)

            if record.covers_fully:
                await self.queue_repo.delete(bucket)
                result.recovered += 1
                logger.info(f"[gap] recovered {bucket.isoformat()} after {entry.attempts + 1} attempt(s)")
                continue

            entry.attempts += 1
            entry.last_error = record.failure_detail or f"{record.assets_failed} assets failed"
            if record.fully_attempted and record.failed_asset_ids:
                entry.asset_ids = list(record.failed_asset_ids)

            if entry.attempts >= self.max_attempts:
                await self._mark_failed(
                    entry, f"gap recovery exhausted after {entry.attempts} attempts: {entry.last_error}"
                )
                result.permanently_failed += 1
                continue

            delay = self.backoff.next_delay(entry.attempts)
            entry.next_retry_at = self._clock() + timedelta(seconds=delay)
            await self.queue_repo.upsert(entry)
            result.rescheduled += 1
            logger.warning(
                f"[gap] {bucket.isoformat()} attempt {entry.attempts}/{self.max_attempts} failed, "
                f"retry in {delay:.0f}s: {entry.last_error}"
            )

        await self.depth()
        return result

    async def _mark_failed(self, entry: QueueEntry, detail: str) -> None:
        """Keep the entry as failed and surface it through a failed RunRecord."""
        now = self._clock()
        entry.status = QueueStatus.FAILED
        entry.last_error = detail
        await self.queue_repo.upsert(entry)

        record = RunRecord(
            run_id=uuid.uuid4().hex,
            kind=RunKind.GAP_RECOVERY,
            bucket_timestamp=entry.target_bucket_timestamp,
            started_at=now,
        )
        await self.run_repo.create(record)
        record.ended_at = now
        record.terminal_status = RunStatus.FAILED
        record.failure_detail = detail
        record.failed_asset_ids = list(entry.asset_ids or [])
        record.assets_failed = len(record.failed_asset_ids)
        await self.run_repo.finalize(record)

        increment_gap_permanent_failures()
        logger.error(f"[gap] {entry.target_bucket_timestamp.isoformat()} permanently failed: {detail}")

    async def depth(self) -> int:
        """Pending entries in the queue (also published as a gauge)."""
        depth = await self.queue_repo.count(QueueStatus.PENDING)
        set_gap_queue_depth(depth)
        return depth
