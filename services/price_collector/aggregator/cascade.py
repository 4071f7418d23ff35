"""
Aggregation Cascade

Derives hour/day/week/month snapshots from finer stores with closing-value
semantics: a coarse bucket holds the latest fine observation inside it,
never an average. A fine row captured after the coarse bucket ended
(a late gap recovery) only closes it when no on-time row exists. Roll-ups
only touch buckets that have already closed, and are plain upserts, so
re-running one is always safe.

Wiring (see ROLLUP_SOURCES):
    minute -> hour -> day -> week
                      day -> month

Usage:
    cascade = AggregationCascade(snapshot_repo)
    await cascade.run_due()
    await cascade.sweep_all()
"""

import logging
from datetime import datetime, timedelta
from typing import Callable, Optional

from ..core.buckets import (
    floor_to_bucket,
    is_closed,
    iter_buckets,
    last_closed_bucket,
    next_bucket,
    utc_now,
)
from ..core.constants import CASCADE_ORDER, DEFAULT_RETENTION, ROLLUP_SOURCES
from ..core.metrics import record_retention, record_rollup
from ..core.types import Granularity

logger = logging.getLogger(__name__)


class AggregationCascade:
    """Rolls closed buckets up the granularity chain and sweeps expired rows."""

    def __init__(
        self,
        snapshot_repo,
        retention: Optional[dict[Granularity, Optional[timedelta]]] = None,
        clock: Callable[[], datetime] = utc_now,
    ):
        self.snapshot_repo = snapshot_repo
        self.retention = dict(DEFAULT_RETENTION)
        if retention:
            self.retention.update(retention)
        self._clock = clock

    async def roll_up(
        self,
        granularity: Granularity,
        bucket_start: Optional[datetime] = None,
        now: Optional[datetime] = None,
    ) -> int:
        """
        Roll the closing observation of every asset into one coarse bucket.

        Args:
            granularity: Target granularity (hour, day, week or month)
            bucket_start: Bucket to roll (default: the most recently closed one)

        Returns:
            Number of rows upserted into the target store

        Raises:
            ValueError: minute target, or bucket not yet closed
        """
        if granularity == Granularity.MINUTE:
            raise ValueError("minute is the raw store and has no roll-up")

        now = now or self._clock()
        if bucket_start is None:
            bucket = last_closed_bucket(now, granularity)
        else:
            bucket = floor_to_bucket(bucket_start, granularity)
        if not is_closed(bucket, granularity, now):
            raise ValueError(f"{granularity.value} bucket {bucket.isoformat()} has not closed yet")

        source = ROLLUP_SOURCES[granularity]
        closing = await self.snapshot_repo.latest_per_asset(source, bucket, next_bucket(bucket, granularity))
        rows = [snapshot.rebucket(granularity, bucket) for snapshot in closing]
        record_rollup(granularity.value, len(rows))
        if not rows:
            return 0

        await self.snapshot_repo.upsert_batch(rows)
        logger.info(f"Rolled up {len(rows)} {source.value} rows into {granularity.value} {bucket.isoformat()}")
        return len(rows)

    async def run_due(self, now: Optional[datetime] = None) -> dict[Granularity, int]:
        """
        Roll up every closed bucket not rolled yet, in cascade order.

        After downtime this catches up from the last rolled bucket, but never
        further back than the source store still holds data for.
        """
        now = now or self._clock()
        results: dict[Granularity, int] = {}

        for granularity in CASCADE_ORDER:
            target = last_closed_bucket(now, granularity)
            last_rolled = await self.snapshot_repo.latest_bucket(granularity)
            if last_rolled is not None and last_rolled >= target:
                continue

            start = target if last_rolled is None else next_bucket(last_rolled, granularity)
            horizon = self.retention.get(ROLLUP_SOURCES[granularity])
            if horizon is not None:
                start = max(start, floor_to_bucket(now - horizon, granularity))

            total = 0
            for bucket in iter_buckets(start, next_bucket(target, granularity), granularity):
                total += await self.roll_up(granularity, bucket, now)
            results[granularity] = total

        return results

    async def refresh_for(self, fine_bucket: datetime, now: Optional[datetime] = None) -> dict[Granularity, int]:
        """Re-roll every closed coarse bucket containing a recovered minute bucket."""
        now = now or self._clock()
        results: dict[Granularity, int] = {}
        for granularity in CASCADE_ORDER:
            bucket = floor_to_bucket(fine_bucket, granularity)
            if is_closed(bucket, granularity, now):
                results[granularity] = await self.roll_up(granularity, bucket, now)
        return results

    async def retention_sweep(self, granularity: Granularity, now: Optional[datetime] = None) -> int:
        """Delete rows older than the granularity's horizon. Month is never swept."""
        horizon = self.retention.get(granularity)
        if horizon is None:
            return 0

        now = now or self._clock()
        deleted = await self.snapshot_repo.delete_older_than(granularity, now - horizon)
        record_retention(granularity.value, deleted)
        if deleted:
            logger.info(f"Retention: deleted {deleted} {granularity.value} rows older than {horizon}")
        return deleted

    async def sweep_all(self, now: Optional[datetime] = None) -> dict[Granularity, int]:
        now = now or self._clock()
        return {g: await self.retention_sweep(g, now) for g in Granularity}
