"""
In-Memory Repositories

Process-local stores with the same interface as the PostgreSQL
repositories. Used when no DATABASE_URL is configured and by the tests.
Models are copied on the way in and on the way out so callers never
share state with the store.
"""

import logging
from datetime import datetime
from typing import Optional

from ..core.types import (
    AssetPriority,
    Granularity,
    PriceSnapshot,
    QueueEntry,
    QueueStatus,
    RunKind,
    RunRecord,
)

logger = logging.getLogger(__name__)

COLLECTION_KINDS = (RunKind.SCHEDULED, RunKind.GAP_RECOVERY)


class InMemorySnapshotRepository:
    """Five granularity stores keyed by (asset_id, bucket_timestamp)."""

    def __init__(self):
        self._stores: dict[Granularity, dict[tuple[str, datetime], PriceSnapshot]] = {
            g: {} for g in Granularity
        }

    async def upsert(self, snapshot: PriceSnapshot) -> bool:
        store = self._stores[snapshot.granularity]
        key = (snapshot.asset_id, snapshot.bucket_timestamp)
        inserted = key not in store
        store[key] = snapshot.model_copy()
        return inserted

    async def upsert_batch(self, snapshots: list[PriceSnapshot]) -> int:
        for snapshot in snapshots:
            await self.upsert(snapshot)
        return len(snapshots)

    async def latest_per_asset(
        self,
        granularity: Granularity,
        start: datetime,
        end: datetime,
    ) -> list[PriceSnapshot]:
        """Latest row per asset in [start, end), preferring rows captured before end."""
        def rank(snapshot: PriceSnapshot) -> tuple[bool, datetime]:
            return (snapshot.captured_at < end, snapshot.bucket_timestamp)

        latest: dict[str, PriceSnapshot] = {}
        for (asset_id, bucket), snapshot in self._stores[granularity].items():
            if not (start <= bucket < end):
                continue
            current = latest.get(asset_id)
            if current is None or rank(snapshot) > rank(current):
                latest[asset_id] = snapshot
        return [latest[a].model_copy() for a in sorted(latest)]

    async def get_range(
        self,
        granularity: Granularity,
        asset_id: str,
        start: datetime,
        end: datetime,
        limit: int = 1440,
    ) -> list[PriceSnapshot]:
        rows = [
            s for (a, bucket), s in self._stores[granularity].items()
            if a == asset_id and start <= bucket < end
        ]
        rows.sort(key=lambda s: s.bucket_timestamp)
        return [s.model_copy() for s in rows[:limit]]

    async def delete_older_than(self, granularity: Granularity, cutoff: datetime) -> int:
        store = self._stores[granularity]
        expired = [key for key in store if key[1] < cutoff]
        for key in expired:
            del store[key]
        return len(expired)

    async def latest_bucket(self, granularity: Granularity) -> Optional[datetime]:
        buckets = [bucket for _, bucket in self._stores[granularity]]
        return max(buckets) if buckets else None

    async def count(self, granularity: Granularity) -> int:
        return len(self._stores[granularity])

    def get(self, granularity: Granularity, asset_id: str, bucket: datetime) -> Optional[PriceSnapshot]:
        """Synchronous point lookup, convenient in tests."""
        snapshot = self._stores[granularity].get((asset_id, bucket))
        return snapshot.model_copy() if snapshot else None


class InMemoryPriorityRepository:

    def __init__(self):
        self._entries: list[AssetPriority] = []

    async def replace_all(self, entries: list[AssetPriority]) -> int:
        self._entries = [e.model_copy() for e in entries]
        return len(entries)

    async def get_all(self) -> list[AssetPriority]:
        return [e.model_copy() for e in sorted(self._entries, key=lambda e: (e.rank, e.asset_id))]


class InMemoryRunRepository:

    def __init__(self):
        self._runs: dict[str, RunRecord] = {}

    async def create(self, record: RunRecord) -> None:
        if record.run_id in self._runs:
            raise RuntimeError(f"Run {record.run_id} already exists")
        self._runs[record.run_id] = record.model_copy(deep=True)

    async def finalize(self, record: RunRecord) -> None:
        if not record.is_terminal:
            raise ValueError(f"Run {record.run_id} is not terminal")
        current = self._runs.get(record.run_id)
        if current is None or current.is_terminal:
            raise RuntimeError(f"Run {record.run_id} missing or already finalized")
        self._runs[record.run_id] = record.model_copy(deep=True)

    async def get(self, run_id: str) -> Optional[RunRecord]:
        record = self._runs.get(run_id)
        return record.model_copy(deep=True) if record else None

    async def list_recent(self, limit: int = 50, kind: Optional[RunKind] = None) -> list[RunRecord]:
        records = [r for r in self._runs.values() if kind is None or r.kind == kind]
        records.sort(key=lambda r: r.started_at, reverse=True)
        return [r.model_copy(deep=True) for r in records[:limit]]

    def _covering(self):
        for record in self._runs.values():
            if record.kind in COLLECTION_KINDS and record.bucket_timestamp and record.covers_fully:
                yield record

    async def last_good_bucket(self) -> Optional[datetime]:
        buckets = [r.bucket_timestamp for r in self._covering()]
        return max(buckets) if buckets else None

    async def covered_buckets(self, start: datetime, end: datetime) -> set[datetime]:
        return {
            r.bucket_timestamp for r in self._covering()
            if start <= r.bucket_timestamp < end
        }


class InMemoryGapQueueRepository:

    def __init__(self):
        self._entries: dict[datetime, QueueEntry] = {}

    async def upsert(self, entry: QueueEntry) -> None:
        existing = self._entries.get(entry.target_bucket_timestamp)
        stored = entry.model_copy(deep=True)
        if existing is not None:
            stored.created_at = existing.created_at
        self._entries[entry.target_bucket_timestamp] = stored

    async def get(self, bucket: datetime) -> Optional[QueueEntry]:
        entry = self._entries.get(bucket)
        return entry.model_copy(deep=True) if entry else None

    async def delete(self, bucket: datetime) -> bool:
        return self._entries.pop(bucket, None) is not None

    async def get_due(self, now: datetime, limit: int = 100) -> list[QueueEntry]:
        due = [
            e for e in self._entries.values()
            if e.status == QueueStatus.PENDING and e.next_retry_at <= now
        ]
        due.sort(key=lambda e: e.target_bucket_timestamp)
        return [e.model_copy(deep=True) for e in due[:limit]]

    async def list_entries(self, status: Optional[QueueStatus] = None, limit: int = 500) -> list[QueueEntry]:
        entries = [e for e in self._entries.values() if status is None or e.status == status]
        entries.sort(key=lambda e: e.target_bucket_timestamp)
        return [e.model_copy(deep=True) for e in entries[:limit]]

    async def count(self, status: Optional[QueueStatus] = None) -> int:
        return sum(1 for e in self._entries.values() if status is None or e.status == status)
