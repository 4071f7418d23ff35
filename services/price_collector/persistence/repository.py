"""
PostgreSQL Repositories

asyncpg-backed stores for snapshots, priorities, run records and the gap
queue. Every write is an upsert keyed by natural identity, so retried or
overlapping writes are safe to replay.

Usage:
    snapshots = SnapshotRepository(pool)
    await snapshots.upsert_batch(rows)
    latest = await snapshots.latest_per_asset(Granularity.MINUTE, start, end)
"""

import logging
from datetime import datetime
from typing import Optional

from ..core.constants import SNAPSHOT_TABLES
from ..core.types import (
    AssetPriority,
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
from .pool import DatabasePool


logger = logging.getLogger(__name__)


def _affected_rows(result: Optional[str]) -> int:
    """Parse the row count out of an asyncpg status string ("DELETE 12")."""
    if not result:
        return 0
    try:
        return int(result.split()[-1])
    except (ValueError, IndexError):
        return 0


SNAPSHOT_COLUMNS = (
    "asset_id, bucket_timestamp, price, market_cap, total_volume, "
    "price_change_24h, rank_at_capture, captured_at"
)


class SnapshotRepository:
    """
    Repository for the five granularity stores.

    Table names come from SNAPSHOT_TABLES, never from caller input.
    """

    def __init__(self, pool: DatabasePool):
        self.pool = pool

    @staticmethod
    def _table(granularity: Granularity) -> str:
        return SNAPSHOT_TABLES[granularity]

    def _upsert_sql(self, granularity: Granularity) -> str:
        return f"""
            INSERT INTO {self._table(granularity)} ({SNAPSHOT_COLUMNS})
            VALUES ($1, $2, $3, $4, $5, $6, $7, $8)
            ON CONFLICT (asset_id, bucket_timestamp) DO UPDATE SET
                price = EXCLUDED.price,
                market_cap = EXCLUDED.market_cap,
                total_volume = EXCLUDED.total_volume,
                price_change_24h = EXCLUDED.price_change_24h,
                rank_at_capture = EXCLUDED.rank_at_capture,
                captured_at = EXCLUDED.captured_at
        """

    @staticmethod
    def _params(snapshot: PriceSnapshot) -> tuple:
        return (
            snapshot.asset_id,
            snapshot.bucket_timestamp,
            snapshot.price,
            snapshot.market_cap,
            snapshot.total_volume,
            snapshot.price_change_24h,
            snapshot.rank_at_capture,
            snapshot.captured_at,
        )

    async def upsert(self, snapshot: PriceSnapshot) -> bool:
        """
        Insert or overwrite one snapshot.

        Returns:
            True if a new row was inserted, False if an existing row was updated
        """
        try:
            result = await self.pool.fetchval(
                self._upsert_sql(snapshot.granularity) + " RETURNING (xmax = 0) AS inserted",
                *self._params(snapshot),
            )
            return bool(result)
        except Exception as e:
            logger.error(f"Failed to upsert {snapshot.granularity.value} snapshot: {e}")
            raise

    async def upsert_batch(self, snapshots: list[PriceSnapshot]) -> int:
        """
        Upsert many snapshots in one transaction per granularity.

        Returns:
            Number of rows written
        """
        if not snapshots:
            return 0

        by_granularity: dict[Granularity, list[tuple]] = {}
        for snapshot in snapshots:
            by_granularity.setdefault(snapshot.granularity, []).append(self._params(snapshot))

        try:
            async with self.pool.acquire() as conn:
                async with conn.transaction():
                    for granularity, rows in by_granularity.items():
                        await conn.executemany(self._upsert_sql(granularity), rows)
            logger.debug(f"Batch upserted {len(snapshots)} snapshots")
            return len(snapshots)
        except Exception as e:
            logger.error(f"Failed to batch upsert snapshots: {e}")
            raise

    async def latest_per_asset(
        self,
        granularity: Granularity,
        start: datetime,
        end: datetime,
    ) -> list[PriceSnapshot]:
        """
        Latest row per asset with start <= bucket_timestamp < end.

        Rows captured before end win over later-captured ones, so a minute
        recovered after the bucket closed never becomes its closing value
        while an on-time observation exists.
        """
        query = f"""
            SELECT DISTINCT ON (asset_id) {SNAPSHOT_COLUMNS}
            FROM {self._table(granularity)}
            WHERE bucket_timestamp >= $1 AND bucket_timestamp < $2
            ORDER BY asset_id, (captured_at < $2) DESC, bucket_timestamp DESC
        """
        rows = await self.pool.fetch(query, start, end)
        return [self._row_to_snapshot(row, granularity) for row in rows]

    async def get_range(
        self,
        granularity: Granularity,
        asset_id: str,
        start: datetime,
        end: datetime,
        limit: int = 1440,
    ) -> list[PriceSnapshot]:
        """Rows for one asset in [start, end), ordered by bucket ascending."""
        query = f"""
            SELECT {SNAPSHOT_COLUMNS}
            FROM {self._table(granularity)}
            WHERE asset_id = $1 AND bucket_timestamp >= $2 AND bucket_timestamp < $3
            ORDER BY bucket_timestamp ASC
            LIMIT $4
        """
        rows = await self.pool.fetch(query, asset_id, start, end, limit)
        return [self._row_to_snapshot(row, granularity) for row in rows]

    async def delete_older_than(self, granularity: Granularity, cutoff: datetime) -> int:
        """Delete rows with bucket_timestamp < cutoff. Returns deleted count."""
        try:
            result = await self.pool.execute(
                f"DELETE FROM {self._table(granularity)} WHERE bucket_timestamp < $1",
                cutoff,
            )
            return _affected_rows(result)
        except Exception as e:
            logger.error(f"Failed to enforce {granularity.value} retention: {e}")
            raise

    async def latest_bucket(self, granularity: Granularity) -> Optional[datetime]:
        return await self.pool.fetchval(f"SELECT MAX(bucket_timestamp) FROM {self._table(granularity)}")

    async def count(self, granularity: Granularity) -> int:
        return await self.pool.fetchval(f"SELECT COUNT(*) FROM {self._table(granularity)}") or 0

    @staticmethod
    def _row_to_snapshot(row, granularity: Granularity) -> PriceSnapshot:
        return PriceSnapshot(
            asset_id=row["asset_id"],
            granularity=granularity,
            bucket_timestamp=row["bucket_timestamp"],
            price=row["price"],
            market_cap=row["market_cap"],
            total_volume=row["total_volume"],
            price_change_24h=row["price_change_24h"],
            rank_at_capture=row["rank_at_capture"],
            captured_at=row["captured_at"],
        )


class PriorityRepository:
    """Durable copy of the ranked priority list."""

    def __init__(self, pool: DatabasePool):
        self.pool = pool

    async def replace_all(self, entries: list[AssetPriority]) -> int:
        """Replace the stored ranking wholesale in one transaction."""
        try:
            async with self.pool.acquire() as conn:
                async with conn.transaction():
                    await conn.execute("DELETE FROM asset_priorities")
                    await conn.executemany(
                        """
                        INSERT INTO asset_priorities (asset_id, rank, weight_metric, symbol, last_refreshed)
                        VALUES ($1, $2, $3, $4, $5)
                        """,
                        [
                            (e.asset_id, e.rank, e.weight_metric, e.symbol, e.last_refreshed)
                            for e in entries
                        ],
                    )
            return len(entries)
        except Exception as e:
            logger.error(f"Failed to replace asset priorities: {e}")
            raise

    async def get_all(self) -> list[AssetPriority]:
        rows = await self.pool.fetch(
            "SELECT asset_id, rank, weight_metric, symbol, last_refreshed "
            "FROM asset_priorities ORDER BY rank ASC, asset_id ASC"
        )
        return [
            AssetPriority(
                asset_id=row["asset_id"],
                rank=row["rank"],
                weight_metric=row["weight_metric"],
                symbol=row["symbol"],
                last_refreshed=row["last_refreshed"],
            )
            for row in rows
        ]


RUN_COLUMNS = (
    "run_id, kind, mode, bucket_timestamp, started_at, ended_at, assets_attempted, "
    "assets_succeeded, assets_failed, failed_asset_ids, fully_attempted, "
    "terminal_status, failure_detail"
)


class RunRepository:
    """Run records: inserted at start, updated exactly once at finalize."""

    def __init__(self, pool: DatabasePool):
        self.pool = pool

    async def create(self, record: RunRecord) -> None:
        await self.pool.execute(
            f"""
            INSERT INTO collection_runs ({RUN_COLUMNS})
            VALUES ($1, $2, $3, $4, $5, $6, $7, $8, $9, $10, $11, $12, $13)
            """,
            record.run_id,
            record.kind.value,
            record.mode.value if record.mode else None,
            record.bucket_timestamp,
            record.started_at,
            record.ended_at,
            record.assets_attempted,
            record.assets_succeeded,
            record.assets_failed,
            record.failed_asset_ids,
            record.fully_attempted,
            record.terminal_status.value,
            record.failure_detail,
        )

    async def finalize(self, record: RunRecord) -> None:
        """
        Write the terminal state of a run.

        Raises:
            ValueError: record is not terminal
            RuntimeError: run missing or already finalized
        """
        if not record.is_terminal:
            raise ValueError(f"Run {record.run_id} is not terminal")

        result = await self.pool.execute(
            """
            UPDATE collection_runs SET
                ended_at = $2,
                assets_attempted = $3,
                assets_succeeded = $4,
                assets_failed = $5,
                failed_asset_ids = $6,
                fully_attempted = $7,
                terminal_status = $8,
                failure_detail = $9
            WHERE run_id = $1 AND terminal_status = 'running'
            """,
            record.run_id,
            record.ended_at,
            record.assets_attempted,
            record.assets_succeeded,
            record.assets_failed,
            record.failed_asset_ids,
            record.fully_attempted,
            record.terminal_status.value,
            record.failure_detail,
        )
        if _affected_rows(result) != 1:
            raise RuntimeError(f"Run {record.run_id} missing or already finalized")

    async def get(self, run_id: str) -> Optional[RunRecord]:
        row = await self.pool.fetchrow(
            f"SELECT {RUN_COLUMNS} FROM collection_runs WHERE run_id = $1", run_id
        )
        return self._row_to_record(row) if row else None

    async def list_recent(self, limit: int = 50, kind: Optional[RunKind] = None) -> list[RunRecord]:
        if kind is None:
            rows = await self.pool.fetch(
                f"SELECT {RUN_COLUMNS} FROM collection_runs ORDER BY started_at DESC LIMIT $1",
                limit,
            )
        else:
            rows = await self.pool.fetch(
                f"SELECT {RUN_COLUMNS} FROM collection_runs WHERE kind = $1 "
                "ORDER BY started_at DESC LIMIT $2",
                kind.value,
                limit,
            )
        return [self._row_to_record(row) for row in rows]

    async def last_good_bucket(self) -> Optional[datetime]:
        """Most recent minute bucket fully covered by a collection run."""
        return await self.pool.fetchval(
            """
            SELECT MAX(bucket_timestamp) FROM collection_runs
            WHERE kind IN ('scheduled', 'gap-recovery')
              AND terminal_status = 'completed'
              AND fully_attempted = TRUE
              AND assets_failed = 0
            """
        )

    async def covered_buckets(self, start: datetime, end: datetime) -> set[datetime]:
        """Minute buckets in [start, end) fully covered by some collection run."""
        rows = await self.pool.fetch(
            """
            SELECT DISTINCT bucket_timestamp FROM collection_runs
            WHERE kind IN ('scheduled', 'gap-recovery')
              AND terminal_status = 'completed'
              AND fully_attempted = TRUE
              AND assets_failed = 0
              AND bucket_timestamp >= $1 AND bucket_timestamp < $2
            """,
            start,
            end,
        )
        return {row["bucket_timestamp"] for row in rows}

    @staticmethod
    def _row_to_record(row) -> RunRecord:
        return RunRecord(
            run_id=row["run_id"],
            kind=RunKind(row["kind"]),
            mode=CollectionMode(row["mode"]) if row["mode"] else None,
            bucket_timestamp=row["bucket_timestamp"],
            started_at=row["started_at"],
            ended_at=row["ended_at"],
            assets_attempted=row["assets_attempted"],
            assets_succeeded=row["assets_succeeded"],
            assets_failed=row["assets_failed"],
            failed_asset_ids=list(row["failed_asset_ids"] or []),
            fully_attempted=row["fully_attempted"],
            terminal_status=RunStatus(row["terminal_status"]),
            failure_detail=row["failure_detail"],
        )


QUEUE_COLUMNS = (
    "target_bucket_timestamp, reason, attempts, next_retry_at, status, "
    "asset_ids, last_error, created_at"
)


class GapQueueRepository:
    """Gap queue entries keyed by target minute bucket."""

    def __init__(self, pool: DatabasePool):
        self.pool = pool

    async def upsert(self, entry: QueueEntry) -> None:
        await self.pool.execute(
            f"""
            INSERT INTO gap_queue ({QUEUE_COLUMNS})
            VALUES ($1, $2, $3, $4, $5, $6, $7, $8)
            ON CONFLICT (target_bucket_timestamp) DO UPDATE SET
                reason = EXCLUDED.reason,
                attempts = EXCLUDED.attempts,
                next_retry_at = EXCLUDED.next_retry_at,
                status = EXCLUDED.status,
                asset_ids = EXCLUDED.asset_ids,
                last_error = EXCLUDED.last_error
            """,
            entry.target_bucket_timestamp,
            entry.reason.value,
            entry.attempts,
            entry.next_retry_at,
            entry.status.value,
            entry.asset_ids,
            entry.last_error,
            entry.created_at,
        )

    async def get(self, bucket: datetime) -> Optional[QueueEntry]:
        row = await self.pool.fetchrow(
            f"SELECT {QUEUE_COLUMNS} FROM gap_queue WHERE target_bucket_timestamp = $1", bucket
        )
        return self._row_to_entry(row) if row else None

    async def delete(self, bucket: datetime) -> bool:
        result = await self.pool.execute(
            "DELETE FROM gap_queue WHERE target_bucket_timestamp = $1", bucket
        )
        return _affected_rows(result) > 0

    async def get_due(self, now: datetime, limit: int = 100) -> list[QueueEntry]:
        """Pending entries whose next_retry_at has passed, oldest bucket first."""
        rows = await self.pool.fetch(
            f"""
            SELECT {QUEUE_COLUMNS} FROM gap_queue
            WHERE status = 'pending' AND next_retry_at <= $1
            ORDER BY target_bucket_timestamp ASC
            LIMIT $2
            """,
            now,
            limit,
        )
        return [self._row_to_entry(row) for row in rows]

    async def list_entries(self, status: Optional[QueueStatus] = None, limit: int = 500) -> list[QueueEntry]:
        if status is None:
            rows = await self.pool.fetch(
                f"SELECT {QUEUE_COLUMNS} FROM gap_queue ORDER BY target_bucket_timestamp ASC LIMIT $1",
                limit,
            )
        else:
            rows = await self.pool.fetch(
                f"SELECT {QUEUE_COLUMNS} FROM gap_queue WHERE status = $1 "
                "ORDER BY target_bucket_timestamp ASC LIMIT $2",
                status.value,
                limit,
            )
        return [self._row_to_entry(row) for row in rows]

    async def count(self, status: Optional[QueueStatus] = None) -> int:
        if status is None:
            return await self.pool.fetchval("SELECT COUNT(*) FROM gap_queue") or 0
        return await self.pool.fetchval(
            "SELECT COUNT(*) FROM gap_queue WHERE status = $1", status.value
        ) or 0

    @staticmethod
    def _row_to_entry(row) -> QueueEntry:
        return QueueEntry(
            target_bucket_timestamp=row["target_bucket_timestamp"],
            reason=GapReason(row["reason"]),
            attempts=row["attempts"],
            next_retry_at=row["next_retry_at"],
            status=QueueStatus(row["status"]),
            asset_ids=list(row["asset_ids"]) if row["asset_ids"] is not None else None,
            last_error=row["last_error"],
            created_at=row["created_at"],
        )
