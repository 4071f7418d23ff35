"""
Collection Run

One complete pass over the assets in scope for a minute bucket:

1. Open a RunRecord in `running` state
2. Take ordered batches from the PriorityStore (or the given subset)
3. For each batch, sequentially: fetch via the shared rate limiter,
   upsert the snapshots into the minute store
4. Finalize the RunRecord exactly once, whatever happened

Batch-level failures never abort the run. AuthError and PersistenceError
do: the first cannot heal, the second would otherwise lose data silently.
Data already written is kept in every case.

Usage:
    run = CollectionRun(priorities, fetcher, limiter, snapshot_repo, run_repo)
    record = await run.execute(CollectionMode.TOP_100)
"""

import asyncio
import logging
import time
import uuid
from datetime import datetime
from typing import Awaitable, Callable, Optional

from ..core.buckets import floor_to_minute, utc_now
from ..core.constants import (
    MISSING_FROM_RESPONSE,
    PERSISTENCE_RETRIES,
    RUN_FAILURE_TOLERANCE,
    UPSTREAM_MAX_IDS_PER_CALL,
)
from ..core.errors import AuthError, PersistenceError
from ..core.metrics import record_run, record_snapshots_written
from ..core.rate_limiter import RateLimiter
from ..core.types import (
    CollectionMode,
    Granularity,
    PriceSnapshot,
    RunKind,
    RunRecord,
    RunStatus,
)
from .fetcher import SnapshotFetcher
from .priority import PriorityStore

logger = logging.getLogger(__name__)


class CollectionRun:
    """
    Executes collection runs. One instance is reused for every run; each
    execute() call owns its own RunRecord.
    """

    def __init__(
        self,
        priorities: PriorityStore,
        fetcher: SnapshotFetcher,
        limiter: RateLimiter,
        snapshot_repo,
        run_repo,
        batch_size: int = UPSTREAM_MAX_IDS_PER_CALL,
        inter_batch_delay_seconds: float = 0.0,
        failure_tolerance: float = RUN_FAILURE_TOLERANCE,
        persistence_retries: int = PERSISTENCE_RETRIES,
        resume_missing_passes: int = 1,
        clock: Callable[[], datetime] = utc_now,
        sleep: Optional[Callable[[float], Awaitable[None]]] = None,
    ):
        self.priorities = priorities
        self.fetcher = fetcher
        self.limiter = limiter
        self.snapshot_repo = snapshot_repo
        self.run_repo = run_repo
        self.batch_size = max(1, min(batch_size, UPSTREAM_MAX_IDS_PER_CALL))
        self.inter_batch_delay_seconds = inter_batch_delay_seconds
        self.failure_tolerance = failure_tolerance
        self.persistence_retries = max(1, persistence_retries)
        self.resume_missing_passes = max(0, resume_missing_passes)
        self._clock = clock
        self._sleep = sleep or asyncio.sleep

    def _plan(self, mode: CollectionMode, asset_ids: Optional[list[str]]) -> list[list[str]]:
        if asset_ids is None:
            return self.priorities.batches(mode, self.batch_size)
        ids = list(dict.fromkeys(asset_ids))
        return [ids[i:i + self.batch_size] for i in range(0, len(ids), self.batch_size)]

    async def execute(
        self,
        mode: CollectionMode,
        bucket_timestamp: Optional[datetime] = None,
        kind: RunKind = RunKind.SCHEDULED,
        asset_ids: Optional[list[str]] = None,
    ) -> RunRecord:
        """
        Collect one minute bucket.

        Args:
            mode: Collection scope
            bucket_timestamp: Minute bucket to write (default: current minute)
            kind: scheduled or gap-recovery
            asset_ids: Restrict the run to this subset instead of the scope

        Returns:
            The finalized RunRecord
        """
        started_at = self._clock()
        bucket = floor_to_minute(bucket_timestamp or started_at)
        record = RunRecord(
            run_id=uuid.uuid4().hex,
            kind=kind,
            mode=mode,
            bucket_timestamp=bucket,
            started_at=started_at,
        )
        await self.run_repo.create(record)
        tag = f"[run:{record.run_id[:8]}]"
        logger.info(f"{tag} {kind.value} run started for {bucket.isoformat()} ({mode.value})")

        succeeded: set[str] = set()
        failed: dict[str, str] = {}
        attempted = 0

        try:
            batches = self._plan(mode, asset_ids)
            ranks = self.priorities.rank_lookup()

            for index, batch in enumerate(batches):
                if index > 0 and self.inter_batch_delay_seconds > 0:
                    await self._sleep(self.inter_batch_delay_seconds)
                attempted += len(batch)
                await self._run_batch(tag, index, batch, bucket, ranks, succeeded, failed)

            record.fully_attempted = True
            if attempted == 0:
                record.terminal_status = RunStatus.FAILED
                record.failure_detail = "no assets in scope"
            elif len(failed) <= self.failure_tolerance * attempted:
                record.terminal_status = RunStatus.COMPLETED
            else:
                record.terminal_status = RunStatus.FAILED
                record.failure_detail = f"{len(failed)}/{attempted} assets failed"

        except AuthError as e:
            record.terminal_status = RunStatus.FAILED
            record.failure_detail = f"auth: {e}"
            logger.error(f"{tag} halted on authentication failure: {e}")
        except PersistenceError as e:
            record.terminal_status = RunStatus.FAILED
            record.failure_detail = f"persistence: {e}"
            logger.error(f"{tag} halted on persistence failure: {e}")
        except asyncio.CancelledError:
            record.terminal_status = RunStatus.CANCELLED
            record.failure_detail = "cancelled"
            logger.warning(f"{tag} cancelled after {attempted} assets attempted")
            raise
        except Exception as e:
            record.terminal_status = RunStatus.FAILED
            record.failure_detail = f"{type(e).__name__}: {e}"
            logger.error(f"{tag} aborted: {type(e).__name__}: {e}")
        finally:
            await self._finalize(tag, record, attempted, succeeded, failed)

        return record

    async def _finalize(
        self,
        tag: str,
        record: RunRecord,
        attempted: int,
        succeeded: set[str],
        failed: dict[str, str],
    ) -> None:
        if not record.is_terminal:
            record.terminal_status = RunStatus.FAILED
            record.failure_detail = "interrupted"
        record.ended_at = self._clock()
        record.assets_attempted = attempted
        record.assets_succeeded = len(succeeded)
        record.assets_failed = len(failed)
        record.failed_asset_ids = sorted(failed)

        await self.run_repo.finalize(record)

        record_run(
            record.kind.value,
            record.terminal_status.value,
            record.duration_seconds or 0.0,
            record.assets_succeeded,
            record.assets_failed,
        )
        logger.info(
            f"{tag} {record.terminal_status.value}: {record.assets_succeeded}/{attempted} succeeded, "
            f"{record.assets_failed} failed in {record.duration_seconds:.1f}s"
        )

    async def _run_batch(
        self,
        tag: str,
        index: int,
        batch: list[str],
        bucket: datetime,
        ranks: dict[str, int],
        succeeded: set[str],
        failed: dict[str, str],
    ) -> None:
        """
        Fetch and persist one batch.

        Only ids still pending are re-requested: ids the upstream omitted get
        `resume_missing_passes` further passes. Validation failures are final.
        """
        pending = list(batch)
        passes_left = self.resume_missing_passes

        while pending:
            try:
                result = await self.limiter.execute_with_retry(
                    lambda ids=tuple(pending): self.fetcher.fetch(list(ids), bucket, ranks),
                    description=f"{tag} batch {index + 1}",
                )
            except AuthError:
                raise
            except Exception as e:
                for asset_id in pending:
                    failed[asset_id] = f"batch failed: {e}"
                logger.warning(f"{tag} batch {index + 1} failed for {len(pending)} assets: {e}")
                return

            if result.snapshots:
                await self._persist(tag, result.snapshots)
                for snapshot in result.snapshots:
                    succeeded.add(snapshot.asset_id)
                    failed.pop(snapshot.asset_id, None)

            missing = [a for a, reason in result.failed.items() if reason == MISSING_FROM_RESPONSE]
            for asset_id, reason in result.failed.items():
                failed[asset_id] = reason

            if not missing or passes_left <= 0:
                return
            passes_left -= 1
            pending = missing
            logger.info(f"{tag} batch {index + 1}: re-requesting {len(missing)} omitted assets")

    async def _persist(self, tag: str, snapshots: list[PriceSnapshot]) -> int:
        """Upsert into the minute store with bounded retries."""
        last_error: Optional[Exception] = None
        for attempt in range(1, self.persistence_retries + 1):
            start = time.perf_counter()
            try:
                written = await self.snapshot_repo.upsert_batch(snapshots)
                record_snapshots_written(
                    Granularity.MINUTE.value, written, time.perf_counter() - start
                )
                return written
            except Exception as e:
                last_error = e
                logger.warning(
                    f"{tag} snapshot write failed (attempt {attempt}/{self.persistence_retries}): {e}"
                )
                if attempt < self.persistence_retries:
                    await self._sleep(self.limiter.next_delay(attempt))

        raise PersistenceError(
            f"minute store write failed after {self.persistence_retries} attempts: {last_error}"
        ) from last_error
