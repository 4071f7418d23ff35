"""
Collection Scheduler

Owns the process-wide lifecycle:
- a minute tick that runs one CollectionRun per minute bucket, then the
  cascade, the retention sweeps and a gap-queue drain
- an independent daily priority refresh at a configured UTC hour

At most one collection run is in flight. A tick that fires while one is
still running is skipped and its bucket queued for recovery. A failed
cycle is logged and recorded; the scheduler always proceeds to the next
tick.

Usage:
    scheduler = Scheduler(priorities, collection_run, gap_queue, cascade, run_repo)
    await scheduler.start()
    ...
    await scheduler.stop()
"""

import asyncio
import logging
import uuid
from datetime import datetime, timedelta
from enum import Enum
from typing import Awaitable, Callable, Optional

from ..aggregator.cascade import AggregationCascade
from ..backfill.gap_queue import GapRecoveryQueue
from ..core.buckets import floor_to_minute, next_bucket, utc_now
from ..core.metrics import record_run
from ..core.types import CollectionMode, GapReason, Granularity, RunKind, RunRecord, RunStatus
from .priority import PriorityStore
from .run import CollectionRun

logger = logging.getLogger(__name__)


class SchedulerState(str, Enum):
    IDLE = "idle"
    RUNNING_SCHEDULED_COLLECTION = "running-scheduled-collection"


class Scheduler:
    """Fires a collection on every minute boundary and refreshes priorities in the background."""

    def __init__(
        self,
        priorities: PriorityStore,
        collection_run: CollectionRun,
        gap_queue: GapRecoveryQueue,
        cascade: AggregationCascade,
        run_repo,
        mode: CollectionMode = CollectionMode.TOP_100,
        priority_refresh_hour: int = 0,
        gap_drain_max_per_tick: int = 5,
        clock: Callable[[], datetime] = utc_now,
        sleep: Optional[Callable[[float], Awaitable[None]]] = None,
    ):
        if not 0 <= priority_refresh_hour <= 23:
            raise ValueError("priority_refresh_hour must be within 0..23")
        self.priorities = priorities
        self.collection_run = collection_run
        self.gap_queue = gap_queue
        self.cascade = cascade
        self.run_repo = run_repo
        self.mode = mode
        self.priority_refresh_hour = priority_refresh_hour
        self.gap_drain_max_per_tick = gap_drain_max_per_tick
        self._clock = clock
        self._sleep = sleep or asyncio.sleep

        self._state = SchedulerState.IDLE
        self._refreshing = False
        self._running = False
        self._last_tick_bucket: Optional[datetime] = None
        self._last_run: Optional[RunRecord] = None
        self._skipped_ticks = 0
        self._tasks: list[asyncio.Task] = []
        self._cycles: set[asyncio.Task] = set()

    # =========================================================================
    # Properties
    # =========================================================================

    @property
    def state(self) -> SchedulerState:
        return self._state

    @property
    def refreshing(self) -> bool:
        """True while the priority refresh runs (independent of state)."""
        return self._refreshing

    @property
    def is_running(self) -> bool:
        return self._running

    @property
    def last_run(self) -> Optional[RunRecord]:
        return self._last_run

    @property
    def skipped_ticks(self) -> int:
        return self._skipped_ticks

    # =========================================================================
    # Lifecycle
    # =========================================================================

    async def bootstrap(self, now: Optional[datetime] = None) -> None:
        """
        Prepare for the first tick: load the ranking (refreshing it when none
        is persisted) and queue every bucket missed while the process was down.
        """
        now = now or self._clock()
        await self.priorities.load()
        if not self.priorities.entries:
            logger.info("No cached ranking, refreshing priorities before the first tick")
            await self.refresh_priorities()

        last_good = await self.run_repo.last_good_bucket()
        gaps = await self.gap_queue.detect_gaps(last_good, now)
        if gaps:
            logger.warning(f"Startup: {len(gaps)} buckets queued for recovery since {last_good.isoformat()}")
        self._last_tick_bucket = floor_to_minute(now) - timedelta(minutes=1)

    async def start(self) -> None:
        if self._running:
            logger.warning("Scheduler already running")
            return

        await self.bootstrap()
        self._running = True
        self._tasks = [
            asyncio.create_task(self._tick_loop(), name="collector-tick"),
            asyncio.create_task(self._refresh_loop(), name="priority-refresh"),
        ]
        logger.info(
            f"Scheduler started (mode={self.mode.value}, refresh hour={self.priority_refresh_hour:02d}:00 UTC)"
        )

    async def stop(self) -> None:
        """Cancel the loops and any in-flight cycle; runs finalize as cancelled."""
        self._running = False
        tasks = self._tasks + list(self._cycles)
        for task in tasks:
            task.cancel()
        if tasks:
            await asyncio.gather(*tasks, return_exceptions=True)
        self._tasks = []
        self._cycles.clear()
        logger.info("Scheduler stopped")

    # =========================================================================
    # Minute Tick
    # =========================================================================

    async def tick(self, now: Optional[datetime] = None) -> Optional[RunRecord]:
        """
        Run one scheduled collection cycle for the current minute bucket.

        Returns:
            The collection RunRecord, or None if the tick was skipped
        """
        now = now or self._clock()
        bucket = floor_to_minute(now)

        if self._state == SchedulerState.RUNNING_SCHEDULED_COLLECTION:
            self._skipped_ticks += 1
            logger.warning(f"Tick {bucket.isoformat()} skipped: previous collection still running")
            await self.gap_queue.enqueue(bucket, GapReason.OVERLAP, now=now)
            return None

        self._state = SchedulerState.RUNNING_SCHEDULED_COLLECTION
        try:
            previous = self._last_tick_bucket
            self._last_tick_bucket = bucket
            if previous is not None and bucket > next_bucket(previous, Granularity.MINUTE):
                await self.gap_queue.detect_gaps(previous, now)
            return await self._run_cycle(bucket)
        finally:
            self._state = SchedulerState.IDLE

    async def _run_cycle(self, bucket: datetime) -> Optional[RunRecord]:
        record: Optional[RunRecord] = None
        try:
            record = await self.collection_run.execute(self.mode, bucket_timestamp=bucket)
            self._last_run = record
            await self.gap_queue.record_outcome(record)
        except asyncio.CancelledError:
            raise
        except Exception as e:
            logger.error(f"Collection cycle for {bucket.isoformat()} failed: {type(e).__name__}: {e}")
            await self._enqueue_safely(bucket)

        try:
            await self.cascade.run_due()
            await self.cascade.sweep_all()
        except asyncio.CancelledError:
            raise
        except Exception as e:
            logger.error(f"Aggregation cascade failed: {type(e).__name__}: {e}")

        try:
            await self.gap_queue.drain(self.mode, self.gap_drain_max_per_tick)
        except asyncio.CancelledError:
            raise
        except Exception as e:
            logger.error(f"Gap recovery drain failed: {type(e).__name__}: {e}")

        return record

    async def _enqueue_safely(self, bucket: datetime) -> None:
        try:
            await self.gap_queue.enqueue(bucket, GapReason.RUN_FAILED)
        except Exception as e:
            logger.error(f"Could not queue {bucket.isoformat()} for recovery: {e}")

    async def _tick_loop(self) -> None:
        """Fire a tick on every minute boundary without waiting for the previous one."""
        while self._running:
            now = self._clock()
            boundary = next_bucket(floor_to_minute(now), Granularity.MINUTE)
            await self._sleep(max(0.0, (boundary - now).total_seconds()))
            task = asyncio.create_task(self.tick(boundary))
            self._cycles.add(task)
            task.add_done_callback(self._cycles.discard)

    # =========================================================================
    # Priority Refresh
    # =========================================================================

    async def refresh_priorities(self) -> Optional[RunRecord]:
        """Refresh the ranking under its own RunRecord. Never raises on refresh failure."""
        if self._refreshing:
            logger.info("Priority refresh already in progress")
            return None

        self._refreshing = True
        record = RunRecord(
            run_id=uuid.uuid4().hex,
            kind=RunKind.PRIORITY_REFRESH,
            mode=self.mode,
            started_at=self._clock(),
        )
        try:
            await self.run_repo.create(record)
            try:
                entries = await self.priorities.refresh(self.mode)
                record.assets_attempted = len(entries)
                record.assets_succeeded = len(entries)
                record.fully_attempted = True
                record.terminal_status = RunStatus.COMPLETED
            except asyncio.CancelledError:
                record.terminal_status = RunStatus.CANCELLED
                record.failure_detail = "cancelled"
                raise
            except Exception as e:
                record.terminal_status = RunStatus.FAILED
                record.failure_detail = f"{type(e).__name__}: {e}"
            finally:
                record.ended_at = self._clock()
                await self.run_repo.finalize(record)
                record_run(
                    record.kind.value,
                    record.terminal_status.value,
                    record.duration_seconds or 0.0,
                    record.assets_succeeded,
                    record.assets_failed,
                )
        finally:
            self._refreshing = False
        return record

    def _next_refresh_at(self, now: datetime) -> datetime:
        candidate = now.replace(hour=self.priority_refresh_hour, minute=0, second=0, microsecond=0)
        if candidate <= now:
            candidate += timedelta(days=1)
        return candidate

    async def _refresh_loop(self) -> None:
        while self._running:
            now = self._clock()
            await self._sleep((self._next_refresh_at(now) - now).total_seconds())
            try:
                await self.refresh_priorities()
            except asyncio.CancelledError:
                raise
            except Exception as e:
                logger.error(f"Priority refresh cycle failed: {type(e).__name__}: {e}")
