"""
Snapshot Fetcher

Turns one batched upstream quote call into validated PriceSnapshots.

A subset failure never fails the batch: ids the upstream omitted and ids
whose quote fails validation come back in BatchResult.failed, next to the
snapshots of every id that succeeded. Only a failure of the call itself
propagates, so the rate limiter can classify and retry it.
"""

import logging
from datetime import datetime
from typing import Callable, Optional

from ..connectors.base import MarketDataSource
from ..core.buckets import utc_now
from ..core.constants import CLOCK_SKEW_TOLERANCE_SECONDS, MISSING_FROM_RESPONSE
from ..core.errors import SnapshotValidationError
from ..core.types import BatchResult, Granularity
from ..core.validation import build_snapshot, validate_snapshot

logger = logging.getLogger(__name__)


class SnapshotFetcher:
    """Fetches one batch of quotes and turns them into bucketed snapshots."""

    def __init__(
        self,
        source: MarketDataSource,
        clock_skew_tolerance_seconds: float = CLOCK_SKEW_TOLERANCE_SECONDS,
        clock: Callable[[], datetime] = utc_now,
    ):
        self.source = source
        self.clock_skew_tolerance_seconds = clock_skew_tolerance_seconds
        self._clock = clock

    async def fetch(
        self,
        asset_ids: list[str],
        bucket_timestamp: datetime,
        ranks: Optional[dict[str, int]] = None,
        granularity: Granularity = Granularity.MINUTE,
    ) -> BatchResult:
        """
        Fetch and validate one batch.

        Returns:
            BatchResult where len(snapshots) + len(failed) == len(unique ids)

        Raises:
            ValueError: more ids than one upstream call accepts
            Any upstream error of the call itself
        """
        ids = list(dict.fromkeys(asset_ids))
        if len(ids) > self.source.max_ids_per_call:
            raise ValueError(f"Batch of {len(ids)} exceeds {self.source.max_ids_per_call} ids per call")
        if not ids:
            return BatchResult()

        quotes = await self.source.fetch_quotes(ids)
        now = self._clock()
        ranks = ranks or {}

        result = BatchResult()
        for asset_id in ids:
            quote = quotes.get(asset_id)
            if quote is None:
                result.failed[asset_id] = MISSING_FROM_RESPONSE
                continue
            try:
                snapshot = build_snapshot(
                    asset_id,
                    quote,
                    bucket_timestamp=bucket_timestamp,
                    now=now,
                    rank=ranks.get(asset_id),
                    granularity=granularity,
                )
                validate_snapshot(snapshot, now, self.clock_skew_tolerance_seconds)
            except SnapshotValidationError as e:
                logger.warning(f"Rejected snapshot for {asset_id}: {e.reason}")
                result.failed[asset_id] = e.reason
                continue
            result.snapshots.append(snapshot)

        if result.failed:
            logger.debug(
                f"Batch of {len(ids)}: {len(result.snapshots)} ok, {len(result.failed)} failed"
            )
        return result
