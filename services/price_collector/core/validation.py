"""
Snapshot validation.

Converts a normalized upstream quote into a PriceSnapshot and rejects
implausible data. A rejection is an asset-level failure, never a batch
failure and never retried.
"""

from datetime import datetime, timedelta, timezone
from decimal import Decimal, InvalidOperation
from typing import Any, Optional

from .errors import SnapshotValidationError
from .types import Granularity, PriceSnapshot


def _to_decimal(asset_id: str, field: str, value: Any, required: bool = False) -> Optional[Decimal]:
    if value is None:
        if required:
            raise SnapshotValidationError(asset_id, f"{field} missing")
        return None
    try:
        result = Decimal(str(value))
    except (InvalidOperation, ValueError, TypeError):
        raise SnapshotValidationError(asset_id, f"{field} not numeric: {value!r}")
    if not result.is_finite():
        raise SnapshotValidationError(asset_id, f"{field} not finite: {value!r}")
    return result


def _to_datetime(asset_id: str, value: Any) -> Optional[datetime]:
    if value is None:
        return None
    if isinstance(value, datetime):
        return value if value.tzinfo else value.replace(tzinfo=timezone.utc)
    try:
        return datetime.fromtimestamp(float(value), tz=timezone.utc)
    except (ValueError, TypeError, OverflowError, OSError):
        raise SnapshotValidationError(asset_id, f"captured_at not a timestamp: {value!r}")


def build_snapshot(
    asset_id: str,
    quote: dict[str, Any],
    bucket_timestamp: datetime,
    now: datetime,
    rank: Optional[int] = None,
    granularity: Granularity = Granularity.MINUTE,
) -> PriceSnapshot:
    """
    Build a snapshot from a normalized quote dict.

    Quote keys: price, market_cap, total_volume, price_change_24h,
    last_updated_at (unix seconds). A missing last_updated_at falls back
    to `now`.
    """
    captured_at = _to_datetime(asset_id, quote.get("last_updated_at")) or now
    return PriceSnapshot(
        asset_id=asset_id,
        granularity=granularity,
        bucket_timestamp=bucket_timestamp,
        price=_to_decimal(asset_id, "price", quote.get("price"), required=True),
        market_cap=_to_decimal(asset_id, "market_cap", quote.get("market_cap")),
        total_volume=_to_decimal(asset_id, "total_volume", quote.get("total_volume")),
        price_change_24h=_to_decimal(asset_id, "price_change_24h", quote.get("price_change_24h")),
        rank_at_capture=rank,
        captured_at=captured_at,
    )


def validate_snapshot(snapshot: PriceSnapshot, now: datetime, skew_tolerance_seconds: float) -> None:
    """
    Reject non-positive prices and captured_at outside now +/- tolerance.

    Raises:
        SnapshotValidationError
    """
    if snapshot.price <= 0:
        raise SnapshotValidationError(snapshot.asset_id, f"non-positive price {snapshot.price}")

    skew = abs(snapshot.captured_at - now)
    if skew > timedelta(seconds=skew_tolerance_seconds):
        raise SnapshotValidationError(
            snapshot.asset_id,
            f"captured_at {snapshot.captured_at.isoformat()} is {skew.total_seconds():.0f}s from now",
        )
