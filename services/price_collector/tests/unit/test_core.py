"""
Unit tests for price collector core modules.

Tests cover:
- types: Model behaviour (keys, rebucketing, run coverage)
- constants: Scope sizes and cascade wiring
- buckets: Flooring, stepping and closing across granularities
- validation: Snapshot construction and rejection
"""

from datetime import datetime, timedelta, timezone
from decimal import Decimal

import pytest

from services.price_collector.core.buckets import (
    ensure_utc,
    floor_to_bucket,
    floor_to_minute,
    is_closed,
    iter_buckets,
    last_closed_bucket,
    next_bucket,
    previous_bucket,
)
from services.price_collector.core.constants import (
    CASCADE_ORDER,
    DEFAULT_RETENTION,
    ROLLUP_SOURCES,
    SNAPSHOT_TABLES,
    UPSTREAM_MAX_IDS_PER_CALL,
    get_scope_size,
)
from services.price_collector.core.errors import SnapshotValidationError
from services.price_collector.core.types import (
    BatchResult,
    CollectionMode,
    Granularity,
    PriceSnapshot,
    RunKind,
    RunRecord,
    RunStatus,
)
from services.price_collector.core.validation import build_snapshot, validate_snapshot

UTC = timezone.utc
NOW = datetime(2025, 1, 8, 13, 47, 22, 500000, tzinfo=UTC)  # Wednesday


def _snapshot(**overrides) -> PriceSnapshot:
    data = {
        "asset_id": "bitcoin",
        "granularity": Granularity.MINUTE,
        "bucket_timestamp": datetime(2025, 1, 8, 13, 47, tzinfo=UTC),
        "price": Decimal("97000.5"),
        "captured_at": NOW,
    }
    data.update(overrides)
    return PriceSnapshot(**data)


# =============================================================================
# Types Tests
# =============================================================================

class TestTypes:
    """Test core type definitions."""

    def test_snapshot_key(self):
        snapshot = _snapshot()
        assert snapshot.key == ("bitcoin", Granularity.MINUTE, datetime(2025, 1, 8, 13, 47, tzinfo=UTC))

    def test_rebucket_keeps_values(self):
        snapshot = _snapshot(market_cap=Decimal("1.9e12"), rank_at_capture=1)
        hourly = snapshot.rebucket(Granularity.HOUR, datetime(2025, 1, 8, 13, 0, tzinfo=UTC))

        assert hourly.granularity == Granularity.HOUR
        assert hourly.bucket_timestamp == datetime(2025, 1, 8, 13, 0, tzinfo=UTC)
        assert hourly.price == snapshot.price
        assert hourly.market_cap == snapshot.market_cap
        assert hourly.captured_at == snapshot.captured_at
        # Original untouched
        assert snapshot.granularity == Granularity.MINUTE

    def test_batch_result_ids(self):
        result = BatchResult(snapshots=[_snapshot()], failed={"tether": "missing_from_response"})
        assert result.succeeded_ids == ["bitcoin"]
        assert result.failed_ids == ["tether"]

    def test_run_status_terminal(self):
        assert not RunStatus.RUNNING.is_terminal
        assert RunStatus.COMPLETED.is_terminal
        assert RunStatus.FAILED.is_terminal
        assert RunStatus.CANCELLED.is_terminal

    def test_run_record_coverage(self):
        record = RunRecord(run_id="r1", kind=RunKind.SCHEDULED, started_at=NOW)
        assert not record.is_terminal
        assert not record.covers_fully
        assert record.duration_seconds is None

        record.terminal_status = RunStatus.COMPLETED
        record.fully_attempted = True
        record.ended_at = NOW + timedelta(seconds=42)
        assert record.covers_fully
        assert record.duration_seconds == 42

        # Completed within tolerance still leaves a gap for the failed assets
        record.assets_failed = 1
        assert not record.covers_fully

    def test_run_kind_values(self):
        assert RunKind.GAP_RECOVERY.value == "gap-recovery"
        assert RunKind.PRIORITY_REFRESH.value == "priority-refresh"


# =============================================================================
# Constants Tests
# =============================================================================

class TestConstants:
    """Test that scope and cascade constants hold their values."""

    def test_upstream_batch_limit(self):
        assert UPSTREAM_MAX_IDS_PER_CALL == 250

    @pytest.mark.parametrize(
        "mode, size",
        [
            (CollectionMode.TOP_10, 10),
            (CollectionMode.TOP_100, 100),
            (CollectionMode.TOP_250, 250),
            (CollectionMode.TOP_1000, 1000),
            (CollectionMode.ALL, None),
        ],
    )
    def test_scope_sizes(self, mode, size):
        assert get_scope_size(mode) == size

    def test_cascade_wiring(self):
        assert CASCADE_ORDER == (Granularity.HOUR, Granularity.DAY, Granularity.WEEK, Granularity.MONTH)
        assert ROLLUP_SOURCES[Granularity.HOUR] == Granularity.MINUTE
        assert ROLLUP_SOURCES[Granularity.DAY] == Granularity.HOUR
        assert ROLLUP_SOURCES[Granularity.WEEK] == Granularity.DAY
        assert ROLLUP_SOURCES[Granularity.MONTH] == Granularity.DAY

    def test_default_retention(self):
        assert DEFAULT_RETENTION[Granularity.MINUTE] == timedelta(minutes=60)
        assert DEFAULT_RETENTION[Granularity.HOUR] == timedelta(hours=24)
        assert DEFAULT_RETENTION[Granularity.DAY] == timedelta(days=7)
        assert DEFAULT_RETENTION[Granularity.WEEK] == timedelta(weeks=52)
        assert DEFAULT_RETENTION[Granularity.MONTH] is None

    def test_one_table_per_store(self):
        assert len(set(SNAPSHOT_TABLES.values())) == len(Granularity)
        assert SNAPSHOT_TABLES[Granularity.MINUTE] == "price_snapshots_minute"


# =============================================================================
# Bucket Tests
# =============================================================================

class TestBuckets:
    """Test bucket arithmetic."""

    def test_ensure_utc(self):
        naive = datetime(2025, 1, 8, 12, 0)
        assert ensure_utc(naive).tzinfo == UTC

        plus_two = timezone(timedelta(hours=2))
        converted = ensure_utc(datetime(2025, 1, 8, 14, 0, tzinfo=plus_two))
        assert converted == datetime(2025, 1, 8, 12, 0, tzinfo=UTC)
        assert converted.tzinfo == UTC

    def test_floor_to_minute(self):
        assert floor_to_minute(NOW) == datetime(2025, 1, 8, 13, 47, tzinfo=UTC)

    @pytest.mark.parametrize(
        "granularity, expected",
        [
            (Granularity.MINUTE, datetime(2025, 1, 8, 13, 47, tzinfo=UTC)),
            (Granularity.HOUR, datetime(2025, 1, 8, 13, 0, tzinfo=UTC)),
            (Granularity.DAY, datetime(2025, 1, 8, tzinfo=UTC)),
            (Granularity.WEEK, datetime(2025, 1, 6, tzinfo=UTC)),  # Monday
            (Granularity.MONTH, datetime(2025, 1, 1, tzinfo=UTC)),
        ],
    )
    def test_floor_to_bucket(self, granularity, expected):
        assert floor_to_bucket(NOW, granularity) == expected

    def test_week_floor_on_monday_and_sunday(self):
        monday = datetime(2025, 1, 6, 0, 0, tzinfo=UTC)
        sunday = datetime(2025, 1, 12, 23, 59, tzinfo=UTC)
        assert floor_to_bucket(monday, Granularity.WEEK) == monday
        assert floor_to_bucket(sunday, Granularity.WEEK) == monday

    def test_next_bucket_month_rolls_year(self):
        december = datetime(2024, 12, 1, tzinfo=UTC)
        assert next_bucket(december, Granularity.MONTH) == datetime(2025, 1, 1, tzinfo=UTC)
        assert previous_bucket(datetime(2025, 1, 1, tzinfo=UTC), Granularity.MONTH) == december

    def test_previous_bucket_fixed_width(self):
        hour = datetime(2025, 1, 8, 0, 0, tzinfo=UTC)
        assert previous_bucket(hour, Granularity.HOUR) == datetime(2025, 1, 7, 23, 0, tzinfo=UTC)
        assert previous_bucket(hour, Granularity.WEEK) == datetime(2025, 1, 1, tzinfo=UTC)

    def test_last_closed_bucket(self):
        assert last_closed_bucket(NOW, Granularity.HOUR) == datetime(2025, 1, 8, 12, 0, tzinfo=UTC)
        assert last_closed_bucket(NOW, Granularity.DAY) == datetime(2025, 1, 7, tzinfo=UTC)
        assert last_closed_bucket(NOW, Granularity.WEEK) == datetime(2024, 12, 30, tzinfo=UTC)
        assert last_closed_bucket(NOW, Granularity.MONTH) == datetime(2024, 12, 1, tzinfo=UTC)

    def test_is_closed(self):
        hour = datetime(2025, 1, 8, 13, 0, tzinfo=UTC)
        assert not is_closed(hour, Granularity.HOUR, NOW)
        assert is_closed(hour, Granularity.HOUR, datetime(2025, 1, 8, 14, 0, tzinfo=UTC))

    def test_iter_buckets_end_exclusive(self):
        start = datetime(2025, 1, 8, 13, 0, 30, tzinfo=UTC)
        end = datetime(2025, 1, 8, 13, 3, tzinfo=UTC)
        assert list(iter_buckets(start, end, Granularity.MINUTE)) == [
            datetime(2025, 1, 8, 13, 0, tzinfo=UTC),
            datetime(2025, 1, 8, 13, 1, tzinfo=UTC),
            datetime(2025, 1, 8, 13, 2, tzinfo=UTC),
        ]

    def test_iter_buckets_empty(self):
        assert list(iter_buckets(NOW, NOW - timedelta(hours=1), Granularity.HOUR)) == []


# =============================================================================
# Validation Tests
# =============================================================================

class TestValidation:
    """Test snapshot construction and validation."""

    BUCKET = datetime(2025, 1, 8, 13, 47, tzinfo=UTC)

    def test_build_snapshot(self):
        quote = {
            "price": 97000.5,
            "market_cap": "1900000000000",
            "total_volume": 35e9,
            "price_change_24h": -1.25,
            "last_updated_at": int(NOW.timestamp()),
        }
        snapshot = build_snapshot("bitcoin", quote, self.BUCKET, NOW, rank=1)

        assert snapshot.price == Decimal("97000.5")
        assert snapshot.market_cap == Decimal("1900000000000")
        assert snapshot.price_change_24h == Decimal("-1.25")
        assert snapshot.rank_at_capture == 1
        assert snapshot.granularity == Granularity.MINUTE
        assert snapshot.captured_at == datetime(2025, 1, 8, 13, 47, 22, tzinfo=UTC)

    def test_missing_secondary_metrics_are_null(self):
        snapshot = build_snapshot("bitcoin", {"price": "1"}, self.BUCKET, NOW)
        assert snapshot.market_cap is None
        assert snapshot.total_volume is None
        assert snapshot.price_change_24h is None
        # No upstream timestamp falls back to now
        assert snapshot.captured_at == NOW

    def test_missing_price_rejected(self):
        with pytest.raises(SnapshotValidationError) as exc_info:
            build_snapshot("bitcoin", {"market_cap": 1}, self.BUCKET, NOW)
        assert exc_info.value.asset_id == "bitcoin"
        assert "price missing" in exc_info.value.reason

    @pytest.mark.parametrize("price", ["abc", "NaN", "Infinity"])
    def test_non_numeric_price_rejected(self, price):
        with pytest.raises(SnapshotValidationError):
            build_snapshot("bitcoin", {"price": price}, self.BUCKET, NOW)

    def test_bad_timestamp_rejected(self):
        with pytest.raises(SnapshotValidationError, match="captured_at"):
            build_snapshot("bitcoin", {"price": 1, "last_updated_at": "yesterday"}, self.BUCKET, NOW)

    @pytest.mark.parametrize("price", [Decimal("0"), Decimal("-3")])
    def test_non_positive_price_rejected(self, price):
        with pytest.raises(SnapshotValidationError, match="non-positive"):
            validate_snapshot(_snapshot(price=price), NOW, 300)

    def test_clock_skew(self):
        validate_snapshot(_snapshot(captured_at=NOW - timedelta(seconds=299)), NOW, 300)
        with pytest.raises(SnapshotValidationError, match="from now"):
            validate_snapshot(_snapshot(captured_at=NOW - timedelta(seconds=301)), NOW, 300)
        with pytest.raises(SnapshotValidationError):
            validate_snapshot(_snapshot(captured_at=NOW + timedelta(minutes=10)), NOW, 300)
