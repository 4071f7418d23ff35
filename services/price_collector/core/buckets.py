"""
Bucket arithmetic for the five granularities.

All timestamps are timezone-aware UTC datetimes. Weeks start on Monday.
"""

from datetime import datetime, timedelta, timezone
from typing import Iterator

from .types import Granularity


def utc_now() -> datetime:
    """Current time as an aware UTC datetime."""
    return datetime.now(timezone.utc)


def ensure_utc(ts: datetime) -> datetime:
    """Attach UTC to naive datetimes, convert aware ones."""
    if ts.tzinfo is None:
        return ts.replace(tzinfo=timezone.utc)
    return ts.astimezone(timezone.utc)


def floor_to_minute(ts: datetime) -> datetime:
    """Floor a timestamp to the start of its minute."""
    return ensure_utc(ts).replace(second=0, microsecond=0)


def floor_to_bucket(ts: datetime, granularity: Granularity) -> datetime:
    """Floor a timestamp to the start of its bucket."""
    ts = floor_to_minute(ts)
    if granularity == Granularity.MINUTE:
        return ts
    if granularity == Granularity.HOUR:
        return ts.replace(minute=0)
    day = ts.replace(hour=0, minute=0)
    if granularity == Granularity.DAY:
        return day
    if granularity == Granularity.WEEK:
        return day - timedelta(days=day.weekday())
    return day.replace(day=1)


def next_bucket(bucket_start: datetime, granularity: Granularity) -> datetime:
    """Start of the bucket following the one starting at bucket_start."""
    if granularity == Granularity.MINUTE:
        return bucket_start + timedelta(minutes=1)
    if granularity == Granularity.HOUR:
        return bucket_start + timedelta(hours=1)
    if granularity == Granularity.DAY:
        return bucket_start + timedelta(days=1)
    if granularity == Granularity.WEEK:
        return bucket_start + timedelta(weeks=1)
    if bucket_start.month == 12:
        return bucket_start.replace(year=bucket_start.year + 1, month=1)
    return bucket_start.replace(month=bucket_start.month + 1)


def previous_bucket(bucket_start: datetime, granularity: Granularity) -> datetime:
    """Start of the bucket preceding the one starting at bucket_start."""
    if granularity == Granularity.MONTH:
        if bucket_start.month == 1:
            return bucket_start.replace(year=bucket_start.year - 1, month=12)
        return bucket_start.replace(month=bucket_start.month - 1)
    width = next_bucket(bucket_start, granularity) - bucket_start
    return bucket_start - width


def last_closed_bucket(now: datetime, granularity: Granularity) -> datetime:
    """Start of the most recent bucket whose end is not after `now`."""
    return previous_bucket(floor_to_bucket(now, granularity), granularity)


def is_closed(bucket_start: datetime, granularity: Granularity, now: datetime) -> bool:
    return next_bucket(bucket_start, granularity) <= now


def iter_buckets(start: datetime, end: datetime, granularity: Granularity) -> Iterator[datetime]:
    """Yield bucket starts from floor(start) up to, not including, end."""
    current = floor_to_bucket(start, granularity)
    while current < end:
        yield current
        current = next_bucket(current, granularity)
