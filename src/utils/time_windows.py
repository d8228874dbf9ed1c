"""
Time window utilities for sync and reconciliation jobs.

Provides helpers for computing sync windows, splitting them into upstream-sized
sub-windows, and converting between datetimes, epoch seconds and UTC calendar days.
"""

import logging
from datetime import UTC, date, datetime, time, timedelta
from typing import NamedTuple

logger = logging.getLogger(__name__)

FULL_SYNC_LOOKBACK_DAYS = 365
FIRST_SYNC_LOOKBACK_DAYS = 90
INCREMENTAL_OVERLAP = timedelta(days=1)

# TikTok limits the create_time range of a single order search
ORDER_SEARCH_MAX_RANGE = timedelta(days=30)


class SyncWindow(NamedTuple):
    """Half-open UTC time range [start, end)."""

    start: datetime
    end: datetime

    @property
    def start_ts(self) -> int:
        return to_epoch(self.start)

    @property
    def end_ts(self) -> int:
        return to_epoch(self.end)

    @property
    def start_date(self) -> date:
        return self.start.date()

    @property
    def end_date(self) -> date:
        return self.end.date()


def utc_now() -> datetime:
    """Get current UTC datetime."""
    return datetime.now(UTC)


def ensure_utc(dt: datetime | None) -> datetime | None:
    """Attach UTC to naive datetimes and convert aware ones to UTC."""
    if dt is None:
        return None
    if not dt.tzinfo:
        return dt.replace(tzinfo=UTC)
    return dt.astimezone(UTC)


def to_epoch(dt: datetime) -> int:
    """Convert a datetime to whole epoch seconds."""
    return int(ensure_utc(dt).timestamp())


def from_epoch(value: int | float | str | None) -> datetime | None:
    """Convert epoch seconds from an upstream payload to a UTC datetime."""
    if value in (None, "", 0, "0"):
        return None
    try:
        return datetime.fromtimestamp(int(float(value)), UTC)
    except (TypeError, ValueError, OverflowError):
        logger.warning(f"Could not parse epoch timestamp: {value!r}")
        return None


def utc_day(dt: datetime) -> date:
    """Calendar day of a timestamp in UTC terms."""
    return ensure_utc(dt).date()


def day_window(start_day: date, end_day: date) -> SyncWindow:
    """Window covering whole UTC days from start_day through end_day inclusive."""
    return SyncWindow(
        start=datetime.combine(start_day, time.min, tzinfo=UTC),
        end=datetime.combine(end_day + timedelta(days=1), time.min, tzinfo=UTC),
    )


def compute_sync_window(
    last_sync_at: datetime | None = None,
    full_sync: bool = False,
    now: datetime | None = None,
) -> SyncWindow:
    """
    Compute the time window for a connection sync.

    Args:
        last_sync_at: Last successful sync timestamp of the connection
        full_sync: Re-pull the whole year instead of an incremental window
        now: Override for the window end (defaults to current UTC time)

    Returns:
        SyncWindow ending now

    Notes:
        - Full sync looks back 365 days
        - Incremental sync starts one day before last_sync_at
        - A connection that never synced looks back 90 days
    """
    end = ensure_utc(now) if now else utc_now()

    if full_sync:
        start = end - timedelta(days=FULL_SYNC_LOOKBACK_DAYS)
    elif last_sync_at:
        start = ensure_utc(last_sync_at) - INCREMENTAL_OVERLAP
    else:
        start = end - timedelta(days=FIRST_SYNC_LOOKBACK_DAYS)

    logger.debug(f"Computed sync window: {start} to {end}")
    return SyncWindow(start=start, end=end)


def split_window(window: SyncWindow, max_range: timedelta = ORDER_SEARCH_MAX_RANGE) -> list[SyncWindow]:
    """
    Split a window into consecutive sub-windows no longer than max_range.

    Example:
        # 70 days -> 30 + 30 + 10
        split_window(SyncWindow(jan_1, mar_12))
    """
    windows = []
    current = window.start

    while current < window.end:
        current_end = min(current + max_range, window.end)
        windows.append(SyncWindow(current, current_end))
        current = current_end

    return windows


def format_duration(duration: timedelta) -> str:
    """Format timedelta as human-readable string."""
    total_seconds = int(duration.total_seconds())

    if total_seconds < 60:
        return f"{total_seconds}s"
    elif total_seconds < 3600:
        minutes = total_seconds // 60
        seconds = total_seconds % 60
        return f"{minutes}m{seconds}s"
    elif total_seconds < 86400:
        hours = total_seconds // 3600
        minutes = (total_seconds % 3600) // 60
        return f"{hours}h{minutes}m"
    else:
        days = total_seconds // 86400
        hours = (total_seconds % 86400) // 3600
        return f"{days}d{hours}h"
