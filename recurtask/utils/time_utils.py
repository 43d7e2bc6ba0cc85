from __future__ import annotations

from datetime import datetime, timezone
from zoneinfo import ZoneInfo, ZoneInfoNotFoundError


def get_app_tz(name: str | None) -> ZoneInfo:
    try:
        return ZoneInfo(str(name or "UTC"))
    except (ZoneInfoNotFoundError, ValueError):
        return ZoneInfo("UTC")


def now_utc() -> datetime:
    # Stored timestamps are naive UTC.
    return datetime.now(timezone.utc).replace(tzinfo=None)


def as_aware_utc(dt_utc_naive: datetime) -> datetime:
    return dt_utc_naive.replace(tzinfo=timezone.utc)


def to_utc_naive(dt: datetime) -> datetime:
    """Drop tzinfo after converting aware datetimes to UTC; naive values pass through."""
    if dt.tzinfo is not None:
        return dt.astimezone(timezone.utc).replace(tzinfo=None)
    return dt


def to_local(dt_utc_naive: datetime, tz: ZoneInfo) -> datetime:
    return as_aware_utc(to_utc_naive(dt_utc_naive)).astimezone(tz)


def from_local_to_utc_naive(dt_local_naive: datetime, tz: ZoneInfo) -> datetime:
    aware_local = dt_local_naive.replace(tzinfo=tz)
    aware_utc = aware_local.astimezone(timezone.utc)
    return aware_utc.replace(tzinfo=None)


def normalize_datetime_to_utc_naive(dt: datetime, tz: ZoneInfo) -> datetime:
    """Normalize a datetime to naive UTC.

    - If `dt` is timezone-aware, convert to UTC and drop tzinfo.
    - If `dt` is naive, interpret it in the app timezone and convert to UTC.
    """
    if dt.tzinfo is not None:
        return dt.astimezone(timezone.utc).replace(tzinfo=None)
    return from_local_to_utc_naive(dt, tz)


def format_dt_display(dt_utc_naive: datetime, tz: ZoneInfo) -> str:
    local = to_local(dt_utc_naive, tz)
    return local.strftime("%Y-%m-%d %H:%M")
