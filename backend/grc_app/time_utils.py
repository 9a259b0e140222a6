from __future__ import annotations

from datetime import date, datetime, timezone
from typing import Optional
from zoneinfo import ZoneInfo, ZoneInfoNotFoundError


def utcnow() -> datetime:
    """Server-side 'now' in UTC (naive, canonical)."""
    return datetime.now(timezone.utc).replace(tzinfo=None)


def to_utc_z(dt: Optional[datetime]) -> Optional[str]:
    """
    Serializes datetime to ISO-8601 with trailing 'Z'.
    If dt is naive, it is treated as UTC.
    """
    if dt is None:
        return None
    if dt.tzinfo is None:
        dt = dt.replace(tzinfo=timezone.utc)
    dt_utc = dt.astimezone(timezone.utc).replace(microsecond=0)
    return dt_utc.isoformat().replace("+00:00", "Z")


def get_zone(tz_name: Optional[str]) -> ZoneInfo:
    """Resolve an IANA zone name; unknown or empty names fall back to UTC."""
    if not tz_name:
        return ZoneInfo("UTC")
    try:
        return ZoneInfo(tz_name)
    except (ZoneInfoNotFoundError, ValueError):
        return ZoneInfo("UTC")


def local_date(at: datetime, tz_name: Optional[str]) -> date:
    """Calendar date of a UTC-naive instant in the given time zone."""
    aware = at.replace(tzinfo=timezone.utc) if at.tzinfo is None else at
    return aware.astimezone(get_zone(tz_name)).date()


def local_month(at: datetime, tz_name: Optional[str]) -> tuple[int, int]:
    """(year, month) of a UTC-naive instant in the given time zone."""
    d = local_date(at, tz_name)
    return d.year, d.month


def next_month(year: int, month: int) -> tuple[int, int]:
    if month == 12:
        return year + 1, 1
    return year, month + 1


def month_end_utc(year: int, month: int, tz_name: Optional[str]) -> datetime:
    """UTC-naive instant at which the given local calendar month closes."""
    ny, nm = next_month(year, month)
    start_next = datetime(ny, nm, 1, tzinfo=get_zone(tz_name))
    return start_next.astimezone(timezone.utc).replace(tzinfo=None)
