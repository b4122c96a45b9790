from __future__ import annotations

from datetime import datetime, timezone
from typing import Optional
from zoneinfo import ZoneInfo


def utcnow() -> datetime:
    """Server-side 'now' in UTC (naive, canonical)."""
    return datetime.now(timezone.utc).replace(tzinfo=None)


def as_utc_naive(dt: datetime) -> datetime:
    """Normalize an aware datetime to UTC-naive; naive values are assumed UTC."""
    if dt.tzinfo is None:
        return dt
    return dt.astimezone(timezone.utc).replace(tzinfo=None)


def parse_iso_datetime(value: Optional[str]) -> Optional[datetime]:
    """
    Parse an ISO-8601 datetime string and normalize to UTC-naive datetime.

    - None / "" -> None
    - naive input is interpreted as UTC
    - "...Z" or "...+/-HH:MM" is converted to UTC and tzinfo is stripped
    """
    if value is None:
        return None
    s = value.strip()
    if not s:
        return None

    if s.endswith("Z"):
        s = s[:-1] + "+00:00"

    return as_utc_naive(datetime.fromisoformat(s))


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


def to_store_local(dt: datetime, tz_name: Optional[str]) -> datetime:
    """Convert a UTC-naive instant to wall-clock time in the store's timezone."""
    aware = dt.replace(tzinfo=timezone.utc) if dt.tzinfo is None else dt
    if not tz_name or tz_name.upper() == "UTC":
        return aware.astimezone(timezone.utc)
    return aware.astimezone(ZoneInfo(tz_name))


def minutes_between(start: datetime, end: datetime) -> float:
    return (end - start).total_seconds() / 60.0
