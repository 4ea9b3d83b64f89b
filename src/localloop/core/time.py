"""
Time parsing and timezone normalization.

Authority timestamps (`invited_at`, `vouch_code_expires_at`, ...) arrive as ISO-8601
strings. Everything is compared as timezone-aware datetimes; naive values are
treated as UTC because that is what the backend stores.
"""

from __future__ import annotations

from datetime import datetime, timezone
from zoneinfo import ZoneInfo


def utc_now() -> datetime:
    """Current time as an aware UTC datetime."""
    return datetime.now(timezone.utc)


def ensure_tz(dt: datetime, tz: str = "UTC") -> datetime:
    """Ensure `dt` has tzinfo; attach `tz` if naive."""
    if dt.tzinfo is None:
        return dt.replace(tzinfo=ZoneInfo(tz))
    return dt


def parse_datetime(value: str, tz: str = "UTC") -> datetime:
    """Parse ISO-8601 datetime string and ensure tzinfo is present.

    Notes:
    - Accepts a trailing `Z` (UTC) and converts it to `+00:00` for `fromisoformat`.
    - If the parsed value is naive, the provided `tz` is attached.
    """
    value = value.strip()
    if value.endswith("Z"):
        value = value[:-1] + "+00:00"
    dt = datetime.fromisoformat(value)
    return ensure_tz(dt, tz)


def difference_in_minutes(later: datetime, earlier: datetime) -> int:
    """Whole minutes from `earlier` to `later`, truncated toward zero (may be negative)."""
    seconds = (ensure_tz(later) - ensure_tz(earlier)).total_seconds()
    return int(seconds / 60)
