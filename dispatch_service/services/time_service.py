from __future__ import annotations

from datetime import date, datetime, time, timezone
from typing import Optional

UTC = timezone.utc


def now_utc() -> datetime:
    return datetime.now(UTC)


def as_utc(value: Optional[datetime]) -> Optional[datetime]:
    """Attach UTC to naive datetimes read back from drivers that drop tzinfo."""
    if value is None:
        return None
    if value.tzinfo is None:
        return value.replace(tzinfo=UTC)
    return value.astimezone(UTC)


def combine_preferred(
    preferred_date: Optional[date], preferred_time: Optional[time]
) -> Optional[datetime]:
    """Return the preferred visit start in UTC, or None when no date is set."""
    if preferred_date is None:
        return None
    return datetime.combine(preferred_date, preferred_time or time(0, 0), tzinfo=UTC)
