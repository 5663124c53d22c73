from datetime import datetime, date, time, timedelta, timezone as dt_timezone
from typing import Optional
from zoneinfo import ZoneInfo, ZoneInfoNotFoundError

from stronghold.core.config import settings


def get_zoneinfo(tz_name: Optional[str] = None) -> Optional[ZoneInfo]:
    tz_name = tz_name or getattr(settings, "DEFAULT_TIMEZONE", None)
    if not tz_name:
        return None
    try:
        return ZoneInfo(tz_name)
    except (ZoneInfoNotFoundError, ValueError):
        return None


def now_local(tz_name: Optional[str] = None) -> datetime:
    tz = get_zoneinfo(tz_name)
    return datetime.now(tz) if tz else datetime.now(dt_timezone.utc)


def today_local(tz_name: Optional[str] = None) -> date:
    """Date-truncated "today" in the configured zone (UTC when unset)."""
    return now_local(tz_name).date()


def day_bounds(day: date) -> tuple[datetime, datetime]:
    """
    Half-open [start, end) naive datetime range covering one calendar day.

    Used for exact-day matching: a column whose value truncated to the day
    equals `day` satisfies start <= value < end.
    """
    start = datetime.combine(day, time.min)
    return start, start + timedelta(days=1)
