from datetime import date, datetime, timedelta
from enum import Enum
from typing import Optional
from zoneinfo import ZoneInfo

from config import get_settings


class Granularity(str, Enum):
    daily = "daily"
    weekly = "weekly"
    monthly = "monthly"
    yearly = "yearly"


# Fixed lookback, in buckets, for the revenue vs. expenses series.
REVENUE_LOOKBACK: dict[Granularity, int] = {
    Granularity.daily: 30,
    Granularity.weekly: 12,
    Granularity.monthly: 12,
    Granularity.yearly: 5,
}


def local_today() -> date:
    settings = get_settings()
    tz = ZoneInfo(settings.timezone)
    return datetime.now(tz).date()


def parse_granularity(value: Optional[str], default: Granularity) -> Granularity:
    if not value:
        return default
    try:
        return Granularity(value)
    except ValueError as exc:
        raise ValueError(f"Unsupported granularity: {value}") from exc


def period_start(d: date, granularity: Granularity) -> date:
    if granularity == Granularity.daily:
        return d
    if granularity == Granularity.weekly:
        return d - timedelta(days=d.weekday())
    if granularity == Granularity.monthly:
        return d.replace(day=1)
    return date(d.year, 1, 1)


def shift_period(start: date, granularity: Granularity, count: int) -> date:
    if granularity == Granularity.daily:
        return start + timedelta(days=count)
    if granularity == Granularity.weekly:
        return start + timedelta(weeks=count)
    if granularity == Granularity.monthly:
        month_index = (start.year * 12) + (start.month - 1) + count
        return date(month_index // 12, (month_index % 12) + 1, 1)
    return date(start.year + count, 1, 1)


def bucket_starts(today: date, granularity: Granularity, count: int) -> list[date]:
    """Oldest-first starts of the ``count`` buckets ending with the one
    containing ``today``."""
    if count <= 0:
        return []
    current = period_start(today, granularity)
    return [shift_period(current, granularity, -i) for i in range(count - 1, -1, -1)]


def label_for(start: date, granularity: Granularity) -> str:
    if granularity == Granularity.monthly:
        return f"{start.year:04d}-{start.month:02d}"
    if granularity == Granularity.yearly:
        return f"{start.year:04d}"
    return start.isoformat()
