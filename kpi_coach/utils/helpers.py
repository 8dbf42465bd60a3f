"""
Helper utilities
"""
from datetime import date, datetime, timedelta
from typing import Any, Optional, Tuple
import hashlib
import json
import re

import pytz

from kpi_coach.config import get_settings

_YMD_RE = re.compile(r"^\d{4}-\d{2}-\d{2}$")
_YM_RE = re.compile(r"^\d{4}-\d{2}$")


def hash_data(data: Any) -> str:
    """Create a stable sha256 hash of data for deduplication (key order independent)"""
    data_str = json.dumps(data, sort_keys=True, separators=(",", ":"), ensure_ascii=False, default=str)
    return hashlib.sha256(data_str.encode()).hexdigest()


def business_tz():
    return pytz.timezone(get_settings().business_timezone)


def today_key(now: Optional[datetime] = None) -> str:
    """Today's date as YYYY-MM-DD in the business timezone."""
    now = now or datetime.utcnow()
    local = pytz.UTC.localize(now).astimezone(business_tz())
    return local.strftime("%Y-%m-%d")


def is_ymd(value: Optional[str]) -> bool:
    if not value or not _YMD_RE.match(value):
        return False
    try:
        datetime.strptime(value, "%Y-%m-%d")
    except ValueError:
        return False
    return True


def is_ym(value: Optional[str]) -> bool:
    if not value or not _YM_RE.match(value):
        return False
    try:
        datetime.strptime(value, "%Y-%m")
    except ValueError:
        return False
    return True


def parse_date_key(date_key: str) -> date:
    return datetime.strptime(date_key, "%Y-%m-%d").date()


def _local_midnight_as_utc(day: date) -> datetime:
    """Local midnight of `day` converted to a naive UTC datetime (storage convention)."""
    local = business_tz().localize(datetime(day.year, day.month, day.day))
    return local.astimezone(pytz.UTC).replace(tzinfo=None)


def day_range(date_key: str, days: int = 1) -> Tuple[datetime, datetime]:
    """[start, end) of `days` local days starting at date_key, as naive UTC."""
    day = parse_date_key(date_key)
    return _local_midnight_as_utc(day), _local_midnight_as_utc(day + timedelta(days=days))


def lookback_range(date_key: str, days: int) -> Tuple[datetime, datetime]:
    """The `days` local days ending with date_key (inclusive), as naive UTC."""
    day = parse_date_key(date_key)
    start = day - timedelta(days=days - 1)
    return _local_midnight_as_utc(start), _local_midnight_as_utc(day + timedelta(days=1))


def month_key_of(date_key: str) -> str:
    return date_key[:7]


def week_start(date_key: str) -> date:
    """The Sunday on or before date_key."""
    day = parse_date_key(date_key)
    return day - timedelta(days=(day.weekday() + 1) % 7)


def month_start(day: date) -> date:
    return day.replace(day=1)


def previous_month_start(day: date) -> date:
    return month_start(month_start(day) - timedelta(days=1))


def local_range(start: date, end: date) -> Tuple[datetime, datetime]:
    """[start, end) between two local days, as naive UTC."""
    return _local_midnight_as_utc(start), _local_midnight_as_utc(end)


def pct_change(current: int, previous: int) -> int:
    """Whole-percent change; growth from zero counts as 100."""
    if previous == 0:
        return 100 if current > 0 else 0
    return round((current - previous) / previous * 100)
