"""
Helper utilities
"""
from datetime import date, datetime, timedelta, timezone
from typing import Iterator, List, Optional, Tuple

import pytz
from dateutil import parser as date_parser


def utcnow() -> datetime:
    """Naive UTC timestamp, matching how DateTime columns are stored"""
    return datetime.now(timezone.utc).replace(tzinfo=None)


def tenant_today(tz_name: Optional[str] = None) -> date:
    """Current calendar day in the tenant's reporting timezone"""
    tz = pytz.timezone(tz_name or "UTC")
    return datetime.now(pytz.utc).astimezone(tz).date()


def parse_timestamp(value) -> Optional[datetime]:
    """Parse a platform timestamp into naive UTC"""
    if value is None or value == "":
        return None
    if isinstance(value, datetime):
        parsed = value
    else:
        parsed = date_parser.isoparse(str(value))
    if parsed.tzinfo is not None:
        parsed = parsed.astimezone(timezone.utc).replace(tzinfo=None)
    return parsed


def parse_day(value) -> Optional[date]:
    """Parse a YYYY-MM-DD (or full timestamp) into a date"""
    if value is None or value == "":
        return None
    if isinstance(value, datetime):
        return value.date()
    if isinstance(value, date):
        return value
    return date_parser.parse(str(value)).date()


def iter_days(start: date, end: date) -> Iterator[date]:
    """Yield every day in [start, end]"""
    current = start
    while current <= end:
        yield current
        current += timedelta(days=1)


def create_date_chunks(start: date, end: date, days_per_chunk: int) -> List[Tuple[date, date]]:
    """Split [start, end] into consecutive inclusive chunks, oldest first"""
    chunks = []
    current = start
    while current <= end:
        chunk_end = min(current + timedelta(days=days_per_chunk - 1), end)
        chunks.append((current, chunk_end))
        current = chunk_end + timedelta(days=1)
    return chunks


def month_chunks(end: date, months: int) -> List[Tuple[date, date]]:
    """Calendar-month ranges covering the last `months` months, newest first"""
    chunks = []
    month_start = end.replace(day=1)
    chunk_end = end
    for _ in range(months):
        chunks.append((month_start, chunk_end))
        chunk_end = month_start - timedelta(days=1)
        month_start = chunk_end.replace(day=1)
    return chunks


def chunk_list(lst: List, chunk_size: int) -> List[List]:
    """Split list into chunks"""
    return [lst[i:i + chunk_size] for i in range(0, len(lst), chunk_size)]


def safe_float(value, default: float = 0.0) -> float:
    """Coerce a platform numeric string to float"""
    try:
        return float(value) if value not in (None, "") else default
    except (TypeError, ValueError):
        return default


def safe_int(value, default: int = 0) -> int:
    """Coerce a platform numeric string to int"""
    try:
        return int(float(value)) if value not in (None, "") else default
    except (TypeError, ValueError):
        return default


def local_day(value: Optional[datetime], tz_name: Optional[str] = None) -> Optional[date]:
    """Calendar day of a naive-UTC timestamp in the tenant's timezone"""
    if value is None:
        return None
    tz = pytz.timezone(tz_name or "UTC")
    return pytz.utc.localize(value).astimezone(tz).date()


def day_bounds_utc(start: date, end: date, tz_name: Optional[str] = None) -> Tuple[datetime, datetime]:
    """[start 00:00, end+1 00:00) in the tenant's timezone, as aware UTC datetimes"""
    tz = pytz.timezone(tz_name or "UTC")
    lower = tz.localize(datetime.combine(start, datetime.min.time()))
    upper = tz.localize(datetime.combine(end + timedelta(days=1), datetime.min.time()))
    return lower.astimezone(pytz.utc), upper.astimezone(pytz.utc)
