"""
Timezone Utilities for SolarView

Samples are stored in UTC; calendar-day logic (aggregation, reports, export
filenames) runs in the owner's configured timezone. This module keeps the
engine-wide default timezone and the conversions between the two.
"""

import pytz
from datetime import date, datetime, timedelta
from typing import List, Tuple, Union
import logging

log = logging.getLogger(__name__)

UTC = pytz.UTC
CONFIGURED_TZ = None
_WARNING_LOGGED = False

TzLike = Union[str, pytz.BaseTzInfo, None]


def initialize_timezones(configured_timezone: str = "UTC"):
    """
    Set the engine-wide default timezone.
    Called once when configuration is loaded.
    """
    global CONFIGURED_TZ, _WARNING_LOGGED
    CONFIGURED_TZ = pytz.timezone(configured_timezone)
    _WARNING_LOGGED = False
    log.info(f"Configured timezone set to: {configured_timezone}")


def get_configured_timezone():
    """Get the configured default timezone object."""
    global _WARNING_LOGGED
    if CONFIGURED_TZ is None:
        if not _WARNING_LOGGED:
            log.warning("Timezones not initialized, using UTC. Timezones are initialized when configuration is loaded.")
            _WARNING_LOGGED = True
        return UTC
    return CONFIGURED_TZ


def resolve_timezone(tz: TzLike = None):
    """
    Turn a timezone name (or tz object, or None) into a pytz timezone.

    None falls back to the configured default. Unknown names raise
    pytz.UnknownTimeZoneError.
    """
    if tz is None:
        return get_configured_timezone()
    if isinstance(tz, str):
        return pytz.timezone(tz)
    return tz


def now_utc() -> datetime:
    """Get current time in UTC."""
    return datetime.now(UTC)


def ensure_utc(dt: datetime) -> datetime:
    """
    Convert any datetime to UTC.
    Naive datetimes are taken to be UTC already.
    """
    if dt.tzinfo is None:
        return UTC.localize(dt)
    return dt.astimezone(UTC)


def truncate_to_second(dt: datetime) -> datetime:
    return ensure_utc(dt).replace(microsecond=0)


def to_local(dt: datetime, tz: TzLike = None) -> datetime:
    """Convert a datetime to the given (or configured) timezone."""
    return ensure_utc(dt).astimezone(resolve_timezone(tz))


def local_date(dt: datetime, tz: TzLike = None) -> date:
    return to_local(dt, tz).date()


def local_midnight(day: date, tz: TzLike = None) -> datetime:
    """Start of a local calendar day as an aware datetime in that timezone."""
    zone = resolve_timezone(tz)
    return zone.localize(datetime(day.year, day.month, day.day))


def days_in_window(start: datetime, end: datetime, tz: TzLike = None) -> List[date]:
    """
    Local calendar days intersecting the half-open interval [start, end).

    Returns an empty list when the interval is empty.
    """
    if ensure_utc(end) <= ensure_utc(start):
        return []
    first = local_date(start, tz)
    last = local_date(ensure_utc(end) - timedelta(microseconds=1), tz)
    days = []
    current = first
    while current <= last:
        days.append(current)
        current += timedelta(days=1)
    return days


def month_window(year: int, month: int, tz: TzLike = None) -> Tuple[datetime, datetime]:
    """Half-open [first local midnight of month, first local midnight of next month)."""
    start = local_midnight(date(year, month, 1), tz)
    if month == 12:
        end = local_midnight(date(year + 1, 1, 1), tz)
    else:
        end = local_midnight(date(year, month + 1, 1), tz)
    return start, end


def format_utc_iso(dt: datetime) -> str:
    """UTC ISO-8601 with second precision and a Z suffix."""
    return ensure_utc(dt).strftime('%Y-%m-%dT%H:%M:%SZ')


def parse_iso_utc(iso_string: str) -> datetime:
    """Parse an ISO string into an aware UTC datetime."""
    dt = datetime.fromisoformat(iso_string.replace('Z', '+00:00'))
    return ensure_utc(dt)

