"""Calendar-day and timezone helpers.

Tasks are pinned to naive calendar days (``datetime.date``). A user's
"today" is the day containing the current instant in their IANA timezone,
which is what the rollover engine treats as local midnight.
"""
from datetime import date, datetime, timedelta, timezone
from typing import Iterator, Optional, Tuple
import logging
import zoneinfo

from . import config
from .errors import ConfigurationError
from .utils import now_utc

logger = logging.getLogger(__name__)

DATE_FORMAT = '%Y-%m-%d'


def resolve_timezone(tz_name: Optional[str]) -> zoneinfo.ZoneInfo:
    """Return the ZoneInfo for tz_name.

    Blank names resolve to config.DEFAULT_TIMEZONE. Unknown names raise
    ConfigurationError unless config.ROLLOVER_TIMEZONE_FALLBACK is set, in
    which case UTC is returned and a warning is logged.
    """
    name = (tz_name or '').strip() or config.DEFAULT_TIMEZONE
    try:
        return zoneinfo.ZoneInfo(name)
    # names matching a tzdata directory or too long for the filesystem
    # surface as OSError rather than ZoneInfoNotFoundError
    except (zoneinfo.ZoneInfoNotFoundError, ValueError, OSError) as e:
        if config.ROLLOVER_TIMEZONE_FALLBACK:
            logger.warning("unknown timezone %r; falling back to UTC", name)
            return zoneinfo.ZoneInfo('UTC')
        logger.error("unknown timezone %r", name)
        raise ConfigurationError(name) from e


def local_now(tz_name: Optional[str], now: Optional[datetime] = None) -> datetime:
    """Return the current wall-clock datetime in the named timezone."""
    tz = resolve_timezone(tz_name)
    instant = now or now_utc()
    if instant.tzinfo is None:
        # naive instants are treated as UTC
        instant = instant.replace(tzinfo=timezone.utc)
    return instant.astimezone(tz)


def local_midnight(tz_name: Optional[str], now: Optional[datetime] = None) -> date:
    """Return the local calendar day for the current instant (no time, no tzinfo)."""
    return local_now(tz_name, now).date()


def time_of_day(tz_name: Optional[str], now: Optional[datetime] = None) -> Tuple[int, int]:
    """Return (hour, minute) of the wall clock in the named timezone."""
    lt = local_now(tz_name, now)
    return lt.hour, lt.minute


def is_within_rollover_window(tz_name: Optional[str], now: Optional[datetime] = None) -> bool:
    """True during the first ROLLOVER_WINDOW_MINUTES after local midnight."""
    hour, minute = time_of_day(tz_name, now)
    return hour == 0 and minute < config.ROLLOVER_WINDOW_MINUTES


def format_date(d: date) -> str:
    return d.strftime(DATE_FORMAT)


def parse_date(value: str) -> date:
    """Parse a strict YYYY-MM-DD string. Raises ValueError otherwise."""
    if not isinstance(value, str):
        raise ValueError(f"invalid date: {value!r}")
    return datetime.strptime(value.strip(), DATE_FORMAT).date()


def add_days(d: date, days: int) -> date:
    return d + timedelta(days=days)


def iter_days(start: date, end: date) -> Iterator[date]:
    """Yield every day from start to end inclusive."""
    cur = start
    while cur <= end:
        yield cur
        cur = cur + timedelta(days=1)


def week_days(center: date) -> list[date]:
    """Monday..Sunday of the week containing center."""
    monday = center - timedelta(days=center.weekday())
    return [monday + timedelta(days=i) for i in range(7)]
