from datetime import datetime, timedelta, timezone, tzinfo
from zoneinfo import ZoneInfo
import logging

from . import config

logger = logging.getLogger(__name__)


def now_utc() -> datetime:
    """Return timezone-aware current UTC datetime."""
    return datetime.now(timezone.utc)


def local_tz(name: str | None = None) -> tzinfo:
    """Return the tzinfo for `name` (default: config.DEFAULT_TIMEZONE).

    Unknown zone names fall back to UTC so a bad environment value cannot
    break parsing.
    """
    name = name or config.DEFAULT_TIMEZONE
    if not name or name.upper() == 'UTC':
        return timezone.utc
    try:
        return ZoneInfo(name)
    except Exception:
        logger.warning('unknown timezone %r; falling back to UTC', name)
        return timezone.utc


def now_local() -> datetime:
    """Return the current instant in the configured local zone."""
    return datetime.now(local_tz())


def as_utc(dt: datetime | None) -> datetime | None:
    """Normalize a datetime to aware UTC. Naive values are treated as UTC."""
    if dt is None:
        return None
    if dt.tzinfo is None:
        return dt.replace(tzinfo=timezone.utc)
    return dt.astimezone(timezone.utc)


def as_local(dt: datetime | None, tz: tzinfo | None = None) -> datetime | None:
    """Express an instant in the local zone (naive values are treated as UTC)."""
    if dt is None:
        return None
    return as_utc(dt).astimezone(tz or local_tz())


def start_of_day(dt: datetime) -> datetime:
    return dt.replace(hour=0, minute=0, second=0, microsecond=0)


def start_of_tomorrow(now: datetime) -> datetime:
    return start_of_day(now) + timedelta(days=1)


def to_iso(dt: datetime | None) -> str | None:
    """Canonical ISO string for storage on the wire (UTC, 'Z' suffix)."""
    if dt is None:
        return None
    return as_utc(dt).isoformat().replace('+00:00', 'Z')


def parse_iso(value) -> datetime | None:
    """Parse an ISO timestamp (accepting a trailing 'Z') into aware UTC.

    Raises ValueError for values that are present but not parseable.
    """
    if value is None:
        return None
    if isinstance(value, datetime):
        return as_utc(value)
    if not isinstance(value, str):
        raise ValueError(f'not a timestamp: {value!r}')
    return as_utc(datetime.fromisoformat(value.strip().replace('Z', '+00:00')))


def epoch_millis(dt: datetime) -> int:
    return int(as_utc(dt).timestamp() * 1000)


def weekday_code(dt: datetime) -> int:
    """Weekday as 1=Sunday .. 7=Saturday."""
    return (dt.weekday() + 1) % 7 + 1
