from datetime import datetime, date, timedelta, timezone
from zoneinfo import ZoneInfo, ZoneInfoNotFoundError


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


def resolve_tz(tz_name: str | None):
    """Return a tzinfo for the IANA name, falling back to UTC for blank or unknown names."""
    if tz_name:
        try:
            return ZoneInfo(tz_name)
        except (ZoneInfoNotFoundError, ValueError):
            pass
    return timezone.utc


def is_valid_timezone(tz_name: str | None) -> bool:
    if not tz_name:
        return False
    try:
        ZoneInfo(tz_name)
    except (ZoneInfoNotFoundError, ValueError):
        return False
    return True


def as_utc(value: datetime) -> datetime:
    """Naive datetimes are stored as UTC; attach the zone (or convert aware values)."""
    if value.tzinfo is None:
        return value.replace(tzinfo=timezone.utc)
    return value.astimezone(timezone.utc)


def to_db_utc(value: datetime) -> datetime:
    """Convert to the naive-UTC form the database columns hold."""
    return as_utc(value).replace(tzinfo=None)


def today_for_tz(tz_name: str | None, now: datetime | None = None) -> date:
    """Return today's date in the user's timezone."""
    current = as_utc(now) if now is not None else utcnow()
    return current.astimezone(resolve_tz(tz_name)).date()


def local_date(value: datetime, tz_name: str | None) -> date:
    return as_utc(value).astimezone(resolve_tz(tz_name)).date()


def start_of_day(d: date, tz_name: str | None = None) -> datetime:
    """Return local midnight of ``d`` as a UTC datetime."""
    local = datetime(d.year, d.month, d.day, tzinfo=resolve_tz(tz_name))
    return local.astimezone(timezone.utc)


def end_of_day(d: date, tz_name: str | None = None) -> datetime:
    """Return the last microsecond of local day ``d`` as a UTC datetime.

    Computed from the next local midnight so 23h and 25h DST days stay exact.
    """
    return start_of_day(d + timedelta(days=1), tz_name) - timedelta(microseconds=1)


def local_day_bounds(as_of: datetime | None = None, tz_name: str | None = None) -> tuple[datetime, datetime]:
    """Inclusive [start, end] UTC bounds of the local calendar day containing ``as_of``."""
    day = today_for_tz(tz_name, now=as_of)
    return start_of_day(day, tz_name), end_of_day(day, tz_name)


def start_of_month(d: date) -> date:
    return d.replace(day=1)


def days_in_month(year: int, month: int) -> int:
    if month == 12:
        following = date(year + 1, 1, 1)
    else:
        following = date(year, month + 1, 1)
    return (following - date(year, month, 1)).days
