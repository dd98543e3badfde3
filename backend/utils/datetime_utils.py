"""Calendar helpers.

Every day/week rollover in the app goes through these functions so there is a
single definition of "today" and "this week" for a given timezone.
"""
from datetime import datetime, date, time, timedelta, timezone
from zoneinfo import ZoneInfo, ZoneInfoNotFoundError


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


def as_utc(value: datetime) -> datetime:
    """Treat naive datetimes as UTC (that is how they are stored)."""
    if value.tzinfo is None:
        return value.replace(tzinfo=timezone.utc)
    return value.astimezone(timezone.utc)


def to_storage(value: datetime) -> datetime:
    """Naive UTC, the representation SQLite round-trips unchanged."""
    return as_utc(value).replace(tzinfo=None)


def is_known_timezone(tz_name: str | None) -> bool:
    if not tz_name:
        return False
    try:
        ZoneInfo(tz_name)
    except (ZoneInfoNotFoundError, ValueError):
        return False
    return True


def resolve_timezone(tz_name: str | None):
    if tz_name:
        try:
            return ZoneInfo(tz_name)
        except (ZoneInfoNotFoundError, ValueError):
            pass
    return timezone.utc


def to_local(instant: datetime, tz_name: str | None) -> datetime:
    return as_utc(instant).astimezone(resolve_timezone(tz_name))


def local_date(instant: datetime, tz_name: str | None) -> date:
    return to_local(instant, tz_name).date()


def local_date_key(instant: datetime, tz_name: str | None) -> str:
    """YYYY-MM-DD of the instant's calendar day in tz_name."""
    return local_date(instant, tz_name).isoformat()


def start_of_week(d: date) -> date:
    """Return Monday of the week containing d."""
    return d - timedelta(days=d.weekday())


def week_start_key(instant: datetime, tz_name: str | None) -> str:
    """Monday of the ISO week containing the instant; Sunday maps back 6 days."""
    return start_of_week(local_date(instant, tz_name)).isoformat()


def start_of_month(d: date) -> date:
    return d.replace(day=1)


def end_of_local_day(instant: datetime, tz_name: str | None) -> datetime:
    """23:59:59.999 local time of the instant's calendar day, as an aware UTC datetime."""
    tz = resolve_timezone(tz_name)
    day = local_date(instant, tz_name)
    local_end = datetime.combine(day, time(23, 59, 59, 999000), tzinfo=tz)
    return local_end.astimezone(timezone.utc)


def start_of_day(d: date, tz_name: str | None = None) -> datetime:
    """Return start of a local calendar day as an aware UTC datetime."""
    return datetime.combine(d, time.min, tzinfo=resolve_timezone(tz_name)).astimezone(timezone.utc)
