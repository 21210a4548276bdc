from __future__ import annotations
import calendar
from datetime import datetime, timedelta, time, date, timezone, tzinfo


def local_tz() -> tzinfo:
    return datetime.now().astimezone().tzinfo  # type: ignore


def now_utc() -> datetime:
    return datetime.now(timezone.utc)


def to_utc(dt_local: datetime) -> datetime:
    if dt_local.tzinfo is None:
        raise ValueError("dt_local must be timezone-aware")
    return dt_local.astimezone(timezone.utc)


def to_local(dt_utc: datetime) -> datetime:
    if dt_utc.tzinfo is None:
        dt_utc = dt_utc.replace(tzinfo=timezone.utc)
    return dt_utc.astimezone(local_tz())


def local_date(dt: datetime) -> date:
    return to_local(dt).date()


def start_of_day(dt: datetime) -> datetime:
    """Local midnight of the calendar day containing dt, as a UTC instant."""
    d = local_date(dt)
    return to_utc(datetime.combine(d, time(0, 0), tzinfo=local_tz()))


def is_same_day(a: datetime, b: datetime) -> bool:
    return local_date(a) == local_date(b)


def days_between(start: datetime, end: datetime) -> int:
    """Whole local calendar days from start's day to end's day (negative if end is earlier)."""
    return (local_date(end) - local_date(start)).days


def weekday_sun0(dt: datetime) -> int:
    # 0=Sun ... 6=Sat
    return local_date(dt).isoweekday() % 7


def add_days(dt: datetime, days: int) -> datetime:
    """Shift by calendar days, keeping local wall-clock time."""
    return to_utc(to_local(dt) + timedelta(days=days))


def add_months(dt: datetime, months: int) -> datetime:
    """Shift by calendar months, clamping the day to the target month's length."""
    loc = to_local(dt)
    idx = loc.month - 1 + months
    year = loc.year + idx // 12
    month = idx % 12 + 1
    day = min(loc.day, calendar.monthrange(year, month)[1])
    return to_utc(loc.replace(year=year, month=month, day=day))


def month_label(dt: datetime) -> str:
    """'March 2026' style label for the local month containing dt."""
    loc = to_local(dt)
    return f"{calendar.month_name[loc.month]} {loc.year}"


def timestamp_for_filename(dt: datetime) -> str:
    return to_local(dt).strftime("%Y-%m-%d_%H%M%S")
