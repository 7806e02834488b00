"""Hour-slot parsing, validation and instant conversion."""

import re
from datetime import date, datetime, time, timedelta, timezone
from typing import Optional, Union
from zoneinfo import ZoneInfo

from studio_access.core.errors import ValidationError

_TIME_RE = re.compile(r"^(\d{1,2})(?::(\d{2}))?(?::(\d{2}))?$")


def parse_hour(value: Union[str, int], *, allow_midnight_end: bool = False) -> int:
    """Normalize a time string to a 24h hour.

    Accepts "9", "09", "09:00" and "09:00:00". Minutes and seconds must be
    zero. "24:00" is only accepted when parsing an end time.

    Raises:
        ValidationError: if the value is malformed or off the hour grid
    """
    if isinstance(value, int):
        hour = value
    else:
        match = _TIME_RE.match(value.strip())
        if not match:
            raise ValidationError(f"Invalid time format: {value!r}, expected HH:MM")
        hour = int(match.group(1))
        minutes = int(match.group(2) or 0)
        seconds = int(match.group(3) or 0)
        if minutes or seconds:
            raise ValidationError(f"Times must be on the hour, got {value!r}")

    upper = 24 if allow_midnight_end else 23
    if hour < 0 or hour > upper:
        raise ValidationError(f"Hour out of range: {value!r}")
    return hour


def parse_date(value: Union[str, date]) -> date:
    """Parse an ISO date (YYYY-MM-DD)."""
    if isinstance(value, date):
        return value
    try:
        return date.fromisoformat(value)
    except (TypeError, ValueError):
        raise ValidationError(f"Invalid date: {value!r}, expected YYYY-MM-DD")


def parse_interval(
    start: Union[str, int],
    end: Union[str, int],
    open_hour: int = 0,
    close_hour: int = 24,
) -> tuple[int, int]:
    """Parse and validate a same-day half-open [start, end) hour interval.

    Overnight bookings are not supported: the end must fall on the same
    date, with 24 meaning midnight at the end of the day.
    """
    start_hour = parse_hour(start)
    end_hour = parse_hour(end, allow_midnight_end=True)
    if start_hour >= end_hour:
        raise ValidationError("Start time must be before end time")
    if start_hour < open_hour or end_hour > close_hour:
        raise ValidationError(
            f"Slot must be within business hours {format_hour(open_hour)}-{format_hour(close_hour)}"
        )
    return start_hour, end_hour


def intervals_overlap(s1: int, e1: int, s2: int, e2: int) -> bool:
    """Half-open intervals [s1, e1) and [s2, e2) overlap."""
    return s1 < e2 and e1 > s2


def format_hour(hour: int) -> str:
    return f"{hour:02d}:00"


def slot_instant(day: date, hour: int, tz_name: str) -> datetime:
    """Absolute (UTC, aware) instant for an hour on a local date.

    Hour 24 is midnight at the start of the following day.
    """
    tz = ZoneInfo(tz_name)
    local = datetime.combine(day, time(0), tzinfo=tz) + timedelta(hours=hour)
    # Re-attach the zone so DST transitions resolve to the wall-clock hour
    local = datetime.combine(local.date(), local.time(), tzinfo=tz)
    return local.astimezone(timezone.utc)


def to_naive_utc(value: datetime) -> datetime:
    """Aware datetime -> naive UTC, the form stored in the database."""
    return value.astimezone(timezone.utc).replace(tzinfo=None)


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


def local_today(tz_name: str, now: Optional[datetime] = None) -> date:
    now = now or utcnow()
    return now.astimezone(ZoneInfo(tz_name)).date()
