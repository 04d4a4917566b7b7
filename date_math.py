"""
Calendar arithmetic for Jarbook.

Pure date math used by the recurrence engine and the goal/rule date inputs.
No database access, no clock access - every function is deterministic.

Conventions:
- Instants are naive UTC datetimes (same as the values stored by PeeWee)
- Local calendar days are plain date objects
- A timezone is a fixed offset in minutes east of UTC (420 = UTC+07:00)
"""

import calendar
from datetime import date, datetime, timedelta
from dateutil.relativedelta import relativedelta


def days_in_month(year: int, month: int) -> int:
    """Number of days in month (1-12) of year."""
    return calendar.monthrange(year, month)[1]


def clamp_day(year: int, month: int, day: int) -> int:
    """Clamp day to the last day of the given month."""
    return min(day, days_in_month(year, month))


def to_utc_date_only(value):
    """
    Normalize a value to the UTC midnight of its calendar day.

    Accepts date, datetime or 'YYYY-MM-DD' / ISO 8601 strings.
    Returns a naive datetime at 00:00, or None for empty input.

    Raises:
        ValueError: If a string cannot be parsed
    """
    if value is None or value == '':
        return None

    if isinstance(value, datetime):
        return datetime(value.year, value.month, value.day)

    if isinstance(value, date):
        return datetime(value.year, value.month, value.day)

    text = str(value).strip()
    try:
        parsed = datetime.strptime(text, '%Y-%m-%d')
    except ValueError:
        try:
            parsed = datetime.fromisoformat(text.replace('Z', '+00:00'))
        except ValueError:
            raise ValueError(f"Invalid date: {value}")
        if parsed.tzinfo is not None:
            parsed = (parsed - parsed.utcoffset()).replace(tzinfo=None)
    return datetime(parsed.year, parsed.month, parsed.day)


def add_days(day: date, n: int) -> date:
    return day + timedelta(days=n)


def add_weeks(day: date, n: int) -> date:
    return add_days(day, 7 * n)


def add_months_clamped(day: date, n: int, anchor_day: int = None) -> date:
    """
    Add n calendar months, clamping the day to the target month's length.

    anchor_day keeps a schedule on its intended day (e.g. 31) even after
    passing through a short month: Jan 31 -> Feb 29 -> Mar 31.

    Examples:
        add_months_clamped(date(2023, 1, 31), 1) -> date(2023, 2, 28)
        add_months_clamped(date(2024, 2, 29), 1, anchor_day=31) -> date(2024, 3, 31)
    """
    return day + relativedelta(months=n, day=anchor_day or day.day)


def add_years_clamped(day: date, n: int, anchor_month: int = None,
                      anchor_day: int = None) -> date:
    """
    Add n calendar years, clamping Feb 29 to Feb 28 in non-leap years.

    anchor_month/anchor_day restore the original month/day after clamping.
    """
    return day + relativedelta(years=n, month=anchor_month or day.month,
                               day=anchor_day or day.day)


# ==================== TIMEZONE OFFSET HELPERS ====================

def to_local(instant: datetime, offset_minutes: int) -> datetime:
    """Shift a UTC instant to local wall-clock time."""
    return instant + timedelta(minutes=offset_minutes)


def to_utc(local: datetime, offset_minutes: int) -> datetime:
    """Shift local wall-clock time back to a UTC instant."""
    return local - timedelta(minutes=offset_minutes)


def local_date(instant: datetime, offset_minutes: int) -> date:
    """Calendar day of a UTC instant as seen in the local offset."""
    return to_local(instant, offset_minutes).date()


def local_midnight_utc(day: date, offset_minutes: int) -> datetime:
    """UTC instant of 00:00 local time on the given day."""
    return to_utc(datetime(day.year, day.month, day.day), offset_minutes)


def start_of_local_day(instant: datetime, offset_minutes: int) -> datetime:
    """UTC instant of the local midnight that starts the instant's local day."""
    return local_midnight_utc(local_date(instant, offset_minutes), offset_minutes)


def end_of_local_day(instant: datetime, offset_minutes: int) -> datetime:
    """UTC instant of the last microsecond of the instant's local day."""
    next_day = add_days(local_date(instant, offset_minutes), 1)
    return local_midnight_utc(next_day, offset_minutes) - timedelta(microseconds=1)
