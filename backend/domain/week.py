"""Rolling current-week calendar helpers."""

from __future__ import annotations

from datetime import date, datetime, timedelta, tzinfo
from typing import Optional, Union


WEEKDAY_NAMES = ("Monday", "Tuesday", "Wednesday", "Thursday", "Friday", "Saturday")
TEACHING_DAYS = len(WEEKDAY_NAMES)


def _calendar_date(now: Union[datetime, date], tz: Optional[tzinfo]) -> date:
    if isinstance(now, datetime):
        if tz is not None and now.tzinfo is not None:
            now = now.astimezone(tz)
        return now.date()
    return now


def week_dates(now: Union[datetime, date], tz: Optional[tzinfo] = None) -> list[date]:
    """Return Monday..Saturday of the week containing `now`.

    Sunday belongs to the week that started six days earlier. Aware datetimes
    are converted to `tz` first so the result is a set of campus calendar
    dates rather than instants.
    """
    today = _calendar_date(now, tz)
    sunday_first_index = today.isoweekday() % 7
    monday_offset = (sunday_first_index + 6) % 7
    monday = today - timedelta(days=monday_offset)
    return [monday + timedelta(days=index) for index in range(TEACHING_DAYS)]


def weekday_index(value: Union[int, str, None]) -> Optional[int]:
    """Map 0..5 or a day name ("Monday", "tue") onto a teaching-day index."""
    if value is None:
        return None
    if isinstance(value, bool):
        return None
    if isinstance(value, int):
        return value if 0 <= value < TEACHING_DAYS else None
    text = str(value).strip().lower()
    if text.isdigit():
        return weekday_index(int(text))
    for index, name in enumerate(WEEKDAY_NAMES):
        if name.lower() == text or name.lower()[:3] == text:
            return index
    return None
