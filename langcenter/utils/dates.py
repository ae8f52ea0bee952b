from __future__ import annotations

import calendar
from datetime import date, datetime, time, timedelta
from typing import Iterable, List
from zoneinfo import ZoneInfo

from langcenter.config import settings

WEEKDAYS = (
    "monday",
    "tuesday",
    "wednesday",
    "thursday",
    "friday",
    "saturday",
    "sunday",
)

def now_local() -> datetime:
    """Wall-clock now in the configured zone, naive like every stored timestamp."""
    return datetime.now(ZoneInfo(settings.tz)).replace(tzinfo=None, microsecond=0)

def parse_hhmm(value: str) -> time:
    try:
        hh, mm = value.strip().split(":")
        return time(hour=int(hh), minute=int(mm))
    except (AttributeError, TypeError, ValueError):
        raise ValueError(f"bad HH:MM value: {value!r}") from None

def duration_hours(start: str, end: str) -> float:
    s, e = parse_hhmm(start), parse_hhmm(end)
    return ((e.hour * 60 + e.minute) - (s.hour * 60 + s.minute)) / 60

def lesson_start_at(day: date, start: str) -> datetime:
    return datetime.combine(day, parse_hhmm(start))

def lesson_end_at(day: date, end: str) -> datetime:
    return datetime.combine(day, parse_hhmm(end))

def hours_between(later: datetime, earlier: datetime) -> float:
    return (later - earlier).total_seconds() / 3600

def is_within_cancellation_window(end_at: datetime, now: datetime) -> bool:
    return hours_between(end_at, now) < settings.cancellation_window_hours

def refund_percentage(hours_before: float) -> int:
    if hours_before >= settings.refund_full_hours:
        return 100
    if hours_before >= settings.refund_partial_hours:
        return settings.refund_partial_percent
    return 0

def default_expires_at(now: datetime) -> datetime:
    return now + timedelta(days=settings.booking_expiration_days)

def weekday_name(d: date | datetime) -> str:
    return WEEKDAYS[d.weekday()]

def month_end(d: date) -> date:
    last = calendar.monthrange(d.year, d.month)[1]
    return d.replace(day=last)

def matching_days_until_month_end(start_day: date, weekdays: Iterable[str]) -> List[date]:
    wanted = {w.strip().lower() for w in weekdays}
    out: List[date] = []
    current, last = start_day, month_end(start_day)
    while current <= last:
        if weekday_name(current) in wanted:
            out.append(current)
        current += timedelta(days=1)
    return out

def format_day(d: date) -> str:
    return d.strftime("%a %d %b %Y")
