# /autoreply/services/business_hours.py

from datetime import datetime, time, timezone
from enum import Enum
from typing import Optional
from zoneinfo import ZoneInfo

from autoreply.models.config import BusinessHours, ScheduleEntry, Weekday

# Pure business-hours evaluation. No I/O and no shared state, so it is safe to
# call concurrently.

# Indexed by datetime.weekday()
WEEKDAYS = [
    Weekday.MONDAY, Weekday.TUESDAY, Weekday.WEDNESDAY, Weekday.THURSDAY,
    Weekday.FRIDAY, Weekday.SATURDAY, Weekday.SUNDAY,
]


class ClosureReason(str, Enum):
    HOLIDAY = "holiday"
    DAY_OFF = "day_off"
    OUTSIDE_HOURS = "outside_hours"
    BREAK = "break"


def parse_clock(value: str) -> time:
    hours, minutes = value.split(":")
    return time(int(hours), int(minutes))


def local_now(hours: BusinessHours, now_utc: datetime) -> datetime:
    if now_utc.tzinfo is None:
        now_utc = now_utc.replace(tzinfo=timezone.utc)
    return now_utc.astimezone(ZoneInfo(hours.timezone))


def _entry_closure(entry: ScheduleEntry, current: time) -> Optional[ClosureReason]:
    # Opening window is inclusive at both ends.
    if not parse_clock(entry.start_time) <= current <= parse_clock(entry.end_time):
        return ClosureReason.OUTSIDE_HOURS
    # Breaks close from their start (inclusive) up to their end (exclusive).
    for brk in entry.break_times:
        if parse_clock(brk.start_time) <= current < parse_clock(brk.end_time):
            return ClosureReason.BREAK
    return None


def closure_reason(hours: BusinessHours, now_utc: datetime) -> Optional[ClosureReason]:
    """
    Why the business is closed at now_utc, or None when it is open.
    A disabled schedule never closes.
    """
    if not hours.enabled:
        return None

    local = local_now(hours, now_utc)
    local_date = local.date()
    if any(holiday.is_active and holiday.holiday_date == local_date for holiday in hours.holidays):
        return ClosureReason.HOLIDAY

    day = WEEKDAYS[local.weekday()]
    entries = [entry for entry in hours.schedule if entry.day == day and entry.is_active]
    if not entries:
        return ClosureReason.DAY_OFF

    # Minute resolution: 18:00:59 still counts as 18:00.
    current = local.time().replace(second=0, microsecond=0)
    reasons = [_entry_closure(entry, current) for entry in entries]
    if any(reason is None for reason in reasons):
        return None
    return ClosureReason.BREAK if ClosureReason.BREAK in reasons else ClosureReason.OUTSIDE_HOURS


def is_open(hours: BusinessHours, now_utc: datetime) -> bool:
    return closure_reason(hours, now_utc) is None


def closed_message(hours: BusinessHours, reason: ClosureReason) -> str:
    if reason == ClosureReason.HOLIDAY:
        return hours.holiday_message
    return hours.after_hours_message
