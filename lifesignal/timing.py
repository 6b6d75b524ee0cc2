"""
Check-in window arithmetic.

Everything here works on timezone-aware timestamps and ``timedelta``; no
calendar or local-time logic is involved.
"""

from datetime import datetime, timedelta

from lifesignal.models import PersonRecord

REMINDER_LEAD_30_MIN = timedelta(minutes=30)
REMINDER_LEAD_2_HOURS = timedelta(hours=2)

_MINUTE = 60
_HOUR = 60 * _MINUTE
_DAY = 24 * _HOUR


def expiration_of(record: PersonRecord) -> datetime:
    return record.last_checked_in + record.check_in_interval


def remaining(record: PersonRecord, now: datetime) -> timedelta:
    """Time left in the check-in window, never negative."""
    return max(timedelta(0), expiration_of(record) - now)


def is_expired(record: PersonRecord, now: datetime) -> bool:
    return now > expiration_of(record)


def reminder_times(record: PersonRecord) -> list[tuple[datetime, timedelta]]:
    """
    Reminders the record's preferences ask for, as ``(fire_at, lead)`` pairs
    relative to its current expiration. Both leads fire when both flags are
    set.
    """
    if not record.notifications_enabled:
        return []

    expiration = expiration_of(record)
    leads = []
    if record.notify_30_min_before:
        leads.append(REMINDER_LEAD_30_MIN)
    if record.notify_2_hours_before:
        leads.append(REMINDER_LEAD_2_HOURS)
    return [(expiration - lead, lead) for lead in leads]


def reminder_id(expiration: datetime, lead: timedelta) -> str:
    minutes = int(lead.total_seconds() // _MINUTE)
    return f"checkInReminder-{int(expiration.timestamp())}-{minutes}"


def format_interval(interval: timedelta) -> str:
    """Compact countdown text: ``"2d 5h"``, ``"3h 15m"``, ``"45m"``."""
    seconds = int(interval.total_seconds())
    if seconds <= 0:
        return "0m"

    days, rest = divmod(seconds, _DAY)
    hours, rest = divmod(rest, _HOUR)
    minutes = rest // _MINUTE

    if days:
        return f"{days}d {hours}h"
    if hours:
        return f"{hours}h {minutes}m"
    return f"{minutes}m"


def format_interval_full_units(interval: timedelta) -> str:
    seconds = int(interval.total_seconds())
    days = seconds // _DAY
    if days > 0:
        return f"{days} day{'' if days == 1 else 's'}"
    hours = (seconds % _DAY) // _HOUR
    return f"{hours} hour{'' if hours == 1 else 's'}"


def format_time_ago(moment: datetime, now: datetime) -> str:
    seconds = (now - moment).total_seconds()
    if seconds < _MINUTE:
        return "just now"
    if seconds >= _DAY:
        return f"{int(seconds // _DAY)}d ago"
    if seconds >= _HOUR:
        return f"{int(seconds // _HOUR)}h ago"
    return f"{int(seconds // _MINUTE)}m ago"
