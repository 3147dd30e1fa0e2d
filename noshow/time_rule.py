"""Deadline rule for appointments.

Appointments carry their scheduled moment as two strings written by the
booking workflow: a calendar date such as ``"5 March 2025"`` and a 12-hour
clock time such as ``"02:30 pm"``. The parser accepts exactly that shape and
nothing else; a looser parser would change which appointments are judged
overdue.
"""

from __future__ import annotations

import logging
from datetime import date, datetime, time, timedelta, timezone, tzinfo
from typing import Any
from zoneinfo import ZoneInfo, ZoneInfoNotFoundError

from noshow.errors import ScheduleParseError

logger = logging.getLogger("noshow.time_rule")

DATE_FORMAT = "%d %B %Y"
TIME_FORMAT = "%I:%M %p"
SCHEDULE_FORMAT = f"{DATE_FORMAT} {TIME_FORMAT}"

OVERDUE_AFTER = timedelta(hours=5)


def resolve_timezone(name: str | None) -> tzinfo:
    text = str(name or "").strip()
    if not text or text.upper() == "UTC":
        return timezone.utc
    try:
        return ZoneInfo(text)
    except (ZoneInfoNotFoundError, ValueError):
        logger.warning("Unknown timezone %r, falling back to UTC", text)
        return timezone.utc


def parse_appointment_datetime(date_text: Any, time_text: Any, tz: tzinfo = timezone.utc) -> datetime:
    if not isinstance(date_text, str) or not isinstance(time_text, str):
        raise ScheduleParseError(date_text, time_text, "date and time must be strings")
    if not date_text.strip() or not time_text.strip():
        raise ScheduleParseError(date_text, time_text, "empty date or time")
    try:
        parsed = datetime.strptime(f"{date_text} {time_text}", SCHEDULE_FORMAT)
    except ValueError as exc:
        raise ScheduleParseError(date_text, time_text, str(exc)) from exc
    return parsed.replace(tzinfo=tz)


def overdue_threshold(scheduled: datetime, grace: timedelta = OVERDUE_AFTER) -> datetime:
    # Aware arithmetic in a ZoneInfo zone is wall-clock; add the grace to the
    # instant so a DST change inside the window does not move the deadline.
    return scheduled.astimezone(timezone.utc) + grace


def is_overdue(
    date_text: Any,
    time_text: Any,
    now: datetime,
    *,
    grace: timedelta = OVERDUE_AFTER,
    tz: tzinfo = timezone.utc,
) -> bool:
    """Return True when ``now`` is strictly past the scheduled moment plus ``grace``.

    Raises ScheduleParseError when the date or time text does not match the
    booking format. A naive ``now`` is read in ``tz``.
    """
    scheduled = parse_appointment_datetime(date_text, time_text, tz)
    if now.tzinfo is None:
        now = now.replace(tzinfo=tz)
    return now > overdue_threshold(scheduled, grace)


def format_appointment_date(value: date) -> str:
    # Day without zero padding, e.g. "5 March 2025".
    return f"{value.day} {value.strftime('%B %Y')}"


def format_appointment_time(value: time) -> str:
    """Render ``value`` the way the booking form writes it, e.g. ``"02:30 PM"``.

    The booking form formats times with an uppercase meridiem. Stored data
    also holds lowercase values such as ``"02:30 pm"``; the parser reads both
    as the same instant, so either is valid on the wire.
    """
    return value.strftime(TIME_FORMAT)


def validate_schedule_text(date_text: Any, time_text: Any) -> bool:
    try:
        parse_appointment_datetime(date_text, time_text)
    except ScheduleParseError:
        return False
    return True
