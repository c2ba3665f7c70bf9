"""
Recurrence evaluation for scheduled messages

Decides whether a scheduled message is due at a reference instant.

- once: due when now has reached start_date + start_time, read as wall-clock
  time in the message's timezone. The UTC offset is the one in force on the
  start date, so a 09:00 New York message fires at 14:00Z in January and
  13:00Z in July.
- 5min / daily / weekly / monthly: due when the message was never sent, or
  when at least the interval has passed since last_sent_at. Monthly is a
  fixed 30 days, not calendar months.

Disabled and non-active messages are never due. Bad timing data (including
an unparseable start_date / start_time on a recurring message) never makes
a message due: check_due() reports it as a data error and the caller moves on.
"""
from __future__ import annotations

import logging
from dataclasses import dataclass
from datetime import date, datetime, time, timedelta, timezone
from typing import Optional

import pytz
from dateutil import parser as dateparser

from services.scheduled_messages import MessageStatus, ScheduleKind, ScheduledMessage

logger = logging.getLogger(__name__)


RECURRENCE_INTERVALS: dict[ScheduleKind, timedelta] = {
    ScheduleKind.EVERY_5_MINUTES: timedelta(minutes=5),
    ScheduleKind.DAILY: timedelta(hours=24),
    ScheduleKind.WEEKLY: timedelta(days=7),
    ScheduleKind.MONTHLY: timedelta(days=30),
}


class ScheduleDataError(ValueError):
    """A message's date, time, timezone or timestamp fields cannot be interpreted."""


@dataclass(frozen=True)
class DueCheck:
    """Result of evaluating one message against a reference instant."""
    due: bool
    fire_at: Optional[datetime] = None
    reason: str = ""
    data_error: bool = False


def ensure_utc(value: datetime) -> datetime:
    """Normalize any datetime to aware UTC (naive => assume UTC)."""
    if value.tzinfo is None or value.tzinfo.utcoffset(value) is None:
        return value.replace(tzinfo=timezone.utc)
    return value.astimezone(timezone.utc)


def get_timezone(tz_name: Optional[str]):
    if not tz_name:
        return pytz.UTC
    try:
        return pytz.timezone(tz_name)
    except pytz.UnknownTimeZoneError:
        raise ScheduleDataError(f"Unknown timezone: {tz_name!r}")


def parse_timestamp(value) -> datetime:
    """Parse a stored ISO-8601 timestamp into aware UTC."""
    if isinstance(value, datetime):
        return ensure_utc(value)
    if not isinstance(value, str) or not value:
        raise ScheduleDataError(f"Invalid timestamp: {value!r}")
    try:
        return ensure_utc(dateparser.isoparse(value))
    except (ValueError, OverflowError):
        raise ScheduleDataError(f"Invalid timestamp: {value!r}")


def parse_local_date(value) -> date:
    if isinstance(value, date) and not isinstance(value, datetime):
        return value
    if not isinstance(value, str) or not value:
        raise ScheduleDataError(f"Invalid date: {value!r}")
    try:
        return date.fromisoformat(value.strip()[:10])
    except ValueError:
        raise ScheduleDataError(f"Invalid date: {value!r}")


def parse_local_time(value) -> time:
    """Accepts HH:MM and HH:MM:SS (Postgres time columns come back with seconds)."""
    if isinstance(value, time):
        return value
    if not isinstance(value, str) or not value:
        raise ScheduleDataError(f"Invalid time: {value!r}")

    parts = value.strip().split(":")
    try:
        if len(parts) not in (2, 3):
            raise ValueError(value)
        hour = int(parts[0])
        minute = int(parts[1])
        second = int(float(parts[2])) if len(parts) == 3 else 0
        return time(hour, minute, second)
    except ValueError:
        raise ScheduleDataError(f"Invalid time: {value!r}")


def local_to_utc(start_date, start_time, tz_name: Optional[str]) -> datetime:
    """
    Interpret a local date + wall-clock time in tz_name and return the UTC instant.

    Uses the zone's offset on that date, not today's offset.
    """
    tz = get_timezone(tz_name)
    local_naive = datetime.combine(parse_local_date(start_date), parse_local_time(start_time))
    localized = tz.normalize(tz.localize(local_naive))
    return localized.astimezone(timezone.utc)


def end_of_local_day_utc(end_date, tz_name: Optional[str]) -> datetime:
    """The last instant of end_date in tz_name, as UTC."""
    tz = get_timezone(tz_name)
    next_day = datetime.combine(parse_local_date(end_date) + timedelta(days=1), time(0, 0))
    return tz.normalize(tz.localize(next_day)).astimezone(timezone.utc) - timedelta(microseconds=1)


def next_fire_at(message: ScheduledMessage) -> Optional[datetime]:
    """
    When the message next becomes due, ignoring status.

    None for a recurring message that has never been sent (due immediately).
    Raises ScheduleDataError on bad timing data.
    """
    if message.schedule_kind is ScheduleKind.ONCE:
        return local_to_utc(message.start_date, message.start_time, message.timezone)

    interval = RECURRENCE_INTERVALS.get(message.schedule_kind)
    if interval is None:
        raise ScheduleDataError(f"No interval for schedule kind {message.schedule_kind.value!r}")
    if not message.last_sent_at:
        return None
    return parse_timestamp(message.last_sent_at) + interval


def check_due(message: ScheduledMessage, now: Optional[datetime] = None) -> DueCheck:
    """Evaluate a message at now (defaults to the current time)."""
    now = ensure_utc(now) if now is not None else datetime.now(timezone.utc)

    if not message.is_enabled:
        return DueCheck(due=False, reason="Message is disabled")
    if message.status is not MessageStatus.ACTIVE:
        return DueCheck(due=False, reason=f"Message status is {message.status.value}")

    try:
        # start_date / start_time must parse for every schedule kind
        local_to_utc(message.start_date, message.start_time, message.timezone)

        if message.is_recurring and message.end_date:
            if now > end_of_local_day_utc(message.end_date, message.timezone):
                return DueCheck(due=False, reason="Message end date has passed")

        fire_at = next_fire_at(message)
    except ScheduleDataError as e:
        logger.warning(f"[RECURRENCE] Message {message.id} has invalid schedule data: {e}")
        return DueCheck(due=False, reason=str(e), data_error=True)

    if fire_at is None:
        return DueCheck(due=True, reason="Never sent")
    if now >= fire_at:
        return DueCheck(due=True, fire_at=fire_at)
    return DueCheck(due=False, fire_at=fire_at, reason=f"Not due until {fire_at.isoformat()}")


def is_due(message: ScheduledMessage, now: Optional[datetime] = None) -> bool:
    return check_due(message, now).due
