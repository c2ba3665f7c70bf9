"""
Scheduled message types

Typed view over the scheduled_messages and message_deliveries tables.

Rows arrive from Supabase as loosely-typed dicts. ScheduledMessage.from_row()
turns them into closed enums and tagged audience variants so the rest of the
dispatch code can branch exhaustively. Timing strings (start_date, start_time,
timezone, last_sent_at, end_date) are kept as stored: they are parsed by the
recurrence evaluator, which fails closed per message on bad data instead of
rejecting the whole row here.
"""
from __future__ import annotations

from dataclasses import dataclass, field
from datetime import datetime, timezone
from enum import Enum
from typing import Any, Optional, Union


SCHEDULED_MESSAGES_TABLE = "scheduled_messages"
DELIVERIES_TABLE = "message_deliveries"
USERS_TABLE = "users"


class InvalidMessageRow(ValueError):
    """A scheduled_messages row has an unknown enum value or is missing a key field."""


class MessageStatus(str, Enum):
    """Lifecycle status of a scheduled message."""
    ACTIVE = "active"
    PAUSED = "paused"
    COMPLETED = "completed"


class ScheduleKind(str, Enum):
    """How often a scheduled message fires."""
    ONCE = "once"
    EVERY_5_MINUTES = "5min"
    DAILY = "daily"
    WEEKLY = "weekly"
    MONTHLY = "monthly"

    @property
    def is_recurring(self) -> bool:
        return self is not ScheduleKind.ONCE


RECURRING_KINDS = tuple(kind for kind in ScheduleKind if kind.is_recurring)


class TargetKind(str, Enum):
    """Who a scheduled message goes to."""
    ALL = "all"
    SPECIFIC = "specific"


class DeliveryStatus(str, Enum):
    """Outcome of one send attempt to one recipient."""
    SENT = "sent"
    FAILED = "failed"


@dataclass(frozen=True)
class AllClients:
    """Every client currently assigned to the message's coach."""

    @property
    def kind(self) -> TargetKind:
        return TargetKind.ALL


@dataclass(frozen=True)
class SpecificClients:
    """An explicit recipient list chosen by the coach."""
    user_ids: tuple[str, ...] = ()

    @property
    def kind(self) -> TargetKind:
        return TargetKind.SPECIFIC


AudienceTarget = Union[AllClients, SpecificClients]


@dataclass(frozen=True)
class FrequencyConfig:
    """
    Structured frequency detail stored in scheduled_messages.frequency_config.

    dayOfWeek uses 0=Sunday..6=Saturday, the same numbering cron uses.
    """
    days_of_week: tuple[int, ...] = ()
    day_of_month: Optional[int] = None
    week_of_month: Optional[int] = None

    @classmethod
    def from_json(cls, raw: Optional[dict]) -> "FrequencyConfig":
        """Raises InvalidMessageRow when the stored JSON is not the expected shape."""
        if not raw:
            return cls()
        if not isinstance(raw, dict):
            raise InvalidMessageRow(f"Invalid frequency_config: {raw!r}")

        days = raw.get("dayOfWeek") or []
        if not isinstance(days, (list, tuple)):
            days = [days]
        try:
            parsed_days = [int(d) for d in days]
        except (TypeError, ValueError):
            raise InvalidMessageRow(f"Invalid frequency_config.dayOfWeek: {days!r}")

        return cls(
            days_of_week=tuple(d for d in parsed_days if 0 <= d <= 6),
            day_of_month=_optional_int(raw.get("dayOfMonth")),
            week_of_month=_optional_int(raw.get("weekOfMonth")),
        )

    def to_json(self) -> dict:
        data: dict[str, Any] = {}
        if self.days_of_week:
            data["dayOfWeek"] = list(self.days_of_week)
        if self.day_of_month is not None:
            data["dayOfMonth"] = self.day_of_month
        if self.week_of_month is not None:
            data["weekOfMonth"] = self.week_of_month
        return data


def _optional_int(value: Any) -> Optional[int]:
    if value is None or value == "":
        return None
    try:
        return int(value)
    except (TypeError, ValueError):
        return None


def _parse_target(row: dict) -> AudienceTarget:
    raw_kind = row.get("target_type") or TargetKind.ALL.value
    try:
        kind = TargetKind(raw_kind)
    except ValueError:
        raise InvalidMessageRow(f"Unknown target_type: {raw_kind!r}")

    if kind is TargetKind.ALL:
        return AllClients()
    if kind is TargetKind.SPECIFIC:
        ids = row.get("target_user_ids") or []
        if not isinstance(ids, (list, tuple)):
            raise InvalidMessageRow(f"Invalid target_user_ids: {ids!r}")
        # Keep first-seen order, drop duplicates
        return SpecificClients(user_ids=tuple(dict.fromkeys(str(i) for i in ids)))
    raise InvalidMessageRow(f"Unhandled target_type: {kind!r}")


@dataclass
class ScheduledMessage:
    """One row of scheduled_messages."""
    id: str
    coach_id: str
    title: str
    content: str
    schedule_kind: ScheduleKind
    start_date: Optional[str]
    start_time: Optional[str]
    timezone: str
    target: AudienceTarget
    status: MessageStatus
    is_enabled: bool
    last_sent_at: Optional[str] = None
    end_date: Optional[str] = None
    template_id: Optional[str] = None
    frequency: FrequencyConfig = field(default_factory=FrequencyConfig)
    qstash_id: Optional[str] = None

    @classmethod
    def from_row(cls, row: dict) -> "ScheduledMessage":
        """Build from a Supabase row. Raises InvalidMessageRow on unknown enum values."""
        message_id = row.get("id")
        coach_id = row.get("coach_id")
        if not message_id or not coach_id:
            raise InvalidMessageRow("Row is missing id or coach_id")

        raw_kind = row.get("schedule_type")
        try:
            kind = ScheduleKind(raw_kind)
        except ValueError:
            raise InvalidMessageRow(f"Unknown schedule_type: {raw_kind!r}")

        raw_status = row.get("status")
        try:
            status = MessageStatus(raw_status)
        except ValueError:
            raise InvalidMessageRow(f"Unknown status: {raw_status!r}")

        return cls(
            id=str(message_id),
            coach_id=str(coach_id),
            title=row.get("title") or "",
            content=row.get("content") or "",
            schedule_kind=kind,
            start_date=row.get("start_date"),
            start_time=row.get("start_time"),
            timezone=row.get("timezone") or "UTC",
            target=_parse_target(row),
            status=status,
            # Column is is_active in the database
            is_enabled=bool(row.get("is_active", True)),
            last_sent_at=row.get("last_sent_at"),
            end_date=row.get("end_date"),
            template_id=row.get("template_id"),
            frequency=FrequencyConfig.from_json(row.get("frequency_config")),
            qstash_id=row.get("qstash_id"),
        )

    @property
    def is_recurring(self) -> bool:
        return self.schedule_kind.is_recurring


@dataclass(frozen=True)
class MessageDelivery:
    """One append-only row of message_deliveries."""
    scheduled_message_id: str
    user_id: str
    status: DeliveryStatus
    sent_at: datetime = field(default_factory=lambda: datetime.now(timezone.utc))
    stream_message_id: Optional[str] = None
    error_message: Optional[str] = None

    def to_row(self) -> dict:
        row: dict[str, Any] = {
            "scheduled_message_id": self.scheduled_message_id,
            "user_id": self.user_id,
            "sent_at": self.sent_at.isoformat(),
            "status": self.status.value,
        }
        if self.stream_message_id:
            row["stream_message_id"] = self.stream_message_id
        if self.error_message:
            row["error_message"] = self.error_message
        return row
