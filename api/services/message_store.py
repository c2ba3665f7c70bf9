"""
Scheduled message persistence

Supabase queries used by the dispatch path. All functions take the client
explicitly (service-role client in production, fakes in tests).

Query failures surface as exceptions from supabase-py; callers decide whether
they are fatal (loading candidates) or message-level (bookkeeping).
"""
from __future__ import annotations

import logging
from datetime import datetime
from typing import Iterable, Optional

from services.recurrence import ScheduleDataError, parse_timestamp
from services.scheduled_messages import (
    DELIVERIES_TABLE,
    SCHEDULED_MESSAGES_TABLE,
    DeliveryStatus,
    InvalidMessageRow,
    MessageDelivery,
    MessageStatus,
    ScheduleKind,
    ScheduledMessage,
)

logger = logging.getLogger(__name__)


def parse_messages(rows: Iterable[dict]) -> list[ScheduledMessage]:
    """Convert rows, skipping (and logging) rows with unknown enum values or malformed JSON."""
    messages = []
    for row in rows:
        try:
            messages.append(ScheduledMessage.from_row(row))
        except InvalidMessageRow as e:
            logger.warning(f"[STORE] Skipping scheduled message {row.get('id')}: {e}")
    return messages


def fetch_message_row(client, message_id: str, coach_id: Optional[str] = None) -> Optional[dict]:
    """Load one scheduled_messages row by id (optionally scoped to a coach)."""
    query = client.table(SCHEDULED_MESSAGES_TABLE).select("*").eq("id", message_id)
    if coach_id:
        query = query.eq("coach_id", coach_id)
    result = query.limit(1).execute()
    return result.data[0] if result.data else None


def fetch_active_messages(
    client,
    kinds: Optional[Iterable[ScheduleKind]] = None,
) -> list[ScheduledMessage]:
    """
    Load every active, enabled scheduled message.

    kinds restricts the schedule types (the recurring sweep passes the four
    recurring kinds).
    """
    query = (
        client.table(SCHEDULED_MESSAGES_TABLE)
        .select("*")
        .eq("status", MessageStatus.ACTIVE.value)
        .eq("is_active", True)
    )
    if kinds is not None:
        query = query.in_("schedule_type", [kind.value for kind in kinds])

    result = query.execute()
    return parse_messages(result.data or [])


def insert_delivery(client, delivery: MessageDelivery) -> Optional[dict]:
    """Append one row to message_deliveries."""
    result = client.table(DELIVERIES_TABLE).insert(delivery.to_row()).execute()
    return result.data[0] if result.data else None


def _advanced_last_sent(message: ScheduledMessage, now: datetime) -> datetime:
    """now, unless the stored last_sent_at is already later (it never moves backward)."""
    if not message.last_sent_at:
        return now
    try:
        previous = parse_timestamp(message.last_sent_at)
    except ScheduleDataError:
        return now
    return max(previous, now)


def mark_dispatched(client, message: ScheduledMessage, now: datetime) -> dict:
    """
    Bookkeeping after a send cycle.

    Advances last_sent_at and, for one-time messages, moves status to
    completed. Recurring messages keep their status.
    Returns the update that was applied.
    """
    update: dict = {"last_sent_at": _advanced_last_sent(message, now).isoformat()}
    if message.schedule_kind is ScheduleKind.ONCE:
        update["status"] = MessageStatus.COMPLETED.value

    client.table(SCHEDULED_MESSAGES_TABLE).update(update).eq("id", message.id).execute()
    return update


def claim_message(client, message: ScheduledMessage, now: datetime) -> bool:
    """
    Conditionally set last_sent_at = now, only if it still holds the value
    this invocation observed. Returns False when another invocation got there
    first.
    """
    query = (
        client.table(SCHEDULED_MESSAGES_TABLE)
        .update({"last_sent_at": _advanced_last_sent(message, now).isoformat()})
        .eq("id", message.id)
        .eq("status", MessageStatus.ACTIVE.value)
    )
    if message.last_sent_at:
        query = query.eq("last_sent_at", message.last_sent_at)
    else:
        query = query.is_("last_sent_at", "null")

    result = query.execute()
    return bool(result.data)


def list_deliveries(client, message_id: str) -> list[dict]:
    """Delivery history for one message, newest first."""
    result = (
        client.table(DELIVERIES_TABLE)
        .select("*")
        .eq("scheduled_message_id", message_id)
        .order("sent_at", desc=True)
        .execute()
    )
    return result.data or []


def get_stats(client, coach_id: str) -> dict:
    """Message and delivery totals for one coach."""
    messages = (
        client.table(SCHEDULED_MESSAGES_TABLE)
        .select("id, status")
        .eq("coach_id", coach_id)
        .execute()
    ).data or []

    message_ids = [m["id"] for m in messages]
    deliveries: list[dict] = []
    if message_ids:
        deliveries = (
            client.table(DELIVERIES_TABLE)
            .select("id, status")
            .in_("scheduled_message_id", message_ids)
            .execute()
        ).data or []

    return {
        "total_scheduled": len(messages),
        "active_scheduled": sum(1 for m in messages if m.get("status") == MessageStatus.ACTIVE.value),
        "completed_scheduled": sum(1 for m in messages if m.get("status") == MessageStatus.COMPLETED.value),
        "total_deliveries": len(deliveries),
        "successful_deliveries": sum(1 for d in deliveries if d.get("status") == DeliveryStatus.SENT.value),
        "failed_deliveries": sum(1 for d in deliveries if d.get("status") == DeliveryStatus.FAILED.value),
    }


def set_qstash_id(client, message_id: str, qstash_id: str) -> None:
    """Remember the QStash message/schedule id that will call this message back."""
    client.table(SCHEDULED_MESSAGES_TABLE).update({"qstash_id": qstash_id}).eq("id", message_id).execute()
