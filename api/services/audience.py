"""
Audience resolution for scheduled messages

Expands a message's target into recipient ids:
- AllClients: every users row whose coach column is the message's coach
- SpecificClients: the stored id list as-is (unknown ids fail later, at send time)

No recipients is a normal outcome (nothing to send), not an error.
"""
from __future__ import annotations

import logging

from services.scheduled_messages import (
    USERS_TABLE,
    AllClients,
    ScheduledMessage,
    SpecificClients,
)

logger = logging.getLogger(__name__)


def get_coach_client_ids(client, coach_id: str) -> set[str]:
    """Ids of all clients assigned to a coach."""
    result = (
        client.table(USERS_TABLE)
        .select("id")
        .eq("coach", coach_id)
        .execute()
    )
    return {str(row["id"]) for row in (result.data or []) if row.get("id")}


def resolve_recipients(client, message: ScheduledMessage) -> set[str]:
    target = message.target

    if isinstance(target, AllClients):
        return get_coach_client_ids(client, message.coach_id)
    if isinstance(target, SpecificClients):
        return set(target.user_ids)

    raise TypeError(f"Unhandled audience target: {target!r}")


def ordered_recipients(client, message: ScheduledMessage) -> list[str]:
    """Recipients in the order they are attempted."""
    recipients = sorted(resolve_recipients(client, message))
    logger.info(f"[AUDIENCE] Message {message.id}: {len(recipients)} recipient(s)")
    return recipients
