"""
Scheduled message dispatch

One processing pass over a set of candidate messages:

1. Keep only messages that are due now (re-checked here even when the caller
   already filtered)
2. Resolve each message's recipients
3. Send to each recipient in turn and record one message_deliveries row per
   attempt, sent or failed, before moving to the next recipient
4. Bookkeeping: advance last_sent_at; one-time messages become completed

Failures are contained: a failed send only affects that recipient, a failed
bookkeeping update only affects that message. Both end up in
DispatchResult.errors and nothing is raised past process_batch().

Deliveries and bookkeeping are separate writes. A crash between them means
the message is sent again on the next pass (at-least-once). With
claim_before_send, last_sent_at is conditionally advanced before sending so
two overlapping passes cannot both send the same cycle.
"""
from __future__ import annotations

import logging
from dataclasses import dataclass, field
from datetime import datetime, timezone
from typing import Iterable, Optional

from services.audience import ordered_recipients
from services.chat_transport import ChatTransport, ChatTransportError
from services.message_store import claim_message, insert_delivery, mark_dispatched
from services.recurrence import check_due, ensure_utc
from services.scheduled_messages import DeliveryStatus, MessageDelivery, ScheduledMessage

logger = logging.getLogger(__name__)


@dataclass
class DispatchError:
    """One failed recipient, or a message-level failure when user_id is None."""
    message_id: str
    error: str
    user_id: Optional[str] = None

    def to_dict(self) -> dict:
        data = {"messageId": self.message_id, "error": self.error}
        if self.user_id is not None:
            data["userId"] = self.user_id
        return data


@dataclass
class DispatchResult:
    """Aggregate outcome of a processing pass."""
    processed: int = 0
    total: int = 0
    errors: list[DispatchError] = field(default_factory=list)
    dispatched_ids: list[str] = field(default_factory=list)

    def merge(self, other: "DispatchResult") -> None:
        self.processed += other.processed
        self.errors.extend(other.errors)
        self.dispatched_ids.extend(other.dispatched_ids)


@dataclass
class RecipientOutcome:
    recipient_id: str
    sent: bool
    stream_message_id: Optional[str] = None
    error: Optional[str] = None


def _error_text(exc: BaseException) -> str:
    return str(exc) or exc.__class__.__name__ or "Unknown error"


class MessageDispatcher:
    """
    Sends due scheduled messages through a chat transport.

    Usage:
        dispatcher = MessageDispatcher(supabase_client, transport)
        result = await dispatcher.process_batch(candidates)
    """

    def __init__(self, client, transport: ChatTransport, claim_before_send: bool = False):
        """
        Args:
            client: Supabase service client
            transport: Where messages are sent
            claim_before_send: Conditionally advance last_sent_at before sending
        """
        self.client = client
        self.transport = transport
        self.claim_before_send = claim_before_send

    def select_due(self, candidates: Iterable[ScheduledMessage], now: datetime) -> list[ScheduledMessage]:
        due = []
        for message in candidates:
            check = check_due(message, now)
            if check.due:
                due.append(message)
            elif check.data_error:
                logger.warning(f"[DISPATCH] Skipping {message.id}: {check.reason}")
        return due

    async def process_batch(
        self,
        candidates: Iterable[ScheduledMessage],
        now: Optional[datetime] = None,
    ) -> DispatchResult:
        """Dispatch every due message in candidates."""
        now = ensure_utc(now) if now is not None else datetime.now(timezone.utc)
        due = self.select_due(candidates, now)

        result = DispatchResult(total=len(due))
        for message in due:
            result.merge(await self.dispatch_message(message, now))

        logger.info(
            f"[DISPATCH] Pass complete: {result.processed} sent, "
            f"{len(result.errors)} error(s), {len(due)} message(s) due"
        )
        return result

    async def dispatch_message(self, message: ScheduledMessage, now: datetime) -> DispatchResult:
        """Send one (already due) message to all of its recipients."""
        result = DispatchResult(total=1)
        logger.info(f"[DISPATCH] Processing message {message.id} ({message.schedule_kind.value})")

        if self.claim_before_send:
            try:
                if not claim_message(self.client, message, now):
                    logger.info(f"[DISPATCH] Message {message.id} already claimed by another run")
                    return DispatchResult(total=1)
            except Exception as e:
                logger.error(f"[DISPATCH] Claim failed for {message.id}: {e}")
                result.errors.append(DispatchError(message_id=message.id, error=_error_text(e)))
                return result

        try:
            recipients = ordered_recipients(self.client, message)
        except Exception as e:
            logger.error(f"[DISPATCH] Could not resolve recipients for {message.id}: {e}")
            result.errors.append(DispatchError(message_id=message.id, error=_error_text(e)))
            return result

        for recipient_id in recipients:
            outcome = await self.deliver(message, recipient_id)
            if outcome.sent:
                result.processed += 1
            else:
                result.errors.append(DispatchError(
                    message_id=message.id,
                    user_id=recipient_id,
                    error=outcome.error or "Unknown error",
                ))

        try:
            mark_dispatched(self.client, message, now)
            result.dispatched_ids.append(message.id)
            logger.info(f"[DISPATCH] Updated bookkeeping for message {message.id}")
        except Exception as e:
            logger.error(f"[DISPATCH] Bookkeeping update failed for {message.id}: {e}")
            result.errors.append(DispatchError(message_id=message.id, error=_error_text(e)))

        return result

    async def deliver(self, message: ScheduledMessage, recipient_id: str) -> RecipientOutcome:
        """Send to one recipient and record the attempt. Never raises."""
        try:
            receipt = await self.transport.send(message, recipient_id)
            outcome = RecipientOutcome(
                recipient_id=recipient_id,
                sent=True,
                stream_message_id=receipt.message_id,
            )
        except ChatTransportError as e:
            logger.warning(f"[DISPATCH] Failed to send {message.id} to {recipient_id}: {e}")
            outcome = RecipientOutcome(recipient_id=recipient_id, sent=False, error=_error_text(e))
        except Exception as e:
            logger.error(f"[DISPATCH] Unexpected error sending {message.id} to {recipient_id}: {e}")
            outcome = RecipientOutcome(recipient_id=recipient_id, sent=False, error=_error_text(e))

        if outcome.sent and self.transport.records_deliveries:
            return outcome

        self.record(message, outcome)
        return outcome

    def record(self, message: ScheduledMessage, outcome: RecipientOutcome) -> None:
        delivery = MessageDelivery(
            scheduled_message_id=message.id,
            user_id=outcome.recipient_id,
            status=DeliveryStatus.SENT if outcome.sent else DeliveryStatus.FAILED,
            stream_message_id=outcome.stream_message_id,
            error_message=outcome.error,
        )
        try:
            insert_delivery(self.client, delivery)
        except Exception as e:
            # The send already happened; losing the log row must not stop the pass
            logger.error(
                f"[DISPATCH] Failed to record {delivery.status.value} delivery of "
                f"{message.id} to {outcome.recipient_id}: {e}"
            )
