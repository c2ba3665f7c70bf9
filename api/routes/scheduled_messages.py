"""
Scheduled message routes - dispatch entry points

Endpoints (all require `Authorization: Bearer <SCHEDULER_API_KEY>`):
- POST /process-scheduled-messages - QStash callback for one message, or a sweep of all due messages
- GET /cron/process-recurring-messages - Sweep of due recurring messages (cron trigger)
- POST /send-scheduled-message - Send one message to one recipient (used by the recurring job)
- GET /scheduled-messages/stats - Message and delivery totals for a coach
- GET /scheduled-messages/:id/deliveries - Delivery log for one message
"""

import logging
from datetime import datetime, timezone
from typing import Optional

from fastapi import APIRouter, Depends, HTTPException, Query, status
from fastapi.responses import JSONResponse
from pydantic import BaseModel, Field

try:
    from typing import Annotated
except ImportError:
    from typing_extensions import Annotated

from services.chat_transport import ChatTransport, StreamChatTransport
from services.config import Config
from services.message_dispatch import DispatchResult, MessageDispatcher
from services.message_store import (
    fetch_active_messages,
    fetch_message_row,
    get_stats,
    insert_delivery,
    list_deliveries,
)
from services.recurrence import check_due
from services.scheduled_messages import (
    RECURRING_KINDS,
    DeliveryStatus,
    InvalidMessageRow,
    MessageDelivery,
    MessageStatus,
    ScheduledMessage,
)
from services.scheduler_auth import SchedulerAuth
from services.supabase import ServiceClient

logger = logging.getLogger(__name__)

router = APIRouter()


# =============================================================================
# Request/Response Models
# =============================================================================

class ProcessRequest(BaseModel):
    """Processing request. QStash sends messageId + coachId; an empty body means sweep."""
    messageId: Optional[str] = None
    coachId: Optional[str] = None
    recurring: Optional[bool] = None
    isFirstMessage: Optional[bool] = None
    scheduledTime: Optional[str] = None


class ProcessResponse(BaseModel):
    """Summary of a processing pass."""
    message: str
    processed: int = 0
    total: int = 0
    errors: list[dict] = Field(default_factory=list)
    status: str = "success"
    timestamp: str
    scheduledFor: Optional[str] = None


class SendRequest(BaseModel):
    """Single-recipient send request."""
    messageId: Optional[str] = None
    userId: Optional[str] = None


class SendResponse(BaseModel):
    success: bool
    messageId: str
    userId: str
    streamMessageId: Optional[str] = None


class StatsResponse(BaseModel):
    total_scheduled: int
    active_scheduled: int
    completed_scheduled: int
    total_deliveries: int
    successful_deliveries: int
    failed_deliveries: int


# =============================================================================
# Dependencies
# =============================================================================

async def get_chat_transport(config: Config, client: ServiceClient):
    """GetStream transport for the duration of one request."""
    try:
        transport = StreamChatTransport.from_config(config, db_client=client)
    except ValueError as e:
        logger.error(f"Chat transport not configured: {e}")
        raise HTTPException(status_code=500, detail="Missing environment variables")

    try:
        yield transport
    finally:
        await transport.close()


Transport = Annotated[ChatTransport, Depends(get_chat_transport)]


def _summary(text: str, now: datetime, result: Optional[DispatchResult] = None, **extra) -> ProcessResponse:
    result = result or DispatchResult()
    return ProcessResponse(
        message=text,
        processed=result.processed,
        total=result.total,
        errors=[error.to_dict() for error in result.errors],
        timestamp=now.isoformat(),
        **extra,
    )


# =============================================================================
# Processing
# =============================================================================

async def process_single_message(
    client,
    dispatcher: MessageDispatcher,
    message_id: str,
    coach_id: Optional[str],
    now: datetime,
) -> ProcessResponse:
    """Handle a callback for one named message."""
    row = fetch_message_row(client, message_id, coach_id)
    if not row or row.get("status") != MessageStatus.ACTIVE.value or not row.get("is_active", True):
        logger.info(f"Scheduled message {message_id} not found or inactive")
        raise HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail="Message not found or inactive")

    try:
        message = ScheduledMessage.from_row(row)
    except InvalidMessageRow as e:
        logger.warning(f"Scheduled message {message_id} has invalid data: {e}")
        return ProcessResponse(
            message="Message has invalid schedule data",
            errors=[{"messageId": message_id, "error": str(e)}],
            timestamp=now.isoformat(),
        )

    check = check_due(message, now)
    if check.data_error:
        return ProcessResponse(
            message="Message has invalid schedule data",
            errors=[{"messageId": message_id, "error": check.reason}],
            timestamp=now.isoformat(),
        )
    if not check.due:
        logger.info(f"Scheduled message {message_id} not yet due: {check.reason}")
        return _summary(
            "Message not yet due",
            now,
            scheduledFor=check.fire_at.isoformat() if check.fire_at else None,
        )

    result = await dispatcher.process_batch([message], now)
    return _summary("Scheduled message processed", now, result)


async def process_sweep(
    client,
    dispatcher: MessageDispatcher,
    now: datetime,
    recurring_only: bool = False,
) -> ProcessResponse:
    """Process every active message that is due now."""
    try:
        candidates = fetch_active_messages(client, kinds=RECURRING_KINDS if recurring_only else None)
    except Exception as e:
        logger.error(f"Error fetching scheduled messages: {e}")
        raise HTTPException(status_code=500, detail="Failed to fetch scheduled messages")

    label = "recurring messages" if recurring_only else "scheduled messages"
    if not candidates:
        return _summary(f"No {label} to process", now)

    due = dispatcher.select_due(candidates, now)
    logger.info(f"Found {len(candidates)} active {label}, {len(due)} due")
    if not due:
        return _summary("No messages due for sending", now)

    result = await dispatcher.process_batch(due, now)
    logger.info(f"Processing completed. Processed: {result.processed}, Errors: {len(result.errors)}")
    return _summary(f"{label.capitalize()} processed", now, result)


@router.post("/process-scheduled-messages", response_model=ProcessResponse)
async def process_scheduled_messages(
    _auth: SchedulerAuth,
    config: Config,
    client: ServiceClient,
    transport: Transport,
    request: Optional[ProcessRequest] = None,
) -> ProcessResponse:
    """
    Process scheduled messages.

    With messageId: QStash callback for that message; sends it if due.
    Without: sweep of every active message (manual / fallback mode).
    """
    now = datetime.now(timezone.utc)
    request = request or ProcessRequest()
    dispatcher = MessageDispatcher(client, transport, claim_before_send=config.claim_before_send)

    try:
        if request.messageId:
            return await process_single_message(client, dispatcher, request.messageId, request.coachId, now)
        return await process_sweep(client, dispatcher, now)
    except HTTPException:
        raise
    except Exception as e:
        logger.exception(f"Error processing scheduled messages: {e}")
        raise HTTPException(status_code=500, detail="Internal server error")


@router.get("/cron/process-recurring-messages", response_model=ProcessResponse)
async def process_recurring_messages(
    _auth: SchedulerAuth,
    config: Config,
    client: ServiceClient,
    transport: Transport,
) -> ProcessResponse:
    """Cron trigger: sweep due recurring messages. One-time messages are left to QStash."""
    now = datetime.now(timezone.utc)
    logger.info(f"=== CRON: PROCESSING RECURRING MESSAGES at {now.isoformat()} ===")
    dispatcher = MessageDispatcher(client, transport, claim_before_send=config.claim_before_send)

    try:
        return await process_sweep(client, dispatcher, now, recurring_only=True)
    except HTTPException:
        raise
    except Exception as e:
        logger.exception(f"Error in recurring messages cron: {e}")
        raise HTTPException(status_code=500, detail="Internal server error")


# =============================================================================
# Single-recipient send
# =============================================================================

@router.post("/send-scheduled-message", response_model=SendResponse)
async def send_scheduled_message(
    _auth: SchedulerAuth,
    client: ServiceClient,
    transport: Transport,
    request: SendRequest,
):
    """
    Send one scheduled message to one user and record the delivery.

    On a send failure nothing is recorded: the caller owns the failed row.
    """
    if not request.messageId or not request.userId:
        raise HTTPException(status_code=status.HTTP_400_BAD_REQUEST, detail="Missing messageId or userId")

    logger.info(f"Sending scheduled message {request.messageId} to user {request.userId}")

    row = fetch_message_row(client, request.messageId)
    if not row:
        raise HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail=f"Message not found: {request.messageId}")

    try:
        message = ScheduledMessage.from_row(row)
        receipt = await transport.send(message, request.userId)
    except Exception as e:
        logger.error(f"Error sending scheduled message {request.messageId}: {e}")
        return JSONResponse(
            status_code=500,
            content={"error": "Failed to send message", "details": str(e)},
        )

    try:
        insert_delivery(client, MessageDelivery(
            scheduled_message_id=message.id,
            user_id=request.userId,
            status=DeliveryStatus.SENT,
            stream_message_id=receipt.message_id,
        ))
    except Exception as e:
        # Message already went out; report success so the caller does not log a failure
        logger.error(f"Sent {message.id} to {request.userId} but failed to record delivery: {e}")

    logger.info(f"Successfully sent message {message.id} to user {request.userId}")
    return SendResponse(
        success=True,
        messageId=message.id,
        userId=request.userId,
        streamMessageId=receipt.message_id,
    )


# =============================================================================
# Delivery history
# =============================================================================

@router.get("/scheduled-messages/stats", response_model=StatsResponse)
async def scheduled_message_stats(
    _auth: SchedulerAuth,
    client: ServiceClient,
    coachId: str = Query(...),
) -> StatsResponse:
    """Totals of scheduled messages and deliveries for a coach."""
    try:
        return StatsResponse(**get_stats(client, coachId))
    except Exception as e:
        logger.error(f"Failed to compute scheduler stats for {coachId}: {e}")
        raise HTTPException(status_code=500, detail="Failed to fetch stats")


@router.get("/scheduled-messages/{message_id}/deliveries")
async def scheduled_message_deliveries(
    message_id: str,
    _auth: SchedulerAuth,
    client: ServiceClient,
    coachId: str = Query(...),
):
    """Delivery history for one of a coach's messages, newest first."""
    if not fetch_message_row(client, message_id, coachId):
        raise HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail="Message not found")

    deliveries = list_deliveries(client, message_id)
    return {"messageId": message_id, "deliveries": deliveries, "count": len(deliveries)}
