"""
QStash routes - register scheduled messages with the external scheduler

Endpoints (all require `Authorization: Bearer <SCHEDULER_API_KEY>`):
- POST /qstash-schedule - Queue a message (one-time delay or recurring cron)
- POST /start-recurring-schedule - Delayed-start callback: create the cron schedule now
- DELETE /qstash-schedule/:id - Cancel a recurring schedule
"""

import logging
from datetime import datetime, timezone
from typing import Optional

from fastapi import APIRouter, Depends, HTTPException, status
from fastapi.responses import JSONResponse
from pydantic import BaseModel

try:
    from typing import Annotated
except ImportError:
    from typing_extensions import Annotated

from services.config import Config
from services.message_store import fetch_message_row, set_qstash_id
from services.qstash import MessageScheduler, QStashClient, QStashError
from services.recurrence import ScheduleDataError, parse_timestamp
from services.scheduled_messages import InvalidMessageRow, ScheduleKind, ScheduledMessage
from services.scheduler_auth import SchedulerAuth
from services.supabase import ServiceClient

logger = logging.getLogger(__name__)

router = APIRouter()


# =============================================================================
# Request/Response Models
# =============================================================================

class ScheduleRequest(BaseModel):
    messageId: Optional[str] = None
    coachId: Optional[str] = None
    scheduleType: Optional[str] = None
    scheduledTime: Optional[str] = None
    cronExpression: Optional[str] = None


class ScheduleResponse(BaseModel):
    success: bool
    qstashId: str
    message: str


class StartRecurringRequest(BaseModel):
    messageId: Optional[str] = None
    coachId: Optional[str] = None
    cronExpression: Optional[str] = None
    recurring: Optional[bool] = None


class StartRecurringResponse(BaseModel):
    success: bool
    scheduleId: str
    message: str


# =============================================================================
# Dependencies
# =============================================================================

def get_message_scheduler(config: Config) -> MessageScheduler:
    try:
        return MessageScheduler(QStashClient.from_config(config), config)
    except ValueError as e:
        logger.error(f"QStash not configured: {e}")
        raise HTTPException(status_code=500, detail="Missing environment variables")


Scheduler = Annotated[MessageScheduler, Depends(get_message_scheduler)]


def _qstash_failure(error: str, e: Exception) -> JSONResponse:
    return JSONResponse(status_code=500, content={"error": error, "details": str(e)})


# =============================================================================
# Routes
# =============================================================================

@router.post("/qstash-schedule", response_model=ScheduleResponse)
async def schedule_message(
    _auth: SchedulerAuth,
    client: ServiceClient,
    scheduler: Scheduler,
    request: ScheduleRequest,
):
    """
    Register a scheduled message with QStash.

    scheduleType must match the stored row. scheduledTime (ISO-8601) and
    cronExpression override the timing derived from the row.
    """
    if not request.messageId or not request.coachId or not request.scheduleType:
        raise HTTPException(status_code=status.HTTP_400_BAD_REQUEST, detail="Missing required fields")

    try:
        requested_kind = ScheduleKind(request.scheduleType)
    except ValueError:
        raise HTTPException(status_code=400, detail=f"Unknown scheduleType: {request.scheduleType}")

    row = fetch_message_row(client, request.messageId, request.coachId)
    if not row:
        raise HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail="Message not found")

    try:
        message = ScheduledMessage.from_row(row)
        if message.schedule_kind is not requested_kind:
            raise HTTPException(
                status_code=400,
                detail=f"scheduleType {requested_kind.value} does not match message ({message.schedule_kind.value})",
            )
        fire_at = parse_timestamp(request.scheduledTime) if request.scheduledTime else None
        qstash_id = await scheduler.schedule_message(
            message,
            cron_expression=request.cronExpression,
            fire_at=fire_at,
            now=datetime.now(timezone.utc),
        )
    except (InvalidMessageRow, ScheduleDataError) as e:
        raise HTTPException(status_code=400, detail=str(e))
    except QStashError as e:
        logger.error(f"[QSTASH] Scheduling {request.messageId} failed: {e}")
        return _qstash_failure("Failed to schedule message", e)

    set_qstash_id(client, message.id, qstash_id)

    return ScheduleResponse(success=True, qstashId=qstash_id, message="Message scheduled successfully")


@router.post("/start-recurring-schedule", response_model=StartRecurringResponse)
async def start_recurring_schedule(
    _auth: SchedulerAuth,
    client: ServiceClient,
    scheduler: Scheduler,
    request: StartRecurringRequest,
):
    """Create the cron schedule for a recurring message whose start has arrived."""
    if not request.messageId or not request.coachId or not request.cronExpression:
        raise HTTPException(status_code=status.HTTP_400_BAD_REQUEST, detail="Missing required fields")

    logger.info(f"[QSTASH] Starting recurring schedule for {request.messageId}")

    try:
        schedule_id = await scheduler.start_recurring(request.messageId, request.coachId, request.cronExpression)
    except QStashError as e:
        logger.error(f"[QSTASH] Starting schedule for {request.messageId} failed: {e}")
        return _qstash_failure("Failed to start recurring schedule", e)

    set_qstash_id(client, request.messageId, schedule_id)

    return StartRecurringResponse(
        success=True,
        scheduleId=schedule_id,
        message="Recurring schedule started successfully",
    )


@router.delete("/qstash-schedule/{schedule_id}")
async def cancel_schedule(
    schedule_id: str,
    _auth: SchedulerAuth,
    scheduler: Scheduler,
):
    """Delete a QStash cron schedule."""
    try:
        await scheduler.qstash.delete_schedule(schedule_id)
    except QStashError as e:
        logger.error(f"[QSTASH] Deleting schedule {schedule_id} failed: {e}")
        return _qstash_failure("Failed to delete schedule", e)

    logger.info(f"[QSTASH] Deleted schedule {schedule_id}")
    return {"success": True, "scheduleId": schedule_id}
