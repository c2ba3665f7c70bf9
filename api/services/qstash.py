"""
QStash scheduling for scheduled messages

Upstash QStash calls the processing endpoint back when a message is due:
- once: a single delayed publish to /api/process-scheduled-messages
- 5min: a cron schedule, plus one immediate publish for the first send
- daily / weekly / monthly: a cron schedule created at the start instant.
  When the start is in the future a delayed publish to
  /api/start-recurring-schedule creates it then.

Cron expressions are written in the message's local time and carry a
CRON_TZ prefix, so QStash follows DST changes for us.

REST reference: https://upstash.com/docs/qstash/api
"""
from __future__ import annotations

import logging
import math
from datetime import datetime, timezone
from typing import Any, Optional

import httpx
from croniter import croniter

from services.config import SchedulerConfig
from services.recurrence import ensure_utc, local_to_utc, parse_local_time
from services.scheduled_messages import ScheduleKind, ScheduledMessage

logger = logging.getLogger(__name__)

PROCESS_PATH = "/api/process-scheduled-messages"
START_RECURRING_PATH = "/api/start-recurring-schedule"


class QStashError(Exception):
    """QStash rejected a request or could not be reached."""


def build_cron_expression(message: ScheduledMessage) -> str:
    """
    Five-field cron expression (local time) for a recurring message.

    weekly uses the first configured dayOfWeek (default Monday), monthly the
    configured dayOfMonth (default the 1st).
    """
    kind = message.schedule_kind
    if kind is ScheduleKind.EVERY_5_MINUTES:
        return "*/5 * * * *"

    start = parse_local_time(message.start_time)
    minute, hour = start.minute, start.hour

    if kind is ScheduleKind.DAILY:
        expression = f"{minute} {hour} * * *"
    elif kind is ScheduleKind.WEEKLY:
        days = message.frequency.days_of_week
        day_of_week = days[0] if days else 1
        expression = f"{minute} {hour} * * {day_of_week}"
    elif kind is ScheduleKind.MONTHLY:
        day_of_month = message.frequency.day_of_month or 1
        expression = f"{minute} {hour} {day_of_month} * *"
    else:
        raise ValueError(f"No cron expression for schedule kind {kind.value!r}")

    if not croniter.is_valid(expression):
        raise ValueError(f"Invalid cron expression generated: {expression}")
    return expression


def with_timezone(cron_expression: str, tz_name: Optional[str]) -> str:
    """Prefix a cron expression with CRON_TZ unless it is UTC."""
    if cron_expression.startswith("CRON_TZ=") or not tz_name or tz_name.upper() == "UTC":
        return cron_expression
    return f"CRON_TZ={tz_name} {cron_expression}"


def seconds_until(target: datetime, now: datetime) -> int:
    """Whole seconds until target, rounded up so a callback never lands before it."""
    return max(0, math.ceil((ensure_utc(target) - ensure_utc(now)).total_seconds()))


class QStashClient:
    """
    Thin async client for the QStash v2 REST API.

    Usage:
        qstash = QStashClient.from_config(config)
        message_id = await qstash.publish_json(url, {"messageId": ...}, delay_seconds=3600)
    """

    def __init__(self, token: str, base_url: str = "https://qstash.upstash.io", timeout: float = 30.0):
        self.token = token
        self.base_url = base_url.rstrip("/")
        self.timeout = timeout

    @classmethod
    def from_config(cls, config: SchedulerConfig) -> "QStashClient":
        if not config.qstash_token:
            raise ValueError("QSTASH_TOKEN must be set")
        return cls(config.qstash_token, base_url=config.qstash_url, timeout=config.http_timeout)

    async def _request(
        self,
        method: str,
        path: str,
        headers: Optional[dict[str, str]] = None,
        body: Optional[dict[str, Any]] = None,
    ) -> dict:
        request_headers = {"Authorization": f"Bearer {self.token}"}
        if headers:
            request_headers.update(headers)
        if body is not None:
            request_headers["Content-Type"] = "application/json"

        try:
            async with httpx.AsyncClient(timeout=self.timeout) as client:
                response = await client.request(
                    method,
                    f"{self.base_url}{path}",
                    headers=request_headers,
                    json=body,
                )
        except httpx.HTTPError as e:
            raise QStashError(f"QStash unreachable: {e}") from e

        if response.status_code >= 400:
            raise QStashError(f"QStash {method} {path} failed: {response.status_code} - {response.text}")

        if not response.content:
            return {}
        try:
            return response.json()
        except ValueError:
            return {}

    @staticmethod
    def _forward(headers: Optional[dict[str, str]]) -> dict[str, str]:
        return {f"Upstash-Forward-{name}": value for name, value in (headers or {}).items()}

    async def publish_json(
        self,
        destination: str,
        body: dict[str, Any],
        delay_seconds: int = 0,
        forward_headers: Optional[dict[str, str]] = None,
    ) -> str:
        """Publish a JSON message, optionally delayed. Returns the QStash message id."""
        headers = self._forward(forward_headers)
        if delay_seconds > 0:
            headers["Upstash-Delay"] = f"{delay_seconds}s"

        data = await self._request("POST", f"/v2/publish/{destination}", headers=headers, body=body)
        return data.get("messageId") or "unknown"

    async def create_schedule(
        self,
        destination: str,
        cron: str,
        body: dict[str, Any],
        forward_headers: Optional[dict[str, str]] = None,
    ) -> str:
        """Create a cron schedule. Returns the QStash schedule id."""
        headers = self._forward(forward_headers)
        headers["Upstash-Cron"] = cron

        data = await self._request("POST", f"/v2/schedules/{destination}", headers=headers, body=body)
        schedule_id = data.get("scheduleId")
        if not schedule_id:
            raise QStashError("QStash did not return a scheduleId")
        return schedule_id

    async def delete_schedule(self, schedule_id: str) -> None:
        await self._request("DELETE", f"/v2/schedules/{schedule_id}")


class MessageScheduler:
    """Registers scheduled messages with QStash so it calls the processing endpoint back."""

    def __init__(self, qstash: QStashClient, config: SchedulerConfig):
        self.qstash = qstash
        self.config = config

    def _auth_headers(self) -> dict[str, str]:
        if not self.config.scheduler_api_key:
            raise ValueError("SCHEDULER_API_KEY must be set")
        return {"Authorization": f"Bearer {self.config.scheduler_api_key}"}

    async def _publish_first_run(self, message_id: str, coach_id: str) -> None:
        """Immediate first send for a freshly started schedule. Failure is logged, not raised."""
        try:
            first_id = await self.qstash.publish_json(
                self.config.api_url(PROCESS_PATH),
                {"messageId": message_id, "coachId": coach_id, "recurring": True, "isFirstMessage": True},
                forward_headers=self._auth_headers(),
            )
            logger.info(f"[QSTASH] First run for {message_id} published: {first_id}")
        except QStashError as e:
            logger.error(f"[QSTASH] Failed to publish first run for {message_id}: {e}")

    async def schedule_once(self, message_id: str, coach_id: str, fire_at: datetime, now: Optional[datetime] = None) -> str:
        now = now or datetime.now(timezone.utc)
        delay = seconds_until(fire_at, now)

        qstash_id = await self.qstash.publish_json(
            self.config.api_url(PROCESS_PATH),
            {"messageId": message_id, "coachId": coach_id, "scheduledTime": fire_at.isoformat()},
            delay_seconds=delay,
            forward_headers=self._auth_headers(),
        )
        logger.info(f"[QSTASH] One-time message {message_id} queued with {delay}s delay: {qstash_id}")
        return qstash_id

    async def start_recurring(self, message_id: str, coach_id: str, cron_expression: str) -> str:
        """Create the cron schedule now and publish the first run."""
        schedule_id = await self.qstash.create_schedule(
            self.config.api_url(PROCESS_PATH),
            cron_expression,
            {"messageId": message_id, "coachId": coach_id, "recurring": True},
            forward_headers=self._auth_headers(),
        )
        logger.info(f"[QSTASH] Recurring schedule for {message_id} created: {schedule_id} ({cron_expression})")

        await self._publish_first_run(message_id, coach_id)
        return schedule_id

    async def schedule_recurring(
        self,
        message_id: str,
        coach_id: str,
        kind: ScheduleKind,
        cron_expression: str,
        start_at: Optional[datetime],
        now: Optional[datetime] = None,
    ) -> str:
        now = now or datetime.now(timezone.utc)

        if kind is ScheduleKind.EVERY_5_MINUTES or start_at is None:
            return await self.start_recurring(message_id, coach_id, cron_expression)

        delay = seconds_until(start_at, now)
        if delay == 0:
            return await self.start_recurring(message_id, coach_id, cron_expression)

        # Start lies ahead: have QStash call us back then to create the schedule
        qstash_id = await self.qstash.publish_json(
            self.config.api_url(START_RECURRING_PATH),
            {"messageId": message_id, "coachId": coach_id, "cronExpression": cron_expression, "recurring": True},
            delay_seconds=delay,
            forward_headers=self._auth_headers(),
        )
        logger.info(f"[QSTASH] Delayed start for {message_id} in {delay}s: {qstash_id}")
        return qstash_id

    async def schedule_message(
        self,
        message: ScheduledMessage,
        cron_expression: Optional[str] = None,
        fire_at: Optional[datetime] = None,
        now: Optional[datetime] = None,
    ) -> str:
        """
        Register a message with QStash according to its schedule kind.

        fire_at / cron_expression override the values derived from the row.
        Raises ScheduleDataError on bad timing data, QStashError on API failure.
        """
        start_at = fire_at
        if start_at is None and message.start_date and message.start_time:
            start_at = local_to_utc(message.start_date, message.start_time, message.timezone)

        if message.schedule_kind is ScheduleKind.ONCE:
            if start_at is None:
                start_at = local_to_utc(message.start_date, message.start_time, message.timezone)
            return await self.schedule_once(message.id, message.coach_id, start_at, now=now)

        cron = cron_expression or with_timezone(build_cron_expression(message), message.timezone)
        return await self.schedule_recurring(
            message.id,
            message.coach_id,
            message.schedule_kind,
            cron,
            start_at,
            now=now,
        )
