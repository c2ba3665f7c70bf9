"""
QStash registration tests

Cron building, the REST client (httpx.MockTransport) and the scheduling
decisions of MessageScheduler (mocked QStashClient).
"""

import asyncio
import json
from dataclasses import replace
from datetime import datetime, timedelta, timezone
from unittest.mock import AsyncMock, MagicMock

import httpx
import pytest

from fakes import message_row
from services import qstash as qstash_module
from services.qstash import (
    PROCESS_PATH,
    START_RECURRING_PATH,
    MessageScheduler,
    QStashClient,
    QStashError,
    build_cron_expression,
    seconds_until,
    with_timezone,
)
from services.recurrence import is_due
from services.scheduled_messages import ScheduledMessage


NOW = datetime(2025, 1, 15, 12, 0, tzinfo=timezone.utc)


def make_message(**overrides) -> ScheduledMessage:
    return ScheduledMessage.from_row(message_row(**overrides))


# =============================================================================
# Cron expressions
# =============================================================================

@pytest.mark.parametrize("overrides,expected", [
    ({"schedule_type": "5min"}, "*/5 * * * *"),
    ({"schedule_type": "daily", "start_time": "07:30"}, "30 7 * * *"),
    ({"schedule_type": "weekly", "start_time": "18:05:00", "frequency_config": {"dayOfWeek": [3, 5]}}, "5 18 * * 3"),
    ({"schedule_type": "weekly", "start_time": "09:00"}, "0 9 * * 1"),
    ({"schedule_type": "monthly", "start_time": "09:00", "frequency_config": {"dayOfMonth": 15}}, "0 9 15 * *"),
    ({"schedule_type": "monthly", "start_time": "09:00"}, "0 9 1 * *"),
])
def test_build_cron_expression(overrides, expected):
    assert build_cron_expression(make_message(**overrides)) == expected


def test_build_cron_rejects_once():
    with pytest.raises(ValueError):
        build_cron_expression(make_message(schedule_type="once"))


def test_build_cron_rejects_out_of_range_day():
    message = make_message(schedule_type="monthly", frequency_config={"dayOfMonth": 42})
    with pytest.raises(ValueError):
        build_cron_expression(message)


def test_with_timezone():
    assert with_timezone("0 9 * * *", "America/New_York") == "CRON_TZ=America/New_York 0 9 * * *"
    assert with_timezone("0 9 * * *", "UTC") == "0 9 * * *"
    assert with_timezone("CRON_TZ=Europe/Oslo 0 9 * * *", "America/New_York") == "CRON_TZ=Europe/Oslo 0 9 * * *"


# =============================================================================
# QStashClient
# =============================================================================

def use_mock_http(monkeypatch, handler):
    real_client = httpx.AsyncClient
    mock = httpx.MockTransport(handler)
    monkeypatch.setattr(
        qstash_module.httpx,
        "AsyncClient",
        lambda **kwargs: real_client(transport=mock, **kwargs),
    )


def test_publish_json_headers(monkeypatch):
    seen = {}

    def handler(request):
        seen["path"] = request.url.path
        seen["headers"] = request.headers
        seen["body"] = json.loads(request.content)
        return httpx.Response(201, json={"messageId": "qmsg-1"})

    use_mock_http(monkeypatch, handler)
    client = QStashClient("qstash-token", base_url="https://qstash.test")

    message_id = asyncio.run(client.publish_json(
        "https://api.ptflow.test/api/process-scheduled-messages",
        {"messageId": "msg-1"},
        delay_seconds=90,
        forward_headers={"Authorization": "Bearer test-key"},
    ))

    assert message_id == "qmsg-1"
    assert seen["path"].startswith("/v2/publish/")
    assert seen["headers"]["Authorization"] == "Bearer qstash-token"
    assert seen["headers"]["Upstash-Delay"] == "90s"
    assert seen["headers"]["Upstash-Forward-Authorization"] == "Bearer test-key"
    assert seen["body"] == {"messageId": "msg-1"}


def test_create_schedule_sends_cron(monkeypatch):
    seen = {}

    def handler(request):
        seen["cron"] = request.headers.get("Upstash-Cron")
        return httpx.Response(200, json={"scheduleId": "sched-1"})

    use_mock_http(monkeypatch, handler)
    client = QStashClient("qstash-token")

    schedule_id = asyncio.run(client.create_schedule("https://x.test/api", "*/5 * * * *", {}))

    assert schedule_id == "sched-1"
    assert seen["cron"] == "*/5 * * * *"


def test_qstash_error_status(monkeypatch):
    use_mock_http(monkeypatch, lambda request: httpx.Response(401, text="invalid token"))
    client = QStashClient("bad-token")

    with pytest.raises(QStashError, match="401"):
        asyncio.run(client.delete_schedule("sched-1"))


def test_qstash_from_config_requires_token(config):
    with pytest.raises(ValueError):
        QStashClient.from_config(replace(config, qstash_token=None))


# =============================================================================
# MessageScheduler
# =============================================================================

def make_scheduler(config):
    qstash = MagicMock()
    qstash.publish_json = AsyncMock(return_value="qmsg-1")
    qstash.create_schedule = AsyncMock(return_value="sched-1")
    return MessageScheduler(qstash, config), qstash


def test_schedule_once_delayed_publish(config):
    scheduler, qstash = make_scheduler(config)
    message = make_message(start_date="2025-01-15", start_time="13:00")

    qstash_id = asyncio.run(scheduler.schedule_message(message, now=NOW))

    assert qstash_id == "qmsg-1"
    args, kwargs = qstash.publish_json.call_args
    assert args[0] == f"https://api.ptflow.test{PROCESS_PATH}"
    assert args[1]["messageId"] == "msg-1"
    assert kwargs["delay_seconds"] == 3600
    assert kwargs["forward_headers"] == {"Authorization": "Bearer test-key"}
    qstash.create_schedule.assert_not_called()


def test_schedule_once_in_past_sends_now(config):
    scheduler, qstash = make_scheduler(config)
    message = make_message(start_date="2025-01-01")

    asyncio.run(scheduler.schedule_message(message, now=NOW))

    assert qstash.publish_json.call_args.kwargs["delay_seconds"] == 0


def test_schedule_once_delay_rounds_up_to_fire_time(config):
    scheduler, qstash = make_scheduler(config)
    message = make_message(start_date="2025-01-15", start_time="09:00")
    now = datetime(2025, 1, 15, 8, 0, 0, 700000, tzinfo=timezone.utc)

    asyncio.run(scheduler.schedule_message(message, now=now))

    delay = qstash.publish_json.call_args.kwargs["delay_seconds"]
    assert delay == 3600
    # The callback lands at or after the fire time, so the message is due
    assert is_due(message, now + timedelta(seconds=delay))


def test_seconds_until_never_negative():
    assert seconds_until(NOW, NOW + timedelta(minutes=5)) == 0
    assert seconds_until(NOW + timedelta(seconds=0.2), NOW) == 1



def test_schedule_5min_starts_immediately(config):
    scheduler, qstash = make_scheduler(config)
    message = make_message(schedule_type="5min", start_date="2099-01-01")

    schedule_id = asyncio.run(scheduler.schedule_message(message, now=NOW))

    assert schedule_id == "sched-1"
    assert qstash.create_schedule.call_args.args[1] == "*/5 * * * *"
    # First run published straight away
    first_run = qstash.publish_json.call_args.args[1]
    assert first_run["isFirstMessage"] is True


def test_schedule_daily_future_start_is_delayed(config):
    scheduler, qstash = make_scheduler(config)
    message = make_message(
        schedule_type="daily",
        start_date="2025-01-16",
        start_time="09:00",
        timezone="America/New_York",
    )

    qstash_id = asyncio.run(scheduler.schedule_message(message, now=NOW))

    assert qstash_id == "qmsg-1"
    qstash.create_schedule.assert_not_called()
    args, kwargs = qstash.publish_json.call_args
    assert args[0].endswith(START_RECURRING_PATH)
    assert args[1]["cronExpression"] == "CRON_TZ=America/New_York 0 9 * * *"
    # 2025-01-16 14:00Z - 2025-01-15 12:00Z
    assert kwargs["delay_seconds"] == 26 * 3600


def test_schedule_daily_past_start_creates_schedule(config):
    scheduler, qstash = make_scheduler(config)
    message = make_message(schedule_type="daily", start_date="2025-01-01", start_time="09:00")

    schedule_id = asyncio.run(scheduler.schedule_message(message, now=NOW))

    assert schedule_id == "sched-1"
    assert qstash.create_schedule.call_args.args[1] == "0 9 * * *"


def test_first_run_failure_does_not_fail_start(config):
    scheduler, qstash = make_scheduler(config)
    qstash.publish_json.side_effect = QStashError("QStash unreachable")

    schedule_id = asyncio.run(scheduler.start_recurring("msg-1", "coach-1", "0 9 * * *"))

    assert schedule_id == "sched-1"
