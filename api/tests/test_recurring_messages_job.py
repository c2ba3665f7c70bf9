"""
Recurring messages job tests

The job sends through the API's send endpoint; the endpoint is replaced with
httpx.MockTransport so the run stays in-process.
"""

import asyncio
import json
from datetime import datetime, timezone

import httpx

from fakes import FakeSupabase, message_row
from jobs.recurring_messages import run_recurring_messages
from services import chat_transport


NOW = datetime(2025, 1, 15, 12, 0, tzinfo=timezone.utc)


def send_endpoint(monkeypatch, failing=()):
    calls = []

    def handler(request):
        body = json.loads(request.content)
        calls.append((body["messageId"], body["userId"]))
        if body["userId"] in failing:
            return httpx.Response(500, json={"error": "Failed to send message", "details": "User not found"})
        return httpx.Response(200, json={"success": True, "streamMessageId": f"s-{body['userId']}"})

    real_client = httpx.AsyncClient
    mock = httpx.MockTransport(handler)
    monkeypatch.setattr(
        chat_transport.httpx,
        "AsyncClient",
        lambda **kwargs: real_client(transport=mock, **kwargs),
    )
    return calls


def test_job_sends_due_recurring_messages(monkeypatch, config):
    print("\n=== Test: Recurring job ===")
    calls = send_endpoint(monkeypatch, failing={"client-2"})
    db = FakeSupabase({
        "scheduled_messages": [
            message_row(id="daily", schedule_type="daily", target_user_ids=["client-1", "client-2"]),
            message_row(id="weekly-recent", schedule_type="weekly", last_sent_at="2025-01-14T12:00:00+00:00"),
            message_row(id="once", schedule_type="once", start_date="2020-01-01"),
        ],
        "message_deliveries": [],
    })

    result = asyncio.run(run_recurring_messages(client=db, config=config, now=NOW))

    assert calls == [("daily", "client-1"), ("daily", "client-2")]
    assert result.total == 1
    assert result.processed == 1
    assert [e.to_dict() for e in result.errors] == [
        {"messageId": "daily", "userId": "client-2", "error": "HTTP 500: User not found"},
    ]

    # The endpoint records successes; the job only records the failure
    deliveries = db.rows("message_deliveries")
    assert [(d["user_id"], d["status"]) for d in deliveries] == [("client-2", "failed")]

    rows = {row["id"]: row for row in db.rows("scheduled_messages")}
    assert rows["daily"]["last_sent_at"] == NOW.isoformat()
    assert rows["weekly-recent"]["last_sent_at"] == "2025-01-14T12:00:00+00:00"
    assert rows["once"]["status"] == "active"
    print("✅ Only the due recurring message was sent")


def test_job_with_nothing_due(monkeypatch, config):
    calls = send_endpoint(monkeypatch)
    db = FakeSupabase({"scheduled_messages": [], "message_deliveries": []})

    result = asyncio.run(run_recurring_messages(client=db, config=config, now=NOW))

    assert result.total == 0
    assert calls == []
