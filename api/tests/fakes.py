"""
Test doubles: an in-memory supabase-py query builder and a chat transport.

Supports the subset of the builder chain the scheduler uses:
table().select/insert/update().eq/in_/is_/order/limit().execute()

Usage:
    db = FakeSupabase({"users": [{"id": "u1", "coach": "c1"}]})
    db.fail("scheduled_messages", "update", RuntimeError("db down"))
"""

import copy
import itertools
from dataclasses import dataclass
from typing import Any, Optional

from services.chat_transport import ChatTransport, ChatTransportError, SendReceipt


@dataclass
class FakeResponse:
    data: list


class FakeQuery:
    def __init__(self, db: "FakeSupabase", table: str):
        self.db = db
        self.table = table
        self.op = "select"
        self.payload: Any = None
        self.filters = []
        self.order_by: Optional[tuple[str, bool]] = None
        self.row_limit: Optional[int] = None

    def select(self, *_columns, **_kwargs):
        self.op = "select"
        return self

    def insert(self, payload):
        self.op = "insert"
        self.payload = payload
        return self

    def update(self, payload: dict):
        self.op = "update"
        self.payload = payload
        return self

    def eq(self, column: str, value):
        self.filters.append(lambda row: row.get(column) == value)
        return self

    def in_(self, column: str, values):
        values = list(values)
        self.filters.append(lambda row: row.get(column) in values)
        return self

    def is_(self, column: str, value):
        if value == "null":
            self.filters.append(lambda row: row.get(column) is None)
        else:
            self.filters.append(lambda row: row.get(column) is value)
        return self

    def order(self, column: str, desc: bool = False):
        self.order_by = (column, desc)
        return self

    def limit(self, count: int):
        self.row_limit = count
        return self

    def _matches(self, row: dict) -> bool:
        return all(check(row) for check in self.filters)

    def execute(self) -> FakeResponse:
        self.db.calls.append((self.table, self.op, copy.deepcopy(self.payload)))

        error = self.db.failures.get((self.table, self.op))
        if error is not None:
            raise error

        rows = self.db.tables.setdefault(self.table, [])

        if self.op == "insert":
            new_rows = self.payload if isinstance(self.payload, list) else [self.payload]
            inserted = []
            for new_row in new_rows:
                stored = dict(new_row)
                stored.setdefault("id", f"{self.table}-{next(self.db.ids)}")
                rows.append(stored)
                inserted.append(dict(stored))
            return FakeResponse(inserted)

        if self.op == "update":
            updated = []
            for row in rows:
                if self._matches(row):
                    row.update(self.payload)
                    updated.append(dict(row))
            return FakeResponse(updated)

        selected = [dict(row) for row in rows if self._matches(row)]
        if self.order_by:
            column, desc = self.order_by
            selected.sort(key=lambda row: row.get(column) or "", reverse=desc)
        if self.row_limit is not None:
            selected = selected[:self.row_limit]
        return FakeResponse(selected)


class FakeSupabase:
    """Tables are plain lists of dicts, inspectable from tests."""

    def __init__(self, tables: Optional[dict[str, list[dict]]] = None):
        self.tables = {name: [dict(row) for row in rows] for name, rows in (tables or {}).items()}
        self.failures: dict[tuple[str, str], Exception] = {}
        self.calls: list[tuple] = []
        self.ids = itertools.count(1)

    def table(self, name: str) -> FakeQuery:
        return FakeQuery(self, name)

    def fail(self, table: str, op: str, error: Exception) -> None:
        self.failures[(table, op)] = error

    def rows(self, table: str) -> list[dict]:
        return self.tables.get(table, [])


def message_row(**overrides) -> dict:
    """A valid scheduled_messages row; override any column."""
    row = {
        "id": "msg-1",
        "coach_id": "coach-1",
        "title": "Check-in",
        "content": "How did training go this week?",
        "schedule_type": "once",
        "start_date": "2025-01-15",
        "start_time": "09:00",
        "timezone": "UTC",
        "target_type": "specific",
        "target_user_ids": ["client-1"],
        "status": "active",
        "is_active": True,
        "last_sent_at": None,
        "end_date": None,
        "template_id": None,
        "frequency_config": None,
        "qstash_id": None,
    }
    row.update(overrides)
    return row


class FakeTransport(ChatTransport):
    """Records sends; recipients in fail_for raise ChatTransportError."""

    def __init__(self, fail_for=(), records_deliveries=False):
        self.fail_for = set(fail_for)
        self._records = records_deliveries
        self.sent: list[tuple[str, str]] = []

    @property
    def records_deliveries(self) -> bool:
        return self._records

    async def send(self, message, recipient_id):
        if recipient_id in self.fail_for:
            raise ChatTransportError(f"User not found: {recipient_id}")
        self.sent.append((message.id, recipient_id))
        return SendReceipt(message_id=f"stream-{message.id}-{recipient_id}")
