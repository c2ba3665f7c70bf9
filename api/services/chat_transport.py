"""
Chat transports for scheduled messages

A transport delivers one scheduled message to one recipient and returns the
chat provider's message id, or raises ChatTransportError.

Implementations:
- StreamChatTransport: sends directly through GetStream as the coach. Makes
  sure both coach and client exist as chat users and that their 1:1 channel
  exists before the first send.
- RelayTransport: calls this API's POST /api/send-scheduled-message, which
  sends through GetStream and records the successful delivery itself. Used by
  the recurring-messages cron job, which runs outside the API process.
"""
from __future__ import annotations

import logging
from abc import ABC, abstractmethod
from dataclasses import dataclass
from typing import Optional

import httpx
from stream_chat import StreamChatAsync

from services.config import SchedulerConfig
from services.scheduled_messages import USERS_TABLE, ScheduledMessage

logger = logging.getLogger(__name__)

CHANNEL_TYPE = "messaging"
SEND_MESSAGE_PATH = "/api/send-scheduled-message"


class ChatTransportError(Exception):
    """A send to one recipient failed."""


@dataclass
class SendReceipt:
    """Result of a successful send."""
    message_id: Optional[str] = None


class ChatTransport(ABC):
    """Delivers one scheduled message to one recipient."""

    @property
    def records_deliveries(self) -> bool:
        """
        Whether the far side writes the 'sent' message_deliveries row itself.

        When True the dispatcher only records failures, so each attempt still
        produces exactly one row.
        """
        return False

    @abstractmethod
    async def send(self, message: ScheduledMessage, recipient_id: str) -> SendReceipt:
        """Send message.content from message.coach_id to recipient_id."""
        pass

    async def close(self) -> None:
        """Release any connections held by the transport."""
        return None


def _js_string_hash(value: str) -> int:
    # 32-bit signed rolling hash (h * 31 + c), matches the web inbox
    h = 0
    for ch in value:
        h = ((h << 5) - h + ord(ch)) & 0xFFFFFFFF
    if h >= 0x80000000:
        h -= 0x100000000
    return h


def _to_base36(number: int) -> str:
    digits = "0123456789abcdefghijklmnopqrstuvwxyz"
    if number == 0:
        return "0"
    out = []
    while number:
        number, rem = divmod(number, 36)
        out.append(digits[rem])
    return "".join(reversed(out))


def channel_id_for(coach_id: str, client_id: str) -> str:
    """
    Channel id of the coach/client conversation.

    Same derivation as the inbox page so scheduled messages land in the
    conversation the coach already sees: sort both ids, join with '-', hash,
    base36.
    """
    combined = "-".join(sorted([coach_id, client_id]))
    return f"chat_{_to_base36(abs(_js_string_hash(combined)))}"


class StreamChatTransport(ChatTransport):
    """
    GetStream server-side transport.

    Usage:
        transport = StreamChatTransport.from_config(config, supabase_client)
        try:
            receipt = await transport.send(message, user_id)
        finally:
            await transport.close()
    """

    def __init__(self, api_key: str, api_secret: str, db_client=None):
        """
        Args:
            api_key: GetStream API key
            api_secret: GetStream API secret (server-side auth)
            db_client: Supabase client used to look up display names (optional)
        """
        self.api_key = api_key
        self.api_secret = api_secret
        self.db_client = db_client
        self._chat: Optional[StreamChatAsync] = None

    @classmethod
    def from_config(cls, config: SchedulerConfig, db_client=None) -> "StreamChatTransport":
        if not config.stream_api_key or not config.stream_api_secret:
            raise ValueError("STREAM_API_KEY and STREAM_API_SECRET must be set")
        return cls(config.stream_api_key, config.stream_api_secret, db_client=db_client)

    def _get_chat(self) -> StreamChatAsync:
        if self._chat is None:
            self._chat = StreamChatAsync(api_key=self.api_key, api_secret=self.api_secret)
        return self._chat

    async def close(self) -> None:
        if self._chat is not None:
            await self._chat.close()
            self._chat = None

    def _lookup_names(self, coach_id: str, recipient_id: str) -> tuple[str, str]:
        """Display names for both chat users. Unknown ids fail the send."""
        if self.db_client is None:
            return coach_id, "User"

        result = (
            self.db_client.table(USERS_TABLE)
            .select("id, full_name")
            .in_("id", [coach_id, recipient_id])
            .execute()
        )
        names = {str(row["id"]): row.get("full_name") for row in (result.data or [])}

        if coach_id not in names:
            raise ChatTransportError("Coach not found")
        if recipient_id not in names:
            raise ChatTransportError("User not found")

        return names[coach_id] or coach_id, names[recipient_id] or "User"

    async def send(self, message: ScheduledMessage, recipient_id: str) -> SendReceipt:
        coach_id = message.coach_id
        coach_name, recipient_name = self._lookup_names(coach_id, recipient_id)
        channel_id = channel_id_for(coach_id, recipient_id)

        try:
            chat = self._get_chat()
            await chat.upsert_users([
                {"id": coach_id, "name": coach_name},
                {"id": recipient_id, "name": recipient_name},
            ])

            channel = chat.channel(CHANNEL_TYPE, channel_id, {"members": [coach_id, recipient_id]})
            await channel.create(coach_id)

            response = await channel.send_message({"text": message.content}, coach_id)
        except Exception as e:
            raise ChatTransportError(f"GetStream send failed: {e}") from e

        sent = response.get("message") or {}
        logger.info(f"[CHAT] Sent message {message.id} to {recipient_id} on {channel_id}")
        return SendReceipt(message_id=sent.get("id"))


class RelayTransport(ChatTransport):
    """Sends through this API's single-recipient send endpoint over HTTP."""

    def __init__(self, send_url: str, api_key: str, timeout: float = 30.0):
        self.send_url = send_url
        self.api_key = api_key
        self.timeout = timeout

    @classmethod
    def from_config(cls, config: SchedulerConfig) -> "RelayTransport":
        if not config.scheduler_api_key:
            raise ValueError("SCHEDULER_API_KEY must be set")
        return cls(
            send_url=config.api_url(SEND_MESSAGE_PATH),
            api_key=config.scheduler_api_key,
            timeout=config.http_timeout,
        )

    @property
    def records_deliveries(self) -> bool:
        return True

    async def send(self, message: ScheduledMessage, recipient_id: str) -> SendReceipt:
        try:
            async with httpx.AsyncClient(timeout=self.timeout) as client:
                response = await client.post(
                    self.send_url,
                    headers={
                        "Authorization": f"Bearer {self.api_key}",
                        "Content-Type": "application/json",
                    },
                    json={"messageId": message.id, "userId": recipient_id},
                )
        except httpx.HTTPError as e:
            raise ChatTransportError(f"Send API unreachable: {e}") from e

        if response.status_code == 200:
            # The send went out and was recorded; a bad body only loses the stream id
            try:
                data = response.json()
            except ValueError:
                logger.warning(f"[CHAT] Unreadable send response for {message.id} to {recipient_id}")
                return SendReceipt()
            return SendReceipt(message_id=data.get("streamMessageId") if isinstance(data, dict) else None)

        try:
            body = response.json()
            error = body.get("details") or body.get("error")
        except (ValueError, AttributeError):
            error = response.text
        raise ChatTransportError(f"HTTP {response.status_code}: {error or 'Unknown error'}")
