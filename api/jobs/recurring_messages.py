"""
PTFlow - Recurring Messages Job

Run every 5 minutes via Render cron:
  schedule: "*/5 * * * *"
  command: python -m jobs.recurring_messages

Flow:
1. Load active, enabled recurring messages (5min / daily / weekly / monthly)
2. Keep the ones that are due now
3. Send each one to every recipient through POST /api/send-scheduled-message,
   which records the successful deliveries; failures are recorded here
4. Advance last_sent_at

One-time messages are not handled here; QStash calls the API back for them.
"""

from __future__ import annotations

import asyncio
import logging
from datetime import datetime, timezone
from typing import Optional

from dotenv import load_dotenv

from services.chat_transport import RelayTransport
from services.config import SchedulerConfig
from services.message_dispatch import DispatchResult, MessageDispatcher
from services.message_store import fetch_active_messages
from services.scheduled_messages import RECURRING_KINDS
from services.supabase import create_service_client

logger = logging.getLogger(__name__)


async def run_recurring_messages(
    client=None,
    config: Optional[SchedulerConfig] = None,
    now: Optional[datetime] = None,
) -> DispatchResult:
    """
    Main job entry point. Returns the pass summary.

    Candidate loading and configuration errors propagate (the run fails);
    per-message and per-recipient failures end up in the summary.
    """
    config = config or SchedulerConfig.from_env()
    client = client or create_service_client(config)
    now = now or datetime.now(timezone.utc)

    logger.info(f"[RECURRING] Starting recurring messages job at {now.isoformat()}")

    messages = fetch_active_messages(client, kinds=RECURRING_KINDS)
    logger.info(f"[RECURRING] Found {len(messages)} active recurring message(s)")

    transport = RelayTransport.from_config(config)
    dispatcher = MessageDispatcher(client, transport, claim_before_send=config.claim_before_send)
    try:
        result = await dispatcher.process_batch(messages, now)
    finally:
        await transport.close()

    for error in result.errors:
        logger.warning(f"[RECURRING] {error.to_dict()}")
    logger.info(
        f"[RECURRING] Completed: {result.processed} sent, {len(result.errors)} error(s), "
        f"{result.total} message(s) due"
    )
    return result


def main() -> None:
    load_dotenv()
    logging.basicConfig(
        level=logging.INFO,
        format='%(asctime)s - %(name)s - %(levelname)s - %(message)s'
    )
    asyncio.run(run_recurring_messages())


if __name__ == "__main__":
    main()
