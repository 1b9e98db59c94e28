"""Outbox relay: moves staged outbox rows onto their queue topic."""

from __future__ import annotations

import logging

from nofx.config import settings

logger = logging.getLogger(__name__)


async def relay_outbox(store, queue, batch: int | None = None) -> int:
    """Enqueue up to ``batch`` unsent rows and mark each sent.

    A row whose enqueue fails stays unsent and is picked up by the next
    pass. Returns the number of rows relayed.
    """
    rows = await store.outbox_list_unsent(batch or settings.outbox_relay_batch)
    sent = 0
    for row in rows:
        payload = row.payload if isinstance(row.payload, dict) else {"payload": row.payload}
        try:
            await queue.enqueue(row.topic, {**payload, "__attempt": 1})
            await store.outbox_mark_sent(row.id)
            sent += 1
        except Exception as e:
            logger.warning(f"outbox.relay_failed: row {row.id} on {row.topic}: {e}")
    if sent:
        logger.debug(f"outbox.relayed: {sent} row(s)")
    return sent
