"""Polling-based waits: release the step's claims and re-enqueue it later."""

from __future__ import annotations

import logging

from nofx.engine.inbox import idempotency_key, release, step_exec_key
from nofx.queue.backends import STEP_READY_TOPIC

logger = logging.getLogger(__name__)


async def defer_step(
    store,
    queue,
    step,
    attempt: int,
    delay_ms: int,
    release_idempotency: bool = False,
) -> None:
    """Hand the step back to the queue instead of blocking a worker.

    The exec claim is always dropped so the delayed delivery is not
    suppressed as a duplicate. The idempotency claim is dropped only when
    this delivery took it (``release_idempotency``); a dependency wait
    happens before the runner claims it and must leave it alone.
    """
    await release(store, step_exec_key(step.id))
    if release_idempotency:
        await release(store, idempotency_key(step))
    await queue.enqueue(
        STEP_READY_TOPIC,
        {"runId": step.run_id, "stepId": step.id, "__attempt": attempt},
        delay_ms=delay_ms,
    )
    logger.info(f"step.deferred: step {step.id} attempt {attempt} in {delay_ms}ms")
