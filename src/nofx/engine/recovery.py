"""Retry of failed, timed-out or cancelled steps."""

from __future__ import annotations

import logging

from nofx.engine.events import record_event
from nofx.engine.inbox import idempotency_key, release, step_exec_key
from nofx.engine.runner import StepNotFoundError
from nofx.engine.tx import run_atomically
from nofx.models.db import StepStatus
from nofx.queue.backends import STEP_READY_TOPIC
from nofx.store.base import status_value

logger = logging.getLogger(__name__)

RETRYABLE_STATUSES = frozenset({
    StepStatus.FAILED.value,
    StepStatus.TIMED_OUT.value,
    StepStatus.CANCELLED.value,
})


async def retry_step(store, queue, run_id: str, step_id: str) -> None:
    """Reset a finished-but-unsuccessful step and queue it again.

    Raises StepNotFoundError when the step is missing or belongs to another
    run, StepNotRetryableError when its status is not retryable.
    """
    step = await store.get_step(step_id)
    if step is None or step.run_id != run_id:
        raise StepNotFoundError(step_id)

    previous_status = step.status
    if status_value(previous_status) not in RETRYABLE_STATUSES:
        raise StepNotRetryableError(previous_status)

    async def _reset() -> None:
        await store.reset_step(step_id)
        await store.reset_run(run_id)
        await release(store, step_exec_key(step_id))
        await release(store, idempotency_key(step))
        await record_event(
            store,
            run_id,
            "step.retry",
            {"stepId": step_id, "previousStatus": previous_status},
            step_id=step_id,
        )
        await record_event(store, run_id, "run.resumed", {"stepId": step_id})

    await run_atomically(store, _reset)

    await queue.enqueue(
        STEP_READY_TOPIC, {"runId": run_id, "stepId": step_id, "__attempt": 1}
    )
    logger.info(f"step.retry: run {run_id} step {step_id} (was {previous_status})")


class StepNotRetryableError(Exception):
    """Step is not in a retryable state (failed, timed_out, cancelled)."""

    def __init__(self, status: str | None) -> None:
        self.status = status if status is not None else "unknown"
        super().__init__(f"step_not_retryable:{self.status}")
