"""Human approval gates for dangerous step operations.

Handlers call :func:`await_gate` before doing anything irreversible. A
pending gate suspends the step (status ``manual``) and re-enqueues it with a
delay; the handler simply returns and is asked again on the next delivery.
"""

from __future__ import annotations

import logging
from datetime import datetime, timezone

from nofx.config import settings
from nofx.engine.deferral import defer_step
from nofx.engine.events import record_event
from nofx.models.db import GateStatus, StepStatus
from nofx.store.base import status_value

logger = logging.getLogger(__name__)

APPROVAL_MODES = ("none", "dangerous", "all")
DANGEROUS_OPS = frozenset({"update", "delete"})


def approval_required(mode: str | None, op: str) -> bool:
    mode = (mode or "none").lower()
    if mode == "all":
        return True
    if mode == "dangerous":
        return op.lower() in DANGEROUS_OPS
    return False


async def await_gate(
    ctx, gate_type: str, delay_ms: int | None = None, label: str | None = None
) -> bool:
    """Return True once the gate is passed or waived.

    False means the step was suspended and re-enqueued; the caller must
    return without side effects. A failed gate marks the step failed and
    raises GateRejectedError.
    """
    store = ctx.store
    step = ctx.step
    delay_ms = settings.gate_poll_ms if delay_ms is None else delay_ms

    gate = await store.get_latest_gate(ctx.run_id, step.id, gate_type)
    if gate is None:
        gate = await store.create_or_get_gate(ctx.run_id, step.id, gate_type)
        await record_event(
            store,
            ctx.run_id,
            "gate.created",
            {"stepId": step.id, "gateId": gate.id, "tool": gate_type},
            step_id=step.id,
        )
        logger.info(f"gate.created: {gate_type} for step {step.id}")

    status = status_value(gate.status)
    if status in (GateStatus.PASSED.value, GateStatus.WAIVED.value):
        return True

    if status == GateStatus.FAILED.value:
        message = f"{label or gate_type} not approved"
        await store.update_step(
            step.id,
            status=StepStatus.FAILED,
            ended_at=datetime.now(timezone.utc),
            outputs={"error": message, "gateId": gate.id},
        )
        await record_event(
            store,
            ctx.run_id,
            "gate.rejected",
            {"stepId": step.id, "gateId": gate.id, "tool": gate_type},
            step_id=step.id,
        )
        raise GateRejectedError(gate_type, message)

    await store.update_step(step.id, status=StepStatus.MANUAL)
    await record_event(
        store,
        ctx.run_id,
        "gate.waiting",
        {"stepId": step.id, "delayMs": delay_ms},
        step_id=step.id,
    )
    # the runner claimed the idempotency key right before calling the handler
    await defer_step(store, ctx.queue, step, ctx.attempt + 1, delay_ms, release_idempotency=True)
    return False


class GateRejectedError(Exception):
    """An approver rejected the gate guarding this step."""

    def __init__(self, gate_type: str, message: str) -> None:
        super().__init__(message)
        self.gate_type = gate_type
