"""API endpoints for NOFX runs, steps, gates and dead letters."""

from __future__ import annotations

import logging
from dataclasses import asdict
from datetime import datetime, timezone

from fastapi import APIRouter, HTTPException

from nofx.api.schemas import (
    ApiResponse,
    DeadLetterRehydrateRequest,
    ErrorResponse,
    EventResponse,
    GateResolveRequest,
    GateResponse,
    HealthResponse,
    RunCreateRequest,
    RunResponse,
    StepResponse,
)
from nofx.config import settings
from nofx.engine.events import record_event
from nofx.engine.plan import PlanValidationError, create_run
from nofx.engine.recovery import StepNotRetryableError, retry_step
from nofx.engine.runner import StepNotFoundError
from nofx.models.db import GateStatus
from nofx.queue.backends import STEP_READY_TOPIC
from nofx.queue.worker import get_runtime
from nofx.store.base import status_value

logger = logging.getLogger(__name__)

router = APIRouter()


def _error(status_code: int, code: str, message: str) -> HTTPException:
    return HTTPException(
        status_code=status_code,
        detail=ApiResponse(error=ErrorResponse(code=code, message=message)).model_dump(),
    )


async def _run_response(run_id: str) -> RunResponse:
    store = get_runtime().store
    run = await store.get_run(run_id)
    if run is None:
        raise _error(404, "NOT_FOUND", f"Run '{run_id}' not found")
    steps = await store.list_steps_by_run(run_id)
    return RunResponse(
        **asdict(run),
        steps=[StepResponse(**asdict(s)) for s in steps],
    )


# --- Health ---


@router.get("/health")
async def health_check() -> ApiResponse:
    """Check that the store answers."""
    runtime = get_runtime()
    db_ok = False
    try:
        await runtime.store.get_run("__health__")
        db_ok = True
    except Exception as e:
        logger.warning(f"Health check: store unavailable: {e}")

    return ApiResponse(
        data=HealthResponse(
            status="ok" if db_ok else "degraded",
            database=db_ok,
            queue=type(runtime.queue).__name__,
            local_mode=settings.is_local_mode,
        )
    )


# --- Runs ---


@router.post("/runs")
async def create_run_endpoint(request: RunCreateRequest) -> ApiResponse:
    """Create a run and enqueue all its steps."""
    runtime = get_runtime()
    try:
        run, _ = await create_run(
            runtime.store,
            runtime.queue,
            request.goal,
            [s.model_dump() for s in request.steps],
        )
    except PlanValidationError as e:
        raise _error(400, "VALIDATION_ERROR", str(e))
    return ApiResponse(data=await _run_response(run.id))


@router.get("/runs/{run_id}")
async def get_run(run_id: str) -> ApiResponse:
    """Run status with all its steps."""
    return ApiResponse(data=await _run_response(run_id))


@router.get("/runs/{run_id}/events")
async def list_run_events(run_id: str) -> ApiResponse:
    """Event log of a run, oldest first."""
    store = get_runtime().store
    if await store.get_run(run_id) is None:
        raise _error(404, "NOT_FOUND", f"Run '{run_id}' not found")
    events = await store.list_events(run_id)
    return ApiResponse(data=[EventResponse(**asdict(e)) for e in events])


@router.get("/runs/{run_id}/gates")
async def list_run_gates(run_id: str) -> ApiResponse:
    store = get_runtime().store
    if await store.get_run(run_id) is None:
        raise _error(404, "NOT_FOUND", f"Run '{run_id}' not found")
    gates = await store.list_gates_by_run(run_id)
    return ApiResponse(data=[GateResponse(**asdict(g)) for g in gates])


@router.post("/runs/{run_id}/steps/{step_id}/retry")
async def retry_step_endpoint(run_id: str, step_id: str) -> ApiResponse:
    """Reset a failed, timed-out or cancelled step and enqueue it again."""
    runtime = get_runtime()
    try:
        await retry_step(runtime.store, runtime.queue, run_id, step_id)
    except StepNotFoundError as e:
        raise _error(404, "NOT_FOUND", str(e))
    except StepNotRetryableError as e:
        raise _error(409, "NOT_RETRYABLE", str(e))
    return ApiResponse(data=await _run_response(run_id))


# --- Gates ---


async def _resolve_gate(
    gate_id: str, status: GateStatus, request: GateResolveRequest | None
) -> GateResponse:
    """Shared logic for approve/reject/waive actions."""
    runtime = get_runtime()
    store = runtime.store
    gate = await store.get_gate(gate_id)
    if gate is None:
        raise _error(404, "NOT_FOUND", f"Gate '{gate_id}' not found")
    if status_value(gate.status) != GateStatus.PENDING.value:
        raise _error(409, "ALREADY_RESOLVED", f"Gate is already {status_value(gate.status)}")

    approved_by = request.approved_by if request else None
    await store.update_gate(
        gate_id,
        status=status,
        approved_by=approved_by,
        approved_at=datetime.now(timezone.utc),
    )
    await record_event(
        store,
        gate.run_id,
        "gate.resolved",
        {"gateId": gate_id, "status": status.value, "approvedBy": approved_by},
        step_id=gate.step_id,
    )
    # Wake the suspended step now instead of waiting for its next poll
    await runtime.queue.enqueue(
        STEP_READY_TOPIC, {"runId": gate.run_id, "stepId": gate.step_id, "__attempt": 1}
    )
    logger.info(f"Gate {gate_id} ({gate.gate_type}) resolved as {status.value}")
    return GateResponse(**asdict(await store.get_gate(gate_id)))


@router.post("/gates/{gate_id}/approve")
async def approve_gate(gate_id: str, request: GateResolveRequest | None = None) -> ApiResponse:
    return ApiResponse(data=await _resolve_gate(gate_id, GateStatus.PASSED, request))


@router.post("/gates/{gate_id}/reject")
async def reject_gate(gate_id: str, request: GateResolveRequest | None = None) -> ApiResponse:
    return ApiResponse(data=await _resolve_gate(gate_id, GateStatus.FAILED, request))


@router.post("/gates/{gate_id}/waive")
async def waive_gate(gate_id: str, request: GateResolveRequest | None = None) -> ApiResponse:
    if not settings.approvals_allow_waive:
        raise _error(403, "WAIVE_DISABLED", "Waiving gates is disabled")
    return ApiResponse(data=await _resolve_gate(gate_id, GateStatus.WAIVED, request))


# --- Dead letters ---


@router.get("/dead-letter")
async def list_dead_letters(topic: str = "step.dlq") -> ApiResponse:
    return ApiResponse(data=await get_runtime().queue.list_dlq(topic))


@router.post("/dead-letter/rehydrate")
async def rehydrate_dead_letters(request: DeadLetterRehydrateRequest) -> ApiResponse:
    """Move dead letters back onto their source topic with a fresh attempt counter."""
    count = await get_runtime().queue.rehydrate_dlq(request.topic, request.max_items)
    return ApiResponse(data={"topic": request.topic, "rehydrated": count})
