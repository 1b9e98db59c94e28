"""Pydantic request/response models for the API."""

from __future__ import annotations

from datetime import datetime
from typing import Any

from pydantic import BaseModel, Field


# --- Requests ---


class StepSpec(BaseModel):
    """One step of a run submission."""

    name: str = Field(..., description="Unique within the run; used by _dependsOn")
    tool: str = Field(..., description="Handler key, e.g. 'bash', 'gate:lint', 'db_write'")
    inputs: dict[str, Any] = Field(default_factory=dict)
    idempotency_key: str | None = Field(None, description="Overrides the derived idempotency key")


class RunCreateRequest(BaseModel):
    """Request to create and start a run."""

    goal: str = ""
    steps: list[StepSpec]


class GateResolveRequest(BaseModel):
    """Approver details for an approve/reject/waive action."""

    approved_by: str | None = None


class DeadLetterRehydrateRequest(BaseModel):
    topic: str = "step.dlq"
    max_items: int = Field(50, ge=1, le=1000)


# --- Responses ---


class ErrorResponse(BaseModel):
    """Standard error response."""

    code: str
    message: str


class ApiResponse(BaseModel):
    """Standard API response wrapper."""

    data: Any | None = None
    error: ErrorResponse | None = None


class HealthResponse(BaseModel):
    status: str
    database: bool
    queue: str
    local_mode: bool


class StepResponse(BaseModel):
    id: str
    run_id: str
    name: str
    tool: str
    status: str
    inputs: Any = None
    outputs: Any = None
    idempotency_key: str | None = None
    created_at: datetime | None = None
    started_at: datetime | None = None
    ended_at: datetime | None = None


class RunResponse(BaseModel):
    id: str
    goal: str
    status: str
    plan: Any = None
    created_at: datetime | None = None
    started_at: datetime | None = None
    ended_at: datetime | None = None
    steps: list[StepResponse] = Field(default_factory=list)


class EventResponse(BaseModel):
    id: int | str
    run_id: str
    step_id: str | None = None
    type: str
    payload: Any = None
    created_at: datetime | None = None


class GateResponse(BaseModel):
    id: str
    run_id: str
    step_id: str
    gate_type: str
    status: str
    created_at: datetime | None = None
    approved_by: str | None = None
    approved_at: datetime | None = None
