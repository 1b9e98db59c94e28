"""Store protocol and the plain row types shared by all persistence drivers."""

from __future__ import annotations

import enum
from contextlib import AbstractAsyncContextManager
from dataclasses import dataclass, field
from datetime import datetime
from typing import Any, Protocol


@dataclass
class RunRow:
    id: str
    status: str
    goal: str = ""
    plan: Any = None
    created_at: datetime | None = None
    started_at: datetime | None = None
    ended_at: datetime | None = None


@dataclass
class StepRow:
    id: str
    run_id: str
    name: str
    tool: str
    inputs: Any = None
    status: str = "queued"
    outputs: Any = None
    idempotency_key: str | None = None
    created_at: datetime | None = None
    started_at: datetime | None = None
    ended_at: datetime | None = None


@dataclass
class EventRow:
    id: int | str
    run_id: str
    type: str
    payload: Any = field(default_factory=dict)
    step_id: str | None = None
    created_at: datetime | None = None


@dataclass
class GateRow:
    id: str
    run_id: str
    step_id: str
    gate_type: str
    status: str
    created_at: datetime | None = None
    approved_by: str | None = None
    approved_at: datetime | None = None


@dataclass
class OutboxRow:
    id: int | str
    topic: str
    payload: Any
    sent: bool = False
    created_at: datetime | None = None


class StoreDriver(Protocol):
    """Protocol for persistence backends used by the step-execution core.

    ``supports_transactions`` tells callers whether the driver also implements
    :class:`TransactionalStore`; drivers without transactions still have to
    keep ``inbox_mark_if_new`` atomic.
    """

    supports_transactions: bool

    # Runs
    async def create_run(
        self, goal: str = "", plan: Any = None, run_id: str | None = None
    ) -> RunRow: ...
    async def get_run(self, run_id: str) -> RunRow | None: ...
    async def update_run(self, run_id: str, **fields: Any) -> None: ...
    async def reset_run(self, run_id: str) -> None: ...
    async def start_run(self, run_id: str, started_at: datetime) -> bool: ...
    async def complete_run_if_done(self, run_id: str, ended_at: datetime) -> bool: ...

    # Steps
    async def create_step(
        self,
        run_id: str,
        name: str,
        tool: str,
        inputs: Any = None,
        idempotency_key: str | None = None,
        step_id: str | None = None,
    ) -> StepRow: ...
    async def get_step(self, step_id: str) -> StepRow | None: ...
    async def update_step(self, step_id: str, **fields: Any) -> None: ...
    async def reset_step(self, step_id: str) -> None: ...
    async def list_steps_by_run(self, run_id: str) -> list[StepRow]: ...
    async def list_steps_by_status(self, status: str) -> list[StepRow]: ...
    async def count_remaining_steps(self, run_id: str) -> int: ...

    # Events
    async def record_event(
        self, run_id: str, type: str, payload: Any = None, step_id: str | None = None
    ) -> None: ...
    async def list_events(self, run_id: str) -> list[EventRow]: ...

    # Gates
    async def create_or_get_gate(self, run_id: str, step_id: str, gate_type: str) -> GateRow: ...
    async def get_latest_gate(
        self, run_id: str, step_id: str, gate_type: str | None = None
    ) -> GateRow | None: ...
    async def get_gate(self, gate_id: str) -> GateRow | None: ...
    async def update_gate(self, gate_id: str, **fields: Any) -> None: ...
    async def list_gates_by_run(self, run_id: str) -> list[GateRow]: ...

    # Inbox / outbox
    async def inbox_mark_if_new(self, key: str) -> bool: ...
    async def inbox_delete(self, key: str) -> None: ...
    async def outbox_add(self, topic: str, payload: Any) -> None: ...
    async def outbox_list_unsent(self, limit: int = 50) -> list[OutboxRow]: ...
    async def outbox_mark_sent(self, outbox_id: int | str) -> None: ...


class TransactionalStore(StoreDriver, Protocol):
    """A driver whose calls can be grouped with ``async with store.transaction()``."""

    def transaction(self) -> AbstractAsyncContextManager[None]: ...


def coerce_fields(fields: dict[str, Any]) -> dict[str, Any]:
    """Turn enum members into their values before they reach a driver."""
    return {
        key: value.value if isinstance(value, enum.Enum) else value
        for key, value in fields.items()
    }


def status_value(status: Any) -> str:
    """Normalise a status given as enum member or string (any casing)."""
    if isinstance(status, enum.Enum):
        status = status.value
    return str(status or "").lower()
