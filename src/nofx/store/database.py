"""SQLAlchemy-backed store (SQLite in local mode, PostgreSQL in production)."""

from __future__ import annotations

import uuid
from contextlib import asynccontextmanager
from contextvars import ContextVar
from datetime import datetime, timezone
from typing import Any, AsyncIterator

from sqlalchemy import and_, delete, exists, func, select, update
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from nofx.models.db import (
    DONE_STEP_STATUSES,
    TERMINAL_RUN_STATUSES,
    Event,
    Gate,
    GateStatus,
    InboxClaim,
    OutboxEntry,
    Run,
    RunStatus,
    Step,
    StepStatus,
)
from nofx.store.base import (
    EventRow,
    GateRow,
    OutboxRow,
    RunRow,
    StepRow,
    coerce_fields,
    status_value,
)


def _run_row(run: Run) -> RunRow:
    return RunRow(
        id=run.id,
        status=run.status,
        goal=run.goal,
        plan=run.plan,
        created_at=run.created_at,
        started_at=run.started_at,
        ended_at=run.ended_at,
    )


def _step_row(step: Step) -> StepRow:
    return StepRow(
        id=step.id,
        run_id=step.run_id,
        name=step.name,
        tool=step.tool,
        inputs=step.inputs,
        status=step.status,
        outputs=step.outputs,
        idempotency_key=step.idempotency_key,
        created_at=step.created_at,
        started_at=step.started_at,
        ended_at=step.ended_at,
    )


def _gate_row(gate: Gate) -> GateRow:
    return GateRow(
        id=gate.id,
        run_id=gate.run_id,
        step_id=gate.step_id,
        gate_type=gate.gate_type,
        status=gate.status,
        created_at=gate.created_at,
        approved_by=gate.approved_by,
        approved_at=gate.approved_at,
    )


def _insert_ignore(session: AsyncSession, table, **values: Any):
    """Build an INSERT ... ON CONFLICT DO NOTHING for the session's dialect."""
    dialect = session.get_bind().dialect.name
    if dialect == "postgresql":
        from sqlalchemy.dialects.postgresql import insert
    else:
        from sqlalchemy.dialects.sqlite import insert
    return insert(table).values(**values).on_conflict_do_nothing()


class DatabaseStore:
    """Store backed by the SQLAlchemy async ORM.

    Every operation opens its own short session unless it runs inside
    ``transaction()``, in which case it joins the session bound to the
    current task context. This is what lets ``run_atomically`` group several
    store calls into one database transaction.
    """

    supports_transactions = True

    def __init__(self, session_factory: async_sessionmaker | None = None) -> None:
        if session_factory is None:
            from nofx.models.db import async_session

            session_factory = async_session
        self._session_factory = session_factory
        self._current: ContextVar[AsyncSession | None] = ContextVar(
            f"nofx_tx_{id(self)}", default=None
        )

    @asynccontextmanager
    async def _session(self) -> AsyncIterator[AsyncSession]:
        session = self._current.get()
        if session is not None:
            yield session
            return
        async with self._session_factory() as session:
            async with session.begin():
                yield session

    @asynccontextmanager
    async def transaction(self) -> AsyncIterator[None]:
        """Bind one session to the current context; nested calls join it."""
        if self._current.get() is not None:
            yield
            return
        async with self._session_factory() as session:
            async with session.begin():
                token = self._current.set(session)
                try:
                    yield
                finally:
                    self._current.reset(token)

    # --- Runs ---

    async def create_run(
        self, goal: str = "", plan: Any = None, run_id: str | None = None
    ) -> RunRow:
        async with self._session() as session:
            run = Run(
                id=run_id or str(uuid.uuid4()),
                goal=goal,
                plan=plan,
                status=RunStatus.PENDING.value,
            )
            session.add(run)
            await session.flush()
            return _run_row(run)

    async def get_run(self, run_id: str) -> RunRow | None:
        async with self._session() as session:
            run = await session.get(Run, run_id)
            return _run_row(run) if run else None

    async def update_run(self, run_id: str, **fields: Any) -> None:
        async with self._session() as session:
            await session.execute(
                update(Run).where(Run.id == run_id).values(**coerce_fields(fields))
            )

    async def reset_run(self, run_id: str) -> None:
        await self.update_run(run_id, status=RunStatus.RUNNING, ended_at=None)

    async def start_run(self, run_id: str, started_at: datetime) -> bool:
        """Move a pending run to running; no-op for runs already past pending."""
        async with self._session() as session:
            result = await session.execute(
                update(Run)
                .where(Run.id == run_id, func.lower(Run.status) == RunStatus.PENDING.value)
                .values(status=RunStatus.RUNNING.value, started_at=started_at)
            )
            return result.rowcount == 1

    async def complete_run_if_done(self, run_id: str, ended_at: datetime) -> bool:
        """Flip the run to succeeded when no step is left; True only for the flipping caller.

        The remaining-step check and the status change are one UPDATE, so two
        sibling steps finishing at the same time cannot both flip the run.
        """
        remaining = exists().where(
            and_(
                Step.run_id == run_id,
                func.lower(Step.status).not_in(sorted(DONE_STEP_STATUSES)),
            )
        )
        async with self._session() as session:
            result = await session.execute(
                update(Run)
                .where(
                    Run.id == run_id,
                    func.lower(Run.status).not_in(sorted(TERMINAL_RUN_STATUSES)),
                    ~remaining,
                )
                .values(status=RunStatus.SUCCEEDED.value, ended_at=ended_at)
                .execution_options(synchronize_session=False)
            )
            return result.rowcount == 1

    # --- Steps ---

    async def create_step(
        self,
        run_id: str,
        name: str,
        tool: str,
        inputs: Any = None,
        idempotency_key: str | None = None,
        step_id: str | None = None,
    ) -> StepRow:
        async with self._session() as session:
            step = Step(
                id=step_id or str(uuid.uuid4()),
                run_id=run_id,
                name=name,
                tool=tool,
                inputs=inputs if inputs is not None else {},
                status=StepStatus.QUEUED.value,
                idempotency_key=idempotency_key,
            )
            session.add(step)
            await session.flush()
            return _step_row(step)

    async def get_step(self, step_id: str) -> StepRow | None:
        async with self._session() as session:
            step = await session.get(Step, step_id)
            return _step_row(step) if step else None

    async def update_step(self, step_id: str, **fields: Any) -> None:
        async with self._session() as session:
            await session.execute(
                update(Step).where(Step.id == step_id).values(**coerce_fields(fields))
            )

    async def reset_step(self, step_id: str) -> None:
        await self.update_step(
            step_id,
            status=StepStatus.QUEUED,
            started_at=None,
            ended_at=None,
            outputs={},
        )

    async def list_steps_by_run(self, run_id: str) -> list[StepRow]:
        async with self._session() as session:
            result = await session.execute(
                select(Step).where(Step.run_id == run_id).order_by(Step.created_at)
            )
            return [_step_row(s) for s in result.scalars().all()]

    async def list_steps_by_status(self, status: str) -> list[StepRow]:
        async with self._session() as session:
            result = await session.execute(
                select(Step).where(func.lower(Step.status) == status_value(status))
            )
            return [_step_row(s) for s in result.scalars().all()]

    async def count_remaining_steps(self, run_id: str) -> int:
        async with self._session() as session:
            count = await session.scalar(
                select(func.count())
                .select_from(Step)
                .where(
                    Step.run_id == run_id,
                    func.lower(Step.status).not_in(sorted(DONE_STEP_STATUSES)),
                )
            )
            return int(count or 0)

    # --- Events ---

    async def record_event(
        self, run_id: str, type: str, payload: Any = None, step_id: str | None = None
    ) -> None:
        async with self._session() as session:
            session.add(
                Event(
                    run_id=run_id,
                    step_id=step_id,
                    type=type,
                    payload=payload if payload is not None else {},
                )
            )

    async def list_events(self, run_id: str) -> list[EventRow]:
        async with self._session() as session:
            result = await session.execute(
                select(Event).where(Event.run_id == run_id).order_by(Event.id)
            )
            return [
                EventRow(
                    id=e.id,
                    run_id=e.run_id,
                    step_id=e.step_id,
                    type=e.type,
                    payload=e.payload,
                    created_at=e.created_at,
                )
                for e in result.scalars().all()
            ]

    # --- Gates ---

    async def create_or_get_gate(self, run_id: str, step_id: str, gate_type: str) -> GateRow:
        existing = await self.get_latest_gate(run_id, step_id, gate_type)
        if existing:
            return existing
        async with self._session() as session:
            gate = Gate(
                run_id=run_id,
                step_id=step_id,
                gate_type=gate_type,
                status=GateStatus.PENDING.value,
            )
            session.add(gate)
            await session.flush()
            return _gate_row(gate)

    async def get_latest_gate(
        self, run_id: str, step_id: str, gate_type: str | None = None
    ) -> GateRow | None:
        stmt = select(Gate).where(Gate.run_id == run_id, Gate.step_id == step_id)
        if gate_type:
            stmt = stmt.where(Gate.gate_type == gate_type)
        stmt = stmt.order_by(Gate.created_at.desc()).limit(1)
        async with self._session() as session:
            gate = (await session.execute(stmt)).scalars().first()
            return _gate_row(gate) if gate else None

    async def get_gate(self, gate_id: str) -> GateRow | None:
        async with self._session() as session:
            gate = await session.get(Gate, gate_id)
            return _gate_row(gate) if gate else None

    async def update_gate(self, gate_id: str, **fields: Any) -> None:
        async with self._session() as session:
            await session.execute(
                update(Gate).where(Gate.id == gate_id).values(**coerce_fields(fields))
            )

    async def list_gates_by_run(self, run_id: str) -> list[GateRow]:
        async with self._session() as session:
            result = await session.execute(
                select(Gate).where(Gate.run_id == run_id).order_by(Gate.created_at)
            )
            return [_gate_row(g) for g in result.scalars().all()]

    # --- Inbox / outbox ---

    async def inbox_mark_if_new(self, key: str) -> bool:
        """Insert-if-absent in one statement; safe across concurrent workers."""
        async with self._session() as session:
            stmt = _insert_ignore(
                session, InboxClaim, key=key, created_at=datetime.now(timezone.utc)
            )
            result = await session.execute(stmt)
            return result.rowcount == 1

    async def inbox_delete(self, key: str) -> None:
        async with self._session() as session:
            await session.execute(delete(InboxClaim).where(InboxClaim.key == key))

    async def outbox_add(self, topic: str, payload: Any) -> None:
        async with self._session() as session:
            session.add(OutboxEntry(topic=topic, payload=payload))

    async def outbox_list_unsent(self, limit: int = 50) -> list[OutboxRow]:
        async with self._session() as session:
            result = await session.execute(
                select(OutboxEntry)
                .where(OutboxEntry.sent.is_(False))
                .order_by(OutboxEntry.id)
                .limit(limit)
            )
            return [
                OutboxRow(
                    id=o.id,
                    topic=o.topic,
                    payload=o.payload,
                    sent=o.sent,
                    created_at=o.created_at,
                )
                for o in result.scalars().all()
            ]

    async def outbox_mark_sent(self, outbox_id: int | str) -> None:
        async with self._session() as session:
            await session.execute(
                update(OutboxEntry)
                .where(OutboxEntry.id == int(outbox_id))
                .values(sent=True, sent_at=datetime.now(timezone.utc))
            )
