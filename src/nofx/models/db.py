"""SQLAlchemy 2.0 async models for runs, steps, events, gates and the inbox/outbox."""

from __future__ import annotations

import enum
import uuid
from datetime import datetime, timezone
from pathlib import Path

from sqlalchemy import (
    JSON,
    Boolean,
    DateTime,
    ForeignKey,
    Index,
    Integer,
    String,
    Text,
)
from sqlalchemy.ext.asyncio import AsyncAttrs, async_sessionmaker, create_async_engine
from sqlalchemy.orm import DeclarativeBase, Mapped, mapped_column, relationship

from nofx.config import settings


class Base(AsyncAttrs, DeclarativeBase):
    """Base class for all models."""


class RunStatus(str, enum.Enum):
    """Possible statuses for a run."""

    PENDING = "pending"
    RUNNING = "running"
    SUCCEEDED = "succeeded"
    FAILED = "failed"
    CANCELLED = "cancelled"


class StepStatus(str, enum.Enum):
    """Possible statuses for a step within a run."""

    PENDING = "pending"
    QUEUED = "queued"
    RUNNING = "running"
    SUCCEEDED = "succeeded"
    FAILED = "failed"
    TIMED_OUT = "timed_out"
    CANCELLED = "cancelled"
    MANUAL = "manual"


class GateStatus(str, enum.Enum):
    """Possible statuses for an approval gate."""

    PENDING = "pending"
    PASSED = "passed"
    FAILED = "failed"
    WAIVED = "waived"


TERMINAL_STEP_STATUSES = frozenset({
    StepStatus.SUCCEEDED.value,
    StepStatus.FAILED.value,
    StepStatus.TIMED_OUT.value,
    StepStatus.CANCELLED.value,
})

# Steps in these states do not hold up run completion
DONE_STEP_STATUSES = frozenset({StepStatus.SUCCEEDED.value, StepStatus.CANCELLED.value})

TERMINAL_RUN_STATUSES = frozenset({
    RunStatus.SUCCEEDED.value,
    RunStatus.FAILED.value,
    RunStatus.CANCELLED.value,
})


def _new_id() -> str:
    return str(uuid.uuid4())


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


# Status columns are plain strings: rows written by older deployments or by
# external tools may carry unexpected casing ("FAILED") and must still load.


class Run(Base):
    """A top-level unit of work composed of steps."""

    __tablename__ = "runs"

    id: Mapped[str] = mapped_column(String(64), primary_key=True, default=_new_id)
    goal: Mapped[str] = mapped_column(Text, nullable=False, default="")
    plan: Mapped[dict | None] = mapped_column(JSON, nullable=True)
    status: Mapped[str] = mapped_column(
        String(32), nullable=False, default=RunStatus.PENDING.value
    )
    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), default=_utcnow)
    started_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True), nullable=True)
    ended_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True), nullable=True)

    steps: Mapped[list[Step]] = relationship(
        back_populates="run", cascade="all, delete-orphan"
    )


class Step(Base):
    """One tool invocation within a run."""

    __tablename__ = "steps"
    __table_args__ = (
        Index("ix_steps_run_id_name", "run_id", "name", unique=True),
        Index("ix_steps_status", "status"),
    )

    id: Mapped[str] = mapped_column(String(64), primary_key=True, default=_new_id)
    run_id: Mapped[str] = mapped_column(
        String(64), ForeignKey("runs.id", ondelete="CASCADE"), nullable=False
    )
    name: Mapped[str] = mapped_column(String(255), nullable=False)
    tool: Mapped[str] = mapped_column(String(255), nullable=False)
    inputs: Mapped[dict | None] = mapped_column(JSON, nullable=True)
    status: Mapped[str] = mapped_column(
        String(32), nullable=False, default=StepStatus.QUEUED.value
    )
    outputs: Mapped[dict | None] = mapped_column(JSON, nullable=True)
    idempotency_key: Mapped[str | None] = mapped_column(String(255), nullable=True)
    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), default=_utcnow)
    started_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True), nullable=True)
    ended_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True), nullable=True)

    run: Mapped[Run] = relationship(back_populates="steps")


class Event(Base):
    """Immutable audit record of something that happened to a run or step."""

    __tablename__ = "events"
    __table_args__ = (Index("ix_events_run_id", "run_id"),)

    id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)
    run_id: Mapped[str] = mapped_column(String(64), nullable=False)
    step_id: Mapped[str | None] = mapped_column(String(64), nullable=True)
    type: Mapped[str] = mapped_column(String(255), nullable=False)
    payload: Mapped[dict | list | str | int | float | bool | None] = mapped_column(
        JSON, nullable=True
    )
    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), default=_utcnow)


class OutboxEntry(Base):
    """Event copy staged for asynchronous delivery to external consumers."""

    __tablename__ = "outbox"
    __table_args__ = (Index("ix_outbox_sent", "sent"),)

    id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)
    topic: Mapped[str] = mapped_column(String(255), nullable=False)
    payload: Mapped[dict | None] = mapped_column(JSON, nullable=True)
    sent: Mapped[bool] = mapped_column(Boolean, default=False)
    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), default=_utcnow)
    sent_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True), nullable=True)


class InboxClaim(Base):
    """Dedup marker: a key can be claimed once until it is deleted."""

    __tablename__ = "inbox"

    key: Mapped[str] = mapped_column(String(512), primary_key=True)
    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), default=_utcnow)


class Gate(Base):
    """Human approval checkpoint for one run + step + gate type."""

    __tablename__ = "gates"
    __table_args__ = (Index("ix_gates_run_step", "run_id", "step_id"),)

    id: Mapped[str] = mapped_column(String(64), primary_key=True, default=_new_id)
    run_id: Mapped[str] = mapped_column(
        String(64), ForeignKey("runs.id", ondelete="CASCADE"), nullable=False
    )
    step_id: Mapped[str] = mapped_column(String(64), nullable=False)
    gate_type: Mapped[str] = mapped_column(String(255), nullable=False)
    status: Mapped[str] = mapped_column(
        String(32), nullable=False, default=GateStatus.PENDING.value
    )
    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), default=_utcnow)
    approved_by: Mapped[str | None] = mapped_column(String(255), nullable=True)
    approved_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True), nullable=True)


# Database engine and session factory

def _build_engine_url() -> str:
    """Build the database URL, defaulting to SQLite in local mode."""
    if settings.database_url:
        return settings.database_url
    # Local mode: SQLite in data_dir
    data_path = Path(settings.data_dir).resolve()
    data_path.mkdir(parents=True, exist_ok=True)
    return f"sqlite+aiosqlite:///{data_path}/nofx.db"


def _build_engine_kwargs(url: str) -> dict:
    """Build engine kwargs based on database type."""
    kwargs: dict = {"echo": False}
    if url.startswith("sqlite"):
        kwargs["connect_args"] = {"check_same_thread": False, "timeout": 30}
    return kwargs


def _sqlite_wal_mode(dbapi_conn, _connection_record):
    """Enable WAL mode for SQLite to allow concurrent reads during writes."""
    cursor = dbapi_conn.cursor()
    cursor.execute("PRAGMA journal_mode=WAL")
    cursor.execute("PRAGMA busy_timeout=5000")
    cursor.close()


def build_engine(url: str | None = None):
    """Create an async engine; SQLite connections get WAL + busy timeout."""
    url = url or _build_engine_url()
    eng = create_async_engine(url, **_build_engine_kwargs(url))
    if url.startswith("sqlite"):
        from sqlalchemy import event

        event.listen(eng.sync_engine, "connect", _sqlite_wal_mode)
    return eng


engine = build_engine()
async_session = async_sessionmaker(engine, expire_on_commit=False)


async def init_db(target_engine=None) -> None:
    """Create all tables (local mode; PostgreSQL uses Alembic)."""
    async with (target_engine or engine).begin() as conn:
        await conn.run_sync(Base.metadata.create_all)
