"""JSON-file store for local development without a database.

No transactions: callers fall back to best-effort ordering. Inbox claims use
exclusive file creation so they stay atomic across worker processes.
"""

from __future__ import annotations

import hashlib
import json
import logging
import os
import time
import uuid
from dataclasses import asdict, fields
from datetime import datetime, timezone
from pathlib import Path
from typing import Any

from nofx.models.db import (
    DONE_STEP_STATUSES,
    TERMINAL_RUN_STATUSES,
    GateStatus,
    RunStatus,
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

logger = logging.getLogger(__name__)

_DATETIME_FIELDS = {"created_at", "started_at", "ended_at", "approved_at", "sent_at"}


def _now() -> datetime:
    return datetime.now(timezone.utc)


def _encode(value: Any) -> Any:
    if isinstance(value, datetime):
        return value.isoformat()
    return value


def _decode(row_type, data: dict) -> Any:
    known = {f.name for f in fields(row_type)}
    values = {}
    for key, value in data.items():
        if key not in known:
            continue
        if key in _DATETIME_FIELDS and isinstance(value, str):
            value = datetime.fromisoformat(value)
        values[key] = value
    return row_type(**values)


class FileSystemStore:
    """Filesystem-based store backend for local development."""

    supports_transactions = False

    def __init__(self, base_dir: str = "./data/store") -> None:
        self.base_dir = Path(base_dir).resolve()
        for sub in ("runs", "steps", "events", "gates", "inbox", "outbox"):
            (self.base_dir / sub).mkdir(parents=True, exist_ok=True)

    def _safe_path(self, *parts: str) -> Path:
        """Resolve path and ensure it stays within base_dir."""
        resolved = self.base_dir.joinpath(*parts).resolve()
        if not str(resolved).startswith(str(self.base_dir)):
            raise ValueError(f"Path traversal denied: {'/'.join(parts)}")
        return resolved

    def _read(self, path: Path) -> dict | None:
        if not path.exists():
            return None
        return json.loads(path.read_text(encoding="utf-8"))

    def _write(self, path: Path, data: dict) -> None:
        """Write JSON via a temp file + rename so readers never see half a file."""
        tmp = path.with_name(f".{path.name}.{uuid.uuid4().hex}.tmp")
        tmp.write_text(
            json.dumps({k: _encode(v) for k, v in data.items()}, default=str),
            encoding="utf-8",
        )
        os.replace(tmp, path)

    def _patch(self, path: Path, fields_: dict[str, Any]) -> bool:
        data = self._read(path)
        if data is None:
            return False
        data.update(coerce_fields(fields_))
        self._write(path, data)
        return True

    # --- Runs ---

    async def create_run(
        self, goal: str = "", plan: Any = None, run_id: str | None = None
    ) -> RunRow:
        row = RunRow(
            id=run_id or str(uuid.uuid4()),
            status=RunStatus.PENDING.value,
            goal=goal,
            plan=plan,
            created_at=_now(),
        )
        self._write(self._safe_path("runs", f"{row.id}.json"), asdict(row))
        return row

    async def get_run(self, run_id: str) -> RunRow | None:
        data = self._read(self._safe_path("runs", f"{run_id}.json"))
        return _decode(RunRow, data) if data else None

    async def update_run(self, run_id: str, **fields_: Any) -> None:
        self._patch(self._safe_path("runs", f"{run_id}.json"), fields_)

    async def reset_run(self, run_id: str) -> None:
        await self.update_run(run_id, status=RunStatus.RUNNING, ended_at=None)

    async def start_run(self, run_id: str, started_at: datetime) -> bool:
        run = await self.get_run(run_id)
        if run is None or status_value(run.status) != RunStatus.PENDING.value:
            return False
        await self.update_run(run_id, status=RunStatus.RUNNING, started_at=started_at)
        return True

    async def complete_run_if_done(self, run_id: str, ended_at: datetime) -> bool:
        # No awaits between the check and the write: serialised within one
        # event loop, not across processes.
        path = self._safe_path("runs", f"{run_id}.json")
        data = self._read(path)
        if data is None or status_value(data.get("status")) in TERMINAL_RUN_STATUSES:
            return False
        if self._remaining(run_id):
            return False
        data.update(status=RunStatus.SUCCEEDED.value, ended_at=ended_at)
        self._write(path, data)
        return True

    # --- Steps ---

    def _iter_steps(self):
        for path in sorted(self._safe_path("steps").glob("*.json")):
            data = self._read(path)
            if data:
                yield _decode(StepRow, data)

    def _remaining(self, run_id: str) -> int:
        return sum(
            1
            for s in self._iter_steps()
            if s.run_id == run_id and status_value(s.status) not in DONE_STEP_STATUSES
        )

    async def create_step(
        self,
        run_id: str,
        name: str,
        tool: str,
        inputs: Any = None,
        idempotency_key: str | None = None,
        step_id: str | None = None,
    ) -> StepRow:
        row = StepRow(
            id=step_id or str(uuid.uuid4()),
            run_id=run_id,
            name=name,
            tool=tool,
            inputs=inputs if inputs is not None else {},
            status=StepStatus.QUEUED.value,
            idempotency_key=idempotency_key,
            created_at=_now(),
        )
        self._write(self._safe_path("steps", f"{row.id}.json"), asdict(row))
        return row

    async def get_step(self, step_id: str) -> StepRow | None:
        data = self._read(self._safe_path("steps", f"{step_id}.json"))
        return _decode(StepRow, data) if data else None

    async def update_step(self, step_id: str, **fields_: Any) -> None:
        self._patch(self._safe_path("steps", f"{step_id}.json"), fields_)

    async def reset_step(self, step_id: str) -> None:
        await self.update_step(
            step_id,
            status=StepStatus.QUEUED,
            started_at=None,
            ended_at=None,
            outputs={},
        )

    async def list_steps_by_run(self, run_id: str) -> list[StepRow]:
        steps = [s for s in self._iter_steps() if s.run_id == run_id]
        return sorted(steps, key=lambda s: s.created_at or _now())

    async def list_steps_by_status(self, status: str) -> list[StepRow]:
        wanted = status_value(status)
        return [s for s in self._iter_steps() if status_value(s.status) == wanted]

    async def count_remaining_steps(self, run_id: str) -> int:
        return self._remaining(run_id)

    # --- Events ---

    async def record_event(
        self, run_id: str, type: str, payload: Any = None, step_id: str | None = None
    ) -> None:
        path = self._safe_path("events", f"{run_id}.jsonl")
        line = json.dumps(
            {
                "run_id": run_id,
                "step_id": step_id,
                "type": type,
                "payload": payload if payload is not None else {},
                "created_at": _now().isoformat(),
            },
            default=str,
        )
        with path.open("a", encoding="utf-8") as fh:
            fh.write(line + "\n")

    async def list_events(self, run_id: str) -> list[EventRow]:
        path = self._safe_path("events", f"{run_id}.jsonl")
        if not path.exists():
            return []
        events: list[EventRow] = []
        for index, line in enumerate(path.read_text(encoding="utf-8").splitlines(), 1):
            if line.strip():
                events.append(_decode(EventRow, {"id": index, **json.loads(line)}))
        return events

    # --- Gates ---

    async def create_or_get_gate(self, run_id: str, step_id: str, gate_type: str) -> GateRow:
        existing = await self.get_latest_gate(run_id, step_id, gate_type)
        if existing:
            return existing
        row = GateRow(
            id=str(uuid.uuid4()),
            run_id=run_id,
            step_id=step_id,
            gate_type=gate_type,
            status=GateStatus.PENDING.value,
            created_at=_now(),
        )
        self._write(self._safe_path("gates", f"{row.id}.json"), asdict(row))
        return row

    def _iter_gates(self):
        for path in self._safe_path("gates").glob("*.json"):
            data = self._read(path)
            if data:
                yield _decode(GateRow, data)

    async def get_latest_gate(
        self, run_id: str, step_id: str, gate_type: str | None = None
    ) -> GateRow | None:
        matches = [
            g
            for g in self._iter_gates()
            if g.run_id == run_id
            and g.step_id == step_id
            and (gate_type is None or g.gate_type == gate_type)
        ]
        if not matches:
            return None
        return max(matches, key=lambda g: g.created_at or _now())

    async def get_gate(self, gate_id: str) -> GateRow | None:
        data = self._read(self._safe_path("gates", f"{gate_id}.json"))
        return _decode(GateRow, data) if data else None

    async def update_gate(self, gate_id: str, **fields_: Any) -> None:
        self._patch(self._safe_path("gates", f"{gate_id}.json"), fields_)

    async def list_gates_by_run(self, run_id: str) -> list[GateRow]:
        gates = [g for g in self._iter_gates() if g.run_id == run_id]
        return sorted(gates, key=lambda g: g.created_at or _now())

    # --- Inbox / outbox ---

    def _inbox_path(self, key: str) -> Path:
        digest = hashlib.sha256(key.encode("utf-8")).hexdigest()
        return self._safe_path("inbox", digest)

    async def inbox_mark_if_new(self, key: str) -> bool:
        try:
            fd = os.open(self._inbox_path(key), os.O_CREAT | os.O_EXCL | os.O_WRONLY)
        except FileExistsError:
            return False
        with os.fdopen(fd, "w", encoding="utf-8") as fh:
            fh.write(key)
        return True

    async def inbox_delete(self, key: str) -> None:
        self._inbox_path(key).unlink(missing_ok=True)

    async def outbox_add(self, topic: str, payload: Any) -> None:
        # time-ordered ids keep outbox_list_unsent FIFO
        outbox_id = f"{time.time_ns():020d}-{uuid.uuid4().hex[:8]}"
        self._write(
            self._safe_path("outbox", f"{outbox_id}.json"),
            {
                "id": outbox_id,
                "topic": topic,
                "payload": payload,
                "sent": False,
                "created_at": _now(),
            },
        )

    async def outbox_list_unsent(self, limit: int = 50) -> list[OutboxRow]:
        rows: list[OutboxRow] = []
        for path in sorted(self._safe_path("outbox").glob("*.json")):
            if len(rows) >= limit:
                break
            data = self._read(path)
            if data and not data.get("sent"):
                rows.append(_decode(OutboxRow, data))
        return rows

    async def outbox_mark_sent(self, outbox_id: int | str) -> None:
        self._patch(
            self._safe_path("outbox", f"{outbox_id}.json"),
            {"sent": True, "sent_at": _now()},
        )
