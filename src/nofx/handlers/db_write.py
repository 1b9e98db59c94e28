"""``db_write`` - insert/update/delete against a target database.

Dangerous operations pass through the approval gate first, then the
allow/deny policy. Identifiers are validated; values are always bound.
WHERE clauses use ``$1, $2...`` placeholders that refer to ``whereParams``.
"""

from __future__ import annotations

import logging
import re
from typing import Any

from sqlalchemy import text
from sqlalchemy.ext.asyncio import AsyncEngine

from nofx.config import settings
from nofx.engine.approvals import approval_required, await_gate
from nofx.engine.events import record_event, sanitize_payload
from nofx.engine.policy import DbWritePolicy, PolicyDeniedError, load_policy
from nofx.handlers.base import StepContext

logger = logging.getLogger(__name__)

DB_GATE_TYPE = "manual:db"

_SAFE_TABLE = re.compile(r"^[a-zA-Z0-9_.]+$")
_SAFE_COLUMN = re.compile(r"^[a-zA-Z0-9_]+$")
_PLACEHOLDER = re.compile(r"\$(\d+)")


def remap_placeholders(where: str, offset: int) -> str:
    """Rewrite ``$n`` to the bind name ``:p<offset+n>``."""

    def _replace(match: re.Match) -> str:
        n = int(match.group(1))
        if n <= 0:
            return match.group(0)
        return f":p{offset + n}"

    return _PLACEHOLDER.sub(_replace, where)


def build_statement(inputs: dict[str, Any]) -> tuple[str, dict[str, Any]]:
    """Return ``(sql, params)`` for a validated db_write request."""
    table = inputs.get("table") or ""
    op = (inputs.get("op") or "").lower()
    if not table or not op:
        raise ValueError("db_write requires table and op")
    if not _SAFE_TABLE.match(table):
        raise ValueError("unsafe table name")

    values = inputs.get("values") or {}
    where = inputs.get("where")
    where_params = list(inputs.get("whereParams") or [])
    params: dict[str, Any] = {}

    if op in ("insert", "update"):
        if not values:
            raise ValueError(f"{op} requires values")
        for column in values:
            if not _SAFE_COLUMN.match(column):
                raise ValueError("unsafe column")
        for i, column in enumerate(values, 1):
            params[f"p{i}"] = values[column]

    if op == "insert":
        columns = list(values)
        placeholders = ", ".join(f":p{i}" for i in range(1, len(columns) + 1))
        sql = f"insert into {table} ({', '.join(columns)}) values ({placeholders}) returning *"
        return sql, params

    if op not in ("update", "delete"):
        raise ValueError("unknown op")
    if not where:
        raise ValueError(f"{op} requires where")

    offset = len(params)
    for i, value in enumerate(where_params, 1):
        params[f"p{offset + i}"] = value
    clause = remap_placeholders(where, offset)

    if op == "update":
        sets = ", ".join(f"{column} = :p{i}" for i, column in enumerate(values, 1))
        return f"update {table} set {sets} where {clause} returning *", params
    return f"delete from {table} where {clause} returning *", params


class DbWriteHandler:
    def __init__(
        self, engine: AsyncEngine | None = None, policy: DbWritePolicy | None = None
    ) -> None:
        self._engine = engine
        self._policy = policy

    def match(self, tool: str) -> bool:
        return tool == "db_write"

    @property
    def engine(self) -> AsyncEngine:
        if self._engine is None:
            if settings.db_write_url:
                from nofx.models.db import build_engine

                self._engine = build_engine(settings.db_write_url)
            else:
                from nofx.models.db import engine

                self._engine = engine
        return self._engine

    @property
    def policy(self) -> DbWritePolicy:
        if self._policy is None:
            self._policy = load_policy()
        return self._policy

    async def run(self, ctx: StepContext) -> None:
        inputs = ctx.step.inputs or {}
        table = inputs.get("table") or ""
        op = (inputs.get("op") or "").lower()
        # Validate before a gate is ever created for a malformed request
        sql, params = build_statement(inputs)

        if approval_required(settings.approvals_db_writes, op):
            if not await await_gate(ctx, DB_GATE_TYPE, label="db write"):
                return

        decision = self.policy.is_allowed(table, op)
        if not decision.ok:
            await ctx.store.update_step(
                ctx.step.id, outputs={"error": f"policy: {decision.reason}"}
            )
            await record_event(
                ctx.store,
                ctx.run_id,
                "db.write.denied",
                {"table": table, "op": op, "reason": decision.reason},
                step_id=ctx.step.id,
            )
            raise PolicyDeniedError(table, op, decision.reason)

        async with self.engine.begin() as conn:
            result = await conn.execute(text(sql), params)
            rows = [dict(row) for row in result.mappings().all()]

        row_count = len(rows)
        await ctx.store.update_step(
            ctx.step.id,
            outputs={
                "table": table,
                "op": op,
                "result": {"rowCount": row_count, "rows": sanitize_payload(rows)},
            },
        )
        await record_event(
            ctx.store,
            ctx.run_id,
            "db.write.succeeded",
            {"table": table, "op": op, "rowCount": row_count},
            step_id=ctx.step.id,
        )
        logger.info(f"db.write.succeeded: {op} on {table} ({row_count} rows)")
