"""``manual:<kind>`` - a pure human checkpoint."""

from __future__ import annotations

from datetime import datetime, timezone

from nofx.engine.approvals import await_gate
from nofx.handlers.base import StepContext
from nofx.store.base import status_value


class ManualHandler:
    def match(self, tool: str) -> bool:
        return tool.startswith("manual:")

    async def run(self, ctx: StepContext) -> None:
        if not await await_gate(ctx, ctx.step.tool):
            return
        gate = await ctx.store.get_latest_gate(ctx.run_id, ctx.step.id, ctx.step.tool)
        await ctx.store.update_step(
            ctx.step.id,
            outputs={
                "gateId": gate.id if gate else None,
                "status": status_value(gate.status) if gate else None,
                "approvedBy": gate.approved_by if gate else None,
                "checkedAt": datetime.now(timezone.utc).isoformat(),
            },
        )
