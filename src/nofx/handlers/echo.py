"""``test:echo`` - copies the step inputs into its outputs."""

from __future__ import annotations

from nofx.handlers.base import StepContext


class EchoHandler:
    def match(self, tool: str) -> bool:
        return tool == "test:echo"

    async def run(self, ctx: StepContext) -> None:
        await ctx.store.update_step(ctx.step.id, outputs={"echo": ctx.step.inputs or {}})
