"""``gate:<name>`` - quality gates (lint, typecheck, unit tests...)."""

from __future__ import annotations

import logging

from nofx.config import settings
from nofx.engine.events import record_event
from nofx.handlers.base import StepContext
from nofx.handlers.bash import run_command

logger = logging.getLogger(__name__)


class GateHandler:
    def match(self, tool: str) -> bool:
        return tool.startswith("gate:")

    async def run(self, ctx: StepContext) -> None:
        gate_name = ctx.step.tool.removeprefix("gate:")
        step_id = ctx.step.id

        if gate_name in settings.gates_disabled:
            await ctx.store.update_step(step_id, outputs={"gate": gate_name, "skipped": True})
            await record_event(
                ctx.store,
                ctx.run_id,
                "gate.skipped",
                {"gate": gate_name, "skipped": True},
                step_id=step_id,
            )
            return

        command = settings.gate_commands.get(gate_name)
        if not command:
            raise ValueError(f"unknown gate {gate_name}")

        result = await run_command(command, settings.workspace_dir, settings.gate_timeout_seconds)
        summary = {"gate": gate_name, "passed": result.exit_code == 0, "exitCode": result.exit_code}
        await ctx.store.update_step(
            step_id,
            outputs={
                "gate": gate_name,
                "summary": summary,
                "stdout": result.stdout,
                "stderr": result.stderr,
            },
        )
        if not summary["passed"]:
            logger.info(f"gate {gate_name} failed for step {step_id} (exit {result.exit_code})")
            raise RuntimeError(f"gate {gate_name} failed")
