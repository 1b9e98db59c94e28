"""Run creation from a list of step definitions."""

from __future__ import annotations

import logging
from typing import Any

from nofx.engine.dependencies import declared_dependencies
from nofx.engine.events import record_event
from nofx.engine.tx import run_atomically
from nofx.queue.backends import STEP_READY_TOPIC
from nofx.store.base import RunRow, StepRow

logger = logging.getLogger(__name__)


def validate_plan(steps: list[dict[str, Any]]) -> list[str]:
    """Return a list of problems; empty means the plan is runnable."""
    errors: list[str] = []
    if not steps:
        errors.append("plan has no steps")
    names: set[str] = set()
    for i, step in enumerate(steps):
        name = step.get("name")
        if not name:
            errors.append(f"step {i} has no name")
        elif name in names:
            errors.append(f"duplicate step name '{name}'")
        else:
            names.add(name)
        if not step.get("tool"):
            errors.append(f"step '{name or i}' has no tool")
    for step in steps:
        for dep in declared_dependencies(step.get("inputs")):
            if dep not in names:
                errors.append(f"step '{step.get('name')}' depends on unknown step '{dep}'")
            elif dep == step.get("name"):
                errors.append(f"step '{dep}' depends on itself")
    return errors


async def create_run(
    store, queue, goal: str, steps: list[dict[str, Any]]
) -> tuple[RunRow, list[StepRow]]:
    """Persist a run with its steps (all ``queued``) and enqueue every step."""
    errors = validate_plan(steps)
    if errors:
        raise PlanValidationError(errors)

    created: dict[str, Any] = {}

    async def _persist() -> None:
        run = await store.create_run(goal=goal, plan={"goal": goal, "steps": steps})
        rows = []
        for step in steps:
            rows.append(
                await store.create_step(
                    run.id,
                    step["name"],
                    step["tool"],
                    inputs=step.get("inputs") or {},
                    idempotency_key=step.get("idempotency_key"),
                )
            )
        await record_event(store, run.id, "run.created", {"goal": goal, "steps": len(rows)})
        created["run"], created["steps"] = run, rows

    await run_atomically(store, _persist)

    run, rows = created["run"], created["steps"]
    for step in rows:
        await queue.enqueue(STEP_READY_TOPIC, {"runId": run.id, "stepId": step.id, "__attempt": 1})
    logger.info(f"Run {run.id} created with {len(rows)} step(s)")
    return run, rows


class PlanValidationError(ValueError):
    """The submitted steps cannot form a run."""

    def __init__(self, errors: list[str]) -> None:
        super().__init__("; ".join(errors))
        self.errors = errors
