"""Step runner - drives one step through the run/step state machine.

A queue delivery ``{runId, stepId, __attempt}`` ends up in
:meth:`StepRunner.run_step`. Waiting (unmet dependencies, pending approval)
never blocks: the step is handed back to the queue with a delay.
"""

from __future__ import annotations

import logging
import time
from datetime import datetime, timezone
from typing import Any

from nofx import metrics
from nofx.config import settings
from nofx.engine.dependencies import check_dependencies, declared_dependencies
from nofx.engine.deferral import defer_step
from nofx.engine.events import record_event
from nofx.engine.inbox import claim, idempotency_key, step_exec_key
from nofx.engine.tx import run_atomically
from nofx.handlers.base import HandlerRegistry, StepContext
from nofx.models.db import TERMINAL_STEP_STATUSES, RunStatus, StepStatus
from nofx.store.base import StepRow, status_value

logger = logging.getLogger(__name__)


def _now() -> datetime:
    return datetime.now(timezone.utc)


def _tools_allowed(inputs: Any) -> list[str] | None:
    if not isinstance(inputs, dict):
        return None
    policy = inputs.get("_policy")
    if not isinstance(policy, dict):
        return None
    allowed = policy.get("tools_allowed")
    if isinstance(allowed, (list, tuple)) and allowed:
        return [str(t) for t in allowed]
    return None


class StepRunner:
    """Executes single steps against a store, a queue and a handler registry."""

    def __init__(
        self,
        store,
        queue,
        registry: HandlerRegistry,
        dependency_poll_ms: int | None = None,
    ) -> None:
        self.store = store
        self.queue = queue
        self.registry = registry
        self.dependency_poll_ms = (
            settings.dependency_poll_ms if dependency_poll_ms is None else dependency_poll_ms
        )

    async def run_step(self, run_id: str, step_id: str, attempt: int = 1) -> None:
        """Execute one delivery of a step.

        Returns normally for duplicates, deferrals, policy denials and
        suspended steps. Raises for missing steps, missing handlers and
        handler failures, after the failure has been persisted.
        """
        store = self.store
        step = await store.get_step(step_id)
        if step is None or step.run_id != run_id:
            raise StepNotFoundError(step_id)

        if not await claim(store, step_exec_key(step.id)):
            logger.warning(f"inbox.duplicate: run {run_id} step {step.id} attempt {attempt}")
            return

        status = status_value(step.status)
        if status in TERMINAL_STEP_STATUSES:
            logger.info(f"step.skipped: step {step.id} is already {status}")
            return

        deps = declared_dependencies(step.inputs)
        if deps:
            readiness = await check_dependencies(store, run_id, deps)
            if not readiness.ready:
                await record_event(
                    store,
                    run_id,
                    "step.waiting",
                    {
                        "stepId": step.id,
                        "reason": "deps_not_ready",
                        "deps": deps,
                        "unmet": readiness.unmet,
                    },
                    step_id=step.id,
                )
                await defer_step(store, self.queue, step, attempt + 1, self.dependency_poll_ms)
                return

        allowed = _tools_allowed(step.inputs)
        if allowed is not None and step.tool not in allowed:
            await self._deny_tool(run_id, step, allowed)
            return

        handler = self.registry.resolve(step.tool)
        if handler is None:
            await record_event(
                store,
                run_id,
                "step.failed",
                {"error": "no handler for tool", "tool": step.tool},
                step_id=step.id,
            )
            await store.update_step(step.id, status=StepStatus.FAILED, ended_at=_now())
            raise NoHandlerError(step.tool)

        started_at = _now()
        await store.update_step(step.id, status=StepStatus.RUNNING, started_at=started_at)
        await store.start_run(run_id, started_at)
        await record_event(
            store,
            run_id,
            "step.started",
            {"name": step.name, "tool": step.tool},
            step_id=step.id,
        )

        started = time.monotonic()
        try:
            if await claim(store, idempotency_key(step)):
                await handler.run(
                    StepContext(
                        run_id=run_id, step=step, store=store, queue=self.queue, attempt=attempt
                    )
                )
            else:
                logger.info(f"idempotency.already_applied: step {step.id}, skipping handler")

            current = await store.get_step(step.id)
            current_status = status_value(current.status if current else None)
            if current_status == StepStatus.MANUAL.value:
                logger.info(f"step.suspended: step {step.id} awaiting approval")
                return
            if current_status == StepStatus.FAILED.value:
                raise HandlerContractError(step.tool, current_status)
        except Exception as e:
            settled = await self._settled_while_running(step.id)
            if settled:
                logger.warning(
                    f"step.settled: step {step.id} already {settled}, "
                    f"handler error not recorded: {e}"
                )
                return
            await self._fail(run_id, step, e, started)
            raise

        if current_status == StepStatus.TIMED_OUT.value:
            logger.info(f"step.timeout: step {step.id} timed out while running")
            return
        if current_status == StepStatus.CANCELLED.value:
            logger.info(f"step.cancelled: step {step.id} cancelled while running")
        else:
            await self._succeed(run_id, step, started)
        await self._complete_run_if_done(run_id)

    async def _settled_while_running(self, step_id: str) -> str | None:
        """Status of a step moved to timed_out or cancelled behind the runner's back."""
        current = await self.store.get_step(step_id)
        status = status_value(current.status if current else None)
        if status in (StepStatus.TIMED_OUT.value, StepStatus.CANCELLED.value):
            return status
        return None

    async def _deny_tool(self, run_id: str, step: StepRow, allowed: list[str]) -> None:
        now = _now()
        await self.store.update_step(
            step.id,
            status=StepStatus.FAILED,
            ended_at=now,
            outputs={
                "error": "policy: tool not allowed",
                "tool": step.tool,
                "toolsAllowed": allowed,
            },
        )
        await record_event(
            self.store,
            run_id,
            "policy.denied",
            {
                "stepId": step.id,
                "reason": "tool_not_allowed",
                "tool": step.tool,
                "toolsAllowed": allowed,
            },
            step_id=step.id,
        )
        await self.store.update_run(run_id, status=RunStatus.FAILED, ended_at=now)
        await record_event(
            self.store, run_id, "run.failed", {"reason": "policy_denied", "stepId": step.id}
        )
        logger.warning(f"policy.denied: tool {step.tool} not allowed for step {step.id}")

    async def _succeed(self, run_id: str, step: StepRow, started: float) -> None:
        await self.store.update_step(step.id, status=StepStatus.SUCCEEDED, ended_at=_now())
        await record_event(
            self.store,
            run_id,
            "step.succeeded",
            {"tool": step.tool, "name": step.name},
            step_id=step.id,
        )
        latency_ms = (time.monotonic() - started) * 1000
        metrics.observe_step(step.tool, StepStatus.SUCCEEDED.value, latency_ms)
        logger.info(
            f"step.completed: run {run_id} step {step.id} succeeded in {latency_ms:.0f}ms"
        )

    async def _complete_run_if_done(self, run_id: str) -> None:
        async def _flip() -> None:
            if await self.store.complete_run_if_done(run_id, _now()):
                await record_event(self.store, run_id, "run.succeeded", {})
                logger.info(f"run.succeeded: run {run_id}")

        await run_atomically(self.store, _flip)

    async def _fail(self, run_id: str, step: StepRow, error: Exception, started: float) -> None:
        message = str(error) or error.__class__.__name__
        now = _now()
        current = await self.store.get_step(step.id)
        outputs = dict(current.outputs) if current and isinstance(current.outputs, dict) else {}
        outputs["error"] = message
        await self.store.update_step(
            step.id, status=StepStatus.FAILED, ended_at=now, outputs=outputs
        )
        await record_event(self.store, run_id, "step.failed", {"error": message}, step_id=step.id)
        await self.store.update_run(run_id, status=RunStatus.FAILED, ended_at=now)
        await record_event(
            self.store, run_id, "run.failed", {"reason": "step failed", "stepId": step.id}
        )
        latency_ms = (time.monotonic() - started) * 1000
        metrics.observe_step(step.tool, StepStatus.FAILED.value, latency_ms)
        logger.error(f"step.completed: run {run_id} step {step.id} failed: {message}")

    async def mark_step_timed_out(self, run_id: str, step_id: str, timeout_ms: int) -> None:
        """Force a stuck step to ``timed_out``; finished steps are never touched."""
        step = await self.store.get_step(step_id)
        if step is None:
            logger.warning(f"step.timeout: step {step_id} not found")
            return
        status = status_value(step.status)
        if status in TERMINAL_STEP_STATUSES:
            logger.debug(f"step.timeout: step {step_id} already {status}, ignoring")
            return

        now = _now()
        outputs = dict(step.outputs) if isinstance(step.outputs, dict) else {}
        outputs.update({"error": "timeout", "timeoutMs": timeout_ms})

        async def _apply() -> None:
            await self.store.update_step(
                step_id, status=StepStatus.TIMED_OUT, ended_at=now, outputs=outputs
            )
            await self.store.update_run(run_id, status=RunStatus.FAILED, ended_at=now)
            await record_event(
                self.store,
                run_id,
                "step.timeout",
                {"stepId": step_id, "timeoutMs": timeout_ms},
                step_id=step_id,
            )
            await record_event(
                self.store,
                run_id,
                "run.failed",
                {"reason": "step timed out", "stepId": step_id},
            )

        await run_atomically(self.store, _apply)
        metrics.steps_total.labels(status=StepStatus.TIMED_OUT.value).inc()
        logger.warning(f"step.timeout: run {run_id} step {step_id} after {timeout_ms}ms")


class StepNotFoundError(Exception):
    """Step does not exist or belongs to another run."""

    def __init__(self, step_id: str | None = None) -> None:
        super().__init__("step_not_found")
        self.step_id = step_id


class NoHandlerError(Exception):
    """No registered handler matches the step's tool."""

    def __init__(self, tool: str) -> None:
        super().__init__(f"no handler for {tool}")
        self.tool = tool


class HandlerContractError(Exception):
    """Handler marked the step failed but returned without raising."""

    def __init__(self, tool: str, status: str) -> None:
        super().__init__(f"handler for {tool} left step {status} without raising")
        self.tool = tool
        self.status = status
