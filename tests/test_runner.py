"""Tests for the step runner state machine."""

from __future__ import annotations

import asyncio
from datetime import datetime, timedelta, timezone

import pytest
from conftest import event_types, make_run

from nofx.engine.inbox import claim, step_exec_key
from nofx.engine.runner import (
    HandlerContractError,
    NoHandlerError,
    StepNotFoundError,
    StepRunner,
)
from nofx.handlers.base import HandlerRegistry
from nofx.handlers.echo import EchoHandler
from nofx.models.db import StepStatus


class CountingHandler:
    """Sleeps briefly so concurrent deliveries overlap, counts executions."""

    def __init__(self) -> None:
        self.calls = 0

    def match(self, tool: str) -> bool:
        return tool == "test:count"

    async def run(self, ctx) -> None:
        self.calls += 1
        await asyncio.sleep(0.05)
        await ctx.store.update_step(ctx.step.id, outputs={"calls": self.calls})


class BoomHandler:
    def match(self, tool: str) -> bool:
        return tool == "test:boom"

    async def run(self, ctx) -> None:
        await ctx.store.update_step(ctx.step.id, outputs={"partial": True})
        raise RuntimeError("kaboom")


class SilentFailHandler:
    """Marks the step failed but returns normally."""

    def match(self, tool: str) -> bool:
        return tool == "test:silent"

    async def run(self, ctx) -> None:
        await ctx.store.update_step(ctx.step.id, status=StepStatus.FAILED)


class TimesOutMidRunHandler:
    """Lets the timeout monitor fire while the handler is still working."""

    def __init__(self, raise_after: bool = False) -> None:
        self.raise_after = raise_after

    def match(self, tool: str) -> bool:
        return tool == "test:slow"

    async def run(self, ctx) -> None:
        monitor = StepRunner(ctx.store, ctx.queue, HandlerRegistry([]))
        await monitor.mark_step_timed_out(ctx.run_id, ctx.step.id, 1000)
        if self.raise_after:
            raise RuntimeError("connection reset")


def _runner(store, queue, *handlers, poll_ms=0):
    registry = HandlerRegistry(list(handlers) or [EchoHandler()])
    return StepRunner(store, queue, registry, dependency_poll_ms=poll_ms)


# --- Happy path ---


class TestRunStep:
    @pytest.mark.asyncio
    async def test_echo_step_succeeds_and_completes_run(self, any_store, queue):
        run, (step,) = await make_run(any_store, ("a", "test:echo", {"x": 1}))
        await _runner(any_store, queue).run_step(run.id, step.id)

        row = await any_store.get_step(step.id)
        assert row.status == "succeeded"
        assert row.outputs == {"echo": {"x": 1}}
        assert row.started_at is not None
        assert row.ended_at is not None
        assert (await any_store.get_run(run.id)).status == "succeeded"
        assert await event_types(any_store, run.id) == [
            "step.started",
            "step.succeeded",
            "run.succeeded",
        ]

    @pytest.mark.asyncio
    async def test_run_stays_running_while_siblings_remain(self, any_store, queue):
        run, (a, _b) = await make_run(
            any_store, ("a", "test:echo", {}), ("b", "test:echo", {})
        )
        await _runner(any_store, queue).run_step(run.id, a.id)

        assert (await any_store.get_run(run.id)).status == "running"
        assert "run.succeeded" not in await event_types(any_store, run.id)

    @pytest.mark.asyncio
    async def test_started_event_payload(self, any_store, queue):
        run, (step,) = await make_run(any_store, ("first", "test:echo", {}))
        await _runner(any_store, queue).run_step(run.id, step.id)

        started = (await any_store.list_events(run.id))[0]
        assert started.payload == {"name": "first", "tool": "test:echo"}
        assert started.step_id == step.id

    @pytest.mark.asyncio
    async def test_missing_step_raises(self, any_store, queue):
        run, _ = await make_run(any_store)
        with pytest.raises(StepNotFoundError):
            await _runner(any_store, queue).run_step(run.id, "does-not-exist")

    @pytest.mark.asyncio
    async def test_step_of_other_run_raises(self, any_store, queue):
        _, (step,) = await make_run(any_store, ("a", "test:echo", {}))
        other, _ = await make_run(any_store)
        with pytest.raises(StepNotFoundError):
            await _runner(any_store, queue).run_step(other.id, step.id)

    @pytest.mark.asyncio
    async def test_terminal_step_is_skipped(self, any_store, queue):
        run, (step,) = await make_run(any_store, ("a", "test:echo", {}))
        await any_store.update_step(step.id, status=StepStatus.SUCCEEDED, outputs={"keep": 1})

        await _runner(any_store, queue).run_step(run.id, step.id)

        assert (await any_store.get_step(step.id)).outputs == {"keep": 1}
        assert await event_types(any_store, run.id) == []


# --- Failures ---


class TestRunStepFailures:
    @pytest.mark.asyncio
    async def test_no_handler(self, any_store, queue):
        run, (step,) = await make_run(any_store, ("a", "unknown:tool", {}))
        with pytest.raises(NoHandlerError):
            await _runner(any_store, queue).run_step(run.id, step.id)

        assert (await any_store.get_step(step.id)).status == "failed"
        events = await any_store.list_events(run.id)
        assert events[-1].type == "step.failed"
        assert events[-1].payload == {"error": "no handler for tool", "tool": "unknown:tool"}

    @pytest.mark.asyncio
    async def test_handler_exception_fails_step_and_run(self, any_store, queue):
        run, (step,) = await make_run(any_store, ("a", "test:boom", {}))
        with pytest.raises(RuntimeError, match="kaboom"):
            await _runner(any_store, queue, BoomHandler()).run_step(run.id, step.id)

        row = await any_store.get_step(step.id)
        assert row.status == "failed"
        assert row.outputs == {"partial": True, "error": "kaboom"}
        assert (await any_store.get_run(run.id)).status == "failed"
        assert await event_types(any_store, run.id) == [
            "step.started",
            "step.failed",
            "run.failed",
        ]

    @pytest.mark.asyncio
    async def test_handler_marking_failed_without_raising(self, any_store, queue):
        run, (step,) = await make_run(any_store, ("a", "test:silent", {}))
        with pytest.raises(HandlerContractError):
            await _runner(any_store, queue, SilentFailHandler()).run_step(run.id, step.id)

        assert (await any_store.get_step(step.id)).status == "failed"
        assert (await any_store.get_run(run.id)).status == "failed"
        assert "step.succeeded" not in await event_types(any_store, run.id)

    @pytest.mark.asyncio
    async def test_tool_not_allowed_by_step_policy(self, any_store, queue):
        inputs = {"_policy": {"tools_allowed": ["bash"]}}
        run, (step,) = await make_run(any_store, ("a", "test:echo", inputs))

        await _runner(any_store, queue).run_step(run.id, step.id)

        row = await any_store.get_step(step.id)
        assert row.status == "failed"
        assert row.outputs["error"] == "policy: tool not allowed"
        assert (await any_store.get_run(run.id)).status == "failed"
        events = await any_store.list_events(run.id)
        assert [e.type for e in events] == ["policy.denied", "run.failed"]
        assert events[0].payload["reason"] == "tool_not_allowed"
        assert events[1].payload == {"reason": "policy_denied", "stepId": step.id}

    @pytest.mark.asyncio
    async def test_empty_tools_allowed_means_no_restriction(self, any_store, queue):
        run, (step,) = await make_run(
            any_store, ("a", "test:echo", {"_policy": {"tools_allowed": []}})
        )
        await _runner(any_store, queue).run_step(run.id, step.id)
        assert (await any_store.get_step(step.id)).status == "succeeded"


# --- Dependencies ---


class TestDependencies:
    @pytest.mark.asyncio
    async def test_waits_then_runs_after_dependency(self, any_store, queue):
        run, (a, b) = await make_run(
            any_store,
            ("a", "test:echo", {}),
            ("b", "test:echo", {"_dependsOn": ["a"]}),
        )
        runner = _runner(any_store, queue, poll_ms=250)

        await runner.run_step(run.id, b.id, attempt=1)

        assert (await any_store.get_step(b.id)).status == "queued"
        events = await any_store.list_events(run.id)
        assert events[0].type == "step.waiting"
        assert events[0].payload["unmet"] == ["a"]
        assert events[0].payload["reason"] == "deps_not_ready"
        assert queue.sent == [
            ("step.ready", {"runId": run.id, "stepId": b.id, "__attempt": 2}, 250)
        ]

        await runner.run_step(run.id, a.id)
        await runner.run_step(run.id, b.id, attempt=2)

        assert (await any_store.get_step(b.id)).status == "succeeded"
        assert (await any_store.get_run(run.id)).status == "succeeded"

    @pytest.mark.asyncio
    async def test_failed_dependency_keeps_step_waiting(self, any_store, queue):
        run, (a, b) = await make_run(
            any_store,
            ("a", "test:echo", {}),
            ("b", "test:echo", {"_dependsOn": ["a"]}),
        )
        await any_store.update_step(a.id, status=StepStatus.FAILED)

        await _runner(any_store, queue).run_step(run.id, b.id)

        assert (await any_store.get_step(b.id)).status == "queued"
        assert queue.topics() == ["step.ready"]

    @pytest.mark.asyncio
    async def test_wait_releases_exec_claim_but_keeps_idempotency_key(self, any_store, queue):
        run = await any_store.create_run(goal="test")
        await any_store.create_step(run.id, "a", "test:echo", inputs={})
        b = await any_store.create_step(
            run.id, "b", "test:echo", inputs={"_dependsOn": ["a"]}, idempotency_key="b-key"
        )
        assert await claim(any_store, "b-key")

        await _runner(any_store, queue).run_step(run.id, b.id)

        assert await claim(any_store, step_exec_key(b.id)) is True
        assert await claim(any_store, "b-key") is False

    @pytest.mark.asyncio
    async def test_wait_does_not_reapply_key_used_by_earlier_run(self, any_store, queue):
        handler = CountingHandler()
        runner = _runner(any_store, queue, handler)
        first = await any_store.create_run(goal="first")
        pay = await any_store.create_step(
            first.id, "pay", "test:count", inputs={}, idempotency_key="charge-42"
        )
        await runner.run_step(first.id, pay.id)
        assert handler.calls == 1

        second = await any_store.create_run(goal="second")
        prep = await any_store.create_step(second.id, "prep", "test:count", inputs={})
        pay_again = await any_store.create_step(
            second.id,
            "pay",
            "test:count",
            inputs={"_dependsOn": ["prep"]},
            idempotency_key="charge-42",
        )

        await runner.run_step(second.id, pay_again.id)
        assert (await any_store.get_step(pay_again.id)).status == "queued"
        await runner.run_step(second.id, prep.id)
        await runner.run_step(second.id, pay_again.id, attempt=2)

        assert handler.calls == 2
        assert (await any_store.get_step(pay_again.id)).status == "succeeded"
        assert (await any_store.get_run(second.id)).status == "succeeded"


# --- Concurrency ---


class TestConcurrency:
    @pytest.mark.asyncio
    async def test_duplicate_delivery_executes_once(self, any_store, queue):
        handler = CountingHandler()
        run, (step,) = await make_run(any_store, ("a", "test:count", {}))
        runner = _runner(any_store, queue, handler)

        await asyncio.gather(
            runner.run_step(run.id, step.id),
            runner.run_step(run.id, step.id),
        )

        assert handler.calls == 1
        assert (await any_store.get_step(step.id)).status == "succeeded"
        assert (await event_types(any_store, run.id)).count("step.started") == 1

    @pytest.mark.asyncio
    async def test_redelivery_after_success_is_ignored(self, any_store, queue):
        handler = CountingHandler()
        run, (step,) = await make_run(any_store, ("a", "test:count", {}))
        runner = _runner(any_store, queue, handler)

        await runner.run_step(run.id, step.id)
        await runner.run_step(run.id, step.id, attempt=2)

        assert handler.calls == 1

    @pytest.mark.asyncio
    async def test_siblings_finishing_together_complete_run_once(self, any_store, queue):
        run, (a, b) = await make_run(
            any_store, ("a", "test:count", {}), ("b", "test:count", {})
        )
        runner = _runner(any_store, queue, CountingHandler())

        await asyncio.gather(runner.run_step(run.id, a.id), runner.run_step(run.id, b.id))

        assert (await any_store.get_run(run.id)).status == "succeeded"
        assert (await event_types(any_store, run.id)).count("run.succeeded") == 1

    @pytest.mark.asyncio
    async def test_already_applied_idempotency_key_skips_handler(self, any_store, queue):
        handler = CountingHandler()
        run = await any_store.create_run(goal="test")
        step = await any_store.create_step(
            run.id, "a", "test:count", inputs={}, idempotency_key="charge-42"
        )
        assert await claim(any_store, "charge-42")

        await _runner(any_store, queue, handler).run_step(run.id, step.id)

        assert handler.calls == 0
        assert (await any_store.get_step(step.id)).status == "succeeded"


# --- Timeouts ---


class TestMarkStepTimedOut:
    @pytest.mark.asyncio
    async def test_running_step_times_out(self, any_store, queue):
        run, (step,) = await make_run(any_store, ("a", "test:echo", {}))
        await any_store.update_step(
            step.id,
            status=StepStatus.RUNNING,
            started_at=datetime.now(timezone.utc) - timedelta(minutes=5),
            outputs={"progress": 3},
        )

        await _runner(any_store, queue).mark_step_timed_out(run.id, step.id, 1000)

        row = await any_store.get_step(step.id)
        assert row.status == "timed_out"
        assert row.outputs == {"progress": 3, "error": "timeout", "timeoutMs": 1000}
        assert (await any_store.get_run(run.id)).status == "failed"
        events = await any_store.list_events(run.id)
        assert [e.type for e in events] == ["step.timeout", "run.failed"]
        assert events[0].payload == {"stepId": step.id, "timeoutMs": 1000}

    @pytest.mark.asyncio
    @pytest.mark.parametrize("status", ["succeeded", "failed", "cancelled", "timed_out"])
    async def test_finished_step_is_untouched(self, any_store, queue, status):
        run, (step,) = await make_run(any_store, ("a", "test:echo", {}))
        await any_store.update_step(step.id, status=status, outputs={"done": True})

        await _runner(any_store, queue).mark_step_timed_out(run.id, step.id, 1000)

        row = await any_store.get_step(step.id)
        assert row.status == status
        assert row.outputs == {"done": True}
        assert (await any_store.get_run(run.id)).status == "pending"
        assert await event_types(any_store, run.id) == []

    @pytest.mark.asyncio
    async def test_timeout_during_handler_is_kept(self, any_store, queue):
        run, (step,) = await make_run(any_store, ("a", "test:slow", {}))

        await _runner(any_store, queue, TimesOutMidRunHandler()).run_step(run.id, step.id)

        row = await any_store.get_step(step.id)
        assert row.status == "timed_out"
        assert row.outputs == {"error": "timeout", "timeoutMs": 1000}
        assert (await any_store.get_run(run.id)).status == "failed"
        assert await event_types(any_store, run.id) == [
            "step.started",
            "step.timeout",
            "run.failed",
        ]

    @pytest.mark.asyncio
    async def test_handler_error_after_timeout_is_not_recorded(self, any_store, queue):
        run, (step,) = await make_run(any_store, ("a", "test:slow", {}))
        runner = _runner(any_store, queue, TimesOutMidRunHandler(raise_after=True))

        await runner.run_step(run.id, step.id)

        row = await any_store.get_step(step.id)
        assert row.status == "timed_out"
        assert row.outputs["error"] == "timeout"
        assert (await event_types(any_store, run.id)).count("run.failed") == 1
        assert "step.failed" not in await event_types(any_store, run.id)

    @pytest.mark.asyncio
    async def test_missing_step_is_ignored(self, any_store, queue):
        run, _ = await make_run(any_store)
        await _runner(any_store, queue).mark_step_timed_out(run.id, "nope", 1000)
        assert await event_types(any_store, run.id) == []


class TestExecClaim:
    @pytest.mark.asyncio
    async def test_claimed_step_is_not_executed(self, any_store, queue):
        handler = CountingHandler()
        run, (step,) = await make_run(any_store, ("a", "test:count", {}))
        assert await claim(any_store, step_exec_key(step.id))

        await _runner(any_store, queue, handler).run_step(run.id, step.id)

        assert handler.calls == 0
        assert (await any_store.get_step(step.id)).status == "queued"
