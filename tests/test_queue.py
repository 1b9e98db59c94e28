"""Tests for the queue backends, outbox relay, worker wiring and scheduler."""

from __future__ import annotations

from datetime import datetime, timedelta, timezone
from unittest.mock import AsyncMock, MagicMock, patch

import pytest
from conftest import RecordingQueue, make_run

from nofx.engine.events import record_event
from nofx.handlers.base import HandlerRegistry
from nofx.handlers.echo import EchoHandler
from nofx.models.db import StepStatus
from nofx.queue.backends import (
    ArqQueue,
    MemoryQueue,
    _parse_redis_url,
    attempt_of,
    dlq_topic,
    next_backoff_ms,
    source_topic,
)
from nofx.queue.relay import relay_outbox
from nofx.queue.scheduler import check_step_timeouts, step_timeout_ms
from nofx.queue.worker import build_runtime, requeue_waiting_steps


# --- Helpers ---


class TestTopicHelpers:
    def test_dlq_topics(self):
        assert dlq_topic("step.ready") == "step.dlq"
        assert dlq_topic("event.out") == "event.out.dlq"
        assert source_topic("step.dlq") == "step.ready"
        assert source_topic("event.out.dlq") == "event.out"

    @pytest.mark.parametrize(
        "message, expected",
        [({"__attempt": 3}, 3), ({}, 1), ({"__attempt": "x"}, 1), ({"__attempt": 0}, 1), (None, 1)],
    )
    def test_attempt_of(self, message, expected):
        assert attempt_of(message) == expected

    def test_backoff_schedule(self):
        schedule = [0, 2000, 5000, 10000]
        assert next_backoff_ms(1, schedule) == 2000
        assert next_backoff_ms(3, schedule) == 10000
        assert next_backoff_ms(4, schedule) is None

    def test_parse_redis_url(self):
        rs = _parse_redis_url("redis://:secret@cache:6380/2")
        assert (rs.host, rs.port, rs.database, rs.password) == ("cache", 6380, 2, "secret")


# --- In-process queue ---


class TestMemoryQueue:
    @pytest.mark.asyncio
    async def test_delivers_to_subscriber(self):
        q = MemoryQueue(concurrency=2, backoff_ms=[0])
        received = []

        async def handler(message):
            received.append(message)

        q.subscribe("t", handler)
        await q.enqueue("t", {"n": 1})
        await q.join()
        assert received == [{"n": 1}]

    @pytest.mark.asyncio
    async def test_holds_messages_until_subscribed(self):
        q = MemoryQueue(backoff_ms=[0])
        received = []

        async def handler(message):
            received.append(message)

        await q.enqueue("later", {"n": 1})
        assert q.pending_count("later") == 1
        q.subscribe("later", handler)
        await q.join()
        assert received == [{"n": 1}]
        assert q.pending_count("later") == 0

    @pytest.mark.asyncio
    async def test_retries_then_dead_letters(self):
        q = MemoryQueue(backoff_ms=[0, 0, 0])
        attempts = []

        async def handler(message):
            attempts.append(message["__attempt"])
            raise RuntimeError("nope")

        q.subscribe("step.ready", handler)
        await q.enqueue("step.ready", {"stepId": "s", "__attempt": 1})
        await q.join()

        assert attempts == [1, 2, 3]
        assert await q.list_dlq("step.dlq") == [{"stepId": "s", "__attempt": 3}]

    @pytest.mark.asyncio
    async def test_recovers_on_retry(self):
        q = MemoryQueue(backoff_ms=[0, 0, 0])
        attempts = []

        async def handler(message):
            attempts.append(message["__attempt"])
            if len(attempts) < 2:
                raise RuntimeError("flaky")

        q.subscribe("jobs", handler)
        await q.enqueue("jobs", {"__attempt": 1})
        await q.join()

        assert attempts == [1, 2]
        assert await q.list_dlq("jobs.dlq") == []

    @pytest.mark.asyncio
    async def test_rehydrate_resets_attempt(self):
        q = MemoryQueue(backoff_ms=[0])
        fail = True
        seen = []

        async def handler(message):
            seen.append(message)
            if fail:
                raise RuntimeError("down")

        q.subscribe("step.ready", handler)
        await q.enqueue("step.ready", {"stepId": "s", "__attempt": 1})
        await q.join()
        assert len(await q.list_dlq("step.dlq")) == 1

        fail = False
        assert await q.rehydrate_dlq("step.dlq", max_items=10) == 1
        await q.join()

        assert seen[-1] == {"stepId": "s", "__attempt": 1}
        assert await q.list_dlq("step.dlq") == []


class TestArqQueue:
    @pytest.mark.asyncio
    async def test_enqueue_defers_job(self):
        q = ArqQueue("redis://localhost:6379/0", backoff_ms=[0])
        pool = MagicMock()
        pool.enqueue_job = AsyncMock()
        q._pool = pool

        await q.enqueue("step.ready", {"stepId": "s"}, delay_ms=1500)

        pool.enqueue_job.assert_awaited_once_with(
            "process_message",
            "step.ready",
            {"stepId": "s"},
            _defer_by=timedelta(milliseconds=1500),
        )

    @pytest.mark.asyncio
    async def test_dead_letters_go_to_redis_list(self):
        q = ArqQueue("redis://localhost:6379/0", backoff_ms=[0])
        pool = MagicMock()
        pool.rpush = AsyncMock()
        q._pool = pool

        async def handler(message):
            raise RuntimeError("x")

        q.subscribe("event.out", handler)
        await q.dispatch("event.out", {"__attempt": 1})

        pool.rpush.assert_awaited_once_with("nofx:dlq:event.out.dlq", '{"__attempt": 1}')


# --- Outbox relay ---


class TestRelay:
    @pytest.mark.asyncio
    async def test_relays_and_marks_sent(self, any_store, queue):
        run, _ = await make_run(any_store)
        await record_event(any_store, run.id, "run.created", {"goal": "x"})

        assert await relay_outbox(any_store, queue) == 1

        ((topic, message, _),) = queue.sent
        assert topic == "event.out"
        assert message["type"] == "run.created"
        assert message["__attempt"] == 1
        assert await any_store.outbox_list_unsent() == []
        assert await relay_outbox(any_store, queue) == 0

    @pytest.mark.asyncio
    async def test_failed_enqueue_leaves_row_unsent(self, any_store):
        run, _ = await make_run(any_store)
        await record_event(any_store, run.id, "run.created", {})

        class BrokenQueue(RecordingQueue):
            async def enqueue(self, topic, message, delay_ms=0):
                raise ConnectionError("redis down")

        assert await relay_outbox(any_store, BrokenQueue()) == 0
        assert len(await any_store.outbox_list_unsent()) == 1

    @pytest.mark.asyncio
    async def test_batch_limit(self, any_store, queue):
        run, _ = await make_run(any_store)
        for i in range(3):
            await record_event(any_store, run.id, f"e.{i}", {})

        assert await relay_outbox(any_store, queue, batch=2) == 2
        assert [m["type"] for _, m, _ in queue.sent] == ["e.0", "e.1"]


# --- Worker wiring ---


class TestRuntime:
    @pytest.mark.asyncio
    async def test_step_ready_runs_the_step(self, fs_store):
        q = MemoryQueue(backoff_ms=[0])
        runtime = build_runtime(
            store=fs_store, queue=q, registry=HandlerRegistry([EchoHandler()])
        )
        run, (step,) = await make_run(fs_store, ("a", "test:echo", {"v": 1}))

        await q.enqueue("step.ready", {"runId": run.id, "stepId": step.id, "__attempt": 1})
        await q.join()

        assert (await runtime.store.get_step(step.id)).status == "succeeded"
        assert q.has_subscriber("event.out")

    @pytest.mark.asyncio
    async def test_requeue_waiting_steps(self, fs_store, queue):
        runtime = build_runtime(
            store=fs_store, queue=queue, registry=HandlerRegistry([EchoHandler()])
        )
        run, (a, b, c) = await make_run(
            fs_store,
            ("a", "test:echo", {}),
            ("b", "manual:x", {}),
            ("c", "test:echo", {}),
        )
        await fs_store.update_step(b.id, status=StepStatus.MANUAL)
        await fs_store.update_step(c.id, status=StepStatus.SUCCEEDED)

        assert await requeue_waiting_steps(runtime) == 2
        assert {m["stepId"] for _, m, _ in queue.sent} == {a.id, b.id}


# --- Scheduler ---


class TestTimeoutScan:
    @pytest.mark.parametrize(
        "inputs, expected",
        [
            ({"_timeoutMs": 500}, 500),
            ({"_timeoutMs": 0}, None),
            ({"_timeoutMs": "5"}, None),
            ({"_timeoutMs": True}, None),
            (None, None),
        ],
    )
    def test_step_timeout_ms(self, inputs, expected):
        from nofx.config import settings

        assert step_timeout_ms(inputs) == (expected or settings.step_timeout_ms)

    @pytest.mark.asyncio
    async def test_times_out_only_overdue_steps(self, any_store, queue):
        from nofx.engine.runner import StepRunner

        now = datetime.now(timezone.utc)
        run, (slow, fresh, unstarted) = await make_run(
            any_store,
            ("slow", "bash", {"_timeoutMs": 1000}),
            ("fresh", "bash", {"_timeoutMs": 60_000}),
            ("unstarted", "bash", {}),
        )
        await any_store.update_step(
            slow.id, status=StepStatus.RUNNING, started_at=now - timedelta(seconds=5)
        )
        await any_store.update_step(
            fresh.id, status=StepStatus.RUNNING, started_at=now - timedelta(seconds=5)
        )
        await any_store.update_step(unstarted.id, status=StepStatus.RUNNING)
        runner = StepRunner(any_store, queue, HandlerRegistry([]))

        assert await check_step_timeouts(any_store, runner, now=now) == 1

        assert (await any_store.get_step(slow.id)).status == "timed_out"
        assert (await any_store.get_step(fresh.id)).status == "running"
        assert (await any_store.get_run(run.id)).status == "failed"

    @pytest.mark.asyncio
    async def test_errors_do_not_stop_the_scan(self, fs_store):
        now = datetime.now(timezone.utc)
        run, (a, b) = await make_run(
            fs_store, ("a", "bash", {"_timeoutMs": 1}), ("b", "bash", {"_timeoutMs": 1})
        )
        for step in (a, b):
            await fs_store.update_step(
                step.id, status=StepStatus.RUNNING, started_at=now - timedelta(seconds=1)
            )
        runner = MagicMock()
        runner.mark_step_timed_out = AsyncMock(side_effect=[RuntimeError("db"), None])

        assert await check_step_timeouts(fs_store, runner, now=now) == 1
        assert runner.mark_step_timed_out.await_count == 2


class TestSchedulerJobs:
    @pytest.mark.asyncio
    async def test_start_registers_jobs(self):
        from nofx.queue import scheduler as scheduler_mod

        fake = MagicMock()
        fake.running = False
        with patch.object(scheduler_mod, "get_scheduler", return_value=fake):
            await scheduler_mod.start_scheduler(MagicMock())

        fake.start.assert_called_once()
        job_ids = {call.kwargs["id"] for call in fake.add_job.call_args_list}
        assert job_ids == {"step_timeout_checker", "outbox_relay"}
