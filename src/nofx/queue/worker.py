"""Queue worker - arq (Redis) or in-process (asyncio) for local mode."""

from __future__ import annotations

import asyncio
import logging
from dataclasses import dataclass

from nofx.config import settings
from nofx.engine.runner import StepRunner
from nofx.handlers.base import HandlerRegistry, load_handlers
from nofx.models.db import StepStatus
from nofx.queue.backends import (
    OUTBOX_TOPIC,
    STEP_READY_TOPIC,
    ArqQueue,
    BaseQueue,
    _parse_redis_url,
    attempt_of,
    create_queue,
)
from nofx.store import create_store
from nofx.webhooks.dispatcher import handle_event_message

logger = logging.getLogger(__name__)


@dataclass
class Runtime:
    """Store, queue, handlers and runner wired together for one process."""

    store: object
    queue: BaseQueue
    registry: HandlerRegistry
    runner: StepRunner


# Global runtime instance
_runtime: Runtime | None = None


def build_runtime(
    store=None,
    queue: BaseQueue | None = None,
    registry: HandlerRegistry | None = None,
) -> Runtime:
    """Create the runtime and subscribe the step and event consumers."""
    store = store if store is not None else create_store()
    queue = queue if queue is not None else create_queue()
    registry = registry if registry is not None else load_handlers()
    runner = StepRunner(store, queue, registry)

    async def _on_step_ready(message: dict) -> None:
        await runner.run_step(message["runId"], message["stepId"], attempt_of(message))

    queue.subscribe(STEP_READY_TOPIC, _on_step_ready)
    queue.subscribe(OUTBOX_TOPIC, handle_event_message)
    return Runtime(store=store, queue=queue, registry=registry, runner=runner)


def get_runtime() -> Runtime:
    """Get or create the global runtime instance."""
    global _runtime
    if _runtime is None:
        _runtime = build_runtime()
    return _runtime


def set_runtime(runtime: Runtime | None) -> None:
    global _runtime
    _runtime = runtime


async def requeue_waiting_steps(runtime: Runtime) -> int:
    """Re-enqueue queued and suspended steps, e.g. after an in-process queue restart."""
    count = 0
    for status in (StepStatus.QUEUED, StepStatus.MANUAL):
        for step in await runtime.store.list_steps_by_status(status):
            await runtime.queue.enqueue(
                STEP_READY_TOPIC, {"runId": step.run_id, "stepId": step.id, "__attempt": 1}
            )
            count += 1
    if count:
        logger.info(f"Re-enqueued {count} waiting step(s)")
    return count


async def process_message(ctx: dict, topic: str, message: dict) -> bool:
    """Arq job: deliver one queue message to its topic consumer."""
    runtime: Runtime = ctx["runtime"]
    return await runtime.queue.dispatch(topic, message)


async def startup(ctx: dict) -> None:
    """Worker startup hook."""
    if settings.is_local_mode and settings.data_driver == "db":
        from nofx.models.db import init_db

        await init_db()
    ctx["runtime"] = build_runtime(queue=ArqQueue(settings.redis_url))
    logger.info("NOFX worker starting up")


async def shutdown(ctx: dict) -> None:
    """Worker shutdown hook."""
    runtime: Runtime | None = ctx.get("runtime")
    if runtime is not None:
        await runtime.queue.close()
    logger.info("NOFX worker shutting down")


class WorkerSettings:
    """Arq worker settings (only used with Redis)."""

    functions = [process_message]
    on_startup = startup
    on_shutdown = shutdown
    max_jobs = settings.worker_concurrency
    job_timeout = 3600


# Lazy init: only set redis_settings when Redis is configured
if settings.redis_url:
    WorkerSettings.redis_settings = _parse_redis_url(settings.redis_url)


async def run_local_worker(stop: asyncio.Event | None = None) -> None:
    """Local mode: consume with the in-process queue until ``stop`` is set."""
    from nofx.queue.scheduler import start_scheduler, stop_scheduler

    if settings.data_driver == "db":
        from nofx.models.db import init_db

        await init_db()
    runtime = get_runtime()
    await requeue_waiting_steps(runtime)
    if settings.scheduler_enabled:
        await start_scheduler(runtime)
    stop = stop or asyncio.Event()
    logger.info("Local worker running (in-process queue)")
    try:
        await stop.wait()
    finally:
        if settings.scheduler_enabled:
            await stop_scheduler()
        await runtime.queue.close()
