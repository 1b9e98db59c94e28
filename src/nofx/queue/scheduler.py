"""Interval jobs: step timeout monitor and outbox relay."""

from __future__ import annotations

import logging
from datetime import datetime, timezone
from typing import TYPE_CHECKING

from apscheduler.schedulers.asyncio import AsyncIOScheduler
from apscheduler.triggers.interval import IntervalTrigger

from nofx.config import settings
from nofx.models.db import StepStatus
from nofx.queue.relay import relay_outbox

if TYPE_CHECKING:
    from nofx.queue.worker import Runtime

logger = logging.getLogger(__name__)

# Global scheduler instance
_scheduler: AsyncIOScheduler | None = None


def get_scheduler() -> AsyncIOScheduler:
    """Get or create the global scheduler instance."""
    global _scheduler
    if _scheduler is None:
        _scheduler = AsyncIOScheduler()
    return _scheduler


def step_timeout_ms(inputs) -> int:
    """Per-step ``_timeoutMs`` when it is a positive number, else the global default."""
    if isinstance(inputs, dict):
        value = inputs.get("_timeoutMs")
        if isinstance(value, (int, float)) and not isinstance(value, bool) and value > 0:
            return int(value)
    return settings.step_timeout_ms


def _as_utc(value: datetime) -> datetime:
    # SQLite hands back naive datetimes; they were written as UTC
    if value.tzinfo is None:
        return value.replace(tzinfo=timezone.utc)
    return value


async def check_step_timeouts(store, runner, now: datetime | None = None) -> int:
    """Time out every running step older than its timeout. Returns how many."""
    now = now or datetime.now(timezone.utc)
    timed_out = 0
    for step in await store.list_steps_by_status(StepStatus.RUNNING):
        if step.started_at is None:
            continue
        limit_ms = step_timeout_ms(step.inputs)
        elapsed_ms = (now - _as_utc(step.started_at)).total_seconds() * 1000
        if elapsed_ms <= limit_ms:
            continue
        try:
            await runner.mark_step_timed_out(step.run_id, step.id, limit_ms)
            timed_out += 1
        except Exception as e:
            logger.error(f"Failed to time out step {step.id}: {e}")
    if timed_out:
        logger.info(f"Timed out {timed_out} step(s)")
    return timed_out


async def _timeout_job(runtime: Runtime) -> None:
    await check_step_timeouts(runtime.store, runtime.runner)


async def _relay_job(runtime: Runtime) -> None:
    try:
        await relay_outbox(runtime.store, runtime.queue)
    except Exception as e:
        logger.error(f"Outbox relay pass failed: {e}")


async def start_scheduler(runtime: Runtime) -> None:
    """Start the scheduler and register the periodic jobs."""
    scheduler = get_scheduler()
    if scheduler.running:
        return
    scheduler.start()
    scheduler.add_job(
        _timeout_job,
        trigger=IntervalTrigger(seconds=settings.timeout_check_interval_seconds),
        id="step_timeout_checker",
        args=[runtime],
        replace_existing=True,
        max_instances=1,
        misfire_grace_time=30,
    )
    scheduler.add_job(
        _relay_job,
        trigger=IntervalTrigger(seconds=settings.outbox_relay_interval_seconds),
        id="outbox_relay",
        args=[runtime],
        replace_existing=True,
        max_instances=1,
        coalesce=True,
    )
    logger.info("Scheduler started")


async def stop_scheduler() -> None:
    """Stop the scheduler."""
    scheduler = get_scheduler()
    if scheduler.running:
        scheduler.shutdown(wait=False)
        logger.info("Scheduler stopped")
