"""Queue backends - arq (Redis) or in-process asyncio for local mode.

Both backends share the consumer-side policy: a failing job is re-enqueued
with ``__attempt + 1`` following the backoff schedule and parked on a
dead-letter list once the schedule is exhausted.
"""

from __future__ import annotations

import asyncio
import json
import logging
from datetime import timedelta
from typing import Any, Awaitable, Callable

from nofx import metrics
from nofx.config import settings

logger = logging.getLogger(__name__)

STEP_READY_TOPIC = "step.ready"
OUTBOX_TOPIC = "event.out"

MessageHandler = Callable[[dict], Awaitable[Any]]


def dlq_topic(topic: str) -> str:
    if topic == STEP_READY_TOPIC:
        return "step.dlq"
    return f"{topic}.dlq"


def source_topic(dlq: str) -> str:
    if dlq == "step.dlq":
        return STEP_READY_TOPIC
    return dlq.removesuffix(".dlq")


def attempt_of(message: Any) -> int:
    if isinstance(message, dict):
        try:
            return max(1, int(message.get("__attempt") or 1))
        except (TypeError, ValueError):
            return 1
    return 1


def next_backoff_ms(attempt: int, schedule: list[int] | None = None) -> int | None:
    """Delay before re-delivering a job whose ``attempt`` just failed, or None for DLQ."""
    schedule = settings.queue_backoff_ms if schedule is None else schedule
    if attempt < len(schedule):
        return schedule[attempt]
    return None


class BaseQueue:
    """Subscription and failure handling shared by the concrete backends."""

    def __init__(self, backoff_ms: list[int] | None = None) -> None:
        self._subscribers: dict[str, MessageHandler] = {}
        self.backoff_ms = list(settings.queue_backoff_ms if backoff_ms is None else backoff_ms)

    def subscribe(self, topic: str, handler: MessageHandler) -> None:
        self._subscribers[topic] = handler
        logger.info(f"queue.subscribed: {topic}")

    def has_subscriber(self, topic: str) -> bool:
        return topic in self._subscribers

    async def enqueue(self, topic: str, message: dict, delay_ms: int = 0) -> None:
        raise NotImplementedError

    async def _dead_letter(self, dlq: str, message: dict) -> None:
        raise NotImplementedError

    async def list_dlq(self, topic: str) -> list[dict]:
        raise NotImplementedError

    async def rehydrate_dlq(self, topic: str, max_items: int = 50) -> int:
        raise NotImplementedError

    async def close(self) -> None:
        pass

    async def dispatch(self, topic: str, message: dict) -> bool:
        """Run the topic's handler; on failure retry with backoff or dead-letter.

        Returns True when the handler succeeded.
        """
        handler = self._subscribers.get(topic)
        if handler is None:
            logger.warning(f"queue.no_subscriber: {topic}")
            return False
        try:
            await handler(message)
            return True
        except Exception as e:
            attempt = attempt_of(message)
            delay = next_backoff_ms(attempt, self.backoff_ms)
            if delay is not None:
                logger.warning(
                    f"queue.retry: {topic} attempt {attempt} failed ({e}); retrying in {delay}ms"
                )
                metrics.queue_retries_total.labels(topic=topic).inc()
                await self.enqueue(topic, {**message, "__attempt": attempt + 1}, delay_ms=delay)
            else:
                target = dlq_topic(topic)
                logger.error(f"queue.to_dlq: {topic} after {attempt} attempts ({e}) -> {target}")
                metrics.queue_dead_letters_total.labels(topic=topic).inc()
                await self._dead_letter(target, message)
            return False


class MemoryQueue(BaseQueue):
    """In-process queue: each delivery is an asyncio task, bounded by a semaphore."""

    def __init__(self, concurrency: int | None = None, backoff_ms: list[int] | None = None) -> None:
        super().__init__(backoff_ms)
        self._semaphore = asyncio.Semaphore(max(1, concurrency or settings.worker_concurrency))
        self._tasks: set[asyncio.Task] = set()
        self._pending: dict[str, list[tuple[dict, int]]] = {}
        self._dlq: dict[str, list[dict]] = {}

    def subscribe(self, topic: str, handler: MessageHandler) -> None:
        super().subscribe(topic, handler)
        for message, delay_ms in self._pending.pop(topic, []):
            self._spawn(topic, message, delay_ms)

    async def enqueue(self, topic: str, message: dict, delay_ms: int = 0) -> None:
        delay_ms = max(0, int(delay_ms or 0))
        logger.debug(f"memq.enqueued: {topic} {message} delay={delay_ms}")
        if not self.has_subscriber(topic):
            self._pending.setdefault(topic, []).append((message, delay_ms))
            return
        self._spawn(topic, message, delay_ms)

    def _spawn(self, topic: str, message: dict, delay_ms: int) -> None:
        task = asyncio.create_task(self._deliver(topic, message, delay_ms))
        self._tasks.add(task)
        task.add_done_callback(self._tasks.discard)

    async def _deliver(self, topic: str, message: dict, delay_ms: int) -> None:
        if delay_ms:
            await asyncio.sleep(delay_ms / 1000)
        async with self._semaphore:
            await self.dispatch(topic, message)

    async def _dead_letter(self, dlq: str, message: dict) -> None:
        self._dlq.setdefault(dlq, []).append(message)

    def pending_count(self, topic: str) -> int:
        return len(self._pending.get(topic, []))

    async def join(self) -> None:
        """Wait until every delivery, including ones spawned meanwhile, has finished."""
        while self._tasks:
            await asyncio.gather(*list(self._tasks), return_exceptions=True)

    async def list_dlq(self, topic: str) -> list[dict]:
        return list(self._dlq.get(topic, []))

    async def rehydrate_dlq(self, topic: str, max_items: int = 50) -> int:
        items = self._dlq.get(topic, [])
        take, self._dlq[topic] = items[:max_items], items[max_items:]
        for message in take:
            await self.enqueue(source_topic(topic), {**message, "__attempt": 1})
        return len(take)

    async def close(self) -> None:
        for task in list(self._tasks):
            task.cancel()
        await asyncio.gather(*list(self._tasks), return_exceptions=True)


def _parse_redis_url(url: str):
    """Parse a Redis URL into arq RedisSettings."""
    from urllib.parse import urlparse

    from arq.connections import RedisSettings

    parsed = urlparse(url)
    return RedisSettings(
        host=parsed.hostname or "localhost",
        port=parsed.port or 6379,
        database=int(parsed.path.lstrip("/") or 0),
        password=parsed.password,
    )


class ArqQueue(BaseQueue):
    """Redis-backed queue: jobs go through arq, dead letters to Redis lists."""

    JOB_NAME = "process_message"
    DLQ_KEY_PREFIX = "nofx:dlq:"

    def __init__(self, redis_url: str | None = None, backoff_ms: list[int] | None = None) -> None:
        super().__init__(backoff_ms)
        self.redis_url = redis_url or settings.redis_url
        self._pool = None

    async def _get_pool(self):
        if self._pool is None:
            from arq import create_pool

            self._pool = await create_pool(_parse_redis_url(self.redis_url))
        return self._pool

    async def enqueue(self, topic: str, message: dict, delay_ms: int = 0) -> None:
        pool = await self._get_pool()
        defer = timedelta(milliseconds=delay_ms) if delay_ms else None
        await pool.enqueue_job(self.JOB_NAME, topic, message, _defer_by=defer)

    async def _dead_letter(self, dlq: str, message: dict) -> None:
        pool = await self._get_pool()
        await pool.rpush(self.DLQ_KEY_PREFIX + dlq, json.dumps(message, default=str))

    async def list_dlq(self, topic: str) -> list[dict]:
        pool = await self._get_pool()
        raw = await pool.lrange(self.DLQ_KEY_PREFIX + topic, 0, -1)
        return [json.loads(item) for item in raw]

    async def rehydrate_dlq(self, topic: str, max_items: int = 50) -> int:
        pool = await self._get_pool()
        count = 0
        for _ in range(max_items):
            raw = await pool.lpop(self.DLQ_KEY_PREFIX + topic)
            if raw is None:
                break
            await self.enqueue(source_topic(topic), {**json.loads(raw), "__attempt": 1})
            count += 1
        return count

    async def close(self) -> None:
        if self._pool is not None:
            await self._pool.close()
            self._pool = None


def create_queue() -> BaseQueue:
    """arq when ``REDIS_URL`` is set, otherwise the in-process queue."""
    if settings.redis_url:
        return ArqQueue(settings.redis_url)
    return MemoryQueue()
