"""Inbox claims giving at-most-once execution per key."""

from __future__ import annotations

import hashlib
import json
from typing import Any


def step_exec_key(step_id: str) -> str:
    return f"step-exec:{step_id}"


def natural_key(run_id: str, name: str, inputs: Any) -> str:
    """``<runId>:<name>:<sha256(canonical inputs)[:12]>``; stable across retries."""
    canonical = json.dumps(
        inputs or {}, sort_keys=True, separators=(",", ":"), default=str
    )
    digest = hashlib.sha256(canonical.encode("utf-8")).hexdigest()[:12]
    return f"{run_id}:{name}:{digest}"


def idempotency_key(step) -> str:
    """Explicit ``step.idempotency_key`` if set, otherwise the natural key."""
    if step.idempotency_key:
        return step.idempotency_key
    return natural_key(step.run_id, step.name, step.inputs)


async def claim(store, key: str) -> bool:
    """True exactly once per key until it is released."""
    return await store.inbox_mark_if_new(key)


async def release(store, key: str) -> None:
    await store.inbox_delete(key)
