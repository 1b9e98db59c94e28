"""Event recording with a staged outbox copy for external delivery."""

from __future__ import annotations

import enum
import logging
from datetime import date, datetime
from typing import Any

from nofx.engine.tx import run_atomically
from nofx.queue.backends import OUTBOX_TOPIC

logger = logging.getLogger(__name__)

_UNSET: Any = object()


def sanitize_payload(value: Any) -> Any:
    """Return a JSON-safe copy of ``value``.

    Callables are dropped, reference cycles become ``"[Circular]"``,
    datetimes become ISO strings and enums their values.
    """
    return _sanitize(value, set())


def _sanitize(value: Any, seen: set[int]) -> Any:
    if value is None or isinstance(value, (bool, int, float, str)):
        return value
    if isinstance(value, enum.Enum):
        return _sanitize(value.value, seen)
    if isinstance(value, (datetime, date)):
        return value.isoformat()
    if isinstance(value, bytes):
        return value.decode("utf-8", errors="replace")
    if isinstance(value, dict):
        if id(value) in seen:
            return "[Circular]"
        seen.add(id(value))
        out = {
            str(k): _sanitize(v, seen)
            for k, v in value.items()
            if not callable(v)
        }
        seen.discard(id(value))
        return out
    if isinstance(value, (list, tuple, set, frozenset)):
        if id(value) in seen:
            return "[Circular]"
        seen.add(id(value))
        out_list = [_sanitize(v, seen) for v in value if not callable(v)]
        seen.discard(id(value))
        return out_list
    if callable(value):
        return None
    return str(value)


def build_envelope(
    run_id: str, type: str, payload: Any, step_id: str | None
) -> dict[str, Any]:
    return {"runId": run_id, "stepId": step_id, "type": type, "payload": payload}


async def record_event(
    store,
    run_id: str,
    type: str,
    payload: Any = _UNSET,
    step_id: str | None = None,
) -> None:
    """Append an event and stage its outbox copy on ``event.out``.

    On a transactional store both inserts commit or roll back together.
    Otherwise the event insert is mandatory and the outbox insert is best
    effort: its failure is logged and never masks the event.
    """
    data = {} if payload is _UNSET else sanitize_payload(payload)
    envelope = build_envelope(run_id, type, data, step_id)

    if store.supports_transactions:
        async def _write() -> None:
            await store.record_event(run_id, type, data, step_id=step_id)
            await store.outbox_add(OUTBOX_TOPIC, envelope)

        await run_atomically(store, _write)
        return

    await store.record_event(run_id, type, data, step_id=step_id)
    try:
        await store.outbox_add(OUTBOX_TOPIC, envelope)
    except Exception as e:
        logger.warning(f"outbox.add_failed: {type} for run {run_id}: {e}")
