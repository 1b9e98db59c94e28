"""Run a group of store calls atomically when the backend allows it."""

from __future__ import annotations

from typing import Any, Awaitable, Callable, TypeVar

T = TypeVar("T")


async def run_atomically(store: Any, fn: Callable[[], Awaitable[T]]) -> T:
    """Await ``fn`` inside ``store.transaction()`` if supported, else directly.

    Any exception rolls the transaction back and propagates. Calls nested in
    an open transaction join it.
    """
    if not getattr(store, "supports_transactions", False):
        return await fn()
    async with store.transaction():
        return await fn()
