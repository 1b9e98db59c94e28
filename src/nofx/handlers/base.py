"""Handler contract and the startup-built registry."""

from __future__ import annotations

import logging
from dataclasses import dataclass
from typing import Any, Protocol, Sequence

from nofx.store.base import StepRow

logger = logging.getLogger(__name__)


@dataclass
class StepContext:
    """What a handler gets to work with for one step execution."""

    run_id: str
    step: StepRow
    store: Any
    queue: Any
    attempt: int = 1


class StepHandler(Protocol):
    def match(self, tool: str) -> bool: ...

    async def run(self, ctx: StepContext) -> None: ...


class HandlerRegistry:
    """Read-only, ordered handler collection; first match wins."""

    def __init__(self, handlers: Sequence[StepHandler]) -> None:
        self._handlers = tuple(handlers)

    def resolve(self, tool: str) -> StepHandler | None:
        for handler in self._handlers:
            if handler.match(tool):
                return handler
        return None

    def __iter__(self):
        return iter(self._handlers)

    def __len__(self) -> int:
        return len(self._handlers)


def load_handlers() -> HandlerRegistry:
    """Build the built-in handler set once at startup."""
    from nofx.handlers.bash import BashHandler
    from nofx.handlers.db_write import DbWriteHandler
    from nofx.handlers.echo import EchoHandler
    from nofx.handlers.gate import GateHandler
    from nofx.handlers.manual import ManualHandler

    registry = HandlerRegistry([
        EchoHandler(),
        BashHandler(),
        GateHandler(),
        ManualHandler(),
        DbWriteHandler(),
    ])
    logger.info(f"Loaded {len(registry)} step handler(s)")
    return registry
