"""Readiness check for steps that wait on named sibling steps."""

from __future__ import annotations

from dataclasses import dataclass, field
from typing import Any

from nofx.models.db import StepStatus
from nofx.store.base import status_value


@dataclass
class Readiness:
    ready: bool
    unmet: list[str] = field(default_factory=list)


def declared_dependencies(inputs: Any) -> list[str]:
    """Names listed under ``_dependsOn``; anything malformed counts as none."""
    if not isinstance(inputs, dict):
        return []
    deps = inputs.get("_dependsOn")
    if not isinstance(deps, (list, tuple)):
        return []
    return [str(d) for d in deps if d]


async def check_dependencies(store, run_id: str, depends_on: list[str]) -> Readiness:
    """A dependency is met only when the sibling with that name has succeeded.

    Unknown names stay unmet.
    """
    if not depends_on:
        return Readiness(ready=True)
    siblings = await store.list_steps_by_run(run_id)
    by_name = {s.name: status_value(s.status) for s in siblings}
    unmet = [
        name for name in depends_on
        if by_name.get(name) != StepStatus.SUCCEEDED.value
    ]
    return Readiness(ready=not unmet, unmet=unmet)
