"""db_write allow/deny policy.

Independent of human approval: a denied table/operation is a hard failure,
never a waitable condition. Rules optionally come from a YAML file::

    deny: [runs, steps]          # replaces the default deny-list
    tables:
      audit_log: [insert]
      users: [insert, update]
    allow_unlisted: false        # tables missing from ``tables`` are denied
"""

from __future__ import annotations

import logging
from dataclasses import dataclass, field
from pathlib import Path

import yaml

from nofx.config import settings

logger = logging.getLogger(__name__)

DB_OPS = ("insert", "update", "delete")

# The control plane's own tables are never writable from a step
DEFAULT_DENIED_TABLES = frozenset({"runs", "steps", "events", "outbox", "inbox", "gates"})


@dataclass
class PolicyDecision:
    ok: bool
    reason: str | None = None


@dataclass
class DbWritePolicy:
    denied_tables: frozenset[str] = DEFAULT_DENIED_TABLES
    table_ops: dict[str, set[str]] | None = None
    allow_unlisted: bool = True
    source: str | None = field(default=None, compare=False)

    def is_allowed(self, table: str, op: str) -> PolicyDecision:
        name = table.lower()
        bare = name.rsplit(".", 1)[-1]
        op = op.lower()
        if op not in DB_OPS:
            return PolicyDecision(False, f"unknown op {op}")
        if name in self.denied_tables or bare in self.denied_tables:
            return PolicyDecision(False, f"table {table} is protected")
        if self.table_ops is None:
            return PolicyDecision(True)
        ops = self.table_ops.get(name, self.table_ops.get(bare))
        if ops is None:
            if self.allow_unlisted:
                return PolicyDecision(True)
            return PolicyDecision(False, f"table {table} is not in the allow-list")
        if op not in ops:
            return PolicyDecision(False, f"op {op} not allowed on {table}")
        return PolicyDecision(True)

    @classmethod
    def from_dict(cls, data: dict | None, source: str | None = None) -> DbWritePolicy:
        data = data or {}
        denied = data.get("deny")
        tables = data.get("tables")
        table_ops = None
        if isinstance(tables, dict):
            table_ops = {
                str(name).lower(): {str(o).lower() for o in (ops or [])}
                for name, ops in tables.items()
            }
        return cls(
            denied_tables=(
                frozenset(str(t).lower() for t in denied)
                if isinstance(denied, list)
                else DEFAULT_DENIED_TABLES
            ),
            table_ops=table_ops,
            allow_unlisted=bool(data.get("allow_unlisted", table_ops is None)),
            source=source,
        )


def load_policy(path: str | None = None) -> DbWritePolicy:
    """Load the policy from ``path`` (default: ``settings.db_write_policy_file``)."""
    path = path if path is not None else settings.db_write_policy_file
    if not path:
        return DbWritePolicy()
    policy_path = Path(path)
    with open(policy_path) as f:
        data = yaml.safe_load(f)
    if data is not None and not isinstance(data, dict):
        raise ValueError(f"db_write policy file {path} must contain a mapping")
    logger.info(f"Loaded db_write policy from {policy_path}")
    return DbWritePolicy.from_dict(data, source=str(policy_path))


class PolicyDeniedError(Exception):
    """Operation rejected by the db_write policy."""

    def __init__(self, table: str, op: str, reason: str | None) -> None:
        super().__init__("db_write not allowed")
        self.table = table
        self.op = op
        self.reason = reason
