"""CLI entrypoint for `python -m nofx` / `nofx` command."""

from __future__ import annotations

import argparse
import asyncio
import json
import logging
import os
import sys
from typing import Any

# ---------------------------------------------------------------------------
# ANSI colors
# ---------------------------------------------------------------------------

class _C:
    """ANSI color codes for terminal output."""

    RESET = "\033[0m"
    GREEN = "\033[32m"
    RED = "\033[31m"
    YELLOW = "\033[33m"

    @staticmethod
    def supports_color() -> bool:
        """Check whether the terminal supports ANSI colors."""
        if os.getenv("NO_COLOR"):
            return False
        return hasattr(sys.stdout, "isatty") and sys.stdout.isatty()


def _color(text: str, color: str) -> str:
    """Wrap *text* with an ANSI color code if the terminal supports it."""
    if not _C.supports_color():
        return text
    return f"{color}{text}{_C.RESET}"


def _configure_logging() -> None:
    from nofx.config import settings

    logging.basicConfig(
        level=getattr(logging, settings.log_level.upper(), logging.INFO),
        format="%(asctime)s [%(levelname)s] %(name)s: %(message)s",
    )


async def _local_runtime():
    """Runtime for one-shot commands; creates SQLite tables in local mode."""
    from nofx.config import settings
    from nofx.queue.worker import get_runtime

    if settings.data_driver == "db" and settings.is_local_mode:
        from nofx.models.db import init_db

        await init_db()
    return get_runtime()


async def _drain(runtime) -> None:
    """Let in-process deliveries finish before the command exits."""
    from nofx.queue.backends import MemoryQueue

    if isinstance(runtime.queue, MemoryQueue):
        await runtime.queue.join()
    await runtime.queue.close()


# ---------------------------------------------------------------------------
# Commands
# ---------------------------------------------------------------------------

def _cmd_serve(args: argparse.Namespace) -> None:
    """Start the NOFX API server."""
    import uvicorn

    uvicorn.run(
        "nofx.main:app",
        host=args.host,
        port=args.port,
        reload=args.reload,
    )


def _cmd_worker(args: argparse.Namespace) -> None:
    """Run a queue worker: arq with Redis, in-process otherwise."""
    from nofx.config import settings

    _configure_logging()
    if settings.redis_url:
        from arq import run_worker

        from nofx.queue.worker import WorkerSettings

        run_worker(WorkerSettings)
        return

    from nofx.queue.worker import run_local_worker

    try:
        asyncio.run(run_local_worker())
    except KeyboardInterrupt:
        pass


def _cmd_retry(args: argparse.Namespace) -> None:
    """Retry one failed, timed-out or cancelled step."""
    from nofx.engine.recovery import StepNotRetryableError, retry_step
    from nofx.engine.runner import StepNotFoundError

    _configure_logging()

    async def _retry() -> str:
        runtime = await _local_runtime()
        try:
            await retry_step(runtime.store, runtime.queue, args.run_id, args.step_id)
            if args.wait:
                await _drain(runtime)
            step = await runtime.store.get_step(args.step_id)
            return step.status if step else "unknown"
        finally:
            await runtime.queue.close()

    try:
        status = asyncio.run(_retry())
    except StepNotFoundError:
        print(_color(f"Step {args.step_id} not found in run {args.run_id}", _C.RED), file=sys.stderr)
        sys.exit(2)
    except StepNotRetryableError as e:
        print(_color(f"Step is not retryable (status: {e.status})", _C.YELLOW), file=sys.stderr)
        sys.exit(3)
    print(_color(f"Step {args.step_id} requeued (status: {status})", _C.GREEN))


def _cmd_timeouts(args: argparse.Namespace) -> None:
    """Run one timeout-monitor pass."""
    from nofx.queue.scheduler import check_step_timeouts

    _configure_logging()

    async def _check() -> int:
        runtime = await _local_runtime()
        try:
            return await check_step_timeouts(runtime.store, runtime.runner)
        finally:
            await runtime.queue.close()

    count = asyncio.run(_check())
    print(f"Timed out {count} step(s)")


def _cmd_relay(args: argparse.Namespace) -> None:
    """Run one outbox relay pass."""
    from nofx.queue.relay import relay_outbox

    _configure_logging()

    async def _relay() -> int:
        runtime = await _local_runtime()
        try:
            return await relay_outbox(runtime.store, runtime.queue, args.batch)
        finally:
            await _drain(runtime)

    count = asyncio.run(_relay())
    print(f"Relayed {count} outbox row(s)")


def _cmd_dlq(args: argparse.Namespace) -> None:
    """List or rehydrate dead letters."""
    _configure_logging()

    async def _dlq() -> Any:
        runtime = await _local_runtime()
        try:
            if args.dlq_action == "rehydrate":
                return await runtime.queue.rehydrate_dlq(args.topic, args.max)
            return await runtime.queue.list_dlq(args.topic)
        finally:
            await runtime.queue.close()

    result = asyncio.run(_dlq())
    if args.dlq_action == "rehydrate":
        print(f"Rehydrated {result} message(s) from {args.topic}")
    else:
        print(json.dumps(result, indent=2, default=str))


def _cmd_db_init(args: argparse.Namespace) -> None:
    """Create all tables directly (SQLite / development databases)."""
    from nofx.models.db import init_db

    asyncio.run(init_db())
    print("Database tables created.")


def _cmd_db_migrate(args: argparse.Namespace) -> None:
    """Run Alembic database migrations (PostgreSQL only)."""
    from nofx.config import settings

    if settings.is_local_mode:
        print("Migrations are not needed in local mode (use 'nofx db init').")
        return

    try:
        from alembic.config import Config

        from alembic import command

        alembic_cfg = Config("alembic.ini")
        command.upgrade(alembic_cfg, "head")
        print("Migrations applied successfully.")
    except Exception as e:
        print(f"Migration failed: {e}")
        sys.exit(1)


# ---------------------------------------------------------------------------
# Argument parser
# ---------------------------------------------------------------------------

def _build_parser() -> argparse.ArgumentParser:
    """Build the full CLI argument parser."""
    parser = argparse.ArgumentParser(
        prog="nofx",
        description="NOFX - step-execution core CLI",
    )
    subparsers = parser.add_subparsers(dest="command", help="Available commands")

    # --- serve ---
    p_serve = subparsers.add_parser("serve", help="Start the API server")
    p_serve.add_argument("--host", default="0.0.0.0", help="Bind host (default: 0.0.0.0)")
    p_serve.add_argument("--port", type=int, default=8080, help="Bind port (default: 8080)")
    p_serve.add_argument("--reload", action="store_true", default=False,
                         help="Enable auto-reload")

    # --- worker ---
    subparsers.add_parser("worker", help="Run a queue worker")

    # --- retry ---
    p_retry = subparsers.add_parser("retry", help="Retry a failed step")
    p_retry.add_argument("run_id", help="Run ID")
    p_retry.add_argument("step_id", help="Step ID")
    p_retry.add_argument("--wait", "-w", action="store_true",
                         help="Local mode: execute the step before exiting")

    # --- timeouts ---
    subparsers.add_parser("timeouts", help="Time out stuck running steps (one pass)")

    # --- relay ---
    p_relay = subparsers.add_parser("relay", help="Relay unsent outbox rows (one pass)")
    p_relay.add_argument("--batch", type=int, default=None, help="Rows per pass")

    # --- dlq ---
    p_dlq = subparsers.add_parser("dlq", help="Inspect dead letters")
    dlq_sub = p_dlq.add_subparsers(dest="dlq_action", help="Dead-letter action")
    for name, help_text in (("list", "List dead letters"), ("rehydrate", "Re-enqueue dead letters")):
        p = dlq_sub.add_parser(name, help=help_text)
        p.add_argument("--topic", default="step.dlq", help="Dead-letter topic (default: step.dlq)")
        p.add_argument("--max", type=int, default=50, help="Max messages to rehydrate")

    # --- db ---
    p_db = subparsers.add_parser("db", help="Database management")
    db_sub = p_db.add_subparsers(dest="db_action", help="Database action")
    db_sub.add_parser("init", help="Create tables directly")
    db_sub.add_parser("migrate", help="Run Alembic migrations (PostgreSQL only)")

    return parser


# ---------------------------------------------------------------------------
# Main entry point
# ---------------------------------------------------------------------------

def main(argv: list[str] | None = None) -> None:
    """Route CLI commands."""
    parser = _build_parser()
    args = parser.parse_args(argv)

    if args.command is None:
        parser.print_help()
        sys.exit(0)

    dispatch: dict[str, Any] = {
        "serve": _cmd_serve,
        "worker": _cmd_worker,
        "retry": _cmd_retry,
        "timeouts": _cmd_timeouts,
        "relay": _cmd_relay,
    }

    handler = dispatch.get(args.command)
    if handler:
        handler(args)
        return

    # Sub-commands that need further routing
    if args.command == "db":
        action = getattr(args, "db_action", None)
        if action == "init":
            _cmd_db_init(args)
        elif action == "migrate":
            _cmd_db_migrate(args)
        else:
            print("Usage: nofx db {init,migrate}", file=sys.stderr)
            sys.exit(1)
        return

    if args.command == "dlq":
        if getattr(args, "dlq_action", None) in ("list", "rehydrate"):
            _cmd_dlq(args)
        else:
            print("Usage: nofx dlq {list,rehydrate}", file=sys.stderr)
            sys.exit(1)
        return

    parser.print_help()
    sys.exit(1)


if __name__ == "__main__":
    main()
