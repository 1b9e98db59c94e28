"""``bash`` - runs a shell command on the worker host."""

from __future__ import annotations

import asyncio
import logging
from dataclasses import dataclass

from nofx.config import settings
from nofx.handlers.base import StepContext

logger = logging.getLogger(__name__)

# Keep stored outputs bounded; commands can be chatty
MAX_OUTPUT_CHARS = 64_000


@dataclass
class CommandResult:
    exit_code: int
    stdout: str
    stderr: str
    timed_out: bool = False


def _truncate(text: str) -> str:
    if len(text) <= MAX_OUTPUT_CHARS:
        return text
    return text[-MAX_OUTPUT_CHARS:]


async def run_command(command: str, cwd: str, timeout: float) -> CommandResult:
    """Run ``bash -c command`` and collect its output; kills it on timeout."""
    proc = await asyncio.create_subprocess_exec(
        "bash",
        "-c",
        command,
        stdout=asyncio.subprocess.PIPE,
        stderr=asyncio.subprocess.PIPE,
        cwd=cwd,
    )
    try:
        stdout, stderr = await asyncio.wait_for(proc.communicate(), timeout=timeout)
    except asyncio.TimeoutError:
        logger.warning("Command timed out after %.0fs: %s", timeout, command[:200])
        try:
            proc.kill()
        except ProcessLookupError:
            pass
        await proc.wait()
        return CommandResult(exit_code=-1, stdout="", stderr="timeout", timed_out=True)
    return CommandResult(
        exit_code=proc.returncode if proc.returncode is not None else -1,
        stdout=_truncate(stdout.decode(errors="replace")),
        stderr=_truncate(stderr.decode(errors="replace")),
    )


class BashHandler:
    def match(self, tool: str) -> bool:
        return tool == "bash"

    async def run(self, ctx: StepContext) -> None:
        inputs = ctx.step.inputs or {}
        command = inputs.get("command")
        if not command or not isinstance(command, str):
            raise ValueError("bash requires a command")
        cwd = inputs.get("cwd") or settings.workspace_dir
        timeout_ms = inputs.get("timeoutMs") or int(settings.gate_timeout_seconds * 1000)

        result = await run_command(command, cwd, timeout_ms / 1000)
        await ctx.store.update_step(
            ctx.step.id,
            outputs={
                "command": command,
                "exitCode": result.exit_code,
                "stdout": result.stdout,
                "stderr": result.stderr,
            },
        )
        if result.timed_out:
            raise RuntimeError(f"command timed out after {timeout_ms}ms")
        if result.exit_code != 0:
            raise RuntimeError(f"command exited with {result.exit_code}")
