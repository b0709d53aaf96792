"""Subprocess helpers.

- drain_subprocess_output: concurrent stdout/stderr draining for QEMU
- log_task_exception: done-callback that surfaces background task failures
- run_tool: run a short-lived host tool (xorriso, curl) and capture its output
"""

from __future__ import annotations

import asyncio
from collections.abc import Callable
from dataclasses import dataclass
from pathlib import Path

from vm_provisioner._logging import get_logger
from vm_provisioner.platform_utils import ProcessWrapper

logger = get_logger(__name__)


async def drain_subprocess_output(
    process: ProcessWrapper,
    *,
    process_name: str,
    context_id: str,
    line_handler: Callable[[str], None] | None = None,
) -> None:
    """Drain subprocess stdout/stderr concurrently until both reach EOF.

    QEMU writes warnings to stderr (and, with -nographic, occasionally to
    stdout). If nobody reads, a full 64KB pipe blocks QEMU and with it the
    guest console. Both streams are read in a TaskGroup.

    Args:
        process: ProcessWrapper with stdout/stderr pipes
        process_name: Process identifier for logging (e.g. "QEMU")
        context_id: Run identifier for log correlation
        line_handler: Optional callback receiving every decoded line
    """

    async def read_stream(stream: asyncio.StreamReader, label: str) -> None:
        async for raw in stream:
            decoded = raw.decode(errors="replace").rstrip()
            if not decoded:
                continue
            logger.debug(
                f"[{process_name} {label}] {decoded}",
                extra={"context_id": context_id, "output": decoded},
            )
            if line_handler is not None:
                line_handler(decoded)

    async with asyncio.TaskGroup() as tg:
        if process.stdout:
            tg.create_task(read_stream(process.stdout, "stdout"))
        if process.stderr:
            tg.create_task(read_stream(process.stderr, "stderr"))


def log_task_exception(task: asyncio.Task[None]) -> None:
    """Log exceptions from background tasks.

    Usage:
        task = asyncio.create_task(some_coroutine())
        task.add_done_callback(log_task_exception)
    """
    if task.cancelled():
        return
    exc = task.exception()
    if exc is not None:
        logger.error(
            "Background task failed",
            extra={"task_name": task.get_name()},
            exc_info=exc,
        )


@dataclass(frozen=True, slots=True)
class ToolResult:
    """Captured result of a host tool invocation."""

    returncode: int
    stdout: str
    stderr: str

    @property
    def output(self) -> str:
        """stdout and stderr combined (xorriso reports on stderr)."""
        return f"{self.stdout}\n{self.stderr}"


async def run_tool(
    argv: list[str],
    *,
    timeout: float,
    cwd: Path | None = None,
) -> ToolResult:
    """Run a host tool to completion and capture its output.

    The process is killed if it outlives ``timeout`` or the caller is
    cancelled, then reaped before the exception propagates.

    Raises:
        FileNotFoundError: Binary not found
        TimeoutError: Tool did not finish within ``timeout`` seconds
    """
    logger.debug("Running host tool", extra={"argv": argv, "cwd": str(cwd) if cwd else None})
    proc = ProcessWrapper(
        await asyncio.create_subprocess_exec(
            *argv,
            stdout=asyncio.subprocess.PIPE,
            stderr=asyncio.subprocess.PIPE,
            cwd=cwd,
        )
    )
    try:
        async with asyncio.timeout(timeout):
            stdout, stderr = await proc.communicate()
    except BaseException:
        if proc.returncode is None:
            logger.debug("Killing host tool", extra={"argv": argv, "pid": proc.pid})
            await proc.kill()
            await proc.wait()
        raise
    return ToolResult(
        returncode=proc.returncode if proc.returncode is not None else -1,
        stdout=stdout.decode(errors="replace"),
        stderr=stderr.decode(errors="replace"),
    )
