"""Subprocess lifecycle utilities.

- drain_subprocess_output: concurrent stdout/stderr draining (prevents 64KB pipe deadlock)
- log_task_exception: done-callback surfacing background task failures
"""

from __future__ import annotations

import asyncio
from typing import TYPE_CHECKING

from qemu_runner._logging import get_logger

if TYPE_CHECKING:
    from collections.abc import Callable

    from qemu_runner.platform_utils import ProcessWrapper

logger = get_logger(__name__)


async def drain_subprocess_output(
    process: ProcessWrapper,
    *,
    process_name: str,
    context_id: str,
    stdout_handler: Callable[[str], None] | None = None,
    stderr_handler: Callable[[str], None] | None = None,
) -> None:
    """Drain subprocess stdout/stderr concurrently until EOF.

    A hypervisor writing to a full pipe blocks its main loop, so long-lived
    children with piped output must always be drained.

    Args:
        process: ProcessWrapper with stdout/stderr pipes
        process_name: Process identifier for logging (e.g., "QEMU")
        context_id: Identifier for log correlation (e.g., the image path)
        stdout_handler: Optional callback for stdout lines (default: debug log)
        stderr_handler: Optional callback for stderr lines (default: debug log)
    """
    if stdout_handler is None:

        def default_stdout_handler(line: str) -> None:
            logger.debug(f"[{process_name} stdout] {line}", extra={"context_id": context_id, "output": line})

        stdout_handler = default_stdout_handler

    if stderr_handler is None:

        def default_stderr_handler(line: str) -> None:
            logger.debug(f"[{process_name} stderr] {line}", extra={"context_id": context_id, "output": line})

        stderr_handler = default_stderr_handler

    async def read_lines(stream: asyncio.StreamReader, handler: Callable[[str], None]) -> None:
        async for line in stream:
            decoded = line.decode(errors="replace").rstrip()
            if decoded:
                handler(decoded)

    async with asyncio.TaskGroup() as tg:
        if process.stdout:
            tg.create_task(read_lines(process.stdout, stdout_handler))
        if process.stderr:
            tg.create_task(read_lines(process.stderr, stderr_handler))


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
