"""Boot readiness: race hypervisor death against the SSH boot probe.

Two producers feed one consumer:

- the supervisor's exit watcher resolves `VMHandle.exited` when QEMU dies;
- the probe task retries a no-op remote command at a fixed interval until it
  succeeds or the boot deadline passes.

The consumer waits for whichever finishes first. Process death wins ties.
The probe task is always cancelled and awaited before returning, so no
probe runs after the monitor has decided; the exit future is left untouched
because the supervisor still owns it.
"""

import asyncio
import logging
import time
from collections.abc import Awaitable, Callable
from typing import Any

from tenacity import (
    AsyncRetrying,
    RetryCallState,
    RetryError,
    before_sleep_log,
    stop_after_delay,
    stop_any,
    wait_fixed,
)

from qemu_runner import constants
from qemu_runner._logging import get_logger
from qemu_runner.exceptions import BootTimeoutError, ProcessDiedError

logger = get_logger(__name__)

Probe = Callable[[], Awaitable[None]]
"""Single boot probe attempt: returns on success, raises on failure."""


def _cut_off_at_deadline(retry_state: RetryCallState) -> bool:
    outcome = retry_state.outcome
    return outcome is not None and isinstance(outcome.exception(), TimeoutError)


async def probe_until_ready(
    probe: Probe,
    *,
    deadline: float = constants.BOOT_TIMEOUT_SECONDS,
    interval: float = constants.BOOT_PROBE_INTERVAL_SECONDS,
) -> None:
    """Run probe immediately, then every `interval` seconds until it succeeds.

    Each attempt is cut off when the deadline passes, so a session that hangs
    after connecting cannot hold the loop open.

    Raises:
        RetryError: No attempt succeeded before `deadline` elapsed
    """
    async for attempt in AsyncRetrying(
        wait=wait_fixed(interval),
        stop=stop_any(stop_after_delay(deadline), _cut_off_at_deadline),
        before_sleep=before_sleep_log(logger, logging.INFO),
    ):
        with attempt:
            elapsed = time.monotonic() - attempt.retry_state.start_time
            remaining = max(deadline - elapsed, 0.0)
            async with asyncio.timeout(remaining):
                await probe()


async def first_completed(primary: asyncio.Future[Any], secondary: asyncio.Future[Any]) -> asyncio.Future[Any]:
    """Return whichever of two futures completes first; primary wins ties.

    Neither future is cancelled here. The caller decides what happens to
    the loser and must cancel or await it.
    """
    done, _pending = await asyncio.wait({primary, secondary}, return_when=asyncio.FIRST_COMPLETED)
    if primary in done:
        return primary
    return secondary


async def wait_ready(
    exited: asyncio.Future[int],
    probe: Probe,
    *,
    deadline: float = constants.BOOT_TIMEOUT_SECONDS,
    interval: float = constants.BOOT_PROBE_INTERVAL_SECONDS,
) -> float:
    """Block until the VM answers a boot probe or its hypervisor dies.

    Args:
        exited: The supervisor's exit future for the hypervisor process
        probe: One boot probe attempt (e.g. `ssh ... true`)
        deadline: Seconds after which probing gives up
        interval: Fixed delay between probe attempts

    Returns:
        Seconds elapsed until the first successful probe

    Raises:
        ProcessDiedError: The hypervisor exited first, whatever the probe was doing
        BootTimeoutError: No probe succeeded before the deadline
    """
    start = time.monotonic()
    probe_task = asyncio.create_task(
        probe_until_ready(probe, deadline=deadline, interval=interval),
        name="boot-probe",
    )
    try:
        winner = await first_completed(exited, probe_task)

        if winner is exited:
            exit_code: int | None = None
            cause: BaseException | None = None
            if exited.cancelled():
                pass
            elif (cause := exited.exception()) is None:
                exit_code = exited.result()
            logger.error(
                "Hypervisor process died during boot",
                extra={"exit_code": exit_code, "elapsed_s": round(time.monotonic() - start, 3)},
            )
            raise ProcessDiedError(
                f"Hypervisor process died (exit code {exit_code})",
                exit_code=exit_code,
            ) from cause

        try:
            probe_task.result()
        except RetryError as e:
            last_error = e.last_attempt.exception()
            logger.error(
                "Machine did not come online",
                extra={"deadline_s": deadline, "last_error": str(last_error)},
            )
            raise BootTimeoutError(
                f"Machine did not come online within {deadline}s",
                context={"deadline_s": deadline, "last_error": str(last_error)},
            ) from last_error

        elapsed = time.monotonic() - start
        logger.info("Machine has started", extra={"duration_s": round(elapsed, 3)})
        return elapsed

    finally:
        probe_task.cancel()
        # Only a cancellation of this task escapes asyncio.wait(); the probe's outcome is read below
        await asyncio.wait({probe_task})
        if not probe_task.cancelled():
            probe_task.exception()
