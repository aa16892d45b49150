"""Tests for the boot readiness race between hypervisor exit and SSH probing."""

import asyncio
import time

import pytest

from qemu_runner.exceptions import BootTimeoutError, ProcessDiedError, RemoteConnectionError
from qemu_runner.readiness import first_completed, wait_ready


class CountingProbe:
    """Probe that fails `failures` times, then succeeds (or blocks)."""

    def __init__(self, failures: int = 0, block: bool = False, teardown_delay: float = 0.0):
        self.failures = failures
        self.block = block
        self.teardown_delay = teardown_delay
        self.attempts = 0
        self.cancelled = False
        self.started = asyncio.Event()

    async def __call__(self) -> None:
        self.attempts += 1
        self.started.set()
        if self.block:
            try:
                await asyncio.Event().wait()
            except asyncio.CancelledError:
                self.cancelled = True
                if self.teardown_delay:
                    await asyncio.sleep(self.teardown_delay)
                raise
        if self.attempts <= self.failures:
            raise RemoteConnectionError("connection refused")


# ============================================================================
# Probe Wins
# ============================================================================


class TestReady:
    async def test_first_probe_succeeds_without_waiting_an_interval(self) -> None:
        exited = asyncio.get_running_loop().create_future()
        probe = CountingProbe()
        start = time.monotonic()
        elapsed = await wait_ready(exited, probe, deadline=30, interval=5)

        assert probe.attempts == 1
        assert elapsed < 1
        assert time.monotonic() - start < 1
        assert not exited.done()

    async def test_retries_until_success(self) -> None:
        exited = asyncio.get_running_loop().create_future()
        probe = CountingProbe(failures=3)
        await wait_ready(exited, probe, deadline=5, interval=0.01)
        assert probe.attempts == 4

    async def test_no_probe_after_return(self) -> None:
        exited = asyncio.get_running_loop().create_future()
        probe = CountingProbe()
        await wait_ready(exited, probe, deadline=5, interval=0.01)
        await asyncio.sleep(0.05)
        assert probe.attempts == 1


# ============================================================================
# Process Death Wins
# ============================================================================


class TestProcessDied:
    async def test_death_during_inflight_probe(self) -> None:
        """Death is reported promptly and the in-flight probe is cancelled."""
        exited = asyncio.get_running_loop().create_future()
        probe = CountingProbe(block=True)
        ready = asyncio.create_task(wait_ready(exited, probe, deadline=30, interval=5))
        await probe.started.wait()

        exited.set_result(1)
        with pytest.raises(ProcessDiedError) as exc_info:
            await asyncio.wait_for(ready, timeout=1)

        assert exc_info.value.exit_code == 1
        assert probe.cancelled

    async def test_already_dead(self) -> None:
        exited = asyncio.get_running_loop().create_future()
        exited.set_result(-9)
        with pytest.raises(ProcessDiedError) as exc_info:
            await wait_ready(exited, CountingProbe(failures=100), deadline=5, interval=0.01)
        assert exc_info.value.exit_code == -9

    async def test_wait_error_is_chained(self) -> None:
        exited = asyncio.get_running_loop().create_future()
        exited.set_exception(OSError("wait failed"))
        with pytest.raises(ProcessDiedError) as exc_info:
            await wait_ready(exited, CountingProbe(block=True), deadline=5, interval=0.01)
        assert exc_info.value.exit_code is None
        assert isinstance(exc_info.value.__cause__, OSError)

    async def test_death_wins_tie(self) -> None:
        """When both are already done, process death is reported."""
        loop = asyncio.get_running_loop()
        exited = loop.create_future()
        exited.set_result(0)
        other = loop.create_future()
        other.set_result(None)
        assert await first_completed(exited, other) is exited


# ============================================================================
# Deadline
# ============================================================================


class TestDeadline:
    async def test_timeout_after_deadline(self) -> None:
        exited = asyncio.get_running_loop().create_future()
        probe = CountingProbe(failures=10_000)
        with pytest.raises(BootTimeoutError) as exc_info:
            await wait_ready(exited, probe, deadline=0.1, interval=0.02)

        assert probe.attempts >= 2
        assert isinstance(exc_info.value.__cause__, RemoteConnectionError)
        assert not exited.done()

    async def test_hung_probe_is_cut_off_at_deadline(self) -> None:
        """An attempt that never returns cannot outlive the deadline."""
        exited = asyncio.get_running_loop().create_future()
        probe = CountingProbe(block=True)
        with pytest.raises(BootTimeoutError):
            await asyncio.wait_for(wait_ready(exited, probe, deadline=0.1, interval=5), timeout=2)

        assert probe.attempts == 1
        assert probe.cancelled


# ============================================================================
# Cancellation
# ============================================================================


class TestCancellation:
    async def test_caller_cancellation_during_probe_teardown_propagates(self) -> None:
        """Cancelling the waiter while the probe is being torn down is not swallowed."""
        exited = asyncio.get_running_loop().create_future()
        probe = CountingProbe(block=True, teardown_delay=0.2)
        ready = asyncio.create_task(wait_ready(exited, probe, deadline=30, interval=5))
        await probe.started.wait()

        exited.set_result(1)
        await asyncio.sleep(0.05)
        ready.cancel()

        with pytest.raises(asyncio.CancelledError):
            await ready
        assert ready.cancelled()
        # let the probe finish its own teardown
        await asyncio.sleep(0.3)

    async def test_caller_cancellation_stops_probe(self) -> None:
        exited = asyncio.get_running_loop().create_future()
        probe = CountingProbe(block=True)
        ready = asyncio.create_task(wait_ready(exited, probe, deadline=30, interval=5))
        await probe.started.wait()

        ready.cancel()
        with pytest.raises(asyncio.CancelledError):
            await ready
        assert probe.cancelled
