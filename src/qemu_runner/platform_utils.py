"""PID-reuse safe process handle built on psutil."""

import asyncio
import contextlib
import os
import signal

import psutil


class ProcessWrapper:
    """Wraps asyncio.subprocess.Process with psutil.Process for signalling.

    psutil refuses to signal a PID that has been recycled by another
    process, so a late teardown cannot hit an unrelated program.
    """

    def __init__(self, async_proc: asyncio.subprocess.Process, *, new_session: bool = False) -> None:
        """Wrap an asyncio process.

        Args:
            async_proc: asyncio subprocess.Process instance
            new_session: Process was started with start_new_session=True, so
                its PID is also its process group ID
        """
        self.async_proc = async_proc
        self.new_session = new_session
        self.psutil_proc: psutil.Process | None = None

        if async_proc.pid:
            with contextlib.suppress(psutil.NoSuchProcess, psutil.AccessDenied):
                self.psutil_proc = psutil.Process(async_proc.pid)

    @property
    def pid(self) -> int | None:
        return self.async_proc.pid

    @property
    def returncode(self) -> int | None:
        """Process return code (None if still running)."""
        return self.async_proc.returncode

    @property
    def stdout(self) -> asyncio.StreamReader | None:
        return self.async_proc.stdout

    @property
    def stderr(self) -> asyncio.StreamReader | None:
        return self.async_proc.stderr

    async def is_running(self) -> bool:
        """Check if process is still running (PID-reuse safe)."""
        if self.async_proc.returncode is not None:
            return False
        if not self.psutil_proc:
            return True
        try:
            return await asyncio.to_thread(self.psutil_proc.is_running)
        except (psutil.NoSuchProcess, psutil.AccessDenied):
            return False

    async def wait(self) -> int:
        """Wait for process to complete and return its exit code."""
        return await self.async_proc.wait()

    async def communicate(self, input: bytes | None = None) -> tuple[bytes, bytes]:
        """Wait for process to terminate and return (stdout, stderr)."""
        return await self.async_proc.communicate(input)

    async def send_signal(self, sig: signal.Signals) -> None:
        """Deliver a signal to the process, or to its whole group when it leads a session.

        Launch scripts fork the hypervisor, so the group has to be signalled
        for the signal to reach it. No-op if the process is already gone.
        """
        if not await self.is_running():
            return
        if self.new_session and self.pid:
            with contextlib.suppress(ProcessLookupError, PermissionError):
                os.killpg(self.pid, sig)
            return
        if self.psutil_proc:
            with contextlib.suppress(psutil.NoSuchProcess, psutil.AccessDenied):
                await asyncio.to_thread(self.psutil_proc.send_signal, sig)
        else:
            with contextlib.suppress(ProcessLookupError):
                self.async_proc.send_signal(sig)

    async def interrupt(self) -> None:
        """Send SIGINT."""
        await self.send_signal(signal.SIGINT)

    async def kill(self) -> None:
        """Send SIGKILL."""
        await self.send_signal(signal.SIGKILL)

    async def wait_with_timeout(self, timeout: float) -> int:
        """Wait for exit with a timeout.

        Raises:
            TimeoutError: If process doesn't exit within timeout
        """
        async with asyncio.timeout(timeout):
            return await self.wait()
