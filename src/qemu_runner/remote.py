"""Remote command execution and file transfer over ssh/scp.

Every session uses the same fixed option set against the VM's forwarded
SSH port on localhost:

    -o StrictHostKeyChecking=no -o UserKnownHostsFile=/dev/null
    -o LogLevel=ERROR -o ConnectTimeout=<n> -i <key>

Exit status handling: ssh reports its own failures (refused connection,
authentication, dropped session) as 255. Any other non-zero status is the
remote command's, so a command that ran and failed (RemoteExitError) is
never confused with one that never ran (RemoteConnectionError). A remote
command that itself exits 255 is reported as a connection failure.
"""

import asyncio
from collections.abc import Callable, Iterable
from dataclasses import dataclass
from pathlib import Path

import aiofiles.tempfile

from qemu_runner import constants
from qemu_runner._logging import get_logger
from qemu_runner.commands import chmod_command, make_dirs_command
from qemu_runner.exceptions import (
    RemoteConnectionError,
    RemoteError,
    RemoteExitError,
    TransferError,
)
from qemu_runner.models import File
from qemu_runner.platform_utils import ProcessWrapper
from qemu_runner.resource_cleanup import cleanup_process

logger = get_logger(__name__)

OutputSink = Callable[[bytes], None]
"""Receives combined stdout/stderr chunks of a remote command as they arrive."""


@dataclass(frozen=True)
class SshTarget:
    """Where and as whom remote sessions connect."""

    username: str
    port: int
    key_path: Path
    connect_timeout: int = constants.SSH_CONNECT_TIMEOUT_SECONDS
    host: str = constants.SSH_HOST

    @property
    def destination(self) -> str:
        return f"{self.username}@{self.host}"

    def options(self) -> list[str]:
        return [
            "-o",
            "StrictHostKeyChecking=no",
            "-o",
            "UserKnownHostsFile=/dev/null",
            "-o",
            "LogLevel=ERROR",
            "-o",
            f"ConnectTimeout={self.connect_timeout}",
            "-i",
            str(self.key_path),
        ]


class RemoteShell:
    """Runs commands and copies files into one VM.

    Usage:
        shell = RemoteShell(SshTarget("root", 2222, Path("id_rsa")))
        await shell.exec("uname -a", output=sys.stdout.buffer.write)
        await shell.upload(b"data", "/tmp/data.txt")
    """

    def __init__(
        self,
        target: SshTarget,
        *,
        ssh_bin: str = "ssh",
        scp_bin: str = "scp",
        temp_dir: Path | None = None,
    ):
        self.target = target
        self.ssh_bin = ssh_bin
        self.scp_bin = scp_bin
        self.temp_dir = temp_dir

    def ssh_cmd(self, command: str) -> list[str]:
        return [
            self.ssh_bin,
            *self.target.options(),
            "-p",
            str(self.target.port),
            self.target.destination,
            command,
        ]

    def scp_cmd(self, local_path: str, remote_path: str) -> list[str]:
        return [
            self.scp_bin,
            *self.target.options(),
            "-P",
            str(self.target.port),
            local_path,
            f"{self.target.destination}:{remote_path}",
        ]

    async def _run(self, argv: list[str], output: OutputSink | None, timeout: float | None) -> int:
        """Run a local ssh/scp process, streaming its combined output.

        Returns:
            The process exit code

        Raises:
            RemoteConnectionError: Process could not start or timed out
        """
        try:
            proc = ProcessWrapper(
                await asyncio.create_subprocess_exec(
                    *argv,
                    stdin=asyncio.subprocess.DEVNULL,
                    stdout=asyncio.subprocess.PIPE,
                    stderr=asyncio.subprocess.STDOUT,
                )
            )
        except (OSError, ValueError) as e:
            # ValueError: argv holds a NUL byte
            raise RemoteConnectionError(
                f"Failed to start {argv[0]}: {e}",
                context={"port": self.target.port},
            ) from e

        try:
            async with asyncio.timeout(timeout):
                if proc.stdout is not None:
                    while chunk := await proc.stdout.read(constants.OUTPUT_READ_CHUNK_BYTES):
                        if output is not None:
                            output(chunk)
                return await proc.wait()
        except TimeoutError as e:
            raise RemoteConnectionError(
                f"{argv[0]} timed out after {timeout}s",
                context={"port": self.target.port, "timeout": timeout},
            ) from e
        finally:
            # Cancelled or timed out mid-session: don't leave the client behind
            if proc.returncode is None:
                await cleanup_process(
                    proc,
                    name=argv[0],
                    context_id=f"port-{self.target.port}",
                    term_timeout=constants.KILL_TIMEOUT_SECONDS,
                )

    async def exec(self, command: str, output: OutputSink | None = None, *, timeout: float | None = None) -> None:
        """Run a shell command in the VM.

        Args:
            command: Command line, interpreted by the remote user's shell
            output: Sink for combined stdout/stderr (discarded if None)
            timeout: Optional overall limit in seconds

        Raises:
            RemoteExitError: The command ran and exited non-zero
            RemoteConnectionError: The session could not be established or was lost
        """
        logger.debug("Running SSH command", extra={"command": command, "port": self.target.port})
        returncode = await self._run(self.ssh_cmd(command), output, timeout)
        if returncode == 0:
            return
        if returncode == constants.SSH_TRANSPORT_FAILURE_EXIT_CODE:
            raise RemoteConnectionError(
                f"SSH session to {self.target.destination}:{self.target.port} failed",
                context={"port": self.target.port, "exit_code": returncode},
            )
        raise RemoteExitError(
            f"Remote command exited with code {returncode}",
            exit_code=returncode,
            context={"port": self.target.port},
        )

    async def probe(self) -> None:
        """Single boot probe: a no-op command that only succeeds once sshd answers."""
        await self.exec(constants.BOOT_PROBE_COMMAND)

    async def upload(
        self,
        data: bytes,
        remote_path: str,
        output: OutputSink | None = None,
        *,
        timeout: float | None = None,
    ) -> None:
        """Copy bytes to remote_path in the VM.

        The payload is staged in a private (0600) temporary file that is
        removed on every exit path.

        Raises:
            TransferError: Staging or copying failed
        """
        try:
            async with aiofiles.tempfile.NamedTemporaryFile(
                "wb",
                dir=self.temp_dir,
                prefix=constants.UPLOAD_TEMP_PREFIX,
                delete=True,
            ) as tmp:
                await tmp.write(data)
                await tmp.flush()
                logger.debug(
                    "Uploading file",
                    extra={"remote_path": remote_path, "size": len(data), "port": self.target.port},
                )
                returncode = await self._run(self.scp_cmd(str(tmp.name), remote_path), output, timeout)
        except RemoteConnectionError as e:
            raise TransferError(f"Copy to {remote_path} failed: {e.message}", context=e.context) from e
        except OSError as e:
            raise TransferError(f"Couldn't stage file for upload to {remote_path}: {e}") from e

        if returncode != 0:
            raise TransferError(
                f"Copy to {remote_path} failed with exit code {returncode}",
                context={"remote_path": remote_path, "exit_code": returncode},
            )

    async def upload_all(self, files: Iterable[File], output: OutputSink | None = None) -> None:
        """Create parent directories in one round trip, then copy files in order.

        Directory entries only contribute to the directories created. Stops at
        the first failed copy. Permission bits are applied in one final round
        trip for files that carry them.

        Raises:
            TransferError: Directory creation, a copy, or chmod failed
        """
        files = list(files)
        if not files:
            return

        try:
            await self.exec(make_dirs_command(files), output)
        except RemoteError as e:
            raise TransferError(f"Failed to create directories for uploaded files: {e.message}") from e

        for file in files:
            if file.is_dir:
                continue
            await self.upload(file.data, file.path, output)

        if chmod := chmod_command(files):
            try:
                await self.exec(chmod, output)
            except RemoteError as e:
                raise TransferError(f"Failed to set permissions on uploaded files: {e.message}") from e
