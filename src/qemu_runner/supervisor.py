"""Hypervisor process supervision.

The supervisor launches QEMU (directly or through a per-image launch
script) and hands back a VMHandle. Exactly one watcher task per process
waits for it to exit and resolves `VMHandle.exited` once; that future is the
only way the rest of the engine learns the VM died.
"""

import asyncio
import random
from collections.abc import Mapping
from dataclasses import dataclass
from pathlib import Path

from qemu_runner import constants
from qemu_runner._logging import get_logger
from qemu_runner.exceptions import ProvisionError
from qemu_runner.platform_utils import ProcessWrapper
from qemu_runner.qemu_cmd import build_launch_env, build_qemu_cmd, launch_script_path, seed_image_path
from qemu_runner.resource_cleanup import cleanup_process
from qemu_runner.settings import EngineSettings
from qemu_runner.subprocess_utils import drain_subprocess_output, log_task_exception

logger = get_logger(__name__)


def pick_ssh_port() -> int:
    """Uniformly random host port in the non-privileged range."""
    return random.randint(constants.SSH_PORT_MIN, constants.SSH_PORT_MAX)


@dataclass
class VMHandle:
    """A launched hypervisor.

    Attributes:
        process: The hypervisor (or launch script) process
        exited: Resolves with the exit code when the process exits, or with
            the error raised while waiting for it. Never cancel it from outside.
        ssh_port: Host port forwarded to the guest's SSH service
        image: Ephemeral image the VM boots from
        watcher: Task that owns process.wait() and resolves `exited`
        log_task: Task draining the process output into the log
    """

    process: ProcessWrapper
    exited: asyncio.Future[int]
    ssh_port: int
    image: Path
    watcher: asyncio.Task[None]
    log_task: asyncio.Task[None] | None = None


async def _watch_exit(process: ProcessWrapper, exited: asyncio.Future[int], context_id: str) -> None:
    try:
        returncode = await process.wait()
    except asyncio.CancelledError:
        if not exited.done():
            exited.cancel()
        raise
    except Exception as e:
        if not exited.done():
            exited.set_exception(e)
        return
    logger.info("Hypervisor exited", extra={"context_id": context_id, "exit_code": returncode})
    if not exited.done():
        exited.set_result(returncode)


class VmSupervisor:
    """Starts and stops the hypervisor for one engine."""

    def __init__(self, settings: EngineSettings):
        self.settings = settings

    def build_launch_cmd(self, image_dir: Path, image: str, ephemeral_image: Path, ssh_port: int) -> list[str]:
        script = launch_script_path(image_dir, image)
        if script.exists():
            return [str(script)]
        seed = seed_image_path(image_dir, image)
        return build_qemu_cmd(
            self.settings,
            ephemeral_image,
            ssh_port,
            seed_image=seed if seed.exists() else None,
        )

    async def start(
        self,
        image_dir: Path,
        image: str,
        ephemeral_image: Path,
        env_overrides: Mapping[str, str] | None = None,
    ) -> VMHandle:
        """Launch the hypervisor on a freshly picked SSH port.

        Args:
            image_dir: Directory holding the image's launch script / seed drive
            image: Image name
            ephemeral_image: Overlay the VM boots from
            env_overrides: Extra environment for the launched process

        Returns:
            VMHandle for the running process

        Raises:
            ProvisionError: The process could not be started
        """
        ssh_port = pick_ssh_port()
        cmd = self.build_launch_cmd(image_dir, image, ephemeral_image, ssh_port)
        context_id = str(ephemeral_image)
        logger.info(
            "Starting hypervisor",
            extra={"context_id": context_id, "ssh_port": ssh_port, "argv0": cmd[0]},
        )
        logger.debug("Hypervisor command", extra={"context_id": context_id, "cmd": cmd})

        try:
            process = ProcessWrapper(
                await asyncio.create_subprocess_exec(
                    *cmd,
                    stdin=asyncio.subprocess.DEVNULL,
                    stdout=asyncio.subprocess.PIPE,
                    stderr=asyncio.subprocess.PIPE,
                    env=build_launch_env(ephemeral_image, ssh_port, env_overrides),
                    start_new_session=True,
                ),
                new_session=True,
            )
        except OSError as e:
            raise ProvisionError(
                f"Hypervisor process failed to start: {e}",
                context={"context_id": context_id, "cmd": cmd},
            ) from e

        exited: asyncio.Future[int] = asyncio.get_running_loop().create_future()
        watcher = asyncio.create_task(_watch_exit(process, exited, context_id), name=f"qemu-exit-{process.pid}")
        log_task = asyncio.create_task(
            drain_subprocess_output(process, process_name="QEMU", context_id=context_id),
            name=f"qemu-log-{process.pid}",
        )
        log_task.add_done_callback(log_task_exception)

        return VMHandle(
            process=process,
            exited=exited,
            ssh_port=ssh_port,
            image=ephemeral_image,
            watcher=watcher,
            log_task=log_task,
        )

    async def stop(self, handle: VMHandle | None) -> bool:
        """Interrupt the hypervisor and wait until it has exited.

        No-op for None; tolerates a process that already exited. Never raises.

        Returns:
            True if the process is gone
        """
        if handle is None:
            return True

        stopped = await cleanup_process(
            handle.process,
            name="QEMU",
            context_id=str(handle.image),
            term_timeout=self.settings.stop_timeout_seconds,
        )

        tasks = {t for t in (handle.watcher, handle.log_task) if t is not None}
        # Once the process is gone both tasks finish on their own (exit status, pipe EOF)
        _done, pending = await asyncio.wait(tasks, timeout=constants.TASK_SETTLE_TIMEOUT_SECONDS)
        for task in pending:
            task.cancel()
        if pending:
            await asyncio.wait(pending)

        # Mark the exit outcome retrieved so an unobserved wait error isn't reported at GC
        if handle.exited.done() and not handle.exited.cancelled():
            handle.exited.exception()
        return stopped
