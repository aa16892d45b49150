"""Pipeline engine: one ephemeral VM per pipeline run.

Lifecycle (one Engine instance per run; the orchestrator serializes calls):

    IDLE -> PROVISIONING -> BOOTING -> READY -(run)-> READY -> DESTROYING -> DESTROYED

`setup()` provisions the overlay image, launches the hypervisor, waits for
SSH and uploads the pipeline files. `run()` executes one step. `destroy()`
may be called from any state, including after a failed setup, and removes
whatever was created.
"""

import shutil
from collections.abc import Callable
from enum import Enum
from pathlib import Path

from qemu_runner._logging import get_logger
from qemu_runner.exceptions import DependencyError, EngineStateError, ProvisionError
from qemu_runner.executor import StepExecutor
from qemu_runner.image import create_ephemeral_image, ephemeral_image_path, remove_ephemeral_image
from qemu_runner.machine_config import MachineConfig, load_machine_config
from qemu_runner.models import Spec, Step, StepState
from qemu_runner.readiness import wait_ready
from qemu_runner.remote import OutputSink, RemoteShell, SshTarget
from qemu_runner.settings import EngineSettings
from qemu_runner.supervisor import VMHandle, VmSupervisor

logger = get_logger(__name__)


class EngineState(str, Enum):
    """Engine lifecycle states."""

    IDLE = "idle"
    PROVISIONING = "provisioning"
    BOOTING = "booting"
    READY = "ready"
    DESTROYING = "destroying"
    DESTROYED = "destroyed"


VALID_STATE_TRANSITIONS: dict[EngineState, set[EngineState]] = {
    EngineState.IDLE: {EngineState.PROVISIONING, EngineState.DESTROYING},
    EngineState.PROVISIONING: {EngineState.BOOTING, EngineState.DESTROYING},
    EngineState.BOOTING: {EngineState.READY, EngineState.DESTROYING},
    EngineState.READY: {EngineState.READY, EngineState.DESTROYING},
    EngineState.DESTROYING: {EngineState.DESTROYED},
    EngineState.DESTROYED: set(),
}

ShellFactory = Callable[[SshTarget], RemoteShell]


class Engine:
    """Runs the steps of one pipeline inside one ephemeral QEMU VM.

    Usage:
        async with Engine(EngineSettings(image_dir=Path("/images"))) as engine:
            await engine.setup(spec)
            for step in spec.steps:
                state = await engine.run(spec, step, output=sys.stdout.buffer.write)
    """

    def __init__(
        self,
        settings: EngineSettings | None = None,
        *,
        supervisor: VmSupervisor | None = None,
        shell_factory: ShellFactory | None = None,
    ):
        self.settings = settings or EngineSettings()
        self.supervisor = supervisor or VmSupervisor(self.settings)
        self._shell_factory = shell_factory or self._default_shell
        self._state = EngineState.IDLE

        self.machine_config: MachineConfig | None = None
        self.image: Path | None = None
        self.vm: VMHandle | None = None
        self.shell: RemoteShell | None = None

    def _default_shell(self, target: SshTarget) -> RemoteShell:
        return RemoteShell(
            target,
            ssh_bin=self.settings.ssh_bin,
            scp_bin=self.settings.scp_bin,
            temp_dir=self.settings.temp_dir,
        )

    @property
    def state(self) -> EngineState:
        return self._state

    @property
    def ssh_port(self) -> int | None:
        return self.vm.ssh_port if self.vm else None

    def _transition(self, new_state: EngineState) -> None:
        if new_state not in VALID_STATE_TRANSITIONS[self._state]:
            raise EngineStateError(
                f"Invalid engine state transition: {self._state.value} -> {new_state.value}",
                context={
                    "current_state": self._state.value,
                    "target_state": new_state.value,
                    "allowed_transitions": sorted(s.value for s in VALID_STATE_TRANSITIONS[self._state]),
                },
            )
        logger.debug("Engine state transition", extra={"old_state": self._state.value, "new_state": new_state.value})
        self._state = new_state

    async def __aenter__(self) -> "Engine":
        return self

    async def __aexit__(
        self, _exc_type: type[BaseException] | None, _exc_val: BaseException | None, _exc_tb: object
    ) -> bool:
        await self.destroy()
        return False

    async def setup(self, spec: Spec) -> None:
        """Provision and boot the VM, then upload the pipeline files.

        On failure the engine keeps whatever was created so destroy() can
        remove it; only a failed hypervisor launch removes the fresh image
        itself.

        Raises:
            ConfigError: Machine descriptor invalid or unreadable
            ProvisionError: Image creation or hypervisor launch failed
            ProcessDiedError: Hypervisor exited before SSH came up
            BootTimeoutError: SSH never answered within the boot deadline
            TransferError: Uploading pipeline files failed
        """
        self._transition(EngineState.PROVISIONING)
        image_name = spec.settings.image

        self.machine_config = await load_machine_config(
            self.settings.image_dir,
            image_name,
            policy=self.settings.missing_config_policy,
        )

        image = ephemeral_image_path(self.settings.temp_dir)
        # Owned by the engine from here on, so destroy() also removes a partial overlay
        self.image = image
        await create_ephemeral_image(
            self.machine_config.base_image,
            self.machine_config.base_image_format,
            image,
            qemu_img_bin=self.settings.qemu_img_bin,
        )

        try:
            self.vm = await self.supervisor.start(self.settings.image_dir, image_name, image)
        except ProvisionError:
            await remove_ephemeral_image(image)
            self.image = None
            raise

        self._transition(EngineState.BOOTING)
        self.shell = self._shell_factory(
            SshTarget(
                username=self.machine_config.username,
                port=self.vm.ssh_port,
                key_path=self.settings.ssh_key,
                connect_timeout=self.settings.ssh_connect_timeout,
            )
        )
        await wait_ready(
            self.vm.exited,
            self.shell.probe,
            deadline=self.settings.boot_timeout_seconds,
            interval=self.settings.boot_probe_interval_seconds,
        )
        self._transition(EngineState.READY)

        await self.shell.upload_all(spec.files)

    async def run(self, spec: Spec, step: Step, output: OutputSink | None = None) -> StepState:
        """Run one step in the VM.

        Raises:
            EngineStateError: setup() has not completed
            TransferError: Uploading the step's files failed
            ExecutionError: The command could not be run
        """
        if self._state != EngineState.READY or self.shell is None:
            raise EngineStateError(
                f"Cannot run a step in state {self._state.value}, must be ready",
                context={"step": step.name, "state": self._state.value},
            )
        self._transition(EngineState.READY)
        return await StepExecutor(self.shell).run(step, output)

    async def destroy(self, spec: Spec | None = None) -> None:
        """Stop the hypervisor and delete the ephemeral image.

        Safe from any state and idempotent. Teardown problems are logged,
        never raised, so they can't mask a setup or run error.
        """
        if self._state in (EngineState.DESTROYING, EngineState.DESTROYED):
            return
        self._transition(EngineState.DESTROYING)

        vm, self.vm = self.vm, None
        self.shell = None
        if not await self.supervisor.stop(vm):
            logger.warning("Hypervisor did not stop cleanly", extra={"image": str(self.image)})

        image, self.image = self.image, None
        await remove_ephemeral_image(image)

        self._transition(EngineState.DESTROYED)

    async def ping(self) -> None:
        """Check the host binaries the engine shells out to.

        Raises:
            DependencyError: A required binary is not on PATH
        """
        required = (self.settings.qemu_img_bin, self.settings.ssh_bin, self.settings.scp_bin)
        missing = [name for name in required if shutil.which(name) is None]
        if missing:
            raise DependencyError(
                f"Required binaries not found: {', '.join(missing)}",
                context={"missing": missing},
            )
