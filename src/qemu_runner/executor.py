"""Per-step execution inside a ready VM."""

from qemu_runner._logging import get_logger
from qemu_runner.commands import step_command
from qemu_runner.exceptions import ExecutionError, RemoteConnectionError, RemoteExitError
from qemu_runner.models import Step, StepState
from qemu_runner.remote import OutputSink, RemoteShell

logger = get_logger(__name__)


def build_step_environment(step: Step) -> dict[str, str]:
    """Merge a step's environment with its secrets into a fresh mapping.

    Secrets overwrite environment entries of the same name. The step's own
    mapping is never modified.
    """
    env = dict(step.envs)
    for secret in step.secrets:
        env[secret.env] = secret.get_value()
    return env


class StepExecutor:
    """Runs steps against one RemoteShell."""

    def __init__(self, shell: RemoteShell):
        self.shell = shell

    async def run(self, step: Step, output: OutputSink | None = None) -> StepState:
        """Upload the step's files, then run its command.

        A non-zero remote exit status is data, not an error: it comes back as
        StepState.exit_code.

        Raises:
            TransferError: Uploading the step's files failed
            ExecutionError: The command could not be run (connection failure)
        """
        await self.shell.upload_all(step.files, output)

        env = build_step_environment(step)
        command = step_command(step.command, step.args, env, step.working_dir)
        # The command line embeds secret values; keep it out of the default log level
        logger.debug("Running step command", extra={"step": step.name, "command": command})
        if step.detach:
            logger.info("Step is detached; completion is tracked by the orchestrator", extra={"step": step.name})

        try:
            await self.shell.exec(command, output)
        except RemoteExitError as e:
            logger.info("Step exited", extra={"step": step.name, "exit_code": e.exit_code})
            return StepState(exit_code=e.exit_code, exited=True)
        except RemoteConnectionError as e:
            raise ExecutionError(
                f"Step {step.name or step.command!r} could not be executed: {e.message}",
                context={"step": step.name, **e.context},
            ) from e

        logger.info("Step exited", extra={"step": step.name, "exit_code": 0})
        return StepState(exit_code=0, exited=True)
