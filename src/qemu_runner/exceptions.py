"""Exception hierarchy for qemu-runner.

All exceptions inherit from RunnerError.

Hierarchy:
    RunnerError (base)
    ├── ConfigError              ← bad/missing machine descriptor
    ├── ProvisionError           ← qemu-img or hypervisor launch failed
    ├── ProcessDiedError         ← hypervisor exited before readiness
    ├── BootTimeoutError         ← no successful boot probe before deadline
    ├── TransferError            ← directory creation or file copy failed
    ├── ExecutionError           ← step command never ran to completion
    ├── RemoteError              ← raised by RemoteShell.exec
    │   ├── RemoteExitError      ← command ran, exited non-zero
    │   └── RemoteConnectionError← session never established / dropped
    ├── DependencyError          ← required host binary missing
    └── EngineStateError         ← engine used out of order

Setup-phase errors are fatal for the pipeline run. RemoteExitError is the
only error that carries data rather than failure: the step executor turns
it into an exit code.
"""

from __future__ import annotations

from typing import Any


class RunnerError(Exception):
    """Base exception for all runner errors with structured context.

    Attributes:
        message: Human-readable error message
        context: Dictionary of structured error context for logging/debugging
    """

    def __init__(self, message: str, context: dict[str, Any] | None = None):
        super().__init__(message)
        self.message = message
        self.context = context or {}


class ConfigError(RunnerError):
    """Machine descriptor could not be read or parsed.

    This is the first point where an unknown image name surfaces to the user.
    """


class ProvisionError(RunnerError):
    """Ephemeral image creation or hypervisor launch failed.

    Attributes:
        stderr: Standard error output from the failing tool (if available)
    """

    def __init__(self, message: str, context: dict[str, Any] | None = None, stderr: str = ""):
        super().__init__(message, context)
        self.stderr = stderr


class ProcessDiedError(RunnerError):
    """Hypervisor process exited before the VM became reachable.

    Attributes:
        exit_code: Process exit code (negative for signal deaths), None if unknown
    """

    def __init__(self, message: str, exit_code: int | None, context: dict[str, Any] | None = None):
        ctx = context or {}
        ctx.setdefault("exit_code", exit_code)
        super().__init__(message, ctx)
        self.exit_code = exit_code


class BootTimeoutError(RunnerError):
    """No boot probe succeeded within the boot deadline."""


class TransferError(RunnerError):
    """Creating remote directories or copying a file into the VM failed."""


class ExecutionError(RunnerError):
    """A step command could not be run for a reason other than its own exit status.

    Distinct from a non-zero exit: the command may never have started.
    """


class RemoteError(RunnerError):
    """Base for failures of a remote shell invocation."""


class RemoteExitError(RemoteError):
    """Remote command ran and exited with a non-zero status.

    Attributes:
        exit_code: Exit status of the remote command
    """

    def __init__(self, message: str, exit_code: int, context: dict[str, Any] | None = None):
        ctx = context or {}
        ctx.setdefault("exit_code", exit_code)
        super().__init__(message, ctx)
        self.exit_code = exit_code


class RemoteConnectionError(RemoteError):
    """Remote session failed: ssh could not start, connect, or the session dropped or timed out."""


class DependencyError(RunnerError):
    """Required host binary (qemu-img, ssh, scp, hypervisor) is not available."""


class EngineStateError(RunnerError):
    """Engine operation is not allowed in its current lifecycle state."""
