"""qemu-runner: run pipeline steps inside an ephemeral QEMU virtual machine.

One Engine owns one VM for the lifetime of one pipeline run:

    ```python
    from qemu_runner import Engine, EngineSettings, Spec

    spec = Spec.model_validate_json(raw)
    async with Engine(EngineSettings(image_dir=Path("/images"))) as engine:
        await engine.setup(spec)
        for step in spec.steps:
            state = await engine.run(spec, step, output=sys.stdout.buffer.write)
    ```

Requirements:
    - qemu-img and qemu-system-x86_64 (or a per-image launch script)
    - OpenSSH client (ssh, scp) and a key accepted by the images
"""

from importlib.metadata import PackageNotFoundError, version

try:
    __version__ = version("qemu-runner")
except PackageNotFoundError:
    __version__ = "0.0.0.dev0"

from qemu_runner.engine import Engine, EngineState
from qemu_runner.exceptions import (
    BootTimeoutError,
    ConfigError,
    DependencyError,
    EngineStateError,
    ExecutionError,
    ProcessDiedError,
    ProvisionError,
    RemoteConnectionError,
    RemoteError,
    RemoteExitError,
    RunnerError,
    TransferError,
)
from qemu_runner.machine_config import MachineConfig
from qemu_runner.models import File, PipelineSettings, Secret, Spec, Step, StepState
from qemu_runner.runtime import run_pipeline
from qemu_runner.settings import EngineSettings, MissingConfigPolicy

__all__ = [
    "BootTimeoutError",
    "ConfigError",
    "DependencyError",
    "Engine",
    "EngineSettings",
    "EngineState",
    "EngineStateError",
    "ExecutionError",
    "File",
    "MachineConfig",
    "MissingConfigPolicy",
    "PipelineSettings",
    "ProcessDiedError",
    "ProvisionError",
    "RemoteConnectionError",
    "RemoteError",
    "RemoteExitError",
    "RunnerError",
    "Secret",
    "Spec",
    "Step",
    "StepState",
    "TransferError",
    "__version__",
    "run_pipeline",
]
