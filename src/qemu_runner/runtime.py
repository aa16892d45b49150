"""Typed boundary between an orchestrator and pipeline engines.

The orchestrator is written against these capability protocols; each engine
receives its own concrete Spec/Step types through a typed entry point, so
nothing is ever down-cast from a generic value.
"""

from typing import Any, Protocol, TypeVar, runtime_checkable

from qemu_runner._logging import get_logger
from qemu_runner.models import Spec, StepState
from qemu_runner.remote import OutputSink

logger = get_logger(__name__)


@runtime_checkable
class PipelineSecret(Protocol):
    def get_name(self) -> str: ...

    def get_value(self) -> str: ...

    def is_masked(self) -> bool: ...


@runtime_checkable
class PipelineStep(Protocol):
    def get_name(self) -> str: ...

    def get_dependencies(self) -> list[str]: ...

    def get_environ(self) -> dict[str, str]: ...

    def set_environ(self, env: dict[str, str]) -> None: ...

    def get_err_policy(self) -> str: ...

    def get_run_policy(self) -> str: ...

    def get_secret_at(self, index: int) -> PipelineSecret: ...

    def get_secret_len(self) -> int: ...

    def is_detached(self) -> bool: ...


@runtime_checkable
class PipelineSpec(Protocol):
    def step_len(self) -> int: ...

    def step_at(self, index: int) -> PipelineStep: ...


SpecT = TypeVar("SpecT", contravariant=True)
StepT = TypeVar("StepT", contravariant=True)


class PipelineEngine(Protocol[SpecT, StepT]):
    """Callback contract an orchestrator drives for one pipeline run."""

    async def setup(self, spec: SpecT) -> None: ...

    async def run(self, spec: SpecT, step: StepT, output: OutputSink | None = None) -> StepState: ...

    async def destroy(self, spec: SpecT | None = None) -> None: ...

    async def ping(self) -> None: ...


async def run_pipeline(engine: "PipelineEngine[Spec, Any]", spec: Spec, output: OutputSink | None = None) -> int:
    """Drive one pipeline sequentially: setup, each step in order, destroy.

    Stops at the first step that exits non-zero. No dependency ordering,
    conditions, or retries; steps run in list order.

    Returns:
        Exit code of the first failing step, or 0

    Raises:
        RunnerError: setup or a step failed to run; destroy still ran
    """
    try:
        await engine.setup(spec)
        for step in spec.steps:
            logger.info("Running step", extra={"step": step.name})
            state = await engine.run(spec, step, output)
            if state.exit_code != 0:
                logger.warning("Step failed", extra={"step": step.name, "exit_code": state.exit_code})
                return state.exit_code
        return 0
    finally:
        await engine.destroy(spec)
