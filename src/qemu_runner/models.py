"""Data models for qemu-runner.

Spec/Step/Secret/File are produced by the orchestrator from a parsed
pipeline manifest and are read-only to the engine. Byte payloads use
base64 in JSON, matching the engine spec wire format.
"""

from pydantic import BaseModel, ConfigDict, Field

_WIRE_CONFIG = ConfigDict(
    populate_by_name=True,
    ser_json_bytes="base64",
    val_json_bytes="base64",
)


class File(BaseModel):
    """File uploaded into the VM before a step (or the pipeline) runs.

    Directory entries only contribute their parent to the set of remote
    directories to create; they carry no payload.
    """

    model_config = _WIRE_CONFIG

    path: str
    mode: int = Field(default=0, ge=0, le=0o7777, description="Permission bits (0 = remote default)")
    data: bytes = b""
    is_dir: bool = False

    def __str__(self) -> str:
        return repr(self.path)


class Secret(BaseModel):
    """Secret injected into a step's environment.

    `mask` is a display concern for the orchestrator; the engine never
    enforces it.
    """

    model_config = _WIRE_CONFIG

    name: str = ""
    env: str
    data: bytes = b""
    mask: bool = False

    def get_name(self) -> str:
        return self.name

    def get_value(self) -> str:
        """Payload as text.

        Undecodable bytes are kept as surrogates; os.fsencode() (and subprocess
        argv encoding) turns them back into the original bytes.
        """
        return self.data.decode(errors="surrogateescape")

    def is_masked(self) -> bool:
        return self.mask


class Step(BaseModel):
    """One pipeline step: exactly one remote command invocation."""

    model_config = _WIRE_CONFIG

    name: str = ""
    command: str
    args: list[str] = Field(default_factory=list)
    envs: dict[str, str] = Field(default_factory=dict, alias="environment")
    working_dir: str = "/"
    depends_on: list[str] = Field(default_factory=list)
    # Opaque to the engine; interpreted by the orchestrator
    run_policy: str = ""
    err_policy: str = ""
    secrets: list[Secret] = Field(default_factory=list)
    files: list[File] = Field(default_factory=list)
    detach: bool = False

    def get_name(self) -> str:
        return self.name

    def get_dependencies(self) -> list[str]:
        return self.depends_on

    def get_environ(self) -> dict[str, str]:
        return self.envs

    def set_environ(self, env: dict[str, str]) -> None:
        self.envs = env

    def get_err_policy(self) -> str:
        return self.err_policy

    def get_run_policy(self) -> str:
        return self.run_policy

    def get_secret_at(self, index: int) -> Secret:
        return self.secrets[index]

    def get_secret_len(self) -> int:
        return len(self.secrets)

    def is_detached(self) -> bool:
        return self.detach

    def clone(self) -> "Step":
        """Copy of the step whose environment can be changed independently."""
        return self.model_copy(deep=True)


class PipelineSettings(BaseModel):
    """Pipeline-wide settings."""

    image: str


class Spec(BaseModel):
    """Compiled pipeline: everything needed to reproduce one run."""

    model_config = _WIRE_CONFIG

    root: str = ""
    settings: PipelineSettings
    files: list[File] = Field(default_factory=list)
    steps: list[Step] = Field(default_factory=list)

    def step_len(self) -> int:
        return len(self.steps)

    def step_at(self, index: int) -> Step:
        return self.steps[index]


class StepState(BaseModel):
    """Result of running one step, reported back to the orchestrator."""

    exit_code: int = Field(description="Remote command exit status (0=success)")
    exited: bool = Field(default=True, description="Command ran to completion")
