"""Runtime configuration from environment variables."""

import tempfile
from enum import Enum
from pathlib import Path

from pydantic import Field
from pydantic_settings import BaseSettings, SettingsConfigDict

from qemu_runner import constants


class MissingConfigPolicy(str, Enum):
    """How the machine config loader treats an unreadable `<image>.qemu.json`."""

    DEFAULTS = "defaults"
    """Missing file -> all-default MachineConfig; any other read error is fatal."""

    STRICT = "strict"
    """Any read error, including a missing file, is fatal."""


class EngineSettings(BaseSettings):
    """Engine configuration.

    All settings can be overridden via environment variables with QEMU_RUNNER_ prefix.
    Example: QEMU_RUNNER_IMAGE_DIR=/var/lib/qemu-runner/images
    """

    model_config = SettingsConfigDict(
        env_prefix="QEMU_RUNNER_",
        extra="ignore",
    )

    # Paths
    image_dir: Path = Path("/var/lib/qemu-runner/images")
    temp_dir: Path = Field(default_factory=lambda: Path(tempfile.gettempdir()))

    # Host binaries
    qemu_bin: str = "qemu-system-x86_64"
    qemu_img_bin: str = "qemu-img"
    ssh_bin: str = "ssh"
    scp_bin: str = "scp"

    # SSH
    ssh_key: Path = Path(constants.SSH_DEFAULT_KEY)
    ssh_connect_timeout: int = Field(default=constants.SSH_CONNECT_TIMEOUT_SECONDS, ge=1)

    # Boot
    boot_timeout_seconds: float = Field(default=constants.BOOT_TIMEOUT_SECONDS, gt=0)
    boot_probe_interval_seconds: float = Field(default=constants.BOOT_PROBE_INTERVAL_SECONDS, gt=0)
    stop_timeout_seconds: float = Field(default=constants.STOP_TIMEOUT_SECONDS, gt=0)

    # VM shape (direct launch only; launch scripts choose their own)
    vm_memory_mb: int = Field(default=constants.DEFAULT_MEMORY_MB, ge=128)
    vm_cpus: int = Field(default=constants.DEFAULT_VM_CPUS, ge=1)

    missing_config_policy: MissingConfigPolicy = MissingConfigPolicy.DEFAULTS
