"""Constants for qemu-runner configuration and limits."""

from typing import Final

# ============================================================================
# Boot readiness
# ============================================================================

BOOT_TIMEOUT_SECONDS: Final[float] = 180.0
"""Maximum time to wait for the first successful boot probe (3 minutes)."""

BOOT_PROBE_INTERVAL_SECONDS: Final[float] = 5.0
"""Fixed delay between boot probe attempts."""

BOOT_PROBE_COMMAND: Final[str] = "true"
"""No-op remote command used to detect a reachable SSH service."""

# ============================================================================
# SSH / SCP
# ============================================================================

SSH_HOST: Final[str] = "localhost"
"""Guest SSH is reached through a host port forward on the loopback interface."""

SSH_CONNECT_TIMEOUT_SECONDS: Final[int] = 2
"""ssh -o ConnectTimeout value."""

SSH_DEFAULT_KEY: Final[str] = "id_rsa"
"""Private key used for every remote session, relative to the working directory."""

SSH_TRANSPORT_FAILURE_EXIT_CODE: Final[int] = 255
"""ssh exits 255 when it fails itself (connection refused, auth, dropped session)."""

GUEST_SSH_PORT: Final[int] = 22

SSH_PORT_MIN: Final[int] = 1025
"""Lowest host port picked for SSH forwarding (non-privileged range)."""

SSH_PORT_MAX: Final[int] = 65535

# ============================================================================
# Images and hypervisor
# ============================================================================

MACHINE_CONFIG_SUFFIX: Final[str] = ".qemu.json"
LAUNCH_SCRIPT_SUFFIX: Final[str] = ".qemu.sh"
SEED_IMAGE_SUFFIX: Final[str] = ".seed.img"
DEFAULT_BASE_IMAGE_SUFFIX: Final[str] = ".img"

EPHEMERAL_IMAGE_PREFIX: Final[str] = "qemu-runner-"
UPLOAD_TEMP_PREFIX: Final[str] = "qemu-runner-upload-"

DEFAULT_USERNAME: Final[str] = "root"
QCOW2_FORMAT: Final[str] = "qcow2"
RAW_FORMAT: Final[str] = "raw"

DEFAULT_MEMORY_MB: Final[int] = 2048
DEFAULT_VM_CPUS: Final[int] = 2

LAUNCH_ENV_IMAGE: Final[str] = "QEMU_IMAGE"
"""Environment variable carrying the ephemeral image path to the launch script."""

LAUNCH_ENV_SSH_PORT: Final[str] = "QEMU_SSH_PORT"
"""Environment variable carrying the forwarded SSH port to the launch script."""

STOP_TIMEOUT_SECONDS: Final[float] = 30.0
"""Grace period after SIGINT before the hypervisor is force killed."""

KILL_TIMEOUT_SECONDS: Final[float] = 5.0

OUTPUT_READ_CHUNK_BYTES: Final[int] = 64 * 1024

TASK_SETTLE_TIMEOUT_SECONDS: Final[float] = 1.0
"""How long teardown lets the exit watcher and output drain finish before cancelling them."""
