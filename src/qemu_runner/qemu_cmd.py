"""QEMU command line and launch environment builders.

An image directory entry may ship `<image>.qemu.sh`; when present it owns the
hypervisor invocation and receives the ephemeral image path and SSH port
through QEMU_IMAGE / QEMU_SSH_PORT. Otherwise the hypervisor is started
directly with a fixed flag set.
"""

import os
from collections.abc import Mapping
from pathlib import Path

from qemu_runner import constants
from qemu_runner.settings import EngineSettings


def launch_script_path(image_dir: Path, image: str) -> Path:
    return image_dir / f"{image}{constants.LAUNCH_SCRIPT_SUFFIX}"


def seed_image_path(image_dir: Path, image: str) -> Path:
    return image_dir / f"{image}{constants.SEED_IMAGE_SUFFIX}"


def build_qemu_cmd(
    settings: EngineSettings,
    ephemeral_image: Path,
    ssh_port: int,
    seed_image: Path | None = None,
) -> list[str]:
    """Build the direct hypervisor invocation.

    Args:
        settings: Engine settings (binary, memory, vCPUs)
        ephemeral_image: qcow2 overlay used as the root drive
        ssh_port: Host port forwarded to guest port 22
        seed_image: Optional cloud-init style seed/config drive (raw, read-only)

    Returns:
        QEMU command as list of strings
    """
    cmd = [
        settings.qemu_bin,
        "-enable-kvm",
        "-cpu",
        "host",
        "-no-reboot",
        "-m",
        str(settings.vm_memory_mb),
        "-smp",
        str(settings.vm_cpus),
        "-drive",
        f"file={ephemeral_image},format={constants.QCOW2_FORMAT},if=virtio",
    ]
    if seed_image is not None:
        cmd.extend(["-drive", f"file={seed_image},format={constants.RAW_FORMAT},if=virtio,readonly=on"])
    cmd.extend(
        [
            "-netdev",
            f"user,id=net0,hostfwd=tcp:127.0.0.1:{ssh_port}-:{constants.GUEST_SSH_PORT}",
            "-device",
            "virtio-net-pci,netdev=net0",
            "-nographic",
        ]
    )
    return cmd


def build_launch_env(
    ephemeral_image: Path,
    ssh_port: int,
    overrides: Mapping[str, str] | None = None,
) -> dict[str, str]:
    """Environment for the hypervisor process: inherited env plus image and port."""
    env = dict(os.environ)
    env[constants.LAUNCH_ENV_IMAGE] = str(ephemeral_image)
    env[constants.LAUNCH_ENV_SSH_PORT] = str(ssh_port)
    if overrides:
        env.update(overrides)
    return env
