"""Ephemeral copy-on-write disk images.

Each pipeline run boots from its own qcow2 overlay backed by the shared,
read-only base image, so runs never see each other's writes:

    qemu-img create -f qcow2 -b <base_image> -F <base_format> <dest>
"""

import asyncio
from pathlib import Path
from uuid import uuid4

from qemu_runner import constants
from qemu_runner._logging import get_logger
from qemu_runner.exceptions import ProvisionError
from qemu_runner.platform_utils import ProcessWrapper
from qemu_runner.resource_cleanup import cleanup_file, cleanup_process

logger = get_logger(__name__)


def ephemeral_image_path(temp_dir: Path) -> Path:
    """Unique overlay path inside temp_dir (random suffix, safe across concurrent runs)."""
    return temp_dir / f"{constants.EPHEMERAL_IMAGE_PREFIX}{uuid4().hex}.{constants.QCOW2_FORMAT}"


def build_create_cmd(qemu_img_bin: str, base_image: Path, base_format: str, dest: Path) -> list[str]:
    return [
        qemu_img_bin,
        "create",
        "-f",
        constants.QCOW2_FORMAT,
        "-b",
        str(base_image),
        "-F",
        base_format,
        str(dest),
    ]


async def create_ephemeral_image(
    base_image: Path,
    base_format: str,
    dest: Path,
    *,
    qemu_img_bin: str = "qemu-img",
) -> None:
    """Create a qcow2 overlay at dest backed by base_image.

    On failure or cancellation nothing is left at dest and qemu-img is not
    left running.

    Raises:
        ProvisionError: qemu-img missing or exited non-zero
    """
    cmd = build_create_cmd(qemu_img_bin, base_image, base_format, dest)
    context = {"base_image": str(base_image), "base_format": base_format, "image": str(dest)}
    logger.info("Creating ephemeral image", extra=context)

    try:
        proc = ProcessWrapper(
            await asyncio.create_subprocess_exec(
                *cmd,
                stdout=asyncio.subprocess.PIPE,
                stderr=asyncio.subprocess.PIPE,
            )
        )
    except OSError as e:
        raise ProvisionError(f"Failed to run {qemu_img_bin}: {e}", context=context) from e

    try:
        _stdout, stderr = await proc.communicate()
    except BaseException:
        await cleanup_process(
            proc, name="qemu-img", context_id=str(dest), term_timeout=constants.KILL_TIMEOUT_SECONDS
        )
        await cleanup_file(dest, context_id=str(dest), description="partial ephemeral image")
        raise

    if proc.returncode != 0:
        await cleanup_file(dest, context_id=str(dest), description="partial ephemeral image")
        stderr_text = stderr.decode(errors="replace").strip()
        raise ProvisionError(
            f"qemu-img create failed with exit code {proc.returncode}: {stderr_text}",
            context={**context, "exit_code": proc.returncode},
            stderr=stderr_text,
        )


async def remove_ephemeral_image(path: Path | None) -> bool:
    """Best-effort delete of an overlay; None safe, never raises."""
    return await cleanup_file(path, context_id=str(path), description="ephemeral image")
