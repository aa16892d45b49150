"""Per-image machine descriptor loading.

Each base image in the image directory may ship `<image>.qemu.json`:

    {"username": "ci", "base_image": "debian-12.qcow2", "base_image_format": "qcow2"}

Every field is optional. Defaults: username "root"; base image
`<image_dir>/<image>.img`; format "qcow2" when the base image path ends in
.qcow2, otherwise "raw".
"""

import errno
import re
from pathlib import Path

import aiofiles
from pydantic import BaseModel, ConfigDict, ValidationError

from qemu_runner import constants
from qemu_runner._logging import get_logger
from qemu_runner.exceptions import ConfigError
from qemu_runner.settings import MissingConfigPolicy

logger = get_logger(__name__)

# Image names become file names under image_dir: no separators, no traversal
_IMAGE_NAME_PATTERN = re.compile(r"^[A-Za-z0-9_][A-Za-z0-9._-]*$")


class MachineConfig(BaseModel):
    """Resolved machine settings for one image. Immutable after loading."""

    model_config = ConfigDict(frozen=True, extra="forbid")

    username: str
    base_image: Path
    base_image_format: str


class _MachineConfigFile(BaseModel):
    """On-disk shape of `<image>.qemu.json`; empty strings count as absent."""

    model_config = ConfigDict(extra="ignore")

    username: str | None = None
    base_image: str | None = None
    base_image_format: str | None = None


def machine_config_path(image_dir: Path, image: str) -> Path:
    return image_dir / f"{image}{constants.MACHINE_CONFIG_SUFFIX}"


def validate_image_name(image: str) -> None:
    """Reject image names that are empty or could escape the image directory.

    Raises:
        ConfigError: Invalid image name
    """
    if not image or ".." in image or not _IMAGE_NAME_PATTERN.match(image):
        raise ConfigError(f"Invalid image name: {image!r}", context={"image": image})


def resolve_machine_config(image_dir: Path, image: str, raw: _MachineConfigFile) -> MachineConfig:
    """Apply the default rules to a parsed (possibly empty) descriptor."""
    username = raw.username or constants.DEFAULT_USERNAME

    if raw.base_image:
        base_image = Path(raw.base_image)
        if not base_image.is_absolute():
            base_image = image_dir / base_image
    else:
        base_image = image_dir / f"{image}{constants.DEFAULT_BASE_IMAGE_SUFFIX}"

    base_image_format = raw.base_image_format
    if not base_image_format:
        if base_image.name.endswith(f".{constants.QCOW2_FORMAT}"):
            base_image_format = constants.QCOW2_FORMAT
        else:
            base_image_format = constants.RAW_FORMAT

    return MachineConfig(username=username, base_image=base_image, base_image_format=base_image_format)


async def load_machine_config(
    image_dir: Path,
    image: str,
    *,
    policy: MissingConfigPolicy = MissingConfigPolicy.DEFAULTS,
) -> MachineConfig:
    """Load and resolve the machine config for an image.

    Args:
        image_dir: Directory holding base images and their descriptors
        image: Image name from the pipeline settings
        policy: Whether a missing descriptor falls back to defaults

    Returns:
        Resolved MachineConfig

    Raises:
        ConfigError: Invalid image name, unreadable descriptor (subject to
            policy), malformed JSON, or wrongly typed fields
    """
    validate_image_name(image)
    path = machine_config_path(image_dir, image)
    context = {"image": image, "path": str(path)}

    try:
        async with aiofiles.open(path, "rb") as f:
            data = await f.read()
    except OSError as e:
        if e.errno == errno.ENOENT and policy == MissingConfigPolicy.DEFAULTS:
            logger.debug("No machine config, using defaults", extra=context)
            return resolve_machine_config(image_dir, image, _MachineConfigFile())
        raise ConfigError(f"Cannot read machine config {path}: {e.strerror or e}", context=context) from e

    try:
        raw = _MachineConfigFile.model_validate_json(data)
    except ValidationError as e:
        raise ConfigError(f"Invalid machine config {path}: {e}", context=context) from e

    config = resolve_machine_config(image_dir, image, raw)
    logger.debug(
        "Machine config loaded",
        extra={**context, "username": config.username, "base_image": str(config.base_image)},
    )
    return config
