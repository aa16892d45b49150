"""Best-effort cleanup of the hypervisor process and on-disk artifacts.

These helpers log failures and report them through their return value; they
never raise, so teardown can't mask the result of a setup or run.
"""

from pathlib import Path

import aiofiles.os

from qemu_runner import constants
from qemu_runner._logging import get_logger
from qemu_runner.platform_utils import ProcessWrapper

logger = get_logger(__name__)


async def cleanup_process(
    proc: ProcessWrapper | None,
    name: str,
    context_id: str,
    term_timeout: float = constants.STOP_TIMEOUT_SECONDS,
    kill_timeout: float = constants.KILL_TIMEOUT_SECONDS,
) -> bool:
    """Stop a subprocess: SIGINT, wait, then SIGKILL if it ignores the interrupt.

    Args:
        proc: ProcessWrapper to stop (None safe - returns immediately)
        name: Process name for logging (e.g., "QEMU", "ssh")
        context_id: Context for logging
        term_timeout: Seconds to wait after SIGINT before SIGKILL
        kill_timeout: Seconds to wait after SIGKILL before giving up

    Returns:
        True if the process is gone, False if issues occurred
    """
    if proc is None:
        return True

    try:
        if proc.returncode is not None:
            logger.debug(
                f"{name} already exited",
                extra={"context_id": context_id, "returncode": proc.returncode},
            )
            return True

        logger.debug(f"Sending SIGINT to {name}", extra={"context_id": context_id, "pid": proc.pid})
        await proc.interrupt()
        try:
            await proc.wait_with_timeout(timeout=term_timeout)
            logger.debug(
                f"{name} stopped (SIGINT)",
                extra={"context_id": context_id, "returncode": proc.returncode},
            )
            return True
        except TimeoutError:
            logger.warning(
                f"{name} didn't respond to SIGINT, force killing",
                extra={"context_id": context_id, "term_timeout": term_timeout},
            )

        await proc.kill()
        try:
            await proc.wait_with_timeout(timeout=kill_timeout)
            logger.warning(
                f"{name} force killed (SIGKILL)",
                extra={"context_id": context_id, "returncode": proc.returncode},
            )
            return True
        except TimeoutError:
            logger.error(
                f"{name} didn't respond to SIGKILL within timeout",
                extra={"context_id": context_id, "kill_timeout": kill_timeout, "pid": proc.pid},
            )
            return False

    except ProcessLookupError:
        logger.debug(f"{name} already dead (ProcessLookupError)", extra={"context_id": context_id})
        return True

    except Exception as e:
        logger.error(
            f"{name} cleanup error",
            extra={"context_id": context_id, "error": str(e), "error_type": type(e).__name__},
            exc_info=True,
        )
        return False


async def cleanup_file(
    file_path: Path | None,
    context_id: str,
    description: str = "file",
) -> bool:
    """Delete a file. A file that is already gone counts as success.

    Args:
        file_path: Path to delete (None safe - returns immediately)
        context_id: Context for logging
        description: Description for logging (e.g., "ephemeral image")

    Returns:
        True if the file is gone, False if deletion failed
    """
    if file_path is None:
        return True

    try:
        await aiofiles.os.remove(file_path)
        logger.debug(f"{description} deleted", extra={"context_id": context_id, "path": str(file_path)})
        return True

    except FileNotFoundError:
        logger.debug(f"{description} already deleted", extra={"context_id": context_id, "path": str(file_path)})
        return True

    except OSError as e:
        logger.error(
            f"{description} could not be deleted",
            extra={"context_id": context_id, "path": str(file_path), "error": str(e), "error_type": type(e).__name__},
        )
        return False
