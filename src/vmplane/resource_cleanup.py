"""Best-effort cleanup of hypervisor processes and on-disk artifacts.

These helpers log errors but never raise: they run on teardown and failure
paths where the primary outcome has already been decided.
"""

import asyncio
from pathlib import Path

import aiofiles.os

from vmplane import constants
from vmplane._logging import get_logger
from vmplane.platform_utils import ProcessWrapper

logger = get_logger(__name__)


async def cleanup_process(
    proc: ProcessWrapper | None,
    name: str,
    context_id: str,
    term_timeout: float = constants.TERM_TIMEOUT_SECONDS,
    kill_timeout: float = constants.KILL_TIMEOUT_SECONDS,
) -> bool:
    """Terminate and reap a subprocess (SIGTERM, then SIGKILL).

    Args:
        proc: Process to stop (None safe - returns immediately)
        name: Process name for logging (e.g. "qemu")
        context_id: VM id for logging
        term_timeout: Seconds to wait after SIGTERM before SIGKILL
        kill_timeout: Seconds to wait after SIGKILL before giving up

    Returns:
        True if the process is gone and reaped, False otherwise
    """
    if proc is None:
        return True

    try:
        if proc.returncode is not None:
            logger.debug(
                f"{name} already terminated",
                extra={"vm_id": context_id, "returncode": proc.returncode},
            )
            return True

        logger.debug(f"Sending SIGTERM to {name}", extra={"vm_id": context_id, "pid": proc.pid})
        await proc.terminate()
        try:
            await proc.wait_with_timeout(timeout=term_timeout)
            logger.debug(
                f"{name} stopped (SIGTERM)",
                extra={"vm_id": context_id, "returncode": proc.returncode},
            )
            return True
        except TimeoutError:
            logger.warning(
                f"{name} didn't respond to SIGTERM, force killing",
                extra={"vm_id": context_id, "term_timeout": term_timeout},
            )

        await proc.kill()
        try:
            await proc.wait_with_timeout(timeout=kill_timeout)
            logger.warning(
                f"{name} force killed (SIGKILL)",
                extra={"vm_id": context_id, "returncode": proc.returncode},
            )
            return True
        except TimeoutError:
            logger.error(
                f"{name} didn't respond to SIGKILL within timeout",
                extra={"vm_id": context_id, "kill_timeout": kill_timeout, "pid": proc.pid},
            )
            return False

    except ProcessLookupError:
        logger.debug(f"{name} already dead (ProcessLookupError)", extra={"vm_id": context_id})
        return True

    except Exception as e:
        logger.error(
            f"{name} cleanup error",
            extra={"vm_id": context_id, "error": str(e), "error_type": type(e).__name__},
            exc_info=True,
        )
        return False


async def cleanup_file(
    file_path: Path | None,
    context_id: str,
    description: str = "file",
) -> bool:
    """Delete a file, treating "already gone" as success.

    Args:
        file_path: File to delete (None safe - returns immediately)
        context_id: VM id for logging
        description: What the file is, for logging (e.g. "control socket")

    Returns:
        True if the file no longer exists, False if deletion failed
    """
    if file_path is None:
        return True

    try:
        await aiofiles.os.remove(file_path)
        logger.debug(f"{description} deleted", extra={"vm_id": context_id, "path": str(file_path)})
        return True
    except FileNotFoundError:
        return True
    except OSError as e:
        logger.error(
            f"{description} could not be deleted",
            extra={"vm_id": context_id, "path": str(file_path), "error": str(e), "error_type": type(e).__name__},
        )
        return False


async def cancel_task(task: asyncio.Task[None] | None) -> None:
    """Cancel a background task and wait for it to finish.

    Exceptions raised by the task are logged, never propagated.
    """
    if task is None or task.done() and task.cancelled():
        return
    if task is asyncio.current_task():
        return
    task.cancel()
    try:
        await task
    except asyncio.CancelledError:
        current = asyncio.current_task()
        if current is not None and current.cancelling():
            raise
    except Exception:
        logger.debug("Background task ended with error during cancel", extra={"task_name": task.get_name()}, exc_info=True)
