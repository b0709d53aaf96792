"""Resource cleanup utilities for the run lifecycle.

Cleanup operations log errors but never raise: they run in finally blocks
where an exception would mask the original failure.
"""

import asyncio
import contextlib
import shutil
from pathlib import Path

import aiofiles.os
import psutil

from vm_provisioner import constants
from vm_provisioner._logging import get_logger
from vm_provisioner.platform_utils import ProcessWrapper

logger = get_logger(__name__)


def _is_live(proc: psutil.Process) -> bool:
    """Zombies are dead; they only wait for their new parent to reap them."""
    try:
        return proc.status() != psutil.STATUS_ZOMBIE
    except psutil.NoSuchProcess:
        return False


async def _reap_descendants(children: list[psutil.Process], name: str, context_id: str, timeout: float) -> bool:
    """SIGTERM then SIGKILL every descendant that outlived its parent."""
    if not children:
        return True

    def _terminate_and_wait() -> bool:
        for child in children:
            with contextlib.suppress(psutil.NoSuchProcess, psutil.AccessDenied):
                child.terminate()
        _gone, alive = psutil.wait_procs(children, timeout=timeout)
        for child in alive:
            with contextlib.suppress(psutil.NoSuchProcess, psutil.AccessDenied):
                child.kill()
        _gone, alive = psutil.wait_procs(alive, timeout=timeout)
        return not [p for p in alive if _is_live(p)]

    clean = await asyncio.to_thread(_terminate_and_wait)
    if not clean:
        logger.error(
            f"{name} descendants survived SIGKILL",
            extra={"context_id": context_id, "children": [c.pid for c in children]},
        )
    return clean


async def cleanup_process(
    proc: ProcessWrapper | None,
    name: str,
    context_id: str,
    term_timeout: float = constants.PROCESS_TERM_TIMEOUT_SECONDS,
    kill_timeout: float = constants.PROCESS_KILL_TIMEOUT_SECONDS,
) -> bool:
    """Terminate a process and all its descendants (SIGTERM -> SIGKILL).

    - Descendants are snapshotted first (they are reparented once the parent dies)
    - Always waits for exit after signalling so no zombie or orphan remains
    - ProcessLookupError means the process is already gone: success

    Args:
        proc: ProcessWrapper to stop (None safe - returns immediately)
        name: Process name for logging (e.g. "QEMU")
        context_id: Run identifier for logging
        term_timeout: Seconds to wait after SIGTERM before SIGKILL
        kill_timeout: Seconds to wait after SIGKILL before giving up

    Returns:
        True if the process tree is gone, False if anything survived
    """
    if proc is None:
        return True

    try:
        children = await proc.children()

        if proc.returncode is not None:
            logger.debug(
                f"{name} already exited",
                extra={"context_id": context_id, "returncode": proc.returncode},
            )
            return await _reap_descendants(children, name, context_id, kill_timeout)

        logger.debug(f"Sending SIGTERM to {name}", extra={"context_id": context_id, "pid": proc.pid})
        await proc.terminate()

        stopped = False
        try:
            await proc.wait_with_timeout(timeout=term_timeout)
            logger.debug(
                f"{name} stopped gracefully (SIGTERM)",
                extra={"context_id": context_id, "returncode": proc.returncode},
            )
            stopped = True
        except TimeoutError:
            logger.warning(
                f"{name} didn't respond to SIGTERM, force killing",
                extra={"context_id": context_id, "term_timeout": term_timeout},
            )

        if not stopped:
            await proc.kill()
            try:
                await proc.wait_with_timeout(timeout=kill_timeout)
                logger.warning(
                    f"{name} force killed (SIGKILL)",
                    extra={"context_id": context_id, "returncode": proc.returncode},
                )
            except TimeoutError:
                logger.error(
                    f"{name} didn't respond to SIGKILL within timeout",
                    extra={"context_id": context_id, "kill_timeout": kill_timeout, "pid": proc.pid},
                )
                return False

        return await _reap_descendants(children, name, context_id, kill_timeout)

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
    """Delete a file (FIFO, disk image). Missing files count as success.

    Args:
        file_path: Path to delete (None safe - returns immediately)
        context_id: Run identifier for logging
        description: Description for logging (e.g. "scratch disk", "console fifo")

    Returns:
        True if the file is gone, False if deletion failed
    """
    if file_path is None:
        return True

    try:
        await aiofiles.os.remove(file_path)
        logger.debug(
            f"{description} deleted",
            extra={"context_id": context_id, "path": str(file_path)},
        )
        return True

    except FileNotFoundError:
        return True

    except OSError as e:
        logger.error(
            f"{description} could not be deleted",
            extra={"context_id": context_id, "path": str(file_path), "error": str(e), "error_type": type(e).__name__},
        )
        return False


async def cleanup_directory(
    dir_path: Path | None,
    context_id: str,
    description: str = "directory",
) -> bool:
    """Recursively delete a directory. Missing directories count as success.

    Returns:
        True if the directory is gone, False if removal failed
    """
    if dir_path is None:
        return True

    try:
        await asyncio.to_thread(shutil.rmtree, dir_path)
        logger.debug(
            f"{description} removed",
            extra={"context_id": context_id, "path": str(dir_path)},
        )
        return True

    except FileNotFoundError:
        return True

    except OSError as e:
        logger.error(
            f"{description} could not be removed",
            extra={"context_id": context_id, "path": str(dir_path), "error": str(e), "error_type": type(e).__name__},
        )
        return False
