"""Resource cleanup utilities for execution lifecycle management.

Cleanup operations that log errors but never raise, so resource release
does not depend on the execution having succeeded.
"""

import asyncio
import shutil
from pathlib import Path

import aiofiles.os

from exec_broker._logging import get_logger
from exec_broker.constants import KILL_REAP_TIMEOUT_SECONDS
from exec_broker.platform_utils import ProcessWrapper

logger = get_logger(__name__)


async def cleanup_process(
    proc: ProcessWrapper | None,
    name: str,
    context_id: str,
    reap_timeout: float = KILL_REAP_TIMEOUT_SECONDS,
) -> bool:
    """Kill the process tree rooted at proc and reap it.

    Untrusted children get no SIGTERM grace period: the whole group is
    SIGKILLed. Safe to call on a process that already exited; the group is
    still signalled because orphaned descendants may outlive the root.

    Args:
        proc: ProcessWrapper to kill (None safe - returns immediately)
        name: Process name for logging (e.g., "compile", "run")
        context_id: Context for logging (execution id)
        reap_timeout: Seconds to wait for the root to be reaped

    Returns:
        True if the tree was cleaned, False if issues occurred
    """
    if proc is None:
        return True

    try:
        signalled = await proc.kill_tree()
        if proc.returncode is None:
            await proc.wait_with_timeout(timeout=reap_timeout)
        logger.debug(
            f"{name} process tree reaped",
            extra={"context_id": context_id, "pid": proc.pid, "returncode": proc.returncode, "signalled": signalled},
        )
        return True

    except TimeoutError:
        logger.error(
            f"{name} didn't exit after SIGKILL within timeout",
            extra={"context_id": context_id, "pid": proc.pid, "reap_timeout": reap_timeout},
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


async def cleanup_workspace(
    workspace: Path | None,
    context_id: str,
) -> bool:
    """Remove an execution's working directory recursively.

    Silently succeeds if the directory doesn't exist.

    Args:
        workspace: Directory to remove (None safe - returns immediately)
        context_id: Context for logging (execution id)

    Returns:
        True if the directory is gone, False if issues occurred
    """
    if workspace is None:
        return True

    try:
        if not await aiofiles.os.path.exists(workspace):
            return True
        await asyncio.to_thread(shutil.rmtree, workspace)
        logger.debug("Workspace removed", extra={"context_id": context_id, "path": str(workspace)})
        return True

    except FileNotFoundError:
        return True

    except OSError as e:
        logger.error(
            "Workspace removal error",
            extra={"context_id": context_id, "path": str(workspace), "error": str(e), "error_type": type(e).__name__},
        )
        return False

    except Exception as e:
        logger.error(
            "Workspace cleanup error",
            extra={
                "context_id": context_id,
                "path": str(workspace),
                "error": str(e),
                "error_type": type(e).__name__,
            },
            exc_info=True,
        )
        return False
