"""Cross-platform OS detection and process-tree utilities.

Uses psutil's built-in OS detection constants for platform identification.
Provides PID-reuse safe process wrappers and the single "terminate
execution tree" capability used by both timeout and cancellation.

A process tree is found three ways before the kill:

- POSIX: every child is started in its own session, so its process group
  id equals its pid and ``killpg`` reaches every descendant that did not
  call setsid() itself.
- A psutil snapshot of the tree catches descendants that left the group
  while their parent is still alive.
- Every child inherits ``EXECUTION_MARKER_ENV``. A scan for that marker
  catches descendants that left the group *and* were orphaned (reparented
  to init, so no longer in the tree).

Other platforms: no process groups, only the snapshot and the marker scan.
"""

from __future__ import annotations

import asyncio
import contextlib
import os
import signal
from enum import Enum, auto
from functools import cache

import psutil

from exec_broker.constants import EXECUTION_MARKER_ENV, EXIT_POLL_INTERVAL_SECONDS


class HostOS(Enum):
    """Supported host operating systems."""

    LINUX = auto()
    """Linux (production environment)."""

    MACOS = auto()
    """macOS (development environment)."""

    UNKNOWN = auto()
    """Unsupported or unrecognized OS (no process-group semantics)."""


@cache
def detect_host_os() -> HostOS:
    """Detect current host operating system using psutil constants."""
    if psutil.LINUX:
        return HostOS.LINUX
    if psutil.MACOS:
        return HostOS.MACOS
    return HostOS.UNKNOWN


def supports_process_groups() -> bool:
    return detect_host_os() in (HostOS.LINUX, HostOS.MACOS) and hasattr(os, "killpg")


def snapshot_descendants(pid: int) -> list[psutil.Process]:
    """Return every live descendant of pid (empty if pid is gone)."""
    try:
        return psutil.Process(pid).children(recursive=True)
    except (psutil.NoSuchProcess, psutil.AccessDenied):
        return []


def find_marked_processes(marker: str) -> list[psutil.Process]:
    """Return live processes whose environment carries this execution marker.

    Processes owned by other users are unreadable and skipped.
    """
    own_pid = os.getpid()
    marked = []
    for proc in psutil.process_iter(["environ"], ad_value=None):
        environ = proc.info["environ"]
        if proc.pid != own_pid and environ and environ.get(EXECUTION_MARKER_ENV) == marker:
            marked.append(proc)
    return marked


def kill_process_tree(pid: int, marker: str | None = None) -> int:
    """SIGKILL pid, its process group, all descendants and marked orphans. Idempotent.

    Blocking (psutil walks /proc); call through asyncio.to_thread().

    Args:
        pid: Root pid, which is also the process group id on POSIX
        marker: Execution id exported to the tree via EXECUTION_MARKER_ENV

    Returns:
        Number of processes a kill signal was delivered to
    """
    stragglers = {proc.pid: proc for proc in snapshot_descendants(pid)}
    if marker is not None:
        stragglers.update((proc.pid, proc) for proc in find_marked_processes(marker))
    stragglers.pop(pid, None)
    delivered = 0

    if supports_process_groups():
        try:
            os.killpg(pid, signal.SIGKILL)
            delivered += 1
        except (ProcessLookupError, PermissionError):
            pass  # Group already empty
    else:
        with contextlib.suppress(psutil.NoSuchProcess, psutil.AccessDenied):
            psutil.Process(pid).kill()
            delivered += 1

    # Descendants that left the group (setsid, double fork)
    for proc in stragglers.values():
        try:
            proc.kill()
            delivered += 1
        except (psutil.NoSuchProcess, psutil.AccessDenied):
            pass

    if stragglers:
        psutil.wait_procs(list(stragglers.values()), timeout=0.5)
    return delivered


def tree_rss_bytes(pid: int) -> int | None:
    """Sum resident set size over pid and its descendants.

    Returns:
        RSS in bytes, or None if the root process is gone
    """
    try:
        root = psutil.Process(pid)
        processes = [root, *root.children(recursive=True)]
    except (psutil.NoSuchProcess, psutil.AccessDenied):
        return None

    total = 0
    for proc in processes:
        with contextlib.suppress(psutil.NoSuchProcess, psutil.AccessDenied, psutil.ZombieProcess):
            total += proc.memory_info().rss
    return total


class ProcessWrapper:
    """Child process handle with root-exit detection and tree termination.

    Wraps asyncio.subprocess.Process; ``marker`` is the execution id the
    child was started with, used to find escaped descendants.
    """

    def __init__(self, async_proc: asyncio.subprocess.Process, marker: str | None = None) -> None:
        self.async_proc = async_proc
        self.marker = marker

    @property
    def pid(self) -> int:
        """Process ID."""
        return self.async_proc.pid

    @property
    def returncode(self) -> int | None:
        """Process return code (None if still running)."""
        return self.async_proc.returncode

    @property
    def stdin(self):
        """Process stdin stream."""
        return self.async_proc.stdin

    @property
    def stdout(self):
        """Process stdout stream."""
        return self.async_proc.stdout

    @property
    def stderr(self):
        """Process stderr stream."""
        return self.async_proc.stderr

    async def wait_exit(self, poll_interval: float = EXIT_POLL_INTERVAL_SECONDS) -> int:
        """Wait for the root process to exit.

        asyncio's wait() also waits for every pipe to close, which never
        happens while a detached descendant keeps stdout open. The return
        code is published as soon as the root is reaped, so poll it.
        """
        waiter = asyncio.ensure_future(self.async_proc.wait())
        try:
            while self.async_proc.returncode is None:
                await asyncio.wait({waiter}, timeout=poll_interval)
            return self.async_proc.returncode
        finally:
            waiter.cancel()

    async def wait_with_timeout(self, timeout: float) -> int:
        """Wait for the root process to exit.

        Raises:
            TimeoutError: If process doesn't exit within timeout
        """
        return await asyncio.wait_for(self.wait_exit(), timeout=timeout)

    async def kill_tree(self) -> int:
        """Terminate the whole execution tree. Safe to call repeatedly.

        The group is signalled even when the root already exited, since
        orphaned grandchildren may still hold the pipes open.

        Returns:
            Number of processes signalled
        """
        return await asyncio.to_thread(kill_process_tree, self.pid, self.marker)
