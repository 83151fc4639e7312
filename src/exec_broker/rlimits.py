"""Per-process resource limits applied in the child before exec.

Runs between fork() and exec() via ``preexec_fn``: only async-signal-safe
work is allowed there, so no logging, no locks, no allocation-heavy code.
A limit the kernel refuses is skipped; the resident-set watchdog and the
wall-clock deadline in the parent still apply.
"""

from __future__ import annotations

import math
import resource
from collections.abc import Callable

from exec_broker.constants import MAX_FILE_SIZE_BYTES, RLIMIT_CPU_MARGIN_SECONDS
from exec_broker.models import ExecutionLimits


def _set(which: int, value: int) -> None:
    try:
        _soft, hard = resource.getrlimit(which)
        if hard != resource.RLIM_INFINITY:
            value = min(value, hard)
        resource.setrlimit(which, (value, value))
    except (ValueError, OSError):
        pass


def make_preexec(
    limits: ExecutionLimits,
    *,
    limit_address_space: bool,
    timeout_seconds: float | None = None,
) -> Callable[[], None]:
    """Build the preexec_fn applying limits in the child.

    Args:
        limits: Execution limits (memory ceiling is used for RLIMIT_AS)
        limit_address_space: Apply RLIMIT_AS (False for JVM/V8 runtimes)
        timeout_seconds: Wall clock of this step; CPU rlimit is derived from it

    Returns:
        Callable for preexec_fn
    """
    wall_clock = timeout_seconds if timeout_seconds is not None else limits.wall_clock_timeout_seconds
    cpu_seconds = math.ceil(wall_clock) + RLIMIT_CPU_MARGIN_SECONDS
    memory_bytes = limits.memory_ceiling_bytes

    def _apply() -> None:
        _set(resource.RLIMIT_CORE, 0)
        _set(resource.RLIMIT_CPU, cpu_seconds)
        _set(resource.RLIMIT_FSIZE, MAX_FILE_SIZE_BYTES)
        if limit_address_space:
            _set(resource.RLIMIT_AS, memory_bytes)

    return _apply
