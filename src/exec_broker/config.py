"""Broker configuration for exec-broker.

BrokerConfig holds every tunable of the Scheduler and Sandbox: worker pool
size, queue bound, resource limits and workspace location. It is built once
at startup and passed explicitly; nothing reads ambient globals afterwards.

Example:
    ```python
    from exec_broker import BrokerConfig, Scheduler

    config = BrokerConfig(pool_size=8, queue_depth=64, memory_ceiling_mb=512)
    async with Scheduler(config) as scheduler:
        result = await scheduler.run("print('hi')", "python")
    ```
"""

from __future__ import annotations

import tempfile
from pathlib import Path
from typing import Literal, Self

from pydantic import BaseModel, ConfigDict, Field, field_validator, model_validator

from exec_broker import constants
from exec_broker.models import ExecutionLimits

StderrPolicy = Literal["strict", "advisory"]


class BrokerConfig(BaseModel):
    """Configuration for Scheduler and Sandbox.

    Attributes:
        pool_size: Maximum number of sandboxes running at once.
        queue_depth: Requests allowed to wait for a slot. 0 rejects as soon
            as every worker is busy.
        block_when_full: When the queue is full, wait up to
            admission_timeout_seconds for room instead of rejecting at once.
        admission_timeout_seconds: Bound on that wait.
        default_timeout_seconds: Wall clock used when the caller gives none.
        max_timeout_seconds: Server-enforced wall-clock maximum.
        compile_timeout_seconds: Sub-timeout for compile steps.
        memory_ceiling_mb: Per-execution memory ceiling.
        max_output_bytes: Per-stream capture limit.
        workspace_root: Parent directory of per-execution working areas.
            None uses the system temp directory.
        stderr_policy: "strict" treats stderr on exit 0 as a runtime error;
            "advisory" reports success and carries stderr as warnings.
        disabled_languages: Identifiers to reject even though registered.
        handle_retention: Completed handles kept for status() lookups.
        memory_poll_interval_seconds: Resident-set watchdog interval.
    """

    model_config = ConfigDict(
        frozen=True,  # Immutable after creation
        extra="forbid",  # Reject unknown fields
    )

    # Worker pool
    pool_size: int = Field(
        default=constants.DEFAULT_POOL_SIZE,
        ge=1,
        le=constants.MAX_POOL_SIZE,
        description="Maximum concurrently running sandboxes",
    )
    queue_depth: int = Field(
        default=constants.DEFAULT_QUEUE_DEPTH,
        ge=0,
        le=constants.MAX_QUEUE_DEPTH,
        description="Bounded wait queue depth (0 = reject when busy)",
    )
    block_when_full: bool = Field(
        default=False,
        description="Block submit() for queue room instead of rejecting",
    )
    admission_timeout_seconds: float = Field(
        default=constants.DEFAULT_ADMISSION_TIMEOUT_SECONDS,
        gt=0,
        description="Maximum wait for queue room when block_when_full is set",
    )

    # Limits
    default_timeout_seconds: float = Field(
        default=constants.DEFAULT_TIMEOUT_SECONDS,
        gt=0,
        description="Default wall-clock timeout",
    )
    max_timeout_seconds: float = Field(
        default=constants.MAX_TIMEOUT_SECONDS,
        gt=0,
        description="Server-enforced wall-clock maximum",
    )
    compile_timeout_seconds: float = Field(
        default=constants.DEFAULT_COMPILE_TIMEOUT_SECONDS,
        gt=0,
        description="Compile step sub-timeout",
    )
    memory_ceiling_mb: int = Field(
        default=constants.DEFAULT_MEMORY_CEILING_MB,
        ge=constants.MIN_MEMORY_CEILING_MB,
        le=constants.MAX_MEMORY_CEILING_MB,
        description="Per-execution memory ceiling in MB",
    )
    max_output_bytes: int = Field(
        default=constants.DEFAULT_MAX_OUTPUT_BYTES,
        ge=1,
        description="Per-stream output capture limit in bytes",
    )
    memory_poll_interval_seconds: float = Field(
        default=constants.MEMORY_POLL_INTERVAL_SECONDS,
        gt=0,
        description="Resident-set watchdog poll interval",
    )

    # Paths
    workspace_root: Path | None = Field(
        default=None,
        description="Parent directory for execution working areas (None = system temp)",
    )

    # Policy
    stderr_policy: StderrPolicy = Field(
        default="strict",
        description="How stderr on a zero exit is classified",
    )
    disabled_languages: frozenset[str] = Field(
        default=frozenset(),
        description="Registered languages to reject",
    )
    handle_retention: int = Field(
        default=constants.DEFAULT_HANDLE_RETENTION,
        ge=1,
        description="Completed handles retained for status lookups",
    )

    @field_validator("disabled_languages", mode="before")
    @classmethod
    def _normalize_languages(cls, value: object) -> object:
        if isinstance(value, str):
            value = [part for part in value.split(",") if part.strip()]
        if isinstance(value, (list, tuple, set, frozenset)):
            return frozenset(str(item).strip().lower() for item in value)
        return value

    @model_validator(mode="after")
    def _default_within_max(self) -> Self:
        if self.default_timeout_seconds > self.max_timeout_seconds:
            raise ValueError(
                f"default_timeout_seconds ({self.default_timeout_seconds}) "
                f"exceeds max_timeout_seconds ({self.max_timeout_seconds})"
            )
        return self

    @property
    def memory_ceiling_bytes(self) -> int:
        return self.memory_ceiling_mb * 1024 * 1024

    def get_workspace_root(self) -> Path:
        """Get the workspace root, falling back to the system temp directory.

        Returns:
            Existing directory under which per-execution workspaces are created
        """
        path = self.workspace_root if self.workspace_root is not None else Path(tempfile.gettempdir())
        path.mkdir(parents=True, exist_ok=True)
        return path

    def limits_for(self, timeout_seconds: float | None = None) -> ExecutionLimits:
        """Build limits for one execution, clamping caller input to server maxima.

        Args:
            timeout_seconds: Caller-requested wall clock (None = default)

        Returns:
            ExecutionLimits never exceeding the configured maxima
        """
        requested = timeout_seconds if timeout_seconds is not None else self.default_timeout_seconds
        wall_clock = min(requested, self.max_timeout_seconds)
        return ExecutionLimits(
            wall_clock_timeout_seconds=wall_clock,
            compile_timeout_seconds=self.compile_timeout_seconds,
            memory_ceiling_bytes=self.memory_ceiling_bytes,
            max_output_bytes=self.max_output_bytes,
        )
