"""Data models for exec-broker."""

from enum import Enum

from pydantic import BaseModel, ConfigDict, Field

from exec_broker.constants import MAX_CODE_SIZE


class InvocationKind(str, Enum):
    """How a language is turned into a running program."""

    INTERPRETED = "interpreted"
    COMPILED = "compiled"
    MARKUP = "markup"


class OutcomeKind(str, Enum):
    """How an execution ended."""

    SUCCESS = "success"
    COMPILE_ERROR = "compile_error"
    RUNTIME_ERROR = "runtime_error"
    TIMEOUT = "timeout"
    RESOURCE_EXCEEDED = "resource_exceeded"
    CANCELLED = "cancelled"
    INTERNAL_ERROR = "internal_error"


class ExecutionState(str, Enum):
    """Lifecycle state of an ExecutionHandle."""

    QUEUED = "queued"
    RUNNING = "running"
    COMPLETED = "completed"
    TIMED_OUT = "timed_out"
    FAILED = "failed"
    CANCELLED = "cancelled"

    @property
    def is_terminal(self) -> bool:
        return self not in (ExecutionState.QUEUED, ExecutionState.RUNNING)


class ExecutionPhase(str, Enum):
    """Which toolchain step produced the result."""

    COMPILE = "compile"
    RUN = "run"


class ExecutionRequest(BaseModel):
    """One call to the broker. Owned by the Scheduler until completion."""

    model_config = ConfigDict(frozen=True)

    source: str = Field(max_length=MAX_CODE_SIZE, description="Program source text")
    language: str = Field(min_length=1, description="Language identifier (case-insensitive)")
    stdin: str | bytes | None = Field(default=None, description="Standard input, passed through opaquely")
    timeout_seconds: float | None = Field(
        default=None,
        gt=0,
        description="Requested wall-clock timeout (clamped to the server maximum)",
    )


class ExecutionLimits(BaseModel):
    """Resource limits for one sandboxed execution (server-enforced)."""

    model_config = ConfigDict(frozen=True)

    wall_clock_timeout_seconds: float = Field(gt=0)
    compile_timeout_seconds: float = Field(gt=0)
    memory_ceiling_bytes: int = Field(gt=0)
    max_output_bytes: int = Field(gt=0)


class ExecutionResult(BaseModel):
    """Stable result shape for every admitted execution. Immutable."""

    model_config = ConfigDict(frozen=True)

    execution_id: str = Field(description="UUID of the execution")
    outcome: OutcomeKind = Field(description="How the execution ended")
    stdout: str = Field(default="", description="Captured standard output (possibly truncated)")
    stderr: str = Field(default="", description="Captured standard error (possibly truncated)")
    stdout_truncated: bool = Field(default=False, description="stdout hit the output ceiling")
    stderr_truncated: bool = Field(default=False, description="stderr hit the output ceiling")
    exit_code: int | None = Field(default=None, description="Exit code (absent for timeout/signal termination)")
    signal: int | None = Field(default=None, description="Terminating signal number, if any")
    phase: ExecutionPhase | None = Field(default=None, description="Step that produced the result")
    duration_ms: int = Field(default=0, ge=0, description="Wall-clock duration in ms")
    diagnostic: str | None = Field(default=None, description="Best-effort explanation for non-success outcomes")
    warnings: str | None = Field(default=None, description="Compiler warnings or advisory stderr on success")

    @property
    def ok(self) -> bool:
        return self.outcome is OutcomeKind.SUCCESS
