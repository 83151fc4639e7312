"""Constants for exec-broker configuration and limits."""

from typing import Final

# ============================================================================
# Worker Pool and Admission
# ============================================================================

DEFAULT_POOL_SIZE: Final[int] = 4
"""Default number of concurrently running sandboxes."""

MAX_POOL_SIZE: Final[int] = 256
"""Upper bound for the worker pool size."""

DEFAULT_QUEUE_DEPTH: Final[int] = 32
"""Default number of requests allowed to wait for a worker slot."""

MAX_QUEUE_DEPTH: Final[int] = 10_000
"""Upper bound for the wait queue (the queue is always finite)."""

DEFAULT_ADMISSION_TIMEOUT_SECONDS: Final[float] = 5.0
"""How long submit() blocks for queue room when block_when_full is set."""

DEFAULT_HANDLE_RETENTION: Final[int] = 1024
"""Completed handles kept for status() lookups before LRU eviction."""

# ============================================================================
# Execution Timeouts
# ============================================================================

DEFAULT_TIMEOUT_SECONDS: Final[float] = 5.0
"""Default wall-clock timeout (matches the original service's 5000ms)."""

MAX_TIMEOUT_SECONDS: Final[float] = 60.0
"""Server-enforced wall-clock maximum, regardless of caller request."""

DEFAULT_COMPILE_TIMEOUT_SECONDS: Final[float] = 30.0
"""Sub-timeout for the compile step of compiled languages."""

RLIMIT_CPU_MARGIN_SECONDS: Final[int] = 1
"""CPU-time rlimit = wall clock + margin (backstop if the watchdog is starved)."""

KILL_REAP_TIMEOUT_SECONDS: Final[float] = 2.0
"""How long to wait for a SIGKILLed process to be reaped."""

STREAM_DRAIN_GRACE_SECONDS: Final[float] = 1.0
"""How long to wait for pipe readers after the process tree is gone."""

EXIT_POLL_INTERVAL_SECONDS: Final[float] = 0.02
"""How often the root process is checked for exit while descendants hold its pipes."""

EXECUTION_MARKER_ENV: Final[str] = "EXEC_BROKER_EXECUTION_ID"
"""Environment variable carrying the execution id into every child (finds escaped descendants)."""

# ============================================================================
# Memory and Output Limits
# ============================================================================

DEFAULT_MEMORY_CEILING_MB: Final[int] = 256
"""Default per-execution memory ceiling in MB."""

MIN_MEMORY_CEILING_MB: Final[int] = 16
"""Minimum configurable memory ceiling in MB."""

MAX_MEMORY_CEILING_MB: Final[int] = 8192
"""Maximum configurable memory ceiling in MB."""

MEMORY_POLL_INTERVAL_SECONDS: Final[float] = 0.05
"""Resident-set watchdog poll interval."""

DEFAULT_MAX_OUTPUT_BYTES: Final[int] = 1_000_000
"""Per-stream capture limit (stdout and stderr are capped independently)."""

MAX_FILE_SIZE_BYTES: Final[int] = 64 * 1024 * 1024
"""RLIMIT_FSIZE for children (bounds disk use inside the workspace)."""

READ_CHUNK_SIZE: Final[int] = 64 * 1024
"""Pipe read size (matches the Linux default pipe buffer)."""

# ============================================================================
# Input Limits
# ============================================================================

MAX_CODE_SIZE: Final[int] = 1024 * 1024  # 1MB
"""Maximum size in bytes for source code (original service's 1mb body limit)."""

MAX_STDIN_SIZE: Final[int] = 1024 * 1024  # 1MB
"""Maximum size in bytes for stdin."""

# ============================================================================
# Spawn Retry
# ============================================================================

SPAWN_MAX_RETRIES: Final[int] = 3
"""Attempts for spawning a child when the host reports EAGAIN."""

SPAWN_RETRY_MIN_SECONDS: Final[float] = 0.05
"""Minimum backoff between spawn retries."""

SPAWN_RETRY_MAX_SECONDS: Final[float] = 0.5
"""Maximum backoff between spawn retries."""

# ============================================================================
# Workspace
# ============================================================================

WORKSPACE_PREFIX: Final[str] = "exec-broker-"
"""Prefix of per-execution working directories."""

# ============================================================================
# Result Classification
# ============================================================================

# Markers printed by runtimes when an allocation hits the memory ceiling.
MEMORY_EXHAUSTION_MARKERS: Final[tuple[str, ...]] = (
    "MemoryError",
    "std::bad_alloc",
    "java.lang.OutOfMemoryError",
    "JavaScript heap out of memory",
    "Cannot allocate memory",
    "cannot allocate memory",
    "out of memory",
)
