"""Exception hierarchy for exec-broker.

All exceptions inherit from BrokerError.

Hierarchy:
    BrokerError (base)
    ├── InputValidationError (caller-bug marker base)
    │   ├── UnsupportedLanguageError   ← unknown, disabled or markup language
    │   └── CodeValidationError        ← oversized source
    ├── AdmissionRejectedError         ← worker pool and queue saturated
    ├── ExecutionNotFoundError         ← unknown execution id
    ├── SandboxInfrastructureError     ← host-side failure (becomes internal_error)
    │   ├── WorkspaceError             ← working area could not be created
    │   └── SpawnError                 ← child process could not be started
    └── BrokerStateError (fatal marker base)
        ├── InvalidStateTransitionError ← handle state machine violated
        └── SchedulerClosedError        ← submit after shutdown

Program-level failures (compile error, runtime error, timeout, resource
limit, cancellation) are never raised. They are reported as an
ExecutionResult outcome.
"""

from __future__ import annotations

from typing import Any


class BrokerError(Exception):
    """Base exception for all broker errors with structured context.

    Attributes:
        message: Human-readable error message
        context: Dictionary of structured error context for logging/debugging
    """

    def __init__(self, message: str, context: dict[str, Any] | None = None):
        super().__init__(message)
        self.message = message
        self.context = context or {}


# =============================================================================
# Caller errors
# =============================================================================


class InputValidationError(BrokerError):
    """Base for input validation errors (caller bugs, not sandbox failures).

    Raised before admission: no worker slot, workspace or process is consumed.
    """


class UnsupportedLanguageError(InputValidationError):
    """Language identifier is unknown, disabled, or not executable.

    Attributes:
        language: The identifier as supplied by the caller
    """

    def __init__(self, message: str, language: str, context: dict[str, Any] | None = None):
        ctx = context or {}
        ctx.setdefault("language", language)
        super().__init__(message, ctx)
        self.language = language


class CodeValidationError(InputValidationError):
    """Source code failed validation (size limit)."""


# =============================================================================
# Admission
# =============================================================================


class AdmissionRejectedError(BrokerError):
    """Worker pool and wait queue are saturated.

    Transient: the same request may be admitted once running executions
    drain. Callers should back off and retry.
    """


class ExecutionNotFoundError(BrokerError):
    """No execution with the given id is known to the scheduler.

    Either the id was never issued or its handle was evicted from the
    completed-handle retention window.
    """


# =============================================================================
# Sandbox infrastructure
# =============================================================================


class SandboxInfrastructureError(BrokerError):
    """Host-side failure preparing or starting an execution.

    Never escapes the Sandbox: it is folded into an ``internal_error``
    outcome by the Result Normalizer.
    """


class WorkspaceError(SandboxInfrastructureError):
    """Working area could not be created or populated."""


class SpawnError(SandboxInfrastructureError):
    """Child process could not be started.

    Attributes:
        transient: True when the failure was resource exhaustion (EAGAIN)
            and a retry might succeed.
    """

    def __init__(self, message: str, context: dict[str, Any] | None = None, *, transient: bool = False):
        super().__init__(message, context)
        self.transient = transient


# =============================================================================
# Fatal state errors
# =============================================================================


class BrokerStateError(BrokerError):
    """Internal state is corrupted or the broker is misused.

    These are not recovered into results: they indicate a bug and are
    allowed to crash loudly.
    """


class InvalidStateTransitionError(BrokerStateError):
    """An ExecutionHandle was asked to revisit or skip a lifecycle state."""


class SchedulerClosedError(BrokerStateError):
    """Scheduler is not started or has already been shut down."""
