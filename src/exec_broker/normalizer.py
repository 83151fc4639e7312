"""Result normalizer: raw process outcome → stable ExecutionResult.

The one place deciding what the caller sees. Precedence (first match wins):

1. infrastructure failure (spawn, workspace) → internal_error
2. cancellation requested                   → cancelled
3. wall-clock deadline hit                  → timeout
4. resident-set watchdog fired              → resource_exceeded
5. compile step failed                      → compile_error
6. resource signal or allocation failure    → resource_exceeded
7. other signal or non-zero exit            → runtime_error
8. zero exit with stderr                    → runtime_error (strict) / success + warnings (advisory)
9. otherwise                                → success
"""

from __future__ import annotations

import signal
from dataclasses import dataclass
from typing import Final

from exec_broker.config import StderrPolicy
from exec_broker.constants import MEMORY_EXHAUSTION_MARKERS
from exec_broker.models import ExecutionPhase, ExecutionResult, OutcomeKind
from exec_broker.subprocess_utils import CapturedOutput

# Signals the kernel uses to enforce rlimits. SIGKILL not sent by the
# broker itself means the OOM killer or the hard CPU limit.
RESOURCE_SIGNALS: Final[frozenset[int]] = frozenset(
    sig
    for sig in (
        getattr(signal, "SIGXCPU", None),
        getattr(signal, "SIGXFSZ", None),
        getattr(signal, "SIGKILL", None),
    )
    if sig is not None
)


@dataclass
class RawExecution:
    """What the sandbox observed for one execution step."""

    execution_id: str
    phase: ExecutionPhase
    stdout: CapturedOutput
    stderr: CapturedOutput
    returncode: int | None = None
    duration_ms: int = 0
    timed_out: bool = False
    cancelled: bool = False
    memory_exceeded: bool = False
    artifact_missing: bool = False
    infra_error: str | None = None
    timeout_seconds: float | None = None
    memory_ceiling_bytes: int | None = None
    warnings: str | None = None

    @property
    def signal(self) -> int | None:
        if self.returncode is not None and self.returncode < 0:
            return -self.returncode
        return None


class ResultNormalizer:
    """Classifies RawExecution records into ExecutionResult.

    Attributes:
        stderr_policy: "strict" or "advisory" handling of stderr on exit 0
    """

    def __init__(self, stderr_policy: StderrPolicy = "strict") -> None:
        self.stderr_policy = stderr_policy

    def normalize(self, raw: RawExecution) -> ExecutionResult:
        """Build the ExecutionResult for raw."""
        outcome = self._classify(raw)
        stdout = raw.stdout.text()
        stderr = raw.stderr.text()

        warnings = raw.warnings
        if outcome is OutcomeKind.SUCCESS and stderr and self.stderr_policy == "advisory":
            warnings = f"{warnings}\n{stderr}" if warnings else stderr

        # Exit status only exists when the process ended on its own
        killed_by_broker = outcome in (OutcomeKind.TIMEOUT, OutcomeKind.CANCELLED)
        exit_code = raw.returncode if raw.returncode is not None and raw.returncode >= 0 else None
        if killed_by_broker:
            exit_code = None

        return ExecutionResult(
            execution_id=raw.execution_id,
            outcome=outcome,
            stdout=stdout,
            stderr=stderr,
            stdout_truncated=raw.stdout.truncated,
            stderr_truncated=raw.stderr.truncated,
            exit_code=exit_code,
            signal=None if killed_by_broker else raw.signal,
            phase=raw.phase,
            duration_ms=raw.duration_ms,
            diagnostic=self._diagnostic(outcome, raw, stderr),
            warnings=warnings,
        )

    def internal_error(
        self,
        execution_id: str,
        message: str,
        *,
        phase: ExecutionPhase | None = None,
        duration_ms: int = 0,
    ) -> ExecutionResult:
        """Result for a failure that happened before or around the child process."""
        return ExecutionResult(
            execution_id=execution_id,
            outcome=OutcomeKind.INTERNAL_ERROR,
            phase=phase,
            duration_ms=duration_ms,
            diagnostic=message,
        )

    def cancelled_before_start(self, execution_id: str, *, duration_ms: int = 0) -> ExecutionResult:
        """Result for a request withdrawn while still queued."""
        return ExecutionResult(
            execution_id=execution_id,
            outcome=OutcomeKind.CANCELLED,
            duration_ms=duration_ms,
            diagnostic="Execution was cancelled before it started",
        )

    def _classify(self, raw: RawExecution) -> OutcomeKind:
        if raw.infra_error is not None:
            return OutcomeKind.INTERNAL_ERROR
        if raw.cancelled:
            return OutcomeKind.CANCELLED
        if raw.timed_out:
            return OutcomeKind.TIMEOUT
        if raw.memory_exceeded:
            return OutcomeKind.RESOURCE_EXCEEDED

        stderr_text = raw.stderr.text()
        failed = raw.returncode != 0

        if raw.phase is ExecutionPhase.COMPILE:
            if failed or raw.artifact_missing:
                return OutcomeKind.COMPILE_ERROR
            return OutcomeKind.SUCCESS

        if raw.signal is not None and raw.signal in RESOURCE_SIGNALS:
            return OutcomeKind.RESOURCE_EXCEEDED
        if failed and raw.memory_ceiling_bytes and _mentions_memory_exhaustion(stderr_text):
            return OutcomeKind.RESOURCE_EXCEEDED
        if failed:
            return OutcomeKind.RUNTIME_ERROR
        if stderr_text and self.stderr_policy == "strict":
            return OutcomeKind.RUNTIME_ERROR
        return OutcomeKind.SUCCESS

    @staticmethod
    def _diagnostic(outcome: OutcomeKind, raw: RawExecution, stderr: str) -> str | None:
        if outcome is OutcomeKind.SUCCESS:
            return None
        if outcome is OutcomeKind.INTERNAL_ERROR:
            return raw.infra_error
        if outcome is OutcomeKind.CANCELLED:
            return "Execution was cancelled"
        if outcome is OutcomeKind.TIMEOUT:
            step = "compilation" if raw.phase is ExecutionPhase.COMPILE else "execution"
            limit = f"{raw.timeout_seconds:g}s " if raw.timeout_seconds is not None else ""
            return f"The {step} exceeded the {limit}wall-clock timeout"
        if outcome is OutcomeKind.RESOURCE_EXCEEDED:
            if raw.memory_exceeded:
                ceiling = raw.memory_ceiling_bytes or 0
                return f"Memory usage exceeded the {ceiling // (1024 * 1024)}MB ceiling"
            if stderr:
                return stderr
            return f"Process was killed by signal {_signal_name(raw.signal)} (resource limit)"

        if stderr:
            return stderr
        if outcome is OutcomeKind.COMPILE_ERROR:
            if raw.artifact_missing and raw.returncode == 0:
                return "Compiler produced no executable"
            # Some compilers (javac) report on stdout
            stdout = raw.stdout.text()
            return stdout or f"Compiler exited with status {raw.returncode}"
        if raw.signal is not None:
            return f"Process was killed by signal {_signal_name(raw.signal)}"
        return f"Process exited with status {raw.returncode}"


def _mentions_memory_exhaustion(stderr: str) -> bool:
    return any(marker in stderr for marker in MEMORY_EXHAUSTION_MARKERS)


def _signal_name(signum: int | None) -> str:
    if signum is None:
        return "unknown"
    try:
        return signal.Signals(signum).name
    except ValueError:
        return str(signum)
