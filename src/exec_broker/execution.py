"""Execution handle: identity, lifecycle state and result slot of one request.

State machine:

    queued ──► running ──► completed | timed_out | failed | cancelled
      │
      └──────► cancelled | failed

Transitions only move forward. Anything else raises
InvalidStateTransitionError, which is a bug, not a recoverable condition.
"""

from __future__ import annotations

import asyncio
import time
from types import MappingProxyType
from typing import TYPE_CHECKING, Final
from uuid import uuid4

from exec_broker._logging import get_logger
from exec_broker.exceptions import BrokerStateError, InvalidStateTransitionError
from exec_broker.models import ExecutionPhase, ExecutionResult, ExecutionState, OutcomeKind

if TYPE_CHECKING:
    from collections.abc import Mapping

    from exec_broker.models import ExecutionLimits, ExecutionRequest
    from exec_broker.registry import LanguageDescriptor

logger = get_logger(__name__)

VALID_STATE_TRANSITIONS: Final[Mapping[ExecutionState, frozenset[ExecutionState]]] = MappingProxyType(
    {
        ExecutionState.QUEUED: frozenset(
            {ExecutionState.RUNNING, ExecutionState.CANCELLED, ExecutionState.FAILED},
        ),
        ExecutionState.RUNNING: frozenset(
            {
                ExecutionState.COMPLETED,
                ExecutionState.TIMED_OUT,
                ExecutionState.FAILED,
                ExecutionState.CANCELLED,
            },
        ),
        ExecutionState.COMPLETED: frozenset(),
        ExecutionState.TIMED_OUT: frozenset(),
        ExecutionState.FAILED: frozenset(),
        ExecutionState.CANCELLED: frozenset(),
    }
)

TERMINAL_STATE_FOR_OUTCOME: Final[Mapping[OutcomeKind, ExecutionState]] = MappingProxyType(
    {
        OutcomeKind.SUCCESS: ExecutionState.COMPLETED,
        OutcomeKind.COMPILE_ERROR: ExecutionState.COMPLETED,
        OutcomeKind.RUNTIME_ERROR: ExecutionState.COMPLETED,
        OutcomeKind.TIMEOUT: ExecutionState.TIMED_OUT,
        OutcomeKind.RESOURCE_EXCEEDED: ExecutionState.FAILED,
        OutcomeKind.INTERNAL_ERROR: ExecutionState.FAILED,
        OutcomeKind.CANCELLED: ExecutionState.CANCELLED,
    }
)


class ExecutionHandle:
    """Scheduler-owned record of one admitted request.

    The sandbox reaches the handle only through the observer methods
    (process_started/process_exited), held by weak reference.

    Attributes:
        id: UUID string, unique per submission
        request: The originating request
        descriptor: Resolved language descriptor
        limits: Limits computed at submit time
        cancel_event: Set to ask the sandbox to terminate the running step
        created_at: time.monotonic() at submit
        started_at: time.monotonic() when a worker slot was granted
        finished_at: time.monotonic() when the result was delivered
    """

    def __init__(
        self,
        request: ExecutionRequest,
        descriptor: LanguageDescriptor,
        limits: ExecutionLimits,
        *,
        execution_id: str | None = None,
    ) -> None:
        self.id = execution_id or str(uuid4())
        self.request = request
        self.descriptor = descriptor
        self.limits = limits
        self.cancel_event = asyncio.Event()
        self.created_at = time.monotonic()
        self.started_at: float | None = None
        self.finished_at: float | None = None

        self._state = ExecutionState.QUEUED
        self._pid: int | None = None
        self._phase: ExecutionPhase | None = None
        self._result: asyncio.Future[ExecutionResult] = asyncio.get_running_loop().create_future()

    def __repr__(self) -> str:
        return f"ExecutionHandle(id={self.id!r}, language={self.descriptor.identifier!r}, state={self._state.value})"

    @property
    def state(self) -> ExecutionState:
        return self._state

    @property
    def pid(self) -> int | None:
        """Pid of the live child process, if any."""
        return self._pid

    @property
    def phase(self) -> ExecutionPhase | None:
        """Phase of the live (or last) child process."""
        return self._phase

    @property
    def done(self) -> bool:
        return self._result.done()

    def transition(self, new_state: ExecutionState) -> None:
        """Move to new_state, validated against VALID_STATE_TRANSITIONS.

        Raises:
            InvalidStateTransitionError: new_state is not reachable from the current state
        """
        allowed = VALID_STATE_TRANSITIONS.get(self._state, frozenset())
        if new_state not in allowed:
            raise InvalidStateTransitionError(
                f"Invalid state transition: {self._state.value} -> {new_state.value}",
                context={
                    "execution_id": self.id,
                    "current_state": self._state.value,
                    "target_state": new_state.value,
                    "allowed_transitions": sorted(s.value for s in allowed),
                },
            )
        old_state = self._state
        self._state = new_state
        if new_state is ExecutionState.RUNNING:
            self.started_at = time.monotonic()
        logger.debug(
            "Execution state transition",
            extra={"execution_id": self.id, "old_state": old_state.value, "new_state": new_state.value},
        )

    def complete(self, result: ExecutionResult) -> None:
        """Deliver the one and only result and enter the matching terminal state.

        Raises:
            InvalidStateTransitionError: A result was already delivered, or the
                outcome's terminal state is not reachable from the current state
        """
        if self._result.done():
            raise InvalidStateTransitionError(
                "Result already delivered",
                context={"execution_id": self.id, "state": self._state.value},
            )
        self.transition(TERMINAL_STATE_FOR_OUTCOME[result.outcome])
        self.finished_at = time.monotonic()
        self._result.set_result(result)

    async def result(self) -> ExecutionResult:
        """Wait for the result. Cancelling the waiter does not cancel the execution."""
        return await asyncio.shield(self._result)

    def process_started(self, pid: int, phase: ExecutionPhase) -> None:
        if self._pid is not None:
            raise BrokerStateError(
                "Second process started while one is still alive",
                context={"execution_id": self.id, "live_pid": self._pid, "new_pid": pid},
            )
        self._pid = pid
        self._phase = phase

    def process_exited(self, pid: int) -> None:
        if self._pid == pid:
            self._pid = None
