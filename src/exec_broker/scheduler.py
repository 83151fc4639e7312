"""Execution scheduler: bounded worker pool in front of the sandbox.

Every submission is resolved against the registry first (unknown languages
consume nothing), then asks the admission controller for a worker slot.
Each admitted request gets one driver task that waits for its slot, runs the
sandbox, delivers exactly one result and releases the slot.

Example:
    ```python
    async with Scheduler(BrokerConfig(pool_size=2)) as scheduler:
        handle = await scheduler.submit(ExecutionRequest(source="print(1)", language="python"))
        result = await handle.result()
    ```
"""

from __future__ import annotations

import asyncio
import time
from collections import OrderedDict
from typing import TYPE_CHECKING, Self

from exec_broker._logging import get_logger
from exec_broker.admission import AdmissionSnapshot, SlotAdmissionController, SlotReservation
from exec_broker.config import BrokerConfig
from exec_broker.constants import MAX_CODE_SIZE, MAX_STDIN_SIZE
from exec_broker.exceptions import (
    BrokerStateError,
    CodeValidationError,
    ExecutionNotFoundError,
    InputValidationError,
    SchedulerClosedError,
    UnsupportedLanguageError,
)
from exec_broker.execution import ExecutionHandle
from exec_broker.models import ExecutionRequest, ExecutionResult, ExecutionState
from exec_broker.normalizer import ResultNormalizer
from exec_broker.registry import RunnerRegistry
from exec_broker.sandbox import Sandbox
from exec_broker.subprocess_utils import log_task_exception

if TYPE_CHECKING:
    from types import TracebackType

logger = get_logger(__name__)


class Scheduler:
    """Admits, queues, runs and tracks executions.

    Attributes:
        config: Immutable broker configuration
        registry: Language registry used to resolve requests
    """

    def __init__(
        self,
        config: BrokerConfig | None = None,
        *,
        registry: RunnerRegistry | None = None,
        sandbox: Sandbox | None = None,
    ) -> None:
        self.config = config or BrokerConfig()
        self.registry = registry or RunnerRegistry(disabled=self.config.disabled_languages)
        self._sandbox = sandbox
        self._normalizer = ResultNormalizer(self.config.stderr_policy)
        self._admission = SlotAdmissionController(self.config.pool_size, self.config.queue_depth)

        # Live handles (queued or running) and a bounded LRU of finished ones
        self._live: dict[str, ExecutionHandle] = {}
        self._finished: OrderedDict[str, ExecutionHandle] = OrderedDict()
        self._reservations: dict[str, SlotReservation] = {}
        self._tasks: set[asyncio.Task[None]] = set()

        self._started = False
        self._closed = False

    # -------------------------------------------------------------------------
    # Lifecycle
    # -------------------------------------------------------------------------

    async def start(self) -> None:
        """Prepare the sandbox. Idempotent."""
        if self._started:
            return
        if self._closed:
            raise SchedulerClosedError("Scheduler was shut down and cannot be restarted")
        if self._sandbox is None:
            self._sandbox = Sandbox(self.config, self._normalizer)
        self._started = True
        logger.info(
            "Scheduler started",
            extra={
                "pool_size": self.config.pool_size,
                "queue_depth": self.config.queue_depth,
                "languages": self.registry.identifiers(),
            },
        )

    async def shutdown(self) -> None:
        """Cancel everything queued or running and wait for their results.

        Idempotent: safe to call multiple times.
        """
        if self._closed:
            return
        self._closed = True

        pending = list(self._live)
        if pending:
            logger.info("Cancelling outstanding executions", extra={"count": len(pending)})
        for execution_id in pending:
            self.cancel(execution_id)

        if self._tasks:
            await asyncio.gather(*self._tasks, return_exceptions=True)
        logger.info("Scheduler stopped", extra={"finished_handles": len(self._finished)})

    async def __aenter__(self) -> Self:
        await self.start()
        return self

    async def __aexit__(
        self,
        exc_type: type[BaseException] | None,
        exc_val: BaseException | None,
        exc_tb: TracebackType | None,
    ) -> None:
        await self.shutdown()

    # -------------------------------------------------------------------------
    # Public API
    # -------------------------------------------------------------------------

    async def submit(self, request: ExecutionRequest) -> ExecutionHandle:
        """Admit request and return its handle.

        Raises:
            UnsupportedLanguageError: Unknown, disabled or markup language
            CodeValidationError: Source over the size limit
            InputValidationError: stdin over the size limit
            AdmissionRejectedError: Worker pool and queue saturated
            SchedulerClosedError: Scheduler not started or already shut down
        """
        if not self._started or self._closed:
            raise SchedulerClosedError("Scheduler is not running")

        descriptor = self.registry.resolve(request.language)
        if descriptor.is_markup:
            raise UnsupportedLanguageError(
                f"Language is not executable: {descriptor.identifier}",
                language=request.language,
            )
        source_size = _utf8_size(request.source)
        if source_size is None:
            raise CodeValidationError(
                "Source is not valid UTF-8 text",
                context={"language": descriptor.identifier},
            )
        if source_size > MAX_CODE_SIZE:
            raise CodeValidationError(
                f"Source exceeds {MAX_CODE_SIZE} bytes",
                context={"language": descriptor.identifier, "source_size": source_size},
            )
        stdin_size = _utf8_size(request.stdin) if isinstance(request.stdin, str) else len(request.stdin or b"")
        if stdin_size is None:
            raise InputValidationError(
                "stdin is not valid UTF-8 text",
                context={"language": descriptor.identifier},
            )
        if stdin_size > MAX_STDIN_SIZE:
            raise InputValidationError(
                f"stdin exceeds {MAX_STDIN_SIZE} bytes",
                context={"language": descriptor.identifier, "stdin_size": stdin_size},
            )

        handle = ExecutionHandle(request, descriptor, self.config.limits_for(request.timeout_seconds))
        if self.config.block_when_full:
            reservation = await self._admission.reserve_waiting(handle.id, self.config.admission_timeout_seconds)
        else:
            reservation = self._admission.reserve(handle.id)

        # Shutdown may have started while we waited for queue room
        if self._closed:
            self._admission.withdraw(reservation)
            self._admission.release(reservation)
            raise SchedulerClosedError("Scheduler shut down during admission")

        self._live[handle.id] = handle
        self._reservations[handle.id] = reservation
        task = asyncio.create_task(self._drive(handle, reservation), name=f"execution-{handle.id}")
        self._tasks.add(task)
        task.add_done_callback(self._tasks.discard)
        task.add_done_callback(log_task_exception)

        logger.info(
            "Execution admitted",
            extra={
                "execution_id": handle.id,
                "language": descriptor.identifier,
                "queued": not reservation.granted.done(),
                "timeout": handle.limits.wall_clock_timeout_seconds,
            },
        )
        return handle

    def cancel(self, execution_id: str) -> bool:
        """Cancel a queued or running execution.

        Returns:
            True if a cancellation was initiated, False for terminal or unknown ids
        """
        handle = self._live.get(execution_id)
        if handle is None or handle.state.is_terminal:
            return False

        if handle.state is ExecutionState.QUEUED:
            reservation = self._reservations.get(execution_id)
            if reservation is not None and self._admission.withdraw(reservation):
                self._finish(
                    handle,
                    self._normalizer.cancelled_before_start(handle.id, duration_ms=_elapsed_ms(handle)),
                )
                logger.info("Queued execution cancelled", extra={"execution_id": execution_id})
                return True

        # Running, or slot granted but driver not yet scheduled
        handle.cancel_event.set()
        logger.info(
            "Cancellation requested",
            extra={"execution_id": execution_id, "state": handle.state.value, "pid": handle.pid},
        )
        return True

    def status(self, execution_id: str) -> ExecutionState:
        """Current state of an execution.

        Raises:
            ExecutionNotFoundError: Unknown id, or evicted from the retention window
        """
        return self._get_handle(execution_id).state

    def get(self, execution_id: str) -> ExecutionHandle:
        """Handle for an execution.

        Raises:
            ExecutionNotFoundError: Unknown id, or evicted from the retention window
        """
        return self._get_handle(execution_id)

    async def wait(self, execution_id: str) -> ExecutionResult:
        """Wait for an execution's result.

        Raises:
            ExecutionNotFoundError: Unknown id, or evicted from the retention window
        """
        return await self._get_handle(execution_id).result()

    async def run(
        self,
        source: str,
        language: str,
        stdin: str | bytes | None = None,
        timeout_seconds: float | None = None,
    ) -> ExecutionResult:
        """Submit and wait. Cancelling the caller cancels the execution.

        Raises:
            UnsupportedLanguageError: Unknown, disabled or markup language
            AdmissionRejectedError: Worker pool and queue saturated
        """
        request = ExecutionRequest(source=source, language=language, stdin=stdin, timeout_seconds=timeout_seconds)
        handle = await self.submit(request)
        try:
            return await handle.result()
        except asyncio.CancelledError:
            self.cancel(handle.id)
            raise

    def snapshot(self) -> AdmissionSnapshot:
        """Point-in-time view of running and queued executions."""
        return self._admission.snapshot()

    # -------------------------------------------------------------------------
    # Internal helpers
    # -------------------------------------------------------------------------

    async def _drive(self, handle: ExecutionHandle, reservation: SlotReservation) -> None:
        """Wait for a slot, run the sandbox, deliver exactly one result."""
        if not await reservation.granted:
            # Withdrawn while queued; cancel() already delivered the result
            return

        try:
            handle.transition(ExecutionState.RUNNING)
            sandbox = self._require_sandbox()
            try:
                result = await sandbox.execute(
                    handle.descriptor,
                    handle.request.source,
                    handle.request.stdin,
                    handle.limits,
                    execution_id=handle.id,
                    cancel_event=handle.cancel_event,
                    observer=handle,
                )
            except BrokerStateError:
                self._finish(
                    handle,
                    self._normalizer.internal_error(handle.id, "Broker state corrupted", duration_ms=_elapsed_ms(handle)),
                )
                raise
            except Exception as e:
                logger.error(
                    "Unexpected sandbox failure",
                    extra={"execution_id": handle.id, "error": str(e), "error_type": type(e).__name__},
                    exc_info=True,
                )
                result = self._normalizer.internal_error(
                    handle.id, f"Unexpected sandbox failure: {type(e).__name__}", duration_ms=_elapsed_ms(handle)
                )
            self._finish(handle, result)
        finally:
            self._admission.release(reservation)
            self._reservations.pop(handle.id, None)

    def _finish(self, handle: ExecutionHandle, result: ExecutionResult) -> None:
        """Deliver result and move the handle to the retention window."""
        try:
            handle.complete(result)
        finally:
            self._live.pop(handle.id, None)
            self._reservations.pop(handle.id, None)
            self._finished[handle.id] = handle
            while len(self._finished) > self.config.handle_retention:
                self._finished.popitem(last=False)

        logger.info(
            "Execution finished",
            extra={
                "execution_id": handle.id,
                "language": handle.descriptor.identifier,
                "outcome": result.outcome.value,
                "state": handle.state.value,
                "duration_ms": result.duration_ms,
                "stdout_truncated": result.stdout_truncated,
                "stderr_truncated": result.stderr_truncated,
            },
        )

    def _get_handle(self, execution_id: str) -> ExecutionHandle:
        handle = self._live.get(execution_id)
        if handle is not None:
            return handle
        handle = self._finished.get(execution_id)
        if handle is None:
            raise ExecutionNotFoundError(
                f"Unknown execution: {execution_id}",
                context={"execution_id": execution_id},
            )
        self._finished.move_to_end(execution_id)
        return handle

    def _require_sandbox(self) -> Sandbox:
        if self._sandbox is None:
            raise SchedulerClosedError("Scheduler is not started")
        return self._sandbox


def _elapsed_ms(handle: ExecutionHandle) -> int:
    return int((time.monotonic() - handle.created_at) * 1000)


def _utf8_size(text: str) -> int | None:
    """Encoded size of text, or None if it holds lone surrogates."""
    try:
        return len(text.encode("utf-8"))
    except UnicodeEncodeError:
        return None
