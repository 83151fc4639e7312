"""Execution sandbox: one isolated child process per execution.

Lifecycle of ``Sandbox.execute()``:

1. Fresh workspace (mkdtemp) + source file
2. Optional compile step; compile and run share the wall-clock budget
3. Run step with stdin piped in, rlimits applied in the child, and a new
   session so the whole tree shares one process group
4. Concurrent bounded capture of stdout/stderr
5. Wait for the first of: process exit, deadline, cancel event, memory
   watchdog. Anything but exit goes through the same tree kill
6. Classification by ResultNormalizer
7. Tree kill + reap + workspace removal in ``finally`` blocks

Host-side failures (workspace, spawn) become ``internal_error`` results;
they never propagate to the caller.
"""

from __future__ import annotations

import asyncio
import logging
import os
import time
import weakref
from pathlib import Path
from typing import TYPE_CHECKING, Protocol
from uuid import uuid4

from tenacity import (
    AsyncRetrying,
    before_sleep_log,
    retry_if_exception_type,
    stop_after_attempt,
    wait_random_exponential,
)

from exec_broker import constants
from exec_broker._logging import get_logger
from exec_broker.exceptions import SandboxInfrastructureError, SpawnError, UnsupportedLanguageError
from exec_broker.models import ExecutionLimits, ExecutionPhase, ExecutionResult, OutcomeKind
from exec_broker.normalizer import RawExecution, ResultNormalizer
from exec_broker.platform_utils import ProcessWrapper, tree_rss_bytes
from exec_broker.resource_cleanup import cleanup_process
from exec_broker.rlimits import make_preexec
from exec_broker.subprocess_utils import CapturedOutput, capture_stream, feed_stdin, log_task_exception
from exec_broker.workspace import ExecutionWorkspace

if TYPE_CHECKING:
    from collections.abc import Callable

    from exec_broker.config import BrokerConfig
    from exec_broker.registry import LanguageDescriptor

logger = get_logger(__name__)

# Host variables toolchains need to locate their runtimes
_PASSTHROUGH_ENV = ("JAVA_HOME", "KOTLIN_HOME", "GROOVY_HOME", "NODE_PATH", "SYSTEMROOT")


class ExecutionObserver(Protocol):
    """Receives process lifecycle reports from the sandbox.

    The sandbox keeps only a weak reference: it reports, it does not own.
    """

    def process_started(self, pid: int, phase: ExecutionPhase) -> None: ...

    def process_exited(self, pid: int) -> None: ...


class Sandbox:
    """Runs untrusted programs under bounded resources.

    Stateless between executions: every call owns its workspace and process
    tree, so concurrent calls share nothing.
    """

    def __init__(self, config: BrokerConfig, normalizer: ResultNormalizer | None = None) -> None:
        self._config = config
        self._normalizer = normalizer or ResultNormalizer(config.stderr_policy)
        self._workspace_root = config.get_workspace_root()
        self._poll_interval = config.memory_poll_interval_seconds

    @property
    def normalizer(self) -> ResultNormalizer:
        return self._normalizer

    async def execute(
        self,
        descriptor: LanguageDescriptor,
        source: str,
        stdin: str | bytes | None,
        limits: ExecutionLimits,
        *,
        execution_id: str | None = None,
        cancel_event: asyncio.Event | None = None,
        observer: ExecutionObserver | None = None,
    ) -> ExecutionResult:
        """Compile (if needed) and run source in an isolated child process.

        Args:
            descriptor: Language descriptor from the registry
            source: Program text
            stdin: Standard input; bytes are passed through unchanged
            limits: Server-enforced limits for this execution
            execution_id: Id used for workspace naming and logs (generated if None)
            cancel_event: When set, the running step is killed and the
                outcome is ``cancelled``
            observer: Receives process_started/process_exited (held weakly)

        Returns:
            ExecutionResult (never raises for program or host failures)

        Raises:
            UnsupportedLanguageError: descriptor is markup (never executed)
        """
        if descriptor.is_markup:
            raise UnsupportedLanguageError(
                f"Language is not executable: {descriptor.identifier}",
                language=descriptor.identifier,
            )

        execution_id = execution_id or str(uuid4())
        observer_ref = weakref.ref(observer) if observer is not None else None
        started = time.monotonic()
        deadline = started + limits.wall_clock_timeout_seconds

        if cancel_event is not None and cancel_event.is_set():
            return self._normalizer.cancelled_before_start(execution_id)

        if not source.strip() and not descriptor.allows_empty_source:
            return ExecutionResult(
                execution_id=execution_id,
                outcome=OutcomeKind.COMPILE_ERROR,
                phase=ExecutionPhase.COMPILE,
                diagnostic=f"Empty source is not a valid {descriptor.identifier} program",
            )

        payload = stdin.encode("utf-8") if isinstance(stdin, str) else (stdin or b"")

        try:
            async with ExecutionWorkspace(self._workspace_root, execution_id) as workspace:
                workdir = workspace.directory
                await workspace.write_source(descriptor.source_filename, source)
                warnings: str | None = None

                if descriptor.requires_compile:
                    raw = await self._run_step(
                        phase=ExecutionPhase.COMPILE,
                        argv=descriptor.render_compile(workdir),
                        workdir=workdir,
                        payload=b"",
                        timeout=min(limits.compile_timeout_seconds, limits.wall_clock_timeout_seconds),
                        limits=limits,
                        descriptor=descriptor,
                        execution_id=execution_id,
                        cancel_event=cancel_event,
                        observer_ref=observer_ref,
                    )
                    artifact = descriptor.artifact_path(workdir)
                    raw.artifact_missing = artifact is not None and not artifact.exists()
                    if _step_failed(raw):
                        return self._finish(raw, started)
                    warnings = raw.stderr.text() or raw.stdout.text() or None

                raw = await self._run_step(
                    phase=ExecutionPhase.RUN,
                    argv=descriptor.render_run(workdir),
                    workdir=workdir,
                    payload=payload,
                    timeout=max(deadline - time.monotonic(), 0.001),
                    limits=limits,
                    descriptor=descriptor,
                    execution_id=execution_id,
                    cancel_event=cancel_event,
                    observer_ref=observer_ref,
                )
                raw.warnings = warnings
                raw.timeout_seconds = limits.wall_clock_timeout_seconds
                return self._finish(raw, started)

        except SandboxInfrastructureError as e:
            logger.error(
                "Sandbox infrastructure failure",
                extra={"execution_id": execution_id, "error": e.message, "error_type": type(e).__name__, **e.context},
            )
            return self._normalizer.internal_error(execution_id, e.message, duration_ms=_elapsed_ms(started))

    def _finish(self, raw: RawExecution, started: float) -> ExecutionResult:
        raw.duration_ms = _elapsed_ms(started)
        result = self._normalizer.normalize(raw)
        logger.debug(
            "Sandbox step classified",
            extra={
                "execution_id": raw.execution_id,
                "phase": raw.phase.value,
                "outcome": result.outcome.value,
                "returncode": raw.returncode,
                "duration_ms": raw.duration_ms,
            },
        )
        return result

    async def _run_step(  # noqa: PLR0913
        self,
        *,
        phase: ExecutionPhase,
        argv: list[str],
        workdir: Path,
        payload: bytes,
        timeout: float,
        limits: ExecutionLimits,
        descriptor: LanguageDescriptor,
        execution_id: str,
        cancel_event: asyncio.Event | None,
        observer_ref: weakref.ref[ExecutionObserver] | None,
    ) -> RawExecution:
        """Spawn one child, supervise it, and always kill + reap its tree."""
        raw = RawExecution(
            execution_id=execution_id,
            phase=phase,
            stdout=CapturedOutput(limit=limits.max_output_bytes),
            stderr=CapturedOutput(limit=limits.max_output_bytes),
            timeout_seconds=timeout,
            memory_ceiling_bytes=limits.memory_ceiling_bytes,
        )

        if cancel_event is not None and cancel_event.is_set():
            raw.cancelled = True
            return raw

        preexec = make_preexec(limits, limit_address_space=descriptor.limit_address_space, timeout_seconds=timeout)
        try:
            proc = await self._spawn(argv, workdir, preexec, execution_id)
        except SpawnError as e:
            raw.infra_error = e.message
            logger.error(
                "Failed to start child process",
                extra={"execution_id": execution_id, "phase": phase.value, "argv0": argv[0], "error": e.message},
            )
            return raw

        logger.debug(
            "Child process started",
            extra={"execution_id": execution_id, "phase": phase.value, "pid": proc.pid, "timeout": timeout},
        )

        readers = [
            asyncio.create_task(capture_stream(proc.stdout, raw.stdout), name=f"{execution_id}-stdout"),
            asyncio.create_task(capture_stream(proc.stderr, raw.stderr), name=f"{execution_id}-stderr"),
            asyncio.create_task(feed_stdin(proc.stdin, payload, context_id=execution_id), name=f"{execution_id}-stdin"),
        ]
        exit_wait = asyncio.create_task(proc.wait_exit())
        watchdog = asyncio.create_task(self._watch_memory(proc, limits.memory_ceiling_bytes, execution_id))
        watchdog.add_done_callback(log_task_exception)
        cancel_wait = asyncio.create_task(cancel_event.wait()) if cancel_event is not None else None

        try:
            _notify(observer_ref, lambda obs: obs.process_started(proc.pid, phase))
            waiters: set[asyncio.Task] = {exit_wait, watchdog}
            if cancel_wait is not None:
                waiters.add(cancel_wait)
            await asyncio.wait(waiters, timeout=timeout, return_when=asyncio.FIRST_COMPLETED)

            if not exit_wait.done():
                if cancel_wait is not None and cancel_wait.done():
                    raw.cancelled = True
                elif _fired(watchdog):
                    raw.memory_exceeded = True
                else:
                    raw.timed_out = True
                logger.info(
                    "Terminating execution tree",
                    extra={
                        "execution_id": execution_id,
                        "phase": phase.value,
                        "pid": proc.pid,
                        "reason": "cancelled" if raw.cancelled else "memory" if raw.memory_exceeded else "timeout",
                    },
                )
                await proc.kill_tree()
        finally:
            for task in (watchdog, cancel_wait):
                if task is not None and not task.done():
                    task.cancel()
            await cleanup_process(proc, phase.value, execution_id)
            if not exit_wait.done():
                exit_wait.cancel()
            _, pending = await asyncio.wait(readers, timeout=constants.STREAM_DRAIN_GRACE_SECONDS)
            for task in pending:
                task.cancel()
            helpers = [watchdog, exit_wait] + ([cancel_wait] if cancel_wait else [])
            await asyncio.gather(*readers, *helpers, return_exceptions=True)
            _notify(observer_ref, lambda obs: obs.process_exited(proc.pid))

        raw.returncode = proc.returncode
        return raw

    async def _spawn(
        self,
        argv: list[str],
        workdir: Path,
        preexec: Callable[[], None],
        execution_id: str,
    ) -> ProcessWrapper:
        """Start the child in a new session, retrying transient EAGAIN.

        Raises:
            SpawnError: Toolchain missing, permission denied, or retries exhausted
        """
        try:
            async for attempt in AsyncRetrying(
                stop=stop_after_attempt(constants.SPAWN_MAX_RETRIES),
                wait=wait_random_exponential(
                    min=constants.SPAWN_RETRY_MIN_SECONDS,
                    max=constants.SPAWN_RETRY_MAX_SECONDS,
                ),
                # Only fork/exec resource exhaustion is worth retrying
                retry=retry_if_exception_type(BlockingIOError),
                before_sleep=before_sleep_log(logger, logging.WARNING),
                reraise=True,
            ):
                with attempt:
                    process = await asyncio.create_subprocess_exec(
                        *argv,
                        stdin=asyncio.subprocess.PIPE,
                        stdout=asyncio.subprocess.PIPE,
                        stderr=asyncio.subprocess.PIPE,
                        cwd=workdir,
                        env=_child_env(workdir, execution_id),
                        start_new_session=True,
                        preexec_fn=preexec,
                    )
                    return ProcessWrapper(process, marker=execution_id)
        except FileNotFoundError as e:
            raise SpawnError(
                f"Toolchain not available on this host: {argv[0]}",
                context={"execution_id": execution_id, "argv0": argv[0]},
            ) from e
        except BlockingIOError as e:
            raise SpawnError(
                f"Host resources exhausted, cannot start process: {e}",
                context={"execution_id": execution_id, "argv0": argv[0]},
                transient=True,
            ) from e
        except OSError as e:
            raise SpawnError(
                f"Cannot start process {argv[0]}: {e}",
                context={"execution_id": execution_id, "argv0": argv[0], "errno": e.errno},
            ) from e
        # Unreachable: AsyncRetrying either returns or raises
        raise AssertionError("Unreachable: AsyncRetrying exhausted without exception")

    async def _watch_memory(self, proc: ProcessWrapper, ceiling_bytes: int, execution_id: str) -> bool:
        """Poll the tree's resident set; return True once it exceeds the ceiling.

        Never returns False: a vanished process is the exit waiter's business.
        """
        while True:
            await asyncio.sleep(self._poll_interval)
            rss = await asyncio.to_thread(tree_rss_bytes, proc.pid)
            if rss is not None and rss > ceiling_bytes:
                logger.warning(
                    "Memory ceiling exceeded",
                    extra={
                        "execution_id": execution_id,
                        "pid": proc.pid,
                        "rss_bytes": rss,
                        "ceiling_bytes": ceiling_bytes,
                    },
                )
                return True


def _fired(watchdog: asyncio.Task[bool]) -> bool:
    return watchdog.done() and not watchdog.cancelled() and watchdog.exception() is None and watchdog.result()


def _step_failed(raw: RawExecution) -> bool:
    return (
        raw.infra_error is not None
        or raw.cancelled
        or raw.timed_out
        or raw.memory_exceeded
        or raw.returncode != 0
        or raw.artifact_missing
    )


def _child_env(workdir: Path, execution_id: str) -> dict[str, str]:
    env = {
        constants.EXECUTION_MARKER_ENV: execution_id,
        "PATH": os.environ.get("PATH", os.defpath),
        "HOME": str(workdir),
        "TMPDIR": str(workdir),
        "LANG": "C.UTF-8",
        "PYTHONDONTWRITEBYTECODE": "1",
    }
    for name in _PASSTHROUGH_ENV:
        if name in os.environ:
            env[name] = os.environ[name]
    return env


def _notify(
    observer_ref: weakref.ref[ExecutionObserver] | None,
    report: Callable[[ExecutionObserver], None],
) -> None:
    observer = observer_ref() if observer_ref is not None else None
    if observer is not None:
        report(observer)


def _elapsed_ms(started: float) -> int:
    return int((time.monotonic() - started) * 1000)
