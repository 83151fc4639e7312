"""Tests for Scheduler admission, ordering, cancellation and tracking.

Most tests use FakeSandbox to control when executions finish; the last
section drives the real sandbox end to end.
"""

import asyncio
from contextlib import asynccontextmanager
from pathlib import Path

import pytest

from exec_broker.config import BrokerConfig
from exec_broker.constants import MAX_CODE_SIZE, MAX_STDIN_SIZE
from exec_broker.exceptions import (
    AdmissionRejectedError,
    CodeValidationError,
    ExecutionNotFoundError,
    InputValidationError,
    InvalidStateTransitionError,
    SchedulerClosedError,
    UnsupportedLanguageError,
)
from exec_broker.models import ExecutionRequest, ExecutionState, OutcomeKind
from exec_broker.scheduler import Scheduler
from tests.conftest import FakeSandbox, make_registry, settle, skip_unless_posix


def _request(label: str = "job", language: str = "python", **kwargs) -> ExecutionRequest:
    return ExecutionRequest(source=label, language=language, **kwargs)


@asynccontextmanager
async def _scheduler(sandbox: FakeSandbox, **config):
    async with Scheduler(BrokerConfig(**config), registry=make_registry(), sandbox=sandbox) as scheduler:
        yield scheduler


# ============================================================================
# Pool bound and ordering
# ============================================================================


class TestAdmission:
    async def test_pool_size_bounds_concurrency(self, fake_sandbox: FakeSandbox) -> None:
        async with _scheduler(fake_sandbox, pool_size=2, queue_depth=10) as scheduler:
            handles = [await scheduler.submit(_request(f"job-{i}")) for i in range(6)]
            await settle()

            assert fake_sandbox.running == 2
            assert [h.state for h in handles].count(ExecutionState.RUNNING) == 2
            assert [h.state for h in handles].count(ExecutionState.QUEUED) == 4
            assert scheduler.snapshot().queued == 4

            fake_sandbox.release.set()
            results = await asyncio.gather(*(h.result() for h in handles))

        assert fake_sandbox.max_running == 2
        assert all(r.outcome is OutcomeKind.SUCCESS for r in results)

    async def test_queued_requests_start_in_fifo_order(self, fake_sandbox: FakeSandbox) -> None:
        async with _scheduler(fake_sandbox, pool_size=1, queue_depth=10) as scheduler:
            labels = [f"job-{i}" for i in range(5)]
            handles = [await scheduler.submit(_request(label)) for label in labels]
            fake_sandbox.release.set()
            await asyncio.gather(*(h.result() for h in handles))

        assert fake_sandbox.started == labels

    async def test_rejects_when_pool_and_queue_full(self, fake_sandbox: FakeSandbox) -> None:
        async with _scheduler(fake_sandbox, pool_size=1, queue_depth=1) as scheduler:
            await scheduler.submit(_request("a"))
            await scheduler.submit(_request("b"))
            with pytest.raises(AdmissionRejectedError):
                await scheduler.submit(_request("c"))
            await settle()
            assert fake_sandbox.started == ["a"]
            fake_sandbox.release.set()

    async def test_block_when_full_times_out(self, fake_sandbox: FakeSandbox) -> None:
        async with _scheduler(
            fake_sandbox, pool_size=1, queue_depth=0, block_when_full=True, admission_timeout_seconds=0.1
        ) as scheduler:
            await scheduler.submit(_request("a"))
            with pytest.raises(AdmissionRejectedError, match="Admission timeout"):
                await scheduler.submit(_request("b"))
            fake_sandbox.release.set()

    async def test_block_when_full_admits_once_slot_frees(self, fake_sandbox: FakeSandbox) -> None:
        async with _scheduler(
            fake_sandbox, pool_size=1, queue_depth=0, block_when_full=True, admission_timeout_seconds=5
        ) as scheduler:
            first = await scheduler.submit(_request("a"))
            pending = asyncio.create_task(scheduler.submit(_request("b")))
            await settle()
            assert not pending.done()

            fake_sandbox.release.set()
            await first.result()
            second = await asyncio.wait_for(pending, timeout=2)
            assert (await second.result()).stdout == "b"


# ============================================================================
# Validation before admission
# ============================================================================


class TestValidation:
    async def test_unknown_language_consumes_nothing(self, fake_sandbox: FakeSandbox) -> None:
        async with _scheduler(fake_sandbox) as scheduler:
            with pytest.raises(UnsupportedLanguageError):
                await scheduler.submit(_request(language="cobol"))
            assert scheduler.snapshot().running == 0
            assert scheduler.snapshot().queued == 0
            assert fake_sandbox.started == []

    async def test_markup_is_rejected(self, fake_sandbox: FakeSandbox) -> None:
        async with _scheduler(fake_sandbox) as scheduler:
            with pytest.raises(UnsupportedLanguageError, match="not executable"):
                await scheduler.submit(_request("<p>hi</p>", language="html"))

    async def test_disabled_language_is_rejected(self, fake_sandbox: FakeSandbox) -> None:
        scheduler = Scheduler(BrokerConfig(), registry=make_registry(disabled=("python",)), sandbox=fake_sandbox)
        async with scheduler:
            with pytest.raises(UnsupportedLanguageError):
                await scheduler.submit(_request())

    async def test_multibyte_source_over_byte_limit(self, fake_sandbox: FakeSandbox) -> None:
        source = "é" * (MAX_CODE_SIZE // 2 + 1)
        async with _scheduler(fake_sandbox) as scheduler:
            with pytest.raises(CodeValidationError):
                await scheduler.submit(_request(source))

    async def test_stdin_over_limit(self, fake_sandbox: FakeSandbox) -> None:
        async with _scheduler(fake_sandbox) as scheduler:
            with pytest.raises(InputValidationError, match="stdin"):
                await scheduler.submit(_request(stdin=b"x" * (MAX_STDIN_SIZE + 1)))

    async def test_multibyte_stdin_over_byte_limit(self, fake_sandbox: FakeSandbox) -> None:
        stdin = "\u00e9" * (MAX_STDIN_SIZE // 2 + 1)
        async with _scheduler(fake_sandbox) as scheduler:
            with pytest.raises(InputValidationError, match="stdin exceeds"):
                await scheduler.submit(_request(stdin=stdin))

    async def test_lone_surrogate_in_source_is_rejected(self, fake_sandbox: FakeSandbox) -> None:
        request = ExecutionRequest.model_construct(source="print(1)\ud800", language="python", stdin=None)
        async with _scheduler(fake_sandbox) as scheduler:
            with pytest.raises(CodeValidationError, match="not valid UTF-8"):
                await scheduler.submit(request)

    async def test_lone_surrogate_in_stdin_is_rejected(self, fake_sandbox: FakeSandbox) -> None:
        request = ExecutionRequest.model_construct(source="print(1)", language="python", stdin="\udfff")
        async with _scheduler(fake_sandbox) as scheduler:
            with pytest.raises(InputValidationError, match="not valid UTF-8"):
                await scheduler.submit(request)

    async def test_timeout_is_clamped(self, fake_sandbox: FakeSandbox) -> None:
        async with _scheduler(fake_sandbox, max_timeout_seconds=10) as scheduler:
            handle = await scheduler.submit(_request(timeout_seconds=3600))
            assert handle.limits.wall_clock_timeout_seconds == 10
            fake_sandbox.release.set()

    async def test_submit_before_start_raises(self, fake_sandbox: FakeSandbox) -> None:
        scheduler = Scheduler(BrokerConfig(), registry=make_registry(), sandbox=fake_sandbox)
        with pytest.raises(SchedulerClosedError):
            await scheduler.submit(_request())


# ============================================================================
# Cancellation
# ============================================================================


class TestCancel:
    async def test_cancel_queued_never_starts(self, fake_sandbox: FakeSandbox) -> None:
        async with _scheduler(fake_sandbox, pool_size=1, queue_depth=5) as scheduler:
            running = await scheduler.submit(_request("a"))
            queued = await scheduler.submit(_request("b"))
            await settle()

            assert scheduler.cancel(queued.id) is True
            result = await queued.result()
            assert result.outcome is OutcomeKind.CANCELLED
            assert result.phase is None
            assert queued.state is ExecutionState.CANCELLED

            fake_sandbox.release.set()
            await running.result()

        assert fake_sandbox.started == ["a"]

    async def test_cancel_running(self, fake_sandbox: FakeSandbox) -> None:
        async with _scheduler(fake_sandbox) as scheduler:
            handle = await scheduler.submit(_request())
            await settle()
            assert handle.state is ExecutionState.RUNNING

            assert scheduler.cancel(handle.id) is True
            result = await handle.result()
            assert result.outcome is OutcomeKind.CANCELLED
            assert handle.state is ExecutionState.CANCELLED
            assert scheduler.snapshot().running == 0

    async def test_cancel_completed_is_noop(self, fake_sandbox: FakeSandbox) -> None:
        fake_sandbox.release.set()
        async with _scheduler(fake_sandbox) as scheduler:
            handle = await scheduler.submit(_request())
            result = await handle.result()

            assert scheduler.cancel(handle.id) is False
            assert handle.state is ExecutionState.COMPLETED
            assert await handle.result() is result

    async def test_cancel_unknown_is_noop(self, fake_sandbox: FakeSandbox) -> None:
        async with _scheduler(fake_sandbox) as scheduler:
            assert scheduler.cancel("no-such-id") is False

    async def test_cancelled_run_caller_cancels_execution(self, fake_sandbox: FakeSandbox) -> None:
        async with _scheduler(fake_sandbox) as scheduler:
            caller = asyncio.create_task(scheduler.run("job", "python"))
            await settle()
            caller.cancel()
            with pytest.raises(asyncio.CancelledError):
                await caller
            await settle(30)
            assert scheduler.snapshot().running == 0

    async def test_shutdown_cancels_outstanding(self, fake_sandbox: FakeSandbox) -> None:
        scheduler = Scheduler(BrokerConfig(pool_size=1, queue_depth=3), registry=make_registry(), sandbox=fake_sandbox)
        await scheduler.start()
        handles = [await scheduler.submit(_request(f"job-{i}")) for i in range(3)]
        await settle()

        await scheduler.shutdown()

        assert all(h.done for h in handles)
        assert all(h.state is ExecutionState.CANCELLED for h in handles)
        with pytest.raises(SchedulerClosedError):
            await scheduler.submit(_request())
        await scheduler.shutdown()


# ============================================================================
# Tracking and failures
# ============================================================================


class TestTracking:
    async def test_status_and_wait(self, fake_sandbox: FakeSandbox) -> None:
        async with _scheduler(fake_sandbox) as scheduler:
            handle = await scheduler.submit(_request("tracked"))
            await settle()
            assert scheduler.status(handle.id) is ExecutionState.RUNNING
            assert scheduler.get(handle.id) is handle

            fake_sandbox.release.set()
            result = await scheduler.wait(handle.id)
            assert result.stdout == "tracked"
            assert scheduler.status(handle.id) is ExecutionState.COMPLETED

    async def test_unknown_id_not_found(self, fake_sandbox: FakeSandbox) -> None:
        async with _scheduler(fake_sandbox) as scheduler:
            with pytest.raises(ExecutionNotFoundError):
                scheduler.status("no-such-id")
            with pytest.raises(ExecutionNotFoundError):
                await scheduler.wait("no-such-id")

    async def test_finished_handles_are_evicted_oldest_first(self, fake_sandbox: FakeSandbox) -> None:
        fake_sandbox.release.set()
        async with _scheduler(fake_sandbox, handle_retention=2) as scheduler:
            handles = []
            for i in range(3):
                handle = await scheduler.submit(_request(f"job-{i}"))
                await handle.result()
                handles.append(handle)

            with pytest.raises(ExecutionNotFoundError):
                scheduler.status(handles[0].id)
            assert scheduler.status(handles[1].id) is ExecutionState.COMPLETED
            assert scheduler.status(handles[2].id) is ExecutionState.COMPLETED

    async def test_sandbox_crash_becomes_internal_error(self) -> None:
        sandbox = FakeSandbox(fail_with=RuntimeError("boom"))
        async with _scheduler(sandbox, pool_size=1, queue_depth=1) as scheduler:
            handle = await scheduler.submit(_request())
            result = await handle.result()

            assert result.outcome is OutcomeKind.INTERNAL_ERROR
            assert "RuntimeError" in (result.diagnostic or "")
            assert handle.state is ExecutionState.FAILED
            await settle()
            assert scheduler.snapshot().running == 0

    async def test_state_corruption_still_delivers_result(self) -> None:
        sandbox = FakeSandbox(fail_with=InvalidStateTransitionError("corrupt"))
        async with _scheduler(sandbox) as scheduler:
            handle = await scheduler.submit(_request())
            result = await handle.result()
            assert result.outcome is OutcomeKind.INTERNAL_ERROR
            await settle()
            assert scheduler.snapshot().running == 0


# ============================================================================
# End to end with the real sandbox
# ============================================================================


@skip_unless_posix
class TestRealSandbox:
    async def test_run_python(self, scheduler: Scheduler) -> None:
        result = await scheduler.run("print(sum(range(10)))", "Python")
        assert result.outcome is OutcomeKind.SUCCESS
        assert result.stdout == "45\n"

    async def test_concurrent_runs_are_isolated(self, scheduler: Scheduler, workspace_root: Path) -> None:
        source = "import os\nprint(os.getcwd())"
        results = await asyncio.gather(*(scheduler.run(source, "python") for _ in range(4)))
        cwds = {r.stdout for r in results}
        assert len(cwds) == 4
        assert list(workspace_root.iterdir()) == []

    async def test_cancel_running_process(self, scheduler: Scheduler) -> None:
        handle = await scheduler.submit(_request("import time\nprint('up', flush=True)\ntime.sleep(30)"))
        for _ in range(100):
            if handle.pid is not None:
                break
            await asyncio.sleep(0.05)
        assert handle.pid is not None

        scheduler.cancel(handle.id)
        result = await asyncio.wait_for(handle.result(), timeout=10)
        assert result.outcome is OutcomeKind.CANCELLED
        assert handle.pid is None
