"""Shared pytest fixtures for exec-broker tests."""

import asyncio
import os
import shutil
import sys
from collections.abc import AsyncGenerator
from dataclasses import replace
from pathlib import Path

import psutil
import pytest

from exec_broker.config import BrokerConfig
from exec_broker.models import ExecutionResult, OutcomeKind
from exec_broker.normalizer import ResultNormalizer
from exec_broker.platform_utils import HostOS, detect_host_os
from exec_broker.registry import DEFAULT_LANGUAGES, LanguageDescriptor, RunnerRegistry
from exec_broker.sandbox import Sandbox
from exec_broker.scheduler import Scheduler

# ============================================================================
# Shared Skip Markers
# ============================================================================

# Skip marker for Linux-only tests (RLIMIT_AS enforcement, /proc-based RSS)
skip_unless_linux = pytest.mark.skipif(
    detect_host_os() != HostOS.LINUX,
    reason="This test requires Linux (RLIMIT_AS enforcement, process groups)",
)

# Skip marker for tests spawning real children in their own session
skip_unless_posix = pytest.mark.skipif(
    detect_host_os() not in (HostOS.LINUX, HostOS.MACOS),
    reason="This test requires process groups (Linux or macOS)",
)


def skip_unless_tool(name: str) -> pytest.MarkDecorator:
    """Skip unless an executable named ``name`` is on PATH."""
    return pytest.mark.skipif(shutil.which(name) is None, reason=f"Requires {name} on PATH")


# ============================================================================
# Registry and Config Fixtures
# ============================================================================


def python_descriptor() -> LanguageDescriptor:
    """Python descriptor bound to the interpreter running the tests."""
    python = next(d for d in DEFAULT_LANGUAGES if d.identifier == "python")
    return replace(python, run_command=(sys.executable, "-u", "{source}"))


def make_registry(*, disabled: tuple[str, ...] = ()) -> RunnerRegistry:
    """Default registry with python pointed at sys.executable."""
    descriptors = [python_descriptor() if d.identifier == "python" else d for d in DEFAULT_LANGUAGES]
    return RunnerRegistry(descriptors, disabled=disabled)


@pytest.fixture
def registry() -> RunnerRegistry:
    return make_registry()


@pytest.fixture
def workspace_root(tmp_path: Path) -> Path:
    """Isolated workspace root so tests can assert it is left empty."""
    root = tmp_path / "workspaces"
    root.mkdir()
    return root


@pytest.fixture
def broker_config(workspace_root: Path) -> BrokerConfig:
    """BrokerConfig with a private workspace root and a short default timeout."""
    return BrokerConfig(
        pool_size=2,
        queue_depth=4,
        default_timeout_seconds=10,
        workspace_root=workspace_root,
    )


@pytest.fixture
def sandbox(broker_config: BrokerConfig) -> Sandbox:
    return Sandbox(broker_config)


@pytest.fixture
async def scheduler(broker_config: BrokerConfig, registry: RunnerRegistry) -> AsyncGenerator[Scheduler, None]:
    """Scheduler backed by the real sandbox.

    Usage:
        async def test_something(scheduler: Scheduler) -> None:
            result = await scheduler.run("print(1)", "python")
    """
    async with Scheduler(broker_config, registry=registry) as sched:
        yield sched


# ============================================================================
# Fake Sandbox
# ============================================================================


class FakeSandbox:
    """Sandbox stand-in that records concurrency and start order.

    Each execution blocks until ``release`` is set or its cancel event fires.
    The source text doubles as the label recorded in ``started``.
    """

    def __init__(self, *, fail_with: Exception | None = None) -> None:
        self.normalizer = ResultNormalizer()
        self.release = asyncio.Event()
        self.started: list[str] = []
        self.running = 0
        self.max_running = 0
        self.fail_with = fail_with

    async def execute(self, descriptor, source, stdin, limits, *, execution_id, cancel_event=None, observer=None):
        self.started.append(source)
        self.running += 1
        self.max_running = max(self.max_running, self.running)
        try:
            if self.fail_with is not None:
                raise self.fail_with
            release = asyncio.create_task(self.release.wait())
            cancel = asyncio.create_task(cancel_event.wait())
            await asyncio.wait({release, cancel}, return_when=asyncio.FIRST_COMPLETED)
            release.cancel()
            cancel.cancel()
            if cancel_event.is_set():
                return ExecutionResult(
                    execution_id=execution_id,
                    outcome=OutcomeKind.CANCELLED,
                    diagnostic="Execution was cancelled",
                )
            return ExecutionResult(execution_id=execution_id, outcome=OutcomeKind.SUCCESS, stdout=source)
        finally:
            self.running -= 1


@pytest.fixture
def fake_sandbox() -> FakeSandbox:
    return FakeSandbox()


async def settle(rounds: int = 10) -> None:
    """Let driver tasks run until they block."""
    for _ in range(rounds):
        await asyncio.sleep(0)


# ============================================================================
# Process Helpers
# ============================================================================


def is_alive(pid: int) -> bool:
    """True if pid exists and is not a zombie awaiting its reaper."""
    try:
        return psutil.Process(pid).status() != psutil.STATUS_ZOMBIE
    except psutil.NoSuchProcess:
        return False


# ============================================================================
# Test Utilities
# ============================================================================


@pytest.fixture(autouse=True)
def setup_test_environment():
    """Keep EXEC_BROKER_* variables from the outer shell out of Settings()."""
    saved = {key: os.environ.pop(key) for key in list(os.environ) if key.startswith("EXEC_BROKER_")}
    yield
    for key in [key for key in os.environ if key.startswith("EXEC_BROKER_")]:
        os.environ.pop(key)
    os.environ.update(saved)
