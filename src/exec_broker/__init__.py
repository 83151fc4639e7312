"""exec-broker: Run untrusted code under bounded resources.

Accepts source code plus a language identifier, runs it in a short-lived
isolated child process (own session, rlimits, private working directory)
and returns a normalized result. A bounded worker pool with a bounded FIFO
queue keeps the host from being overwhelmed.

Quick Start (single execution):
    ```python
    from exec_broker import Scheduler

    async with Scheduler() as scheduler:
        result = await scheduler.run("print('hello')", "python")
        print(result.stdout)  # "hello\\n"
    ```

Submit, track and cancel:
    ```python
    from exec_broker import BrokerConfig, ExecutionRequest, Scheduler

    config = BrokerConfig(pool_size=2, queue_depth=8, max_timeout_seconds=10)
    async with Scheduler(config) as scheduler:
        handle = await scheduler.submit(ExecutionRequest(source="while True: pass", language="python"))
        scheduler.cancel(handle.id)
        result = await handle.result()  # outcome == "cancelled"
    ```

HTTP service:
    exec-broker serve --port 3000

Requirements:
    - Linux or macOS (process groups, setrlimit)
    - Python 3.12+
    - Toolchains for the languages you enable (python3, node, gcc, javac, ...)
"""

from exec_broker.config import BrokerConfig
from exec_broker.exceptions import (
    AdmissionRejectedError,
    BrokerError,
    BrokerStateError,
    CodeValidationError,
    ExecutionNotFoundError,
    InputValidationError,
    InvalidStateTransitionError,
    SandboxInfrastructureError,
    SchedulerClosedError,
    SpawnError,
    UnsupportedLanguageError,
    WorkspaceError,
)
from exec_broker.execution import ExecutionHandle
from exec_broker.models import (
    ExecutionLimits,
    ExecutionPhase,
    ExecutionRequest,
    ExecutionResult,
    ExecutionState,
    InvocationKind,
    OutcomeKind,
)
from exec_broker.registry import LanguageDescriptor, RunnerRegistry
from exec_broker.sandbox import Sandbox
from exec_broker.scheduler import Scheduler

__all__ = [
    "AdmissionRejectedError",
    "BrokerConfig",
    "BrokerError",
    "BrokerStateError",
    "CodeValidationError",
    "ExecutionHandle",
    "ExecutionLimits",
    "ExecutionNotFoundError",
    "ExecutionPhase",
    "ExecutionRequest",
    "ExecutionResult",
    "ExecutionState",
    "InputValidationError",
    "InvalidStateTransitionError",
    "InvocationKind",
    "LanguageDescriptor",
    "OutcomeKind",
    "RunnerRegistry",
    "Sandbox",
    "SandboxInfrastructureError",
    "Scheduler",
    "SchedulerClosedError",
    "SpawnError",
    "UnsupportedLanguageError",
    "WorkspaceError",
]

from importlib.metadata import PackageNotFoundError, version

try:
    __version__ = version("exec-broker")
except PackageNotFoundError:
    __version__ = "0.0.0.dev0"
