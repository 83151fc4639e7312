"""Per-execution working directory.

Each execution gets a fresh ``mkdtemp`` directory (created mode 0700) whose name
embeds the execution id, so no two executions share a path or temp
namespace. The directory is removed on every exit path of the ``async
with`` block.
"""

from __future__ import annotations

import asyncio
import tempfile
from pathlib import Path
from typing import TYPE_CHECKING, Self

import aiofiles

from exec_broker._logging import get_logger
from exec_broker.constants import WORKSPACE_PREFIX
from exec_broker.exceptions import WorkspaceError
from exec_broker.resource_cleanup import cleanup_workspace

if TYPE_CHECKING:
    from types import TracebackType

logger = get_logger(__name__)


class ExecutionWorkspace:
    """Isolated working area for one execution.

    Attributes:
        execution_id: Owning execution (used in the directory name)
        path: Directory path, set on enter
    """

    def __init__(self, root: Path, execution_id: str) -> None:
        self._root = root
        self.execution_id = execution_id
        self.path: Path | None = None

    @property
    def directory(self) -> Path:
        """The entered workspace directory.

        Raises:
            WorkspaceError: Used outside the ``async with`` block
        """
        if self.path is None:
            raise WorkspaceError("Workspace not entered", context={"execution_id": self.execution_id})
        return self.path

    async def __aenter__(self) -> Self:
        try:
            raw = await asyncio.to_thread(
                tempfile.mkdtemp,
                prefix=f"{WORKSPACE_PREFIX}{self.execution_id[:8]}-",
                dir=self._root,
            )
            self.path = Path(raw)
        except OSError as e:
            raise WorkspaceError(
                f"Cannot create working area under {self._root}: {e}",
                context={"execution_id": self.execution_id, "root": str(self._root), "errno": e.errno},
            ) from e
        logger.debug(
            "Workspace created",
            extra={"execution_id": self.execution_id, "path": str(self.path)},
        )
        return self

    async def __aexit__(
        self,
        exc_type: type[BaseException] | None,
        exc_val: BaseException | None,
        exc_tb: TracebackType | None,
    ) -> None:
        await cleanup_workspace(self.path, context_id=self.execution_id)

    async def write_source(self, filename: str, source: str) -> Path:
        """Materialize source text as filename inside the workspace.

        Raises:
            WorkspaceError: Write failed (disk full, permissions)
        """
        target = self.directory / filename
        try:
            async with aiofiles.open(target, "w", encoding="utf-8", newline="") as f:
                await f.write(source)
        except OSError as e:
            raise WorkspaceError(
                f"Cannot write source file {filename}: {e}",
                context={"execution_id": self.execution_id, "path": str(target)},
            ) from e
        return target
