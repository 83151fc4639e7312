"""Subprocess I/O utilities.

- capture_stream: bounded incremental capture of one pipe (keeps draining past the cap)
- feed_stdin: write request stdin to the child and close the pipe
- log_task_exception: done-callback for background tasks
"""

from __future__ import annotations

import asyncio
from dataclasses import dataclass, field

from exec_broker._logging import get_logger
from exec_broker.constants import READ_CHUNK_SIZE

logger = get_logger(__name__)


@dataclass
class CapturedOutput:
    """Bytes captured from one stream, capped at ``limit``."""

    limit: int
    chunks: list[bytes] = field(default_factory=list)
    size: int = 0
    truncated: bool = False
    discarded: int = 0

    def feed(self, data: bytes) -> None:
        """Append data up to the cap; count and drop the rest."""
        room = self.limit - self.size
        if room <= 0:
            self.truncated = True
            self.discarded += len(data)
            return
        if len(data) > room:
            self.chunks.append(data[:room])
            self.size += room
            self.truncated = True
            self.discarded += len(data) - room
            return
        self.chunks.append(data)
        self.size += len(data)

    @property
    def data(self) -> bytes:
        return b"".join(self.chunks)

    def text(self) -> str:
        """Decode as UTF-8; invalid or cut multi-byte sequences become U+FFFD."""
        return self.data.decode("utf-8", errors="replace")


async def capture_stream(
    stream: asyncio.StreamReader | None,
    captured: CapturedOutput,
    *,
    chunk_size: int = READ_CHUNK_SIZE,
) -> CapturedOutput:
    """Read stream until EOF into captured.

    Reading continues after the cap is hit so the child never blocks on a
    full pipe; the excess is dropped, keeping memory bounded by the cap.

    Args:
        stream: Pipe to drain (None returns immediately)
        captured: Accumulator carrying the byte cap
        chunk_size: Read size per iteration

    Returns:
        The same accumulator, for convenience
    """
    if stream is None:
        return captured
    while True:
        chunk = await stream.read(chunk_size)
        if not chunk:
            return captured
        captured.feed(chunk)


async def feed_stdin(writer: asyncio.StreamWriter | None, payload: bytes, *, context_id: str) -> None:
    """Write payload to the child's stdin and close it.

    A child that exits (or closes stdin) without reading everything is
    normal, not an error.
    """
    if writer is None:
        return
    try:
        if payload:
            writer.write(payload)
            await writer.drain()
    except (BrokenPipeError, ConnectionResetError):
        logger.debug("Child closed stdin before consuming it", extra={"context_id": context_id})
    finally:
        writer.close()
        try:
            await writer.wait_closed()
        except (BrokenPipeError, ConnectionResetError):
            pass


def log_task_exception(task: asyncio.Task) -> None:
    """Log exceptions from background tasks.

    Callback for asyncio.Task.add_done_callback() that logs any unhandled
    exception so background failures are never silent.

    Usage:
        task = asyncio.create_task(some_coroutine())
        task.add_done_callback(log_task_exception)
    """
    if task.cancelled():
        return
    exc = task.exception()
    if exc is not None:
        logger.error(
            "Background task failed",
            extra={"task_name": task.get_name()},
            exc_info=exc,
        )
