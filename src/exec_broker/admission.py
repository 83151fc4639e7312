"""Slot admission controller for the execution worker pool.

Two bounds:
1. Worker slots - at most ``pool_size`` executions hold a slot at once
2. Wait queue   - at most ``queue_depth`` reservations wait for a slot

A released slot is handed directly to the head of the queue, so start order
is FIFO and a newcomer can never barge past a waiter. Every mutation is
synchronous (no await between check and update), which makes it atomic on
the event loop without a lock.

When the queue is full, ``reserve()`` rejects at once; ``reserve_waiting()``
instead waits a bounded time for queue room.
"""

from __future__ import annotations

import asyncio
from collections import deque
from dataclasses import dataclass, field
from uuid import uuid4

from exec_broker._logging import get_logger
from exec_broker.exceptions import AdmissionRejectedError

logger = get_logger(__name__)


@dataclass(eq=False)
class SlotReservation:
    """One request's claim on a worker slot.

    ``granted`` resolves to True once the slot is held, or to False if the
    reservation was withdrawn while still queued.
    """

    execution_id: str
    granted: asyncio.Future[bool]
    # Unique key: execution ids are caller-visible and not trusted as keys
    reservation_id: str = field(default_factory=lambda: str(uuid4()))


@dataclass
class AdmissionSnapshot:
    """Point-in-time view of admission controller state."""

    pool_size: int
    queue_depth: int
    running: int = 0
    queued: int = 0

    # Computed availability
    available_slots: int = field(init=False)
    queue_room: int = field(init=False)

    def __post_init__(self) -> None:
        self.available_slots = max(0, self.pool_size - self.running)
        self.queue_room = max(0, self.queue_depth - self.queued)


class SlotAdmissionController:
    """Bounded worker slots plus a bounded FIFO wait queue."""

    def __init__(self, pool_size: int, queue_depth: int) -> None:
        self._pool_size = pool_size
        self._queue_depth = queue_depth
        self._active: dict[str, SlotReservation] = {}
        self._queue: deque[SlotReservation] = deque()
        # Submitters blocked on a full queue (block_when_full mode)
        self._room_waiters: deque[asyncio.Future[None]] = deque()

    @property
    def pool_size(self) -> int:
        return self._pool_size

    @property
    def queue_depth(self) -> int:
        return self._queue_depth

    def reserve(self, execution_id: str) -> SlotReservation:
        """Grant a slot now, or enqueue, or reject.

        Returns:
            SlotReservation whose ``granted`` future is already resolved when
            a slot was free and nobody was waiting

        Raises:
            AdmissionRejectedError: All slots busy and the queue is full
        """
        reservation = SlotReservation(
            execution_id=execution_id,
            granted=asyncio.get_running_loop().create_future(),
        )

        if len(self._active) < self._pool_size and not self._queue:
            self._grant(reservation)
            return reservation

        if len(self._queue) < self._queue_depth:
            self._queue.append(reservation)
            logger.debug(
                "Reservation queued",
                extra={
                    "execution_id": execution_id,
                    "reservation_id": reservation.reservation_id,
                    "queue_position": len(self._queue),
                    "running": len(self._active),
                },
            )
            return reservation

        raise AdmissionRejectedError(
            f"Execution pool saturated: {len(self._active)}/{self._pool_size} running, "
            f"{len(self._queue)}/{self._queue_depth} queued",
            context={
                "execution_id": execution_id,
                "running": len(self._active),
                "queued": len(self._queue),
                "pool_size": self._pool_size,
                "queue_depth": self._queue_depth,
            },
        )

    async def reserve_waiting(self, execution_id: str, timeout: float) -> SlotReservation:
        """Like reserve(), but wait up to timeout for queue room instead of rejecting.

        Raises:
            AdmissionRejectedError: No queue room within timeout
        """
        try:
            async with asyncio.timeout(timeout):
                while True:
                    try:
                        return self.reserve(execution_id)
                    except AdmissionRejectedError:
                        room = asyncio.get_running_loop().create_future()
                        self._room_waiters.append(room)
                        try:
                            await room
                        finally:
                            if room in self._room_waiters:
                                self._room_waiters.remove(room)
        except TimeoutError:
            raise AdmissionRejectedError(
                f"Admission timeout after {timeout}s: {len(self._active)}/{self._pool_size} running, "
                f"{len(self._queue)}/{self._queue_depth} queued",
                context={
                    "execution_id": execution_id,
                    "timeout": timeout,
                    "running": len(self._active),
                    "queued": len(self._queue),
                },
            ) from None

    def withdraw(self, reservation: SlotReservation) -> bool:
        """Remove a still-queued reservation; its ``granted`` resolves to False.

        Returns:
            True if it was queued, False if it already holds a slot or is gone
        """
        try:
            self._queue.remove(reservation)
        except ValueError:
            return False
        if not reservation.granted.done():
            reservation.granted.set_result(False)
        logger.debug(
            "Reservation withdrawn",
            extra={"execution_id": reservation.execution_id, "reservation_id": reservation.reservation_id},
        )
        self._notify_room()
        return True

    def release(self, reservation: SlotReservation) -> None:
        """Free a held slot and hand it to the head of the queue. Idempotent."""
        if self._active.pop(reservation.reservation_id, None) is None:
            logger.debug(
                "Reservation already released (idempotent)",
                extra={"execution_id": reservation.execution_id, "reservation_id": reservation.reservation_id},
            )
            return

        logger.debug(
            "Slot released",
            extra={
                "execution_id": reservation.execution_id,
                "reservation_id": reservation.reservation_id,
                "running": len(self._active),
                "queued": len(self._queue),
            },
        )

        while self._queue and len(self._active) < self._pool_size:
            head = self._queue.popleft()
            if head.granted.done():
                continue
            self._grant(head)
        # One slot freed means room for one more submitter, queued or not
        self._notify_room()

    def snapshot(self) -> AdmissionSnapshot:
        """Return a point-in-time snapshot of admission state.

        SYNC-ONLY: No await points, so the counts are consistent with each other.
        """
        return AdmissionSnapshot(
            pool_size=self._pool_size,
            queue_depth=self._queue_depth,
            running=len(self._active),
            queued=len(self._queue),
        )

    def _grant(self, reservation: SlotReservation) -> None:
        self._active[reservation.reservation_id] = reservation
        reservation.granted.set_result(True)
        logger.debug(
            "Slot granted",
            extra={
                "execution_id": reservation.execution_id,
                "reservation_id": reservation.reservation_id,
                "running": len(self._active),
                "queued": len(self._queue),
            },
        )

    def _notify_room(self) -> None:
        while self._room_waiters:
            room = self._room_waiters.popleft()
            if not room.done():
                room.set_result(None)
                return
