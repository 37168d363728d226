"""Bounded retry queue for acknowledgments that could not be delivered."""

from __future__ import annotations

import asyncio
import logging
from collections import deque
from dataclasses import dataclass
from typing import Awaitable, Callable, Deque, List, Optional

from . import constants
from .core.models import Acknowledgment

LOGGER = logging.getLogger(__name__)

AckSender = Callable[[Acknowledgment], Awaitable[None]]


@dataclass(slots=True)
class PendingAck:
    command_id: str
    ack: Acknowledgment
    retry_count: int = 0
    max_retries: int = constants.ACK_MAX_RETRIES

    @property
    def exhausted(self) -> bool:
        return self.retry_count >= self.max_retries


@dataclass(frozen=True, slots=True)
class DrainResult:
    delivered: int
    requeued: int
    dropped: int


class AckRetryQueue:
    """FIFO of undelivered acknowledgments.

    At most ``capacity`` entries are held; on overflow the oldest entry is
    evicted. A command id is queued at most once.
    """

    def __init__(
        self,
        capacity: int = constants.ACK_QUEUE_CAPACITY,
        max_retries: int = constants.ACK_MAX_RETRIES,
    ) -> None:
        if capacity < 1:
            raise ValueError("capacity must be positive")
        self._capacity = capacity
        self._max_retries = max_retries
        self._entries: Deque[PendingAck] = deque()
        self._draining = False

    def __len__(self) -> int:
        return len(self._entries)

    @property
    def capacity(self) -> int:
        return self._capacity

    def contains(self, command_id: str) -> bool:
        return any(entry.command_id == command_id for entry in self._entries)

    def pending(self) -> List[PendingAck]:
        return list(self._entries)

    def enqueue(self, ack: Acknowledgment, *, retry_count: int = 0) -> bool:
        """Queue ``ack`` for a later retry. Returns False for a duplicate id."""

        if self.contains(ack.command_id):
            LOGGER.debug("Acknowledgment for %s already queued", ack.command_id)
            return False

        if len(self._entries) >= self._capacity:
            evicted = self._entries.popleft()
            LOGGER.warning(
                "Ack retry queue full (%d); dropping oldest acknowledgment for %s",
                self._capacity,
                evicted.command_id,
            )

        self._entries.append(
            PendingAck(
                command_id=ack.command_id,
                ack=ack,
                retry_count=retry_count,
                max_retries=self._max_retries,
            )
        )
        LOGGER.info(
            "Queued acknowledgment for %s for retry (%d pending)",
            ack.command_id,
            len(self._entries),
        )
        return True

    async def drain(self, send: AckSender) -> Optional[DrainResult]:
        """Retry every queued acknowledgment once.

        Entries that fail again are re-queued with an incremented retry count
        unless their retry limit is reached, in which case they are dropped.
        Returns None when a drain is already running or nothing is queued.
        """

        if self._draining or not self._entries:
            return None

        self._draining = True
        batch = list(self._entries)
        self._entries.clear()
        delivered = requeued = dropped = 0
        try:
            for index, entry in enumerate(batch):
                try:
                    await send(entry.ack)
                except asyncio.CancelledError:
                    for remaining in batch[index:]:
                        self._requeue(remaining)
                    raise
                except Exception as exc:
                    entry.retry_count += 1
                    if entry.exhausted:
                        dropped += 1
                        LOGGER.error(
                            "Dropping acknowledgment for %s after %d attempts: %s",
                            entry.command_id,
                            entry.retry_count,
                            exc,
                        )
                        continue
                    requeued += 1
                    self._requeue(entry)
                else:
                    delivered += 1
                    LOGGER.info("Delivered queued acknowledgment for %s", entry.command_id)
        finally:
            self._draining = False

        return DrainResult(delivered=delivered, requeued=requeued, dropped=dropped)

    def _requeue(self, entry: PendingAck) -> None:
        # A newer acknowledgment for the same id may have arrived mid-drain.
        if self.contains(entry.command_id):
            return
        if len(self._entries) >= self._capacity:
            evicted = self._entries.popleft()
            LOGGER.warning(
                "Ack retry queue full (%d); dropping oldest acknowledgment for %s",
                self._capacity,
                evicted.command_id,
            )
        self._entries.append(entry)
