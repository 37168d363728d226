"""Duplicate command suppression.

Commands are delivered at least once: the same id can arrive through both the
pull and the push channel, or again after a lost acknowledgment. The guard
remembers the acknowledgment produced for every executed command so a
duplicate is answered from cache instead of being executed twice.
"""

from __future__ import annotations

import logging
import time
from collections import OrderedDict
from dataclasses import dataclass
from typing import Callable, Optional

from .models import Acknowledgment

LOGGER = logging.getLogger(__name__)


@dataclass(slots=True)
class ProcessedCommand:
    """Record of a processed command kept for acknowledgment replay."""

    command_id: str
    ack: Acknowledgment
    processed_at: float


class CommandIdempotencyGuard:
    """Remembers processed command ids for ``ttl_seconds``.

    Entries are kept in insertion order; once ``max_entries`` is exceeded the
    oldest records are discarded first.
    """

    def __init__(
        self,
        ttl_seconds: float = 3600.0,
        max_entries: int = 1000,
        *,
        clock: Callable[[], float] = time.monotonic,
    ) -> None:
        self._processed: "OrderedDict[str, ProcessedCommand]" = OrderedDict()
        self._ttl = ttl_seconds
        self._max_entries = max_entries
        self._clock = clock

    def mark_processed(self, ack: Acknowledgment) -> None:
        self._cleanup_expired()
        self._processed.pop(ack.command_id, None)
        self._processed[ack.command_id] = ProcessedCommand(
            command_id=ack.command_id, ack=ack, processed_at=self._clock()
        )
        while len(self._processed) > self._max_entries:
            self._processed.popitem(last=False)

    def get_cached_result(self, command_id: str) -> Optional[ProcessedCommand]:
        entry = self._processed.get(command_id)
        if entry is None:
            return None
        if self._is_expired(entry):
            del self._processed[command_id]
            return None
        return entry

    def _is_expired(self, entry: ProcessedCommand) -> bool:
        return self._clock() - entry.processed_at > self._ttl

    def _cleanup_expired(self) -> None:
        expired = [key for key, entry in self._processed.items() if self._is_expired(entry)]
        for key in expired:
            del self._processed[key]
        if expired:
            LOGGER.debug("Cleaned up %d expired command entries", len(expired))
