"""Pull channel: periodic command polling."""

from __future__ import annotations

import asyncio
import contextlib
import logging
from typing import Any, Awaitable, Callable, Dict, List, Optional, Protocol

from .ack_queue import AckRetryQueue
from .connection import ConnectionMonitor
from .core.models import Acknowledgment
from .timers import Scheduler

LOGGER = logging.getLogger(__name__)

BatchProcessor = Callable[[List[Dict[str, Any]]], Awaitable[Any]]


class CommandSource(Protocol):
    async def fetch_pending_commands(self) -> List[Dict[str, Any]]:
        ...

    async def acknowledge(self, ack: Acknowledgment) -> None:
        ...


class PollingChannel:
    """Fetches pending commands on a fixed interval.

    Only one fetch is ever outstanding; a backoff delay after a failure is
    served while still holding the in-flight slot, so a tick that fires in
    the meantime is a no-op rather than a queued retry.
    """

    def __init__(
        self,
        *,
        api: CommandSource,
        monitor: ConnectionMonitor,
        retry_queue: AckRetryQueue,
        process_batch: BatchProcessor,
        scheduler: Scheduler,
        interval: float,
    ) -> None:
        self._api = api
        self._monitor = monitor
        self._retry_queue = retry_queue
        self._process_batch = process_batch
        self._scheduler = scheduler
        self._interval = interval
        self._in_flight = False
        self._stopped = True
        self._task: Optional[asyncio.Task[None]] = None
        self._dispatch_tasks: set[asyncio.Task[Any]] = set()

    @property
    def in_flight(self) -> bool:
        return self._in_flight

    @property
    def running(self) -> bool:
        return self._task is not None and not self._task.done()

    def start(self) -> None:
        if self.running:
            LOGGER.warning("Command polling already running")
            return
        self._stopped = False
        self._task = asyncio.create_task(self._loop())
        LOGGER.info("Command polling started (every %.0fs)", self._interval)

    async def stop(self) -> None:
        self._stopped = True
        task = self._task
        self._task = None
        if task is not None:
            task.cancel()
            with contextlib.suppress(asyncio.CancelledError):
                await task
        for dispatch in list(self._dispatch_tasks):
            dispatch.cancel()
        for dispatch in list(self._dispatch_tasks):
            with contextlib.suppress(asyncio.CancelledError):
                await dispatch
        self._dispatch_tasks.clear()

    async def poll_once(self) -> bool:
        """Run a single poll cycle. Returns False when the cycle was skipped."""

        if self._in_flight:
            LOGGER.debug("Poll skipped: previous fetch still in flight")
            return False
        if not self._monitor.allow_request():
            LOGGER.debug("Poll skipped: requests suspended")
            return False

        self._in_flight = True
        try:
            try:
                commands = await self._api.fetch_pending_commands()
            except asyncio.CancelledError:
                raise
            except Exception as exc:
                delay = self._monitor.poll_failed(getattr(exc, "status", None))
                if delay > 0:
                    await self._scheduler.sleep(delay)
                return True

            self._monitor.poll_succeeded()
            await self._retry_queue.drain(self._api.acknowledge)
            if commands:
                LOGGER.info("Received %d pending command(s)", len(commands))
                self._dispatch(commands)
            return True
        finally:
            self._in_flight = False

    async def wait_dispatched(self) -> None:
        """Wait until every batch handed to the dispatcher has completed."""

        if self._dispatch_tasks:
            await asyncio.gather(*list(self._dispatch_tasks), return_exceptions=True)

    def _dispatch(self, commands: List[Dict[str, Any]]) -> None:
        # Execution happens outside the in-flight window so a long handler
        # never delays the next poll; ordering is the dispatcher's job.
        task = asyncio.create_task(self._process_batch(commands))
        self._dispatch_tasks.add(task)
        task.add_done_callback(self._dispatch_done)

    def _dispatch_done(self, task: asyncio.Task[Any]) -> None:
        self._dispatch_tasks.discard(task)
        if task.cancelled():
            return
        exc = task.exception()
        if exc is not None:
            LOGGER.error("Command batch failed: %s", exc, exc_info=exc)

    async def _loop(self) -> None:
        while not self._stopped:
            try:
                await self.poll_once()
            except asyncio.CancelledError:
                raise
            except Exception:
                LOGGER.exception("Unexpected error while polling commands")
            await self._scheduler.sleep(self._interval)
