"""Command dispatch pipeline for kiosk-agent."""

from __future__ import annotations

import asyncio
import contextlib
import logging
from collections import deque
from typing import (
    Any,
    Awaitable,
    Callable,
    Deque,
    Dict,
    Iterable,
    List,
    Mapping,
    Optional,
    Set,
    Tuple,
    Union,
)

from .ack_queue import AckRetryQueue, AckSender
from .core.idempotency import CommandIdempotencyGuard
from .core.models import (
    PRIORITY_CRITICAL,
    Acknowledgment,
    Command,
    ErrorCode,
    error_code_for_type,
)
from .state import DeviceState
from .validation import validate_command

LOGGER = logging.getLogger(__name__)

CommandHandler = Callable[[Command, Any], Awaitable[Optional[Dict[str, Any]]]]
CommandListener = Callable[[Command, Acknowledgment], None]
BatchItem = Union[Command, Mapping[str, Any]]


class CommandHandlerError(RuntimeError):
    """Raised by a handler to fail a command with a specific error code."""

    def __init__(self, message: str, *, code: Optional[ErrorCode] = None) -> None:
        super().__init__(message)
        self.code = code


class CommandDispatcher:
    """Validates, orders and executes command batches one at a time.

    Batches submitted while another is running are queued and executed in
    arrival order, so no two handlers ever drive the actuator concurrently.
    """

    def __init__(
        self,
        *,
        state: DeviceState,
        actuator: Any,
        ack_sender: AckSender,
        retry_queue: AckRetryQueue,
        idempotency: Optional[CommandIdempotencyGuard] = None,
    ) -> None:
        self._state = state
        self._actuator = actuator
        self._ack_sender = ack_sender
        self._retry_queue = retry_queue
        self._idempotency = idempotency or CommandIdempotencyGuard()
        self._handlers: Dict[str, CommandHandler] = {}
        self._listeners: List[CommandListener] = []
        self._pending: Deque[Tuple[List[Command], asyncio.Future]] = deque()
        self._outstanding: Set[str] = set()
        self._worker: Optional[asyncio.Task[None]] = None

    # ------------------------------------------------------------------
    # Registration
    # ------------------------------------------------------------------
    def register_handler(self, command_type: str, handler: CommandHandler) -> None:
        self._handlers[str(command_type)] = handler
        LOGGER.debug("Registered command handler for %s", command_type)

    def has_handler(self, command_type: str) -> bool:
        return command_type in self._handlers

    def add_listener(self, listener: CommandListener) -> None:
        self._listeners.append(listener)

    @property
    def busy(self) -> bool:
        return self._worker is not None and not self._worker.done()

    @property
    def queued_batches(self) -> int:
        return len(self._pending)

    # ------------------------------------------------------------------
    # Processing
    # ------------------------------------------------------------------
    async def process_batch(self, commands: Iterable[BatchItem]) -> List[Acknowledgment]:
        """Execute ``commands`` once every earlier batch has finished.

        Returns the acknowledgments produced for this batch, in execution
        order. Commands without an id cannot be acknowledged and are skipped.
        A command whose id is already queued or executing is dropped from the
        batch; its acknowledgment comes from the earlier submission.
        """

        batch: List[Command] = []
        for item in commands:
            command = item if isinstance(item, Command) else Command.from_dict(item)
            if command.id and command.id in self._outstanding:
                LOGGER.debug("Command %s already queued or running; skipping", command.id)
                continue
            if command.id:
                self._outstanding.add(command.id)
            batch.append(command)
        if not batch:
            return []

        loop = asyncio.get_running_loop()
        future: asyncio.Future = loop.create_future()
        self._pending.append((batch, future))
        if self._worker is None or self._worker.done():
            self._worker = asyncio.create_task(self._drain())
        else:
            LOGGER.debug(
                "Command batch queued behind running batch (%d waiting)",
                len(self._pending),
            )
        return await future

    async def stop(self) -> None:
        worker = self._worker
        if worker is not None:
            worker.cancel()
            with contextlib.suppress(asyncio.CancelledError):
                await worker
        self._worker = None

    async def _drain(self) -> None:
        try:
            while self._pending:
                batch, future = self._pending.popleft()
                try:
                    acks = await self._run_batch(batch)
                except asyncio.CancelledError:
                    future.cancel()
                    raise
                except Exception as exc:
                    LOGGER.exception("Command batch processing failed")
                    if not future.done():
                        future.set_exception(exc)
                else:
                    if not future.done():
                        future.set_result(acks)
                finally:
                    self._release(batch)
        finally:
            while self._pending:
                batch, future = self._pending.popleft()
                self._release(batch)
                future.cancel()

    def _release(self, batch: List[Command]) -> None:
        for command in batch:
            if command.id:
                self._outstanding.discard(command.id)

    async def _run_batch(self, batch: List[Command]) -> List[Acknowledgment]:
        # sorted() is stable: equal priorities keep their arrival order.
        ordered = sorted(batch, key=lambda command: command.priority)
        acks: List[Acknowledgment] = []
        for command in ordered:
            ack = await self._execute(command)
            if ack is None:
                continue
            acks.append(ack)
            await self._deliver(ack)
            self._notify(command, ack)
        return acks

    async def _execute(self, command: Command) -> Optional[Acknowledgment]:
        if not command.id:
            LOGGER.warning(
                "Dropping command of type %s without an id; it cannot be acknowledged",
                command.type,
            )
            return None

        cached = self._idempotency.get_cached_result(command.id)
        if cached is not None:
            LOGGER.info(
                "Command %s already executed; replaying %s acknowledgment",
                command.id,
                cached.ack.status.value,
            )
            return cached.ack

        ack = await self._run_command(command)
        self._idempotency.mark_processed(ack)
        return ack

    async def _run_command(self, command: Command) -> Acknowledgment:
        assert command.id is not None
        validation = validate_command(command)
        if not validation.valid:
            return Acknowledgment.failure(
                command.id,
                validation.error_code or ErrorCode.INVALID_COMMAND_STRUCTURE,
                "; ".join(validation.errors),
            )

        handler = self._handlers.get(command.type or "")
        if handler is None:
            LOGGER.error("No handler registered for command type %s", command.type)
            return Acknowledgment.failure(
                command.id,
                ErrorCode.UNKNOWN_COMMAND_TYPE,
                f"No handler registered for {command.type}",
            )

        if command.priority == PRIORITY_CRITICAL and self._state.is_playing:
            LOGGER.info("Interrupting playback for %s command %s", command.type, command.id)
            self._state.stop_playing()

        LOGGER.info(
            "Executing command %s (type=%s, priority=%d)",
            command.id,
            command.type,
            command.priority,
        )
        try:
            result = await handler(command, self._actuator)
        except asyncio.CancelledError:
            raise
        except CommandHandlerError as exc:
            LOGGER.error("Command %s failed: %s", command.id, exc)
            return Acknowledgment.failure(
                command.id, exc.code or error_code_for_type(command.type), str(exc)
            )
        except asyncio.TimeoutError:
            LOGGER.error("Command %s timed out", command.id)
            return Acknowledgment.failure(
                command.id, ErrorCode.EXECUTION_TIMEOUT, "Command execution timed out"
            )
        except Exception as exc:
            LOGGER.exception("Command %s (%s) raised", command.id, command.type)
            return Acknowledgment.failure(
                command.id,
                error_code_for_type(command.type),
                str(exc) or exc.__class__.__name__,
            )

        return Acknowledgment.success(
            command.id, dict(result) if isinstance(result, Mapping) else None
        )

    async def _deliver(self, ack: Acknowledgment) -> None:
        try:
            await self._ack_sender(ack)
        except asyncio.CancelledError:
            self._retry_queue.enqueue(ack)
            raise
        except Exception as exc:
            LOGGER.warning(
                "Failed to deliver acknowledgment for %s: %s", ack.command_id, exc
            )
            self._retry_queue.enqueue(ack)
        else:
            LOGGER.debug(
                "Acknowledged command %s (%s)", ack.command_id, ack.status.value
            )

    def _notify(self, command: Command, ack: Acknowledgment) -> None:
        for listener in list(self._listeners):
            try:
                listener(command, ack)
            except Exception:
                LOGGER.exception("Command listener failed")
