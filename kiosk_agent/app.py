"""Main application entry-point for kiosk-agent."""

from __future__ import annotations

import asyncio
import contextlib
import logging
import signal
from enum import Enum
from typing import Any, Dict, List, Mapping, Optional, Sequence, Set

from .ack_queue import AckRetryQueue
from .actuator import (
    ActuatorStrategy,
    ActuatorSupervisor,
    BrowserSettings,
    build_strategies,
)
from .adapters.api import ApiClient
from .adapters.push import PushChannel, PushStatus, build_socket_url
from .commands import CommandDispatcher
from .config import KioskConfig
from .connection import ConnectionMonitor
from .handlers import register_default_handlers
from .health import HealthReporter, HealthServer
from .heartbeat import HeartbeatReporter
from .logging import configure_logging
from .polling import PollingChannel
from .state import ConnectionStatus, DeviceState, StateChange
from .timers import LoopScheduler, Scheduler

LOGGER = logging.getLogger(__name__)


class AgentState(str, Enum):
    COLD_START = "cold_start"
    ACTIVE = "active"
    DEGRADED = "degraded"
    STOPPING = "stopping"


class KioskAgentApp:
    """Coordinates application startup and shutdown.

    Startup restarts the actuator onto the standby page, then starts command
    polling, the push channel, the heartbeat and the local status server.
    Shutdown stops every timer, makes one attempt to return the screen to
    standby and releases the actuator; failures along the way are logged and
    never escalated.
    """

    def __init__(
        self,
        config: KioskConfig,
        *,
        scheduler: Optional[Scheduler] = None,
        api: Optional[Any] = None,
        strategies: Optional[Sequence[ActuatorStrategy]] = None,
    ) -> None:
        self._config = config
        self._scheduler = scheduler or LoopScheduler()
        self._api = api
        self._owns_api = api is None
        self._strategies = strategies
        self._health = HealthReporter()
        self._health_server: Optional[HealthServer] = None
        self._state_value = AgentState.COLD_START
        self._state_detail: Optional[str] = None
        self._shutdown_event: Optional[asyncio.Event] = None
        self._background: Set[asyncio.Task[Any]] = set()
        self._signals: List[signal.Signals] = []

        self.device: Optional[DeviceState] = None
        self.monitor: Optional[ConnectionMonitor] = None
        self.retry_queue: Optional[AckRetryQueue] = None
        self.actuator: Optional[ActuatorSupervisor] = None
        self.dispatcher: Optional[CommandDispatcher] = None
        self.polling: Optional[PollingChannel] = None
        self.heartbeat: Optional[HeartbeatReporter] = None
        self.push: Optional[PushChannel] = None

    @property
    def agent_state(self) -> AgentState:
        return self._state_value

    async def run(self) -> None:
        self._shutdown_event = asyncio.Event()
        self._install_signal_handlers()

        LOGGER.info("kiosk-agent starting with config: %s", self._config.path)
        try:
            await self._start_services()
            await self._shutdown_event.wait()
        except asyncio.CancelledError:
            LOGGER.info("kiosk-agent received shutdown signal")
            raise
        finally:
            await self._stop_services()

    def request_shutdown(self) -> None:
        LOGGER.info("Shutdown requested")
        if self._shutdown_event is not None:
            self._shutdown_event.set()

    @classmethod
    def start(cls, config: KioskConfig) -> None:
        configure_logging(
            config.logging.level,
            log_path=config.logging.path,
            log_network=config.logging.log_network,
        )
        instance = cls(config)
        try:
            asyncio.run(instance.run())
        except KeyboardInterrupt:
            LOGGER.info("kiosk-agent received shutdown signal")

    # ------------------------------------------------------------------
    # Startup and shutdown
    # ------------------------------------------------------------------
    async def _start_services(self) -> None:
        config = self._config
        await self._transition_state(AgentState.COLD_START, detail="initialising")

        device = DeviceState(
            self._scheduler,
            volume=config.agent.default_volume,
            recovery_seconds=config.agent.error_recovery_seconds,
        )
        device.add_listener(self._on_device_change)
        self.device = device

        if self._api is None:
            self._api = ApiClient(
                server_url=config.cloud.server_url,
                token=config.cloud.appliance_token or "",
                timeout=config.cloud.request_timeout_seconds,
            )
        api = self._api

        self.monitor = ConnectionMonitor(
            device,
            self._scheduler,
            offline_threshold=config.transport.offline_failure_threshold,
            auth_probe_seconds=config.transport.auth_probe_seconds,
        )
        self.retry_queue = AckRetryQueue(
            capacity=config.transport.ack_queue_capacity,
            max_retries=config.transport.ack_max_retries,
        )

        settings = BrowserSettings(
            standby_url=config.actuator.standby_url,
            chromium_path=config.actuator.chromium_path,
            user_data_dir=config.actuator.user_data_dir,
            navigation_timeout=config.actuator.navigation_timeout_seconds,
        )
        strategies = self._strategies or build_strategies(
            config.actuator.strategies, settings
        )
        self.actuator = ActuatorSupervisor(
            strategies,
            scheduler=self._scheduler,
            standby_url=config.actuator.standby_url,
            recovery_delay=config.actuator.recovery_delay_seconds,
        )
        self.actuator.add_crash_listener(self._on_actuator_crash)

        self.dispatcher = CommandDispatcher(
            state=device,
            actuator=self.actuator,
            ack_sender=api.acknowledge,
            retry_queue=self.retry_queue,
        )
        register_default_handlers(
            self.dispatcher,
            device,
            standby_url=config.actuator.standby_url,
            reporter=api,
        )

        await self._start_health_server()

        actuator_ready = True
        try:
            await self.actuator.force_restart()
        except Exception as exc:
            actuator_ready = False
            LOGGER.error("Actuator could not start; continuing without it: %s", exc)
        await self._health.update(
            "actuator",
            actuator_ready,
            self.actuator.mode if actuator_ready else "unavailable",
        )

        self.polling = PollingChannel(
            api=api,
            monitor=self.monitor,
            retry_queue=self.retry_queue,
            process_batch=self.dispatcher.process_batch,
            scheduler=self._scheduler,
            interval=config.agent.polling_interval_seconds,
        )
        self.heartbeat = HeartbeatReporter(
            api=api,
            state=device,
            monitor=self.monitor,
            scheduler=self._scheduler,
            interval=config.agent.heartbeat_interval_seconds,
        )
        await self._health.update("polling", False, "starting")
        self.polling.start()
        self.heartbeat.start()

        if config.push.enabled and config.push.key and config.push.host:
            self.push = PushChannel(
                url=build_socket_url(
                    config.push.scheme, config.push.host, config.push.port, config.push.key
                ),
                appliance_id=config.cloud.appliance_id,
                authorizer=api,
                on_command=self._on_push_command,
                scheduler=self._scheduler,
                reconnect_initial=config.push.reconnect_initial_seconds,
                reconnect_max=config.push.reconnect_max_seconds,
            )
            self.push.add_status_listener(self._on_push_status)
            await self.push.start()

        await self._transition_state(
            AgentState.ACTIVE if actuator_ready else AgentState.DEGRADED,
            detail=None if actuator_ready else "actuator unavailable",
        )

    async def _start_health_server(self) -> None:
        health = self._config.health
        if not health.enabled:
            return
        server = HealthServer(
            self._health,
            health.host,
            health.port,
            status_provider=self._status_payload,
        )
        try:
            await server.start()
        except OSError as exc:
            LOGGER.warning("Status endpoint unavailable: %s", exc)
            return
        self._health_server = server

    async def _stop_services(self) -> None:
        await self._transition_state(AgentState.STOPPING)

        if self.push is not None:
            with contextlib.suppress(Exception):
                await self.push.stop()
        if self.polling is not None:
            with contextlib.suppress(Exception):
                await self.polling.stop()
        if self.heartbeat is not None:
            with contextlib.suppress(Exception):
                await self.heartbeat.stop()
        if self.dispatcher is not None:
            with contextlib.suppress(Exception):
                await self.dispatcher.stop()
        if self.device is not None:
            self.device.close()

        for task in list(self._background):
            task.cancel()
        for task in list(self._background):
            with contextlib.suppress(asyncio.CancelledError, Exception):
                await task
        self._background.clear()

        if self.actuator is not None:
            if self.actuator.ready:
                try:
                    await self.actuator.go_to_standby(recover=False)
                except Exception as exc:
                    LOGGER.debug("Standby on shutdown failed: %s", exc)
            else:
                LOGGER.debug("Actuator not ready; skipping standby on shutdown")
            with contextlib.suppress(Exception):
                await self.actuator.shutdown()

        if self._owns_api and isinstance(self._api, ApiClient):
            with contextlib.suppress(Exception):
                await self._api.close()

        if self._health_server is not None:
            await self._health_server.stop()
            self._health_server = None

        self._remove_signal_handlers()
        LOGGER.info("kiosk-agent stopped")

    def _install_signal_handlers(self) -> None:
        loop = asyncio.get_running_loop()
        for signum in (signal.SIGINT, signal.SIGTERM):
            with contextlib.suppress(NotImplementedError, RuntimeError, ValueError):
                loop.add_signal_handler(signum, self.request_shutdown)
                self._signals.append(signum)

    def _remove_signal_handlers(self) -> None:
        loop = asyncio.get_running_loop()
        for signum in self._signals:
            with contextlib.suppress(NotImplementedError, RuntimeError, ValueError):
                loop.remove_signal_handler(signum)
        self._signals.clear()

    # ------------------------------------------------------------------
    # Event wiring
    # ------------------------------------------------------------------
    async def _transition_state(
        self, state: AgentState, *, detail: Optional[str] = None
    ) -> None:
        if state == self._state_value and detail == self._state_detail:
            return

        previous = self._state_value
        self._state_value = state
        self._state_detail = detail

        message_detail = detail or state.value
        LOGGER.info(
            "Agent state transition %s -> %s (%s)",
            previous.value,
            state.value,
            message_detail,
        )
        await self._health.set_agent_state(
            state.value,
            healthy=state == AgentState.ACTIVE,
            detail=message_detail,
        )

    def _spawn(self, coro: Any) -> None:
        task = asyncio.create_task(coro)
        self._background.add(task)
        task.add_done_callback(self._background.discard)

    def _on_device_change(self, change: StateChange) -> None:
        if change.kind != "connection":
            return
        status = change.current
        connected = status == ConnectionStatus.CONNECTED
        self._spawn(self._health.update("polling", connected, status.value))
        if self._state_value == AgentState.STOPPING:
            return
        if connected and self.actuator is not None and self.actuator.ready:
            self._spawn(self._transition_state(AgentState.ACTIVE))
        elif status == ConnectionStatus.OFFLINE:
            self._spawn(
                self._transition_state(AgentState.DEGRADED, detail="control plane offline")
            )

    def _on_actuator_crash(self, mode: str, reason: str) -> None:
        self._spawn(self._health.update("actuator", False, f"{mode}: {reason}"))
        device = self.device
        if device is not None and (device.is_playing or device.is_calling):
            device.set_error(f"actuator crashed: {reason}")

    def _on_push_status(self, previous: PushStatus, current: PushStatus) -> None:
        self._spawn(
            self._health.update("push", current == PushStatus.CONNECTED, current.value)
        )
        if current == PushStatus.CONNECTED and self.polling is not None:
            # Catch up on anything created while the subscription was down.
            self._spawn(self.polling.poll_once())

    async def _on_push_command(self, data: Dict[str, Any]) -> None:
        if isinstance(data.get("payload"), Mapping) and self.dispatcher is not None:
            await self.dispatcher.process_batch([data])
        elif self.polling is not None:
            await self.polling.poll_once()

    def _status_payload(self) -> Dict[str, Any]:
        payload: Dict[str, Any] = {"agent_state": self._state_value.value}
        if self.device is not None:
            payload.update(self.device.snapshot().as_dict())
        if self.actuator is not None:
            payload["actuator"] = {
                "mode": self.actuator.mode,
                "ready": self.actuator.ready,
                "current_url": self.actuator.current_url(),
            }
        if self.push is not None:
            payload["push_status"] = self.push.status.value
        if self.retry_queue is not None:
            payload["pending_acks"] = len(self.retry_queue)
        return payload
