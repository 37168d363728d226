"""Periodic telemetry reporting."""

from __future__ import annotations

import asyncio
import contextlib
import logging
from datetime import datetime, timezone
from typing import Any, Callable, Dict, List, Mapping, Optional, Protocol

from .connection import ConnectionMonitor
from .state import DeviceState
from .timers import Scheduler

LOGGER = logging.getLogger(__name__)

MIN_HEARTBEAT_INTERVAL_SECONDS = 10.0

HeartbeatListener = Callable[[Dict[str, Any]], None]


class HeartbeatSink(Protocol):
    async def send_heartbeat(self, payload: Mapping[str, Any]) -> Dict[str, Any]:
        ...


class HeartbeatReporter:
    """Sends the device snapshot to the control plane on its own cadence.

    The reporter runs independently of command polling. Its failures never
    touch the device connection status; only authentication and rate-limit
    rejections are fed into the shared :class:`ConnectionMonitor`.
    """

    def __init__(
        self,
        *,
        api: HeartbeatSink,
        state: DeviceState,
        monitor: ConnectionMonitor,
        scheduler: Scheduler,
        interval: float,
    ) -> None:
        self._api = api
        self._state = state
        self._monitor = monitor
        self._scheduler = scheduler
        self._interval = max(MIN_HEARTBEAT_INTERVAL_SECONDS, float(interval))
        self._started_at = scheduler.monotonic()
        self._task: Optional[asyncio.Task[None]] = None
        self._listeners: List[HeartbeatListener] = []

    @property
    def interval(self) -> float:
        return self._interval

    def add_listener(self, listener: HeartbeatListener) -> None:
        self._listeners.append(listener)

    def start(self) -> None:
        if self._task is not None and not self._task.done():
            return
        self._task = asyncio.create_task(self._loop())
        LOGGER.info("Heartbeat reporter started (every %.0fs)", self._interval)

    async def stop(self) -> None:
        task = self._task
        self._task = None
        if task is not None:
            task.cancel()
            with contextlib.suppress(asyncio.CancelledError):
                await task

    def build_payload(self) -> Dict[str, Any]:
        snapshot = self._state.snapshot()
        media = snapshot.current_media
        meeting = snapshot.current_meeting
        return {
            "status": snapshot.status.value,
            "connection_status": snapshot.connection_status.value,
            "current_media": {
                "url": media.url,
                "media_type": media.media_type,
                "is_paused": media.is_paused,
            }
            if media
            else None,
            "current_meeting": {
                "meeting_url": meeting.meeting_url,
                "meeting_id": meeting.meeting_id,
            }
            if meeting
            else None,
            "volume": snapshot.volume,
            "uptime": int(self._scheduler.monotonic() - self._started_at),
            "timestamp": datetime.now(timezone.utc).isoformat(),
        }

    async def send_once(self) -> bool:
        """Send a single heartbeat. Returns True when it was delivered."""

        if not self._monitor.allow_request():
            LOGGER.debug("Heartbeat skipped: requests suspended")
            return False

        payload = self.build_payload()
        try:
            response = await self._api.send_heartbeat(payload)
        except asyncio.CancelledError:
            raise
        except Exception as exc:
            self._monitor.request_failed(getattr(exc, "status", None))
            LOGGER.warning("Failed to send heartbeat: %s", exc)
            return False

        self._monitor.record_success()
        self._state.record_heartbeat()
        LOGGER.debug("Heartbeat sent (status=%s)", payload["status"])
        self._apply_server_interval(response)
        for listener in list(self._listeners):
            try:
                listener(payload)
            except Exception:
                LOGGER.exception("Heartbeat listener failed")
        return True

    def _apply_server_interval(self, response: Mapping[str, Any]) -> None:
        if not isinstance(response, Mapping):
            return
        requested = response.get("next_interval", response.get("next_heartbeat"))
        if requested is None or isinstance(requested, bool):
            return
        try:
            seconds = float(requested)
        except (TypeError, ValueError):
            LOGGER.debug("Ignoring invalid heartbeat interval %r", requested)
            return
        seconds = max(MIN_HEARTBEAT_INTERVAL_SECONDS, seconds)
        if seconds != self._interval:
            LOGGER.info(
                "Adjusting heartbeat interval %.0fs -> %.0fs", self._interval, seconds
            )
            self._interval = seconds

    async def _loop(self) -> None:
        while True:
            try:
                await self.send_once()
            except asyncio.CancelledError:
                raise
            except Exception:
                LOGGER.exception("Unexpected heartbeat failure")
            await self._scheduler.sleep(self._interval)
