"""Push channel: Pusher-protocol subscription over an aiohttp websocket."""

from __future__ import annotations

import asyncio
import contextlib
import json
import logging
import random
from enum import Enum
from typing import Any, Awaitable, Callable, Dict, List, Mapping, Optional, Protocol, Union

import aiohttp

from ..timers import LoopScheduler, Scheduler

LOGGER = logging.getLogger(__name__)

PROTOCOL_VERSION = 7
CLIENT_NAME = "kiosk-agent"
CLIENT_VERSION = "1.0.0"
NEW_COMMAND_EVENT = "NewCommand"


class PushStatus(str, Enum):
    CONNECTED = "connected"
    DISCONNECTED = "disconnected"
    RECONNECTING = "reconnecting"


class PushProtocolError(RuntimeError):
    """Raised when the server reports an error on the push connection."""


class ChannelAuthorizer(Protocol):
    async def authorize_channel(self, socket_id: str, channel_name: str) -> Dict[str, Any]:
        ...


CommandCallback = Callable[[Dict[str, Any]], Union[None, Awaitable[None]]]
StatusListener = Callable[[PushStatus, PushStatus], None]


def build_socket_url(scheme: str, host: str, port: int, key: str) -> str:
    ws_scheme = "wss" if scheme.lower() in ("https", "wss") else "ws"
    return (
        f"{ws_scheme}://{host}:{port}/app/{key}"
        f"?protocol={PROTOCOL_VERSION}&client={CLIENT_NAME}&version={CLIENT_VERSION}"
    )


def _decode_data(raw: Any) -> Any:
    if isinstance(raw, str):
        try:
            return json.loads(raw)
        except json.JSONDecodeError:
            return raw
    return raw


class PushChannel:
    """Subscribes to the appliance's private channel for new-command events.

    The channel keeps its own status and never influences the device's
    connection status; it only shortens the delay before a command is seen.
    """

    def __init__(
        self,
        *,
        url: str,
        appliance_id: str,
        authorizer: ChannelAuthorizer,
        on_command: CommandCallback,
        scheduler: Optional[Scheduler] = None,
        reconnect_initial: float = 1.0,
        reconnect_max: float = 60.0,
        heartbeat: Optional[float] = 30.0,
        session: Optional[aiohttp.ClientSession] = None,
    ) -> None:
        self._url = url
        self._channel_name = f"private-appliance.{appliance_id}"
        self._authorizer = authorizer
        self._on_command = on_command
        self._scheduler = scheduler or LoopScheduler()
        self.reconnect_initial = reconnect_initial
        self.reconnect_max = reconnect_max
        self._heartbeat = heartbeat
        self._session = session
        self._owns_session = session is None
        self._status = PushStatus.DISCONNECTED
        self._listeners: List[StatusListener] = []
        self._stop_event = asyncio.Event()
        self._listener_task: Optional[asyncio.Task[None]] = None
        self._callback_tasks: set[asyncio.Task[Any]] = set()
        self._socket_id: Optional[str] = None

    @property
    def status(self) -> PushStatus:
        return self._status

    @property
    def channel_name(self) -> str:
        return self._channel_name

    def add_status_listener(self, listener: StatusListener) -> None:
        self._listeners.append(listener)

    async def start(self) -> None:
        if self._listener_task is not None:
            return
        if self._session is None:
            self._session = aiohttp.ClientSession()
            self._owns_session = True
        self._stop_event.clear()
        self._listener_task = asyncio.create_task(self._listen_loop())
        await asyncio.sleep(0)

    async def stop(self) -> None:
        self._stop_event.set()
        task = self._listener_task
        self._listener_task = None
        if task is not None:
            task.cancel()
            with contextlib.suppress(asyncio.CancelledError):
                await task
        for pending in list(self._callback_tasks):
            pending.cancel()
        self._callback_tasks.clear()
        if self._owns_session and self._session is not None:
            await self._session.close()
            self._session = None
        self._set_status(PushStatus.DISCONNECTED)

    async def _listen_loop(self) -> None:
        backoff = self.reconnect_initial

        while not self._stop_event.is_set():
            self._set_status(PushStatus.RECONNECTING)
            try:
                assert self._session is not None
                async with self._session.ws_connect(
                    self._url, heartbeat=self._heartbeat
                ) as ws:
                    LOGGER.info("Push websocket connected to %s", self._url.split("?")[0])
                    async for message in ws:
                        if self._stop_event.is_set():
                            break
                        if message.type == aiohttp.WSMsgType.TEXT:
                            if await self._handle_message(ws, message.data):
                                backoff = self.reconnect_initial
                        elif message.type == aiohttp.WSMsgType.ERROR:
                            raise ws.exception() or RuntimeError("Websocket error")
                    if not self._stop_event.is_set():
                        raise ConnectionError("Push websocket closed by server")
            except asyncio.CancelledError:
                raise
            except Exception as exc:
                if self._stop_event.is_set():
                    break
                self._socket_id = None
                self._set_status(PushStatus.RECONNECTING)
                LOGGER.warning("Push channel error: %s", exc)
                # Full jitter between 0 and the current backoff, doubling up to the cap.
                await self._scheduler.sleep(random.uniform(0, backoff))
                backoff = min(backoff * 2, self.reconnect_max)

    async def _handle_message(
        self, ws: aiohttp.ClientWebSocketResponse, raw: str
    ) -> bool:
        """Handle one frame. Returns True once the subscription is confirmed."""

        try:
            frame = json.loads(raw)
        except json.JSONDecodeError:
            LOGGER.debug("Ignoring non-JSON push frame")
            return False
        if not isinstance(frame, Mapping):
            return False

        event = frame.get("event")
        data = _decode_data(frame.get("data"))

        if event == "pusher:connection_established":
            socket_id = data.get("socket_id") if isinstance(data, Mapping) else None
            if not socket_id:
                raise PushProtocolError("Connection established without socket_id")
            self._socket_id = str(socket_id)
            await self._subscribe(ws)
            return False

        if event == "pusher_internal:subscription_succeeded":
            LOGGER.info("Subscribed to push channel %s", self._channel_name)
            self._set_status(PushStatus.CONNECTED)
            return True

        if event == "pusher:ping":
            await ws.send_json({"event": "pusher:pong", "data": {}})
            return False

        if event in ("pusher:error", "pusher:subscription_error"):
            raise PushProtocolError(f"Push server reported {event}: {data}")

        if event == NEW_COMMAND_EVENT and frame.get("channel") == self._channel_name:
            if not isinstance(data, Mapping):
                LOGGER.warning("Ignoring malformed %s event", NEW_COMMAND_EVENT)
                return False
            LOGGER.info(
                "Push notified new command %s (type=%s)",
                data.get("uuid", data.get("id")),
                data.get("type"),
            )
            self._deliver(dict(data))
            return False

        LOGGER.debug("Ignoring push event %s", event)
        return False

    async def _subscribe(self, ws: aiohttp.ClientWebSocketResponse) -> None:
        assert self._socket_id is not None
        auth = await self._authorizer.authorize_channel(
            self._socket_id, self._channel_name
        )
        await ws.send_json(
            {
                "event": "pusher:subscribe",
                "data": {"channel": self._channel_name, "auth": auth["auth"]},
            }
        )
        LOGGER.debug("Subscription requested for %s", self._channel_name)

    def _deliver(self, data: Dict[str, Any]) -> None:
        try:
            result = self._on_command(data)
        except Exception:
            LOGGER.exception("Push command callback failed")
            return
        if asyncio.iscoroutine(result):
            task = asyncio.create_task(result)
            self._callback_tasks.add(task)
            task.add_done_callback(self._callback_done)

    def _callback_done(self, task: asyncio.Task[Any]) -> None:
        self._callback_tasks.discard(task)
        if task.cancelled():
            return
        exc = task.exception()
        if exc is not None:
            LOGGER.error("Push command callback failed: %s", exc, exc_info=exc)

    def _set_status(self, status: PushStatus) -> None:
        previous = self._status
        if previous == status:
            return
        self._status = status
        LOGGER.info("Push channel %s -> %s", previous.value, status.value)
        for listener in list(self._listeners):
            try:
                listener(previous, status)
            except Exception:
                LOGGER.exception("Push status listener failed")
