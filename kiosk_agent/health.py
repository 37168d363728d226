"""Local health and status endpoint for kiosk-agent."""

from __future__ import annotations

import asyncio
import contextlib
import logging
from dataclasses import dataclass, field
from datetime import datetime, timezone
from typing import Any, Callable, Dict, List, Optional

from aiohttp import web

LOGGER = logging.getLogger(__name__)

StatusProvider = Callable[[], Dict[str, Any]]


@dataclass(slots=True)
class ComponentStatus:
    name: str
    healthy: bool
    detail: Optional[str] = None
    updated_at: datetime = field(default_factory=lambda: datetime.now(timezone.utc))

    def as_dict(self) -> Dict[str, object]:
        return {
            "name": self.name,
            "healthy": self.healthy,
            "detail": self.detail,
            "updated_at": self.updated_at.isoformat(timespec="seconds"),
        }


class HealthReporter:
    """Tracks per-component health plus the overall agent state."""

    def __init__(self) -> None:
        self._components: Dict[str, ComponentStatus] = {}
        self._agent_state: Optional[ComponentStatus] = None
        self._lock = asyncio.Lock()

    async def update(
        self, name: str, healthy: bool, detail: Optional[str] = None
    ) -> None:
        async with self._lock:
            self._components[name] = ComponentStatus(
                name=name, healthy=healthy, detail=detail
            )

    async def set_agent_state(
        self, state: str, *, healthy: bool, detail: Optional[str] = None
    ) -> None:
        async with self._lock:
            self._agent_state = ComponentStatus(
                name=state, healthy=healthy, detail=detail or state
            )

    async def snapshot(self) -> Dict[str, object]:
        async with self._lock:
            components: List[Dict[str, object]] = [
                status.as_dict() for status in self._components.values()
            ]
            agent_state = self._agent_state

        healthy = all(item["healthy"] for item in components)
        if agent_state is not None and not agent_state.healthy:
            healthy = False

        payload: Dict[str, object] = {
            "status": "ok" if healthy else "degraded",
            "components": components,
        }
        if agent_state is not None:
            payload["agent_state"] = {
                "state": agent_state.name,
                "detail": agent_state.detail,
                "healthy": agent_state.healthy,
                "updated_at": agent_state.updated_at.isoformat(timespec="seconds"),
            }
        return payload


class HealthServer:
    """Serves ``/healthz`` and the device snapshot at ``/api/status``.

    The standby page polls ``/api/status`` to show what the device is doing.
    """

    def __init__(
        self,
        reporter: HealthReporter,
        host: str,
        port: int,
        *,
        status_provider: Optional[StatusProvider] = None,
    ) -> None:
        self._reporter = reporter
        self._host = host
        self._port = port
        self._status_provider = status_provider
        self._runner: Optional[web.AppRunner] = None
        self._site: Optional[web.TCPSite] = None

    def build_app(self) -> web.Application:
        app = web.Application()
        app.router.add_get("/healthz", self._handle_health)
        app.router.add_get("/api/status", self._handle_status)
        return app

    async def start(self) -> None:
        self._runner = web.AppRunner(self.build_app())
        await self._runner.setup()
        self._site = web.TCPSite(self._runner, self._host, self._port)
        await self._site.start()
        LOGGER.info(
            "Status endpoint listening on http://%s:%s", self._host, self._port
        )

    async def stop(self) -> None:
        with contextlib.suppress(Exception):
            if self._site is not None:
                await self._site.stop()
        if self._runner is not None:
            await self._runner.cleanup()
        self._site = None
        self._runner = None

    async def _handle_health(self, request: web.Request) -> web.Response:
        snapshot = await self._reporter.snapshot()
        status = 200 if snapshot["status"] == "ok" else 503
        return web.json_response(snapshot, status=status)

    async def _handle_status(self, request: web.Request) -> web.Response:
        if self._status_provider is None:
            return web.json_response({"error": "status unavailable"}, status=503)
        return web.json_response(
            self._status_provider(), headers={"Cache-Control": "no-store"}
        )
