"""HTTP client for the control-plane API."""

from __future__ import annotations

import asyncio
import logging
from typing import Any, Dict, List, Mapping, Optional

import aiohttp

from .. import constants
from ..core.models import Acknowledgment

LOGGER = logging.getLogger(__name__)


class ApiError(RuntimeError):
    """Raised for any failed API request.

    ``status`` is the HTTP status code, or None when no response was received.
    """

    def __init__(self, message: str, *, status: Optional[int] = None) -> None:
        super().__init__(message)
        self.status = status

    @property
    def is_auth_failure(self) -> bool:
        return self.status in (401, 403)

    @property
    def is_rate_limited(self) -> bool:
        return self.status == 429


class ApiClient:
    """Bearer-authenticated JSON client for the appliance endpoints."""

    def __init__(
        self,
        *,
        server_url: str,
        token: str,
        timeout: float = 10.0,
        session: Optional[aiohttp.ClientSession] = None,
    ) -> None:
        self._server_url = server_url.rstrip("/")
        self._base_url = f"{self._server_url}{constants.API_PREFIX}"
        self._timeout = aiohttp.ClientTimeout(total=timeout)
        self._headers = {
            "Authorization": f"Bearer {token}",
            "Accept": "application/json",
        }
        self._session = session
        self._owns_session = session is None

    @property
    def server_url(self) -> str:
        return self._server_url

    async def close(self) -> None:
        if self._owns_session and self._session is not None:
            await self._session.close()
        self._session = None

    async def fetch_pending_commands(self) -> List[Dict[str, Any]]:
        body = await self._request(
            "GET", "/appliances/commands", params={"status": "pending"}
        )
        if not isinstance(body, Mapping):
            return []
        data = body.get("data")
        if not isinstance(data, list):
            return []
        return [item for item in data if isinstance(item, Mapping)]

    async def acknowledge(self, ack: Acknowledgment) -> None:
        await self._request("POST", f"/commands/{ack.command_id}/ack", json=ack.to_dict())

    async def send_heartbeat(self, payload: Mapping[str, Any]) -> Dict[str, Any]:
        body = await self._request("POST", "/appliances/heartbeat", json=dict(payload))
        return dict(body) if isinstance(body, Mapping) else {}

    async def report_playback_event(self, event: Mapping[str, Any]) -> None:
        await self._request("POST", "/appliances/playback", json=dict(event))

    async def authorize_channel(self, socket_id: str, channel_name: str) -> Dict[str, Any]:
        """Obtain the signature for subscribing to a private push channel."""

        url = f"{self._server_url}{constants.BROADCAST_AUTH_PATH}"
        body = await self._request(
            "POST",
            url,
            data={"socket_id": socket_id, "channel_name": channel_name},
            absolute=True,
        )
        if not isinstance(body, Mapping) or "auth" not in body:
            raise ApiError("Channel authorization response missing 'auth'")
        return dict(body)

    async def _ensure_session(self) -> aiohttp.ClientSession:
        if self._session is None:
            self._session = aiohttp.ClientSession(timeout=self._timeout)
            self._owns_session = True
        return self._session

    async def _request(
        self,
        method: str,
        path: str,
        *,
        absolute: bool = False,
        **kwargs: Any,
    ) -> Any:
        session = await self._ensure_session()
        url = path if absolute else f"{self._base_url}{path}"
        try:
            async with session.request(
                method, url, headers=self._headers, timeout=self._timeout, **kwargs
            ) as response:
                if response.status >= 400:
                    text = await response.text()
                    raise ApiError(
                        f"{method} {url} failed with status {response.status}: {text[:200]}",
                        status=response.status,
                    )
                if response.status == 204:
                    return None
                try:
                    return await response.json(content_type=None)
                except ValueError:
                    return None
        except ApiError:
            raise
        except asyncio.TimeoutError as exc:
            raise ApiError(f"{method} {url} timed out") from exc
        except aiohttp.ClientError as exc:
            raise ApiError(f"{method} {url} failed: {exc}") from exc
