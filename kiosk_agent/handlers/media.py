"""Media playback command handlers."""

from __future__ import annotations

import asyncio
import logging
import re
from datetime import datetime, timezone
from typing import Any, Dict, Mapping, Optional, Protocol
from urllib.parse import urlencode

from ..commands import CommandHandlerError
from ..core.models import Command, ErrorCode
from ..state import DeviceState, MediaInfo
from ..validation import is_url_allowed

LOGGER = logging.getLogger(__name__)

# Pages that only render media through the site's own player; they are
# rewritten to the local player so playback starts without cookie prompts.
_JW_MEDIA_PAGE_PATTERNS = (
    re.compile(r"jw\.org.*#[a-z]{2,3}/mediaitems/", re.IGNORECASE),
    re.compile(r"jw\.org.*_VIDEO", re.IGNORECASE),
)


class PlaybackReporter(Protocol):
    async def report_playback_event(self, event: Mapping[str, Any]) -> None:
        ...


def is_jw_media_page(url: str) -> bool:
    return any(pattern.search(url) for pattern in _JW_MEDIA_PAGE_PATTERNS)


def _as_bool(value: Any, default: bool = True) -> bool:
    if value is None:
        return default
    if isinstance(value, str):
        return value.strip().lower() not in ("false", "0", "no", "off", "")
    return bool(value)


class MediaHandlers:
    def __init__(
        self,
        state: DeviceState,
        *,
        standby_url: str,
        reporter: Optional[PlaybackReporter] = None,
    ) -> None:
        self._state = state
        self._standby_url = standby_url.rstrip("/")
        self._reporter = reporter

    def player_url(self, url: str, autoplay: bool) -> str:
        query = urlencode({"url": url, "autoplay": "true" if autoplay else "false"})
        return f"{self._standby_url}/player.html?{query}"

    async def play_media(self, command: Command, actuator: Any) -> Optional[Dict[str, Any]]:
        payload = command.payload
        url = payload.get("url")
        media_type = payload.get("media_type", "video")
        autoplay = _as_bool(payload.get("autoplay"), True)
        start_position = payload.get("start_position", 0)

        if not is_url_allowed(url):
            raise CommandHandlerError(
                "URL not in authorized domain allow-list",
                code=ErrorCode.URL_NOT_WHITELISTED,
            )

        LOGGER.info("Playing %s media %s (autoplay=%s)", media_type, url, autoplay)
        if self._state.is_playing:
            await self.stop_media(command, actuator)

        target = self.player_url(url, autoplay) if is_jw_media_page(url) else url
        if target != url:
            LOGGER.info("Using local player for %s", url)

        await actuator.navigate(target)
        media = self._state.set_playing(url, media_type)
        await self._report("started", media, position=start_position)

        if not autoplay:
            if await actuator.pause():
                self._state.set_paused(True)
            else:
                LOGGER.warning("Could not hold playback paused for %s", url)
        return None

    async def stop_media(self, command: Command, actuator: Any) -> None:
        media = self._state.current_media
        if not self._state.is_playing or media is None:
            LOGGER.info("Not playing; nothing to stop")
            return

        LOGGER.info("Stopping media playback")
        await actuator.go_to_standby()
        self._state.stop_playing()
        await self._report("stopped", media)

    async def pause_media(self, command: Command, actuator: Any) -> None:
        media = self._require_media()
        if media.is_paused:
            LOGGER.info("Media already paused")
            return
        if not await actuator.pause():
            raise CommandHandlerError("Actuator could not pause media")
        self._state.set_paused(True)
        await self._report("paused", media)

    async def resume_media(self, command: Command, actuator: Any) -> None:
        media = self._require_media()
        if not media.is_paused:
            LOGGER.info("Media not paused")
            return
        if not await actuator.resume():
            raise CommandHandlerError("Actuator could not resume media")
        self._state.set_paused(False)
        await self._report("resumed", media)

    def _require_media(self) -> MediaInfo:
        media = self._state.current_media
        if not self._state.is_playing or media is None:
            raise CommandHandlerError("Not playing any media")
        return media

    async def _report(
        self, event: str, media: Optional[MediaInfo], *, position: Any = 0
    ) -> None:
        if self._reporter is None:
            return
        payload: Dict[str, Any] = {
            "event": event,
            "timestamp": datetime.now(timezone.utc).isoformat(),
        }
        if media is not None:
            payload.update(
                media_url=media.url,
                media_type=media.media_type,
                position=position or 0,
                duration=None,
            )
        try:
            await self._reporter.report_playback_event(payload)
        except asyncio.CancelledError:
            raise
        except Exception as exc:
            LOGGER.warning("Failed to report playback event %s: %s", event, exc)
