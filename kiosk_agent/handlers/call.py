"""Video-call command handlers."""

from __future__ import annotations

import logging
from typing import Any, Optional, Tuple
from urllib.parse import parse_qs, urlsplit

from ..core.models import Command
from ..state import DeviceState

LOGGER = logging.getLogger(__name__)


def parse_meeting_url(url: str) -> Tuple[Optional[str], Optional[str]]:
    """Return ``(meeting_id, password)`` from a ``.../j/<id>?pwd=...`` link."""

    try:
        parts = urlsplit(url)
    except ValueError:
        return None, None
    segments = parts.path.split("/")
    meeting_id = None
    if "j" in segments:
        index = segments.index("j")
        if index + 1 < len(segments) and segments[index + 1]:
            meeting_id = segments[index + 1]
    passwords = parse_qs(parts.query).get("pwd")
    return meeting_id, passwords[0] if passwords else None


class CallHandlers:
    def __init__(self, state: DeviceState) -> None:
        self._state = state

    async def join_zoom(self, command: Command, actuator: Any) -> None:
        payload = command.payload
        meeting_url = payload["meeting_url"]
        parsed_id, password = parse_meeting_url(meeting_url)
        meeting_id = payload.get("meeting_id") or parsed_id

        if self._state.is_calling:
            LOGGER.info("Already in a meeting; leaving it first")
            await self.leave_zoom(command, actuator)
        if self._state.is_playing:
            self._state.stop_playing()

        LOGGER.info("Joining meeting %s", meeting_id or meeting_url)
        await actuator.navigate(meeting_url)
        self._state.set_meeting(meeting_url, meeting_id)
        LOGGER.info(
            "Joined meeting %s (password supplied: %s)",
            meeting_id,
            bool(payload.get("password") or password),
        )

    async def leave_zoom(self, command: Command, actuator: Any) -> None:
        meeting = self._state.current_meeting
        if not self._state.is_calling:
            LOGGER.info("Not in a meeting; nothing to leave")
            return
        LOGGER.info("Leaving meeting %s", meeting.meeting_id if meeting else None)
        await actuator.go_to_standby()
        self._state.leave_meeting()
