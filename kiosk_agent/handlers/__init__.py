"""Built-in command handlers."""

from __future__ import annotations

from typing import Optional

from ..commands import CommandDispatcher
from ..core.models import CommandType
from ..state import DeviceState
from .call import CallHandlers, parse_meeting_url
from .media import MediaHandlers, PlaybackReporter, is_jw_media_page


def register_default_handlers(
    dispatcher: CommandDispatcher,
    state: DeviceState,
    *,
    standby_url: str,
    reporter: Optional[PlaybackReporter] = None,
) -> None:
    """Wire the media and call handlers into ``dispatcher``.

    Power, service, volume and diagnostics commands are left to externally
    registered handlers; without one they fail as unknown.
    """

    media = MediaHandlers(state, standby_url=standby_url, reporter=reporter)
    call = CallHandlers(state)
    dispatcher.register_handler(CommandType.PLAY_MEDIA.value, media.play_media)
    dispatcher.register_handler(CommandType.STOP_MEDIA.value, media.stop_media)
    dispatcher.register_handler(CommandType.PAUSE_MEDIA.value, media.pause_media)
    dispatcher.register_handler(CommandType.RESUME_MEDIA.value, media.resume_media)
    dispatcher.register_handler(CommandType.JOIN_ZOOM.value, call.join_zoom)
    dispatcher.register_handler(CommandType.LEAVE_ZOOM.value, call.leave_zoom)


__all__ = [
    "CallHandlers",
    "MediaHandlers",
    "PlaybackReporter",
    "is_jw_media_page",
    "parse_meeting_url",
    "register_default_handlers",
]
