"""Device status state machine with automatic error recovery."""

from __future__ import annotations

import dataclasses
import logging
from dataclasses import dataclass
from datetime import datetime, timezone
from enum import Enum
from typing import Any, Callable, Dict, List, Optional, Union

from . import constants
from .timers import Scheduler, TimerHandle

LOGGER = logging.getLogger(__name__)


class DeviceStatus(str, Enum):
    IDLE = "idle"
    PLAYING = "playing"
    CALLING = "calling"
    ERROR = "error"


class ConnectionStatus(str, Enum):
    CONNECTED = "connected"
    RECONNECTING = "reconnecting"
    OFFLINE = "offline"


@dataclass(frozen=True, slots=True)
class MediaInfo:
    url: str
    media_type: str
    started_at: datetime
    is_paused: bool = False

    def as_dict(self) -> Dict[str, Any]:
        return {
            "url": self.url,
            "media_type": self.media_type,
            "started_at": self.started_at.isoformat(),
            "is_paused": self.is_paused,
        }


@dataclass(frozen=True, slots=True)
class MeetingInfo:
    meeting_url: str
    meeting_id: Optional[str]
    joined_at: datetime

    def as_dict(self) -> Dict[str, Any]:
        return {
            "meeting_url": self.meeting_url,
            "meeting_id": self.meeting_id,
            "joined_at": self.joined_at.isoformat(),
        }


@dataclass(frozen=True, slots=True)
class StateChange:
    """Notification delivered to listeners after every transition."""

    kind: str
    previous: Any
    current: Any
    reason: Optional[str] = None


@dataclass(frozen=True, slots=True)
class DeviceSnapshot:
    status: DeviceStatus
    connection_status: ConnectionStatus
    current_media: Optional[MediaInfo]
    current_meeting: Optional[MeetingInfo]
    volume: int
    last_heartbeat: Optional[datetime]
    error_reason: Optional[str] = None

    def as_dict(self) -> Dict[str, Any]:
        return {
            "status": self.status.value,
            "connection_status": self.connection_status.value,
            "current_media": self.current_media.as_dict()
            if self.current_media
            else None,
            "current_meeting": self.current_meeting.as_dict()
            if self.current_meeting
            else None,
            "volume": self.volume,
            "last_heartbeat": self.last_heartbeat.isoformat()
            if self.last_heartbeat
            else None,
            "error_reason": self.error_reason,
        }


StateListener = Callable[[StateChange], None]


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


class DeviceState:
    """In-memory device state, mutated only through its own methods.

    ``current_media`` and ``current_meeting`` are never set together, and the
    status always agrees with whichever of them is present. Entering
    ``error`` schedules a return to ``idle`` after ``recovery_seconds``; any
    other transition cancels that pending recovery.
    """

    def __init__(
        self,
        scheduler: Scheduler,
        *,
        volume: int = constants.DEFAULT_VOLUME,
        recovery_seconds: float = constants.ERROR_RECOVERY_SECONDS,
        clock: Callable[[], datetime] = _utcnow,
    ) -> None:
        self._scheduler = scheduler
        self._recovery_seconds = recovery_seconds
        self._clock = clock
        self._status = DeviceStatus.IDLE
        self._connection_status = ConnectionStatus.RECONNECTING
        self._current_media: Optional[MediaInfo] = None
        self._current_meeting: Optional[MeetingInfo] = None
        self._volume = _clamp_volume(volume)
        self._last_heartbeat: Optional[datetime] = None
        self._error_reason: Optional[str] = None
        self._recovery_timer: Optional[TimerHandle] = None
        self._listeners: List[StateListener] = []

    # ------------------------------------------------------------------
    # Observers
    # ------------------------------------------------------------------
    def add_listener(self, listener: StateListener) -> None:
        if listener not in self._listeners:
            self._listeners.append(listener)

    # ------------------------------------------------------------------
    # Read access
    # ------------------------------------------------------------------
    @property
    def status(self) -> DeviceStatus:
        return self._status

    @property
    def connection_status(self) -> ConnectionStatus:
        return self._connection_status

    @property
    def current_media(self) -> Optional[MediaInfo]:
        return self._current_media

    @property
    def current_meeting(self) -> Optional[MeetingInfo]:
        return self._current_meeting

    @property
    def volume(self) -> int:
        return self._volume

    @property
    def is_playing(self) -> bool:
        return self._status == DeviceStatus.PLAYING

    @property
    def is_calling(self) -> bool:
        return self._status == DeviceStatus.CALLING

    @property
    def is_paused(self) -> bool:
        return self._current_media is not None and self._current_media.is_paused

    @property
    def recovery_pending(self) -> bool:
        return self._recovery_timer is not None

    def snapshot(self) -> DeviceSnapshot:
        return DeviceSnapshot(
            status=self._status,
            connection_status=self._connection_status,
            current_media=self._current_media,
            current_meeting=self._current_meeting,
            volume=self._volume,
            last_heartbeat=self._last_heartbeat,
            error_reason=self._error_reason,
        )

    # ------------------------------------------------------------------
    # Transitions
    # ------------------------------------------------------------------
    def set_playing(self, url: str, media_type: str) -> MediaInfo:
        media = MediaInfo(url=url, media_type=media_type, started_at=self._clock())
        self._current_meeting = None
        self._current_media = media
        self._transition(DeviceStatus.PLAYING)
        return media

    def stop_playing(self) -> None:
        self._current_media = None
        if self._status == DeviceStatus.PLAYING:
            self._transition(DeviceStatus.IDLE)

    def set_paused(self, paused: bool) -> None:
        media = self._current_media
        if media is None:
            raise RuntimeError("No active media to pause or resume")
        if media.is_paused == paused:
            return
        self._current_media = dataclasses.replace(media, is_paused=paused)
        self._emit(StateChange("pause", media.is_paused, paused))

    def set_meeting(self, meeting_url: str, meeting_id: Optional[str] = None) -> MeetingInfo:
        meeting = MeetingInfo(
            meeting_url=meeting_url, meeting_id=meeting_id, joined_at=self._clock()
        )
        self._current_media = None
        self._current_meeting = meeting
        self._transition(DeviceStatus.CALLING)
        return meeting

    def leave_meeting(self) -> None:
        self._current_meeting = None
        if self._status == DeviceStatus.CALLING:
            self._transition(DeviceStatus.IDLE)

    def set_error(self, reason: str) -> None:
        LOGGER.error("Device entering error state: %s", reason)
        self._error_reason = reason
        self._transition(DeviceStatus.ERROR, reason=reason)
        self._cancel_recovery()
        self._recovery_timer = self._scheduler.call_later(
            self._recovery_seconds, self._recover
        )

    def set_status(self, status: Union[DeviceStatus, str]) -> None:
        """Force a status; unknown values raise ``ValueError``."""

        target = DeviceStatus(status)
        if target == DeviceStatus.ERROR:
            self.set_error("status forced to error")
            return
        if target == DeviceStatus.IDLE:
            self._current_media = None
            self._current_meeting = None
        elif target == DeviceStatus.PLAYING and self._current_media is None:
            raise ValueError("Cannot enter playing without media")
        elif target == DeviceStatus.CALLING and self._current_meeting is None:
            raise ValueError("Cannot enter calling without a meeting")
        self._transition(target)

    def set_volume(self, level: float) -> int:
        clamped = _clamp_volume(level)
        previous = self._volume
        self._volume = clamped
        if clamped != previous:
            self._emit(StateChange("volume", previous, clamped))
        return clamped

    def set_connection_status(self, status: Union[ConnectionStatus, str]) -> None:
        target = ConnectionStatus(status)
        previous = self._connection_status
        if target == previous:
            return
        self._connection_status = target
        LOGGER.info("Connection status %s -> %s", previous.value, target.value)
        self._emit(StateChange("connection", previous, target))

    def record_heartbeat(self) -> None:
        self._last_heartbeat = self._clock()

    def close(self) -> None:
        self._cancel_recovery()

    # ------------------------------------------------------------------
    # Internals
    # ------------------------------------------------------------------
    def _transition(self, target: DeviceStatus, *, reason: Optional[str] = None) -> None:
        if target != DeviceStatus.ERROR:
            self._cancel_recovery()
            self._error_reason = None
        previous = self._status
        self._status = target
        LOGGER.debug("Device status %s -> %s", previous.value, target.value)
        self._emit(StateChange("status", previous, target, reason))

    def _recover(self) -> None:
        self._recovery_timer = None
        if self._status != DeviceStatus.ERROR:
            return
        LOGGER.info(
            "Recovering from error state after %.0fs", self._recovery_seconds
        )
        self._current_media = None
        self._current_meeting = None
        self._transition(DeviceStatus.IDLE, reason="auto-recovery")

    def _cancel_recovery(self) -> None:
        timer = self._recovery_timer
        self._recovery_timer = None
        if timer is not None and not timer.cancelled():
            timer.cancel()

    def _emit(self, change: StateChange) -> None:
        for listener in list(self._listeners):
            try:
                listener(change)
            except Exception:
                LOGGER.exception("Device state listener failed")


def _clamp_volume(level: float) -> int:
    return int(max(0, min(100, round(level))))
