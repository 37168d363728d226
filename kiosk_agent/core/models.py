"""Domain models for commands and acknowledgments."""

from __future__ import annotations

from dataclasses import dataclass, field
from datetime import datetime, timezone
from enum import Enum
from typing import Any, Dict, Mapping, Optional


class CommandType(str, Enum):
    PLAY_MEDIA = "play_media"
    STOP_MEDIA = "stop_media"
    PAUSE_MEDIA = "pause_media"
    RESUME_MEDIA = "resume_media"
    SET_VOLUME = "set_volume"
    JOIN_ZOOM = "join_zoom"
    LEAVE_ZOOM = "leave_zoom"
    REBOOT = "reboot"
    SHUTDOWN = "shutdown"
    RESTART_SERVICE = "restart_service"
    GET_SYSTEM_INFO = "get_system_info"
    GET_LOGS = "get_logs"


COMMAND_TYPES = frozenset(item.value for item in CommandType)


class ErrorCode(str, Enum):
    COMMAND_EXPIRED = "E004"
    URL_NOT_WHITELISTED = "E005"
    UNKNOWN_COMMAND_TYPE = "E006"
    INTERNAL_ERROR = "E009"
    EXECUTION_TIMEOUT = "E010"
    MEDIA_ERROR = "E101"
    CALL_ERROR = "E102"
    VOLUME_ERROR = "E103"
    SYSTEM_ERROR = "E104"
    DIAGNOSTICS_ERROR = "E105"
    SERVICE_ERROR = "E106"
    INVALID_COMMAND_STRUCTURE = "E107"
    INVALID_PAYLOAD = "E108"


class AckStatus(str, Enum):
    SUCCESS = "success"
    FAILED = "failed"


PRIORITY_CRITICAL = 1
PRIORITY_DEFAULT = 5

# Lower number runs first.
COMMAND_PRIORITIES: Dict[str, int] = {
    CommandType.REBOOT.value: PRIORITY_CRITICAL,
    CommandType.SHUTDOWN.value: PRIORITY_CRITICAL,
    CommandType.RESTART_SERVICE.value: PRIORITY_CRITICAL,
    CommandType.JOIN_ZOOM.value: PRIORITY_CRITICAL,
    CommandType.LEAVE_ZOOM.value: PRIORITY_CRITICAL,
    CommandType.PLAY_MEDIA.value: 2,
    CommandType.STOP_MEDIA.value: 2,
    CommandType.PAUSE_MEDIA.value: 2,
    CommandType.RESUME_MEDIA.value: 2,
    CommandType.SET_VOLUME.value: 3,
    CommandType.GET_SYSTEM_INFO.value: 4,
    CommandType.GET_LOGS.value: 4,
}

_FAMILY_ERROR_CODES: Dict[str, ErrorCode] = {
    CommandType.PLAY_MEDIA.value: ErrorCode.MEDIA_ERROR,
    CommandType.STOP_MEDIA.value: ErrorCode.MEDIA_ERROR,
    CommandType.PAUSE_MEDIA.value: ErrorCode.MEDIA_ERROR,
    CommandType.RESUME_MEDIA.value: ErrorCode.MEDIA_ERROR,
    CommandType.JOIN_ZOOM.value: ErrorCode.CALL_ERROR,
    CommandType.LEAVE_ZOOM.value: ErrorCode.CALL_ERROR,
    CommandType.SET_VOLUME.value: ErrorCode.VOLUME_ERROR,
    CommandType.REBOOT.value: ErrorCode.SYSTEM_ERROR,
    CommandType.SHUTDOWN.value: ErrorCode.SYSTEM_ERROR,
    CommandType.GET_SYSTEM_INFO.value: ErrorCode.DIAGNOSTICS_ERROR,
    CommandType.GET_LOGS.value: ErrorCode.DIAGNOSTICS_ERROR,
    CommandType.RESTART_SERVICE.value: ErrorCode.SERVICE_ERROR,
}


def priority_for(command_type: Optional[str]) -> int:
    return COMMAND_PRIORITIES.get(command_type or "", PRIORITY_DEFAULT)


def error_code_for_type(command_type: Optional[str]) -> ErrorCode:
    """Return the handler-family error code reported when a handler fails."""

    return _FAMILY_ERROR_CODES.get(command_type or "", ErrorCode.INTERNAL_ERROR)


@dataclass(frozen=True, slots=True)
class Command:
    """A control-plane instruction. Field contents are checked by the validator."""

    id: Optional[str]
    type: Optional[str]
    payload: Mapping[str, Any] = field(default_factory=dict)
    expires_at: Any = None

    @property
    def priority(self) -> int:
        return priority_for(self.type)

    @classmethod
    def from_dict(cls, data: Mapping[str, Any]) -> "Command":
        identifier = data.get("id")
        if identifier is None:
            identifier = data.get("uuid")
        payload = data.get("payload")
        return cls(
            id=str(identifier) if identifier not in (None, "") else None,
            type=data.get("type") if isinstance(data.get("type"), str) else None,
            payload=payload if isinstance(payload, Mapping) else {},
            expires_at=data.get("expires_at"),
        )


@dataclass(frozen=True, slots=True)
class Acknowledgment:
    command_id: str
    status: AckStatus
    error_code: Optional[ErrorCode] = None
    error_message: Optional[str] = None
    result: Optional[Dict[str, Any]] = None
    executed_at: datetime = field(default_factory=lambda: datetime.now(timezone.utc))

    @classmethod
    def success(
        cls, command_id: str, result: Optional[Dict[str, Any]] = None
    ) -> "Acknowledgment":
        return cls(command_id=command_id, status=AckStatus.SUCCESS, result=result)

    @classmethod
    def failure(
        cls, command_id: str, code: ErrorCode, message: str
    ) -> "Acknowledgment":
        return cls(
            command_id=command_id,
            status=AckStatus.FAILED,
            error_code=code,
            error_message=message,
        )

    def to_dict(self) -> Dict[str, Any]:
        return {
            "status": self.status.value,
            "error_code": self.error_code.value if self.error_code else None,
            "error_message": self.error_message,
            "result": self.result,
            "executed_at": self.executed_at.isoformat(),
        }
