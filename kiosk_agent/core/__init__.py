"""Core primitives for kiosk-agent."""

from .idempotency import CommandIdempotencyGuard, ProcessedCommand
from .models import (
    AckStatus,
    Acknowledgment,
    Command,
    CommandType,
    ErrorCode,
    error_code_for_type,
    priority_for,
)

__all__ = [
    "AckStatus",
    "Acknowledgment",
    "Command",
    "CommandIdempotencyGuard",
    "CommandType",
    "ErrorCode",
    "ProcessedCommand",
    "error_code_for_type",
    "priority_for",
]
