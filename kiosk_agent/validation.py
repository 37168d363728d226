"""Command validation and URL allow-listing.

Everything in this module is pure: no I/O, no shared state, safe to call
from any number of concurrent commands.
"""

from __future__ import annotations

import logging
import math
import re
from dataclasses import dataclass, field
from datetime import datetime, timezone
from typing import Any, List, Optional, Tuple
from urllib.parse import SplitResult, urlsplit

from .core.models import COMMAND_TYPES, Command, CommandType, ErrorCode

LOGGER = logging.getLogger(__name__)

ALLOWED_DOMAINS = (
    "jw.org",
    "www.jw.org",
    "wol.jw.org",
    "download-a.akamaihd.net",
)
ALLOWED_DOMAIN_PATTERNS = (re.compile(r"^[a-z0-9-]+\.jw-cdn\.org$"),)
MEETING_DOMAIN = "zoom.us"
MAX_URL_LENGTH = 2048

MEDIA_TYPES = ("video", "audio")
MAX_POWER_DELAY_SECONDS = 3600
MIN_LOG_LINES = 1
MAX_LOG_LINES = 500

_LABEL_RE = re.compile(r"^[a-z0-9]([a-z0-9-]{0,61}[a-z0-9])?$", re.IGNORECASE)

# Rule identifiers, ordered by the precedence used to pick the reported code.
RULE_UNKNOWN_TYPE = "unknown_type"
RULE_URL = "url_not_allowed"
RULE_EXPIRED = "expired"
RULE_STRUCTURE = "structure"
RULE_PAYLOAD = "payload"

_RULE_CODES: Tuple[Tuple[str, ErrorCode], ...] = (
    (RULE_UNKNOWN_TYPE, ErrorCode.UNKNOWN_COMMAND_TYPE),
    (RULE_URL, ErrorCode.URL_NOT_WHITELISTED),
    (RULE_EXPIRED, ErrorCode.COMMAND_EXPIRED),
    (RULE_STRUCTURE, ErrorCode.INVALID_COMMAND_STRUCTURE),
    (RULE_PAYLOAD, ErrorCode.INVALID_PAYLOAD),
)


@dataclass(frozen=True, slots=True)
class ValidationResult:
    valid: bool
    errors: List[str] = field(default_factory=list)
    error_code: Optional[ErrorCode] = None


def _parse_https(url: Any) -> Optional[Tuple[SplitResult, str]]:
    if not isinstance(url, str) or not url or len(url) > MAX_URL_LENGTH:
        return None
    try:
        parts = urlsplit(url)
        port = parts.port
    except ValueError:
        return None
    if parts.scheme.lower() != "https":
        return None
    if port is not None and port != 443:
        return None
    hostname = (parts.hostname or "").lower()
    if not hostname:
        return None
    return parts, hostname


def is_valid_subdomain(subdomain: str) -> bool:
    if not subdomain:
        return False
    return all(_LABEL_RE.match(label) for label in subdomain.split("."))


def is_url_allowed(url: Any) -> bool:
    """Return True when ``url`` is an HTTPS URL on an allow-listed host."""

    parsed = _parse_https(url)
    if parsed is None:
        return False
    _, hostname = parsed

    if hostname in ALLOWED_DOMAINS:
        return True

    for domain in ALLOWED_DOMAINS:
        suffix = "." + domain
        if hostname.endswith(suffix) and is_valid_subdomain(
            hostname[: -len(suffix)]
        ):
            return True

    return any(pattern.match(hostname) for pattern in ALLOWED_DOMAIN_PATTERNS)


def is_meeting_url(url: Any) -> bool:
    parsed = _parse_https(url)
    if parsed is None:
        return False
    _, hostname = parsed
    if hostname == MEETING_DOMAIN:
        return True
    suffix = "." + MEETING_DOMAIN
    return hostname.endswith(suffix) and is_valid_subdomain(hostname[: -len(suffix)])


def parse_timestamp(value: Any) -> Optional[datetime]:
    """Parse an ISO-8601 timestamp; naive values are taken as UTC.

    Raises ``ValueError`` for anything that is not a timestamp.
    """

    if isinstance(value, datetime):
        parsed = value
    elif isinstance(value, str):
        text = value.strip()
        if text.endswith(("Z", "z")):
            text = text[:-1] + "+00:00"
        parsed = datetime.fromisoformat(text)
    else:
        raise ValueError(f"Unsupported timestamp: {value!r}")

    if parsed.tzinfo is None:
        parsed = parsed.replace(tzinfo=timezone.utc)
    return parsed


def _is_number(value: Any) -> bool:
    return (
        isinstance(value, (int, float))
        and not isinstance(value, bool)
        and math.isfinite(value)
    )


def validate_command(
    command: Command, *, now: Optional[datetime] = None
) -> ValidationResult:
    """Check structure, expiry and type-specific payload rules."""

    failures: List[Tuple[str, str]] = []
    payload = command.payload or {}

    if not command.id:
        failures.append((RULE_STRUCTURE, "Command missing id"))

    if not command.type:
        failures.append((RULE_STRUCTURE, "Command missing type"))
    elif command.type not in COMMAND_TYPES:
        failures.append((RULE_UNKNOWN_TYPE, f"Unknown command type: {command.type}"))

    if command.expires_at not in (None, ""):
        try:
            expires_at = parse_timestamp(command.expires_at)
        except ValueError:
            failures.append((RULE_STRUCTURE, "Invalid expires_at format"))
        else:
            current = now or datetime.now(timezone.utc)
            if expires_at < current:
                failures.append((RULE_EXPIRED, "Command has expired"))

    if command.type == CommandType.PLAY_MEDIA.value:
        url = payload.get("url")
        if not url:
            failures.append((RULE_PAYLOAD, "play_media requires url in payload"))
        elif not is_url_allowed(url):
            failures.append((RULE_URL, "URL not in authorized domain allow-list"))
        if payload.get("media_type") not in MEDIA_TYPES:
            failures.append(
                (RULE_PAYLOAD, "play_media requires media_type (video|audio) in payload")
            )

    elif command.type == CommandType.SET_VOLUME.value:
        level = payload.get("level")
        if level is None:
            failures.append((RULE_PAYLOAD, "set_volume requires level in payload"))
        elif not _is_number(level) or not 0 <= level <= 100:
            failures.append((RULE_PAYLOAD, "set_volume level must be 0-100"))

    elif command.type == CommandType.JOIN_ZOOM.value:
        meeting_url = payload.get("meeting_url")
        if not meeting_url:
            failures.append((RULE_PAYLOAD, "join_zoom requires meeting_url in payload"))
        elif not is_meeting_url(meeting_url):
            failures.append(
                (RULE_PAYLOAD, "join_zoom meeting_url must be a valid Zoom URL")
            )

    elif command.type in (CommandType.REBOOT.value, CommandType.SHUTDOWN.value):
        if "delay" in payload:
            delay = payload["delay"]
            if not _is_number(delay) or not 0 <= delay <= MAX_POWER_DELAY_SECONDS:
                failures.append(
                    (
                        RULE_PAYLOAD,
                        f"{command.type} delay must be 0-{MAX_POWER_DELAY_SECONDS} seconds",
                    )
                )

    elif command.type == CommandType.GET_LOGS.value:
        if "lines" in payload:
            lines = payload["lines"]
            valid_lines = (
                _is_number(lines)
                and float(lines).is_integer()
                and MIN_LOG_LINES <= lines <= MAX_LOG_LINES
            )
            if not valid_lines:
                failures.append(
                    (RULE_PAYLOAD, f"get_logs lines must be {MIN_LOG_LINES}-{MAX_LOG_LINES}")
                )

    if not failures:
        return ValidationResult(valid=True)

    errors = [message for _, message in failures]
    LOGGER.warning("Command %s failed validation: %s", command.id, "; ".join(errors))
    return ValidationResult(
        valid=False, errors=errors, error_code=classify_failures(failures)
    )


def classify_failures(failures: List[Tuple[str, str]]) -> ErrorCode:
    rules = {rule for rule, _ in failures}
    for rule, code in _RULE_CODES:
        if rule in rules:
            return code
    return ErrorCode.INVALID_COMMAND_STRUCTURE
