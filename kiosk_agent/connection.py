"""Request health tracking shared by the pull channel and the heartbeat.

Three independent signals are tracked:

* consecutive connectivity failures, which drive the device's connection
  status and a fixed backoff schedule once the offline threshold is reached;
* authentication rejections (401/403), which put the transport to sleep
  until a request succeeds again;
* rate limiting (429), which applies its own exponential backoff.
"""

from __future__ import annotations

import logging
from enum import Enum
from typing import Optional, Sequence

from . import constants
from .state import ConnectionStatus, DeviceState
from .timers import Scheduler

LOGGER = logging.getLogger(__name__)

AUTH_FAILURE_STATUSES = frozenset({401, 403})
RATE_LIMIT_STATUS = 429


class FailureKind(str, Enum):
    CONNECTIVITY = "connectivity"
    AUTH = "auth"
    RATE_LIMITED = "rate_limited"


def classify_status(status: Optional[int]) -> FailureKind:
    if status in AUTH_FAILURE_STATUSES:
        return FailureKind.AUTH
    if status == RATE_LIMIT_STATUS:
        return FailureKind.RATE_LIMITED
    return FailureKind.CONNECTIVITY


def backoff_delay(schedule: Sequence[float], attempt: int) -> float:
    """Delay for the ``attempt``-th backoff step (1-based), capped at the last."""

    if attempt < 1 or not schedule:
        return 0.0
    return float(schedule[min(attempt, len(schedule)) - 1])


class ConnectionMonitor:
    """Failure bookkeeping and request gating for outbound API calls."""

    def __init__(
        self,
        state: DeviceState,
        scheduler: Scheduler,
        *,
        backoff_schedule: Sequence[float] = constants.POLL_BACKOFF_SCHEDULE,
        offline_threshold: int = constants.OFFLINE_FAILURE_THRESHOLD,
        rate_limit_initial: float = constants.RATE_LIMIT_INITIAL_SECONDS,
        rate_limit_max: float = constants.RATE_LIMIT_MAX_SECONDS,
        auth_probe_seconds: float = constants.AUTH_PROBE_SECONDS,
    ) -> None:
        self._state = state
        self._scheduler = scheduler
        self._schedule = tuple(backoff_schedule)
        self._offline_threshold = max(1, offline_threshold)
        self._rate_limit_initial = rate_limit_initial
        self._rate_limit_max = rate_limit_max
        self._auth_probe_seconds = auth_probe_seconds

        self._consecutive_failures = 0
        self._rate_limit_hits = 0
        self._throttled_until: Optional[float] = None
        self._dormant = False
        self._next_auth_probe: Optional[float] = None

    @property
    def consecutive_failures(self) -> int:
        return self._consecutive_failures

    @property
    def rate_limit_hits(self) -> int:
        return self._rate_limit_hits

    @property
    def dormant(self) -> bool:
        return self._dormant

    @property
    def throttled(self) -> bool:
        return (
            self._throttled_until is not None
            and self._scheduler.monotonic() < self._throttled_until
        )

    def allow_request(self) -> bool:
        """Return True when an outbound request may be attempted now.

        While dormant, one probe request is let through every
        ``auth_probe_seconds`` so a restored credential is eventually noticed.
        """

        now = self._scheduler.monotonic()
        if self._dormant:
            if self._next_auth_probe is not None and now < self._next_auth_probe:
                return False
            self._next_auth_probe = now + self._auth_probe_seconds
            LOGGER.info("Probing API after authentication failure")
            return True
        if self._throttled_until is not None and now < self._throttled_until:
            return False
        return True

    def record_success(self) -> None:
        """Any successful response clears dormancy and rate limiting."""

        if self._dormant:
            LOGGER.info("API accepted credentials again; leaving dormant state")
        self._dormant = False
        self._next_auth_probe = None
        self._rate_limit_hits = 0
        self._throttled_until = None

    def poll_succeeded(self) -> None:
        self.record_success()
        if self._consecutive_failures:
            LOGGER.info(
                "Command polling recovered after %d failures", self._consecutive_failures
            )
        self._consecutive_failures = 0
        self._state.set_connection_status(ConnectionStatus.CONNECTED)

    def poll_failed(self, status: Optional[int] = None) -> float:
        """Record a failed poll and return the delay before the next attempt."""

        kind = classify_status(status)
        if kind != FailureKind.CONNECTIVITY:
            return self._record_rejection(kind)

        self._consecutive_failures += 1
        failures = self._consecutive_failures
        if failures < self._offline_threshold:
            self._state.set_connection_status(ConnectionStatus.RECONNECTING)
            LOGGER.warning("Command poll failed (%d consecutive)", failures)
            return 0.0

        self._state.set_connection_status(ConnectionStatus.OFFLINE)
        delay = backoff_delay(self._schedule, failures - self._offline_threshold + 1)
        LOGGER.warning(
            "Command poll failed (%d consecutive); backing off %.0fs", failures, delay
        )
        return delay

    def request_failed(self, status: Optional[int] = None) -> float:
        """Record a failure from a non-polling request.

        Connectivity failures here never change the connection status; only
        authentication and rate-limit responses are taken into account.
        """

        kind = classify_status(status)
        if kind == FailureKind.CONNECTIVITY:
            return 0.0
        return self._record_rejection(kind)

    def _record_rejection(self, kind: FailureKind) -> float:
        if kind == FailureKind.AUTH:
            if not self._dormant:
                LOGGER.error(
                    "API rejected appliance credentials; suspending requests"
                )
            self._dormant = True
            self._next_auth_probe = (
                self._scheduler.monotonic() + self._auth_probe_seconds
            )
            return 0.0

        self._rate_limit_hits += 1
        delay = min(
            self._rate_limit_initial * 2 ** (self._rate_limit_hits - 1),
            self._rate_limit_max,
        )
        self._throttled_until = self._scheduler.monotonic() + delay
        LOGGER.warning("API rate limit hit; backing off %.0fs", delay)
        return delay
