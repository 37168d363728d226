"""Constants used across the kiosk-agent package."""

from __future__ import annotations

from pathlib import Path

APP_NAME = "kiosk-agent"
DEFAULT_CONFIG_FILENAME = f"{APP_NAME}.cfg"
DEFAULT_CONFIG_PATH = Path("/etc") / APP_NAME / DEFAULT_CONFIG_FILENAME
DEFAULT_LOG_PATH = Path("/var/log") / APP_NAME / f"{APP_NAME}.log"

ENV_PREFIX = "KIOSK_AGENT_"

API_PREFIX = "/api/v1"
BROADCAST_AUTH_PATH = "/api/broadcasting/auth"

DEFAULT_STANDBY_URL = "http://localhost:3000"
DEFAULT_USER_DATA_DIR = Path("/opt/kiosk-agent/data/chromium")

DEFAULT_POLLING_INTERVAL_SECONDS = 5
DEFAULT_HEARTBEAT_INTERVAL_SECONDS = 30
DEFAULT_VOLUME = 80
ERROR_RECOVERY_SECONDS = 10.0

# Consecutive-failure backoff applied once the offline threshold is reached.
POLL_BACKOFF_SCHEDULE = (5.0, 10.0, 20.0, 60.0)
OFFLINE_FAILURE_THRESHOLD = 3
RATE_LIMIT_INITIAL_SECONDS = 2.0
RATE_LIMIT_MAX_SECONDS = 60.0
AUTH_PROBE_SECONDS = 300.0

ACK_QUEUE_CAPACITY = 50
ACK_MAX_RETRIES = 5
