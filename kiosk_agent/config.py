"""Configuration loader for kiosk-agent."""

from __future__ import annotations

import os
import uuid
from configparser import ConfigParser
from dataclasses import dataclass, field
from pathlib import Path
from typing import Iterable, List, Mapping, Optional
from urllib.parse import urlsplit

from . import constants

DEFAULT_STRATEGIES = ["playwright", "process", "synthetic_input"]


class ConfigurationError(RuntimeError):
    """Raised when the configuration is missing or invalid."""

    def __init__(self, problems: Iterable[str]) -> None:
        self.problems = list(problems)
        super().__init__("Invalid configuration: " + "; ".join(self.problems))


@dataclass(slots=True)
class CloudConfig:
    server_url: str = ""
    appliance_id: str = ""
    appliance_token: Optional[str] = None
    request_timeout_seconds: float = 10.0


@dataclass(slots=True)
class PushConfig:
    enabled: bool = False
    key: Optional[str] = None
    host: Optional[str] = None
    port: int = 443
    scheme: str = "https"
    reconnect_initial_seconds: float = 1.0
    reconnect_max_seconds: float = 60.0


@dataclass(slots=True)
class AgentConfig:
    polling_interval_seconds: int = constants.DEFAULT_POLLING_INTERVAL_SECONDS
    heartbeat_interval_seconds: int = constants.DEFAULT_HEARTBEAT_INTERVAL_SECONDS
    default_volume: int = constants.DEFAULT_VOLUME
    error_recovery_seconds: float = constants.ERROR_RECOVERY_SECONDS


@dataclass(slots=True)
class TransportConfig:
    ack_queue_capacity: int = constants.ACK_QUEUE_CAPACITY
    ack_max_retries: int = constants.ACK_MAX_RETRIES
    offline_failure_threshold: int = constants.OFFLINE_FAILURE_THRESHOLD
    auth_probe_seconds: float = constants.AUTH_PROBE_SECONDS


@dataclass(slots=True)
class ActuatorConfig:
    standby_url: str = constants.DEFAULT_STANDBY_URL
    strategies: List[str] = field(default_factory=lambda: list(DEFAULT_STRATEGIES))
    chromium_path: Optional[str] = None
    user_data_dir: Path = constants.DEFAULT_USER_DATA_DIR
    navigation_timeout_seconds: float = 30.0
    recovery_delay_seconds: float = 1.0


@dataclass(slots=True)
class LoggingConfig:
    level: str = "INFO"
    path: Optional[Path] = constants.DEFAULT_LOG_PATH
    log_network: bool = False


@dataclass(slots=True)
class HealthConfig:
    enabled: bool = True
    host: str = "127.0.0.1"
    port: int = 8787


@dataclass(slots=True)
class KioskConfig:
    cloud: CloudConfig
    push: PushConfig
    agent: AgentConfig
    transport: TransportConfig
    actuator: ActuatorConfig
    logging: LoggingConfig
    health: HealthConfig
    raw: ConfigParser
    path: Path


# Environment variable suffix -> (section, option).
ENV_OVERRIDES: Mapping[str, tuple[str, str]] = {
    "SERVER_URL": ("cloud", "server_url"),
    "APPLIANCE_ID": ("cloud", "appliance_id"),
    "TOKEN": ("cloud", "appliance_token"),
    "POLLING_INTERVAL": ("agent", "polling_interval_seconds"),
    "HEARTBEAT_INTERVAL": ("agent", "heartbeat_interval_seconds"),
    "DEFAULT_VOLUME": ("agent", "default_volume"),
    "LOG_LEVEL": ("logging", "level"),
}

_NUMERIC_OVERRIDES = {"POLLING_INTERVAL", "HEARTBEAT_INTERVAL", "DEFAULT_VOLUME"}


def _parse_list(value: str, *, default: Iterable[str]) -> List[str]:
    if not value:
        return list(default)
    return [item.strip() for item in value.split(",") if item.strip()]


def _apply_env_overrides(parser: ConfigParser, environ: Mapping[str, str]) -> None:
    for suffix, (section, option) in ENV_OVERRIDES.items():
        value = environ.get(constants.ENV_PREFIX + suffix)
        if value is None or value == "":
            continue
        if suffix in _NUMERIC_OVERRIDES:
            try:
                int(value)
            except ValueError:
                continue
        parser.set(section, option, value)


def _getint(parser: ConfigParser, section: str, option: str, fallback: int, problems: List[str]) -> int:
    try:
        return parser.getint(section, option, fallback=fallback)
    except ValueError:
        problems.append(f"[{section}] {option} must be an integer")
        return fallback


def _getfloat(
    parser: ConfigParser, section: str, option: str, fallback: float, problems: List[str]
) -> float:
    try:
        return parser.getfloat(section, option, fallback=fallback)
    except ValueError:
        problems.append(f"[{section}] {option} must be a number")
        return fallback


def _getboolean(
    parser: ConfigParser, section: str, option: str, fallback: bool, problems: List[str]
) -> bool:
    try:
        return parser.getboolean(section, option, fallback=fallback)
    except ValueError:
        problems.append(f"[{section}] {option} must be a boolean")
        return fallback


def load_config(
    path: Optional[Path] = None,
    *,
    environ: Optional[Mapping[str, str]] = None,
) -> KioskConfig:
    """Load configuration from disk and the environment, then validate it.

    Raises ``ConfigurationError`` listing every problem found.
    """

    config_path = path or constants.DEFAULT_CONFIG_PATH
    parser = ConfigParser()
    parser.read_dict(
        {
            "cloud": {
                "server_url": "",
                "appliance_id": "",
                "request_timeout_seconds": "10",
            },
            "push": {
                "enabled": "false",
                "port": "443",
                "scheme": "https",
                "reconnect_initial_seconds": "1.0",
                "reconnect_max_seconds": "60.0",
            },
            "agent": {
                "polling_interval_seconds": str(constants.DEFAULT_POLLING_INTERVAL_SECONDS),
                "heartbeat_interval_seconds": str(constants.DEFAULT_HEARTBEAT_INTERVAL_SECONDS),
                "default_volume": str(constants.DEFAULT_VOLUME),
                "error_recovery_seconds": str(constants.ERROR_RECOVERY_SECONDS),
            },
            "transport": {
                "ack_queue_capacity": str(constants.ACK_QUEUE_CAPACITY),
                "ack_max_retries": str(constants.ACK_MAX_RETRIES),
                "offline_failure_threshold": str(constants.OFFLINE_FAILURE_THRESHOLD),
                "auth_probe_seconds": str(constants.AUTH_PROBE_SECONDS),
            },
            "actuator": {
                "standby_url": constants.DEFAULT_STANDBY_URL,
                "strategies": ",".join(DEFAULT_STRATEGIES),
                "user_data_dir": str(constants.DEFAULT_USER_DATA_DIR),
                "navigation_timeout_seconds": "30",
                "recovery_delay_seconds": "1.0",
            },
            "logging": {
                "level": "INFO",
                "path": str(constants.DEFAULT_LOG_PATH),
                "log_network": "false",
            },
            "health": {
                "enabled": "true",
                "host": "127.0.0.1",
                "port": "8787",
            },
        }
    )

    if config_path.exists():
        parser.read(config_path)

    _apply_env_overrides(parser, os.environ if environ is None else environ)

    problems: List[str] = []

    cloud = CloudConfig(
        server_url=parser.get("cloud", "server_url").strip().rstrip("/"),
        appliance_id=parser.get("cloud", "appliance_id").strip(),
        appliance_token=parser.get("cloud", "appliance_token", fallback=None),
        request_timeout_seconds=_getfloat(
            parser, "cloud", "request_timeout_seconds", 10.0, problems
        ),
    )

    push = PushConfig(
        enabled=_getboolean(parser, "push", "enabled", False, problems),
        key=parser.get("push", "key", fallback=None),
        host=parser.get("push", "host", fallback=None),
        port=_getint(parser, "push", "port", 443, problems),
        scheme=parser.get("push", "scheme", fallback="https"),
        reconnect_initial_seconds=_getfloat(
            parser, "push", "reconnect_initial_seconds", 1.0, problems
        ),
        reconnect_max_seconds=_getfloat(
            parser, "push", "reconnect_max_seconds", 60.0, problems
        ),
    )

    agent = AgentConfig(
        polling_interval_seconds=_getint(
            parser,
            "agent",
            "polling_interval_seconds",
            constants.DEFAULT_POLLING_INTERVAL_SECONDS,
            problems,
        ),
        heartbeat_interval_seconds=_getint(
            parser,
            "agent",
            "heartbeat_interval_seconds",
            constants.DEFAULT_HEARTBEAT_INTERVAL_SECONDS,
            problems,
        ),
        default_volume=_getint(
            parser, "agent", "default_volume", constants.DEFAULT_VOLUME, problems
        ),
        error_recovery_seconds=_getfloat(
            parser,
            "agent",
            "error_recovery_seconds",
            constants.ERROR_RECOVERY_SECONDS,
            problems,
        ),
    )

    transport = TransportConfig(
        ack_queue_capacity=max(
            1,
            _getint(
                parser,
                "transport",
                "ack_queue_capacity",
                constants.ACK_QUEUE_CAPACITY,
                problems,
            ),
        ),
        ack_max_retries=max(
            1,
            _getint(
                parser, "transport", "ack_max_retries", constants.ACK_MAX_RETRIES, problems
            ),
        ),
        offline_failure_threshold=max(
            1,
            _getint(
                parser,
                "transport",
                "offline_failure_threshold",
                constants.OFFLINE_FAILURE_THRESHOLD,
                problems,
            ),
        ),
        auth_probe_seconds=max(
            1.0,
            _getfloat(
                parser,
                "transport",
                "auth_probe_seconds",
                constants.AUTH_PROBE_SECONDS,
                problems,
            ),
        ),
    )

    chromium_path = parser.get("actuator", "chromium_path", fallback="").strip()
    actuator = ActuatorConfig(
        standby_url=parser.get("actuator", "standby_url").rstrip("/"),
        strategies=_parse_list(
            parser.get("actuator", "strategies", fallback=""),
            default=DEFAULT_STRATEGIES,
        ),
        chromium_path=chromium_path or None,
        user_data_dir=Path(parser.get("actuator", "user_data_dir")).expanduser(),
        navigation_timeout_seconds=_getfloat(
            parser, "actuator", "navigation_timeout_seconds", 30.0, problems
        ),
        recovery_delay_seconds=max(
            0.0,
            _getfloat(parser, "actuator", "recovery_delay_seconds", 1.0, problems),
        ),
    )

    log_path_value = parser.get("logging", "path", fallback="").strip()
    logging_config = LoggingConfig(
        level=parser.get("logging", "level", fallback="INFO"),
        path=Path(log_path_value).expanduser() if log_path_value else None,
        log_network=_getboolean(parser, "logging", "log_network", False, problems),
    )

    health = HealthConfig(
        enabled=_getboolean(parser, "health", "enabled", True, problems),
        host=parser.get("health", "host", fallback="127.0.0.1"),
        port=_getint(parser, "health", "port", 8787, problems),
    )

    config = KioskConfig(
        cloud=cloud,
        push=push,
        agent=agent,
        transport=transport,
        actuator=actuator,
        logging=logging_config,
        health=health,
        raw=parser,
        path=config_path,
    )
    problems.extend(validate_config(config))
    if problems:
        raise ConfigurationError(problems)
    return config


def validate_config(config: KioskConfig) -> List[str]:
    problems: List[str] = []

    server = urlsplit(config.cloud.server_url)
    if not config.cloud.server_url:
        problems.append("[cloud] server_url is required")
    elif server.scheme != "https" or not server.netloc:
        problems.append("[cloud] server_url must be an https:// URL")

    try:
        uuid.UUID(config.cloud.appliance_id)
    except ValueError:
        problems.append("[cloud] appliance_id must be a UUID")

    if not config.cloud.appliance_token:
        problems.append("[cloud] appliance_token is required")

    if config.agent.polling_interval_seconds < 1:
        problems.append("[agent] polling_interval_seconds must be at least 1")
    if config.agent.heartbeat_interval_seconds < 10:
        problems.append("[agent] heartbeat_interval_seconds must be at least 10")
    if not 0 <= config.agent.default_volume <= 100:
        problems.append("[agent] default_volume must be between 0 and 100")

    if config.push.enabled and not (config.push.key and config.push.host):
        problems.append("[push] key and host are required when push is enabled")

    if not config.actuator.strategies:
        problems.append("[actuator] strategies must name at least one strategy")
    for name in config.actuator.strategies:
        if name not in DEFAULT_STRATEGIES:
            problems.append(f"[actuator] unknown strategy '{name}'")

    return problems


def redacted_items(config: KioskConfig, section: str) -> List[tuple[str, str]]:
    """Return ``section``'s options with secrets masked, for display."""

    items = []
    for key, value in config.raw[section].items():
        if key in ("appliance_token", "key") and value:
            value = "***"
        items.append((key, value))
    return items
