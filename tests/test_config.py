from pathlib import Path

import pytest

from kiosk_agent.config import ConfigurationError, load_config, redacted_items

APPLIANCE_ID = "7d8c2f4e-0000-4000-8000-000000000001"

VALID = f"""
[cloud]
server_url = https://control.example.com/
appliance_id = {APPLIANCE_ID}
appliance_token = secret-token

[push]
enabled = true
key = app-key
host = push.example.com

[agent]
polling_interval_seconds = 7
default_volume = 55

[actuator]
strategies = process, synthetic_input
standby_url = http://localhost:3000/

[logging]
path =
"""


def _write(tmp_path: Path, text: str) -> Path:
    path = tmp_path / "kiosk-agent.cfg"
    path.write_text(text)
    return path


def test_load_valid_config(tmp_path):
    config = load_config(_write(tmp_path, VALID), environ={})

    assert config.cloud.server_url == "https://control.example.com"
    assert config.cloud.appliance_token == "secret-token"
    assert config.push.enabled is True
    assert config.push.port == 443
    assert config.agent.polling_interval_seconds == 7
    assert config.agent.heartbeat_interval_seconds == 30
    assert config.agent.default_volume == 55
    assert config.actuator.strategies == ["process", "synthetic_input"]
    assert config.actuator.standby_url == "http://localhost:3000"
    assert config.transport.ack_queue_capacity == 50
    assert config.logging.path is None
    assert config.health.port == 8787


def test_environment_overrides_file(tmp_path):
    config = load_config(
        _write(tmp_path, VALID),
        environ={
            "KIOSK_AGENT_POLLING_INTERVAL": "12",
            "KIOSK_AGENT_DEFAULT_VOLUME": "loud",
            "KIOSK_AGENT_TOKEN": "from-env",
            "KIOSK_AGENT_LOG_LEVEL": "DEBUG",
        },
    )

    assert config.agent.polling_interval_seconds == 12
    assert config.agent.default_volume == 55
    assert config.cloud.appliance_token == "from-env"
    assert config.logging.level == "DEBUG"


def test_environment_only_configuration(tmp_path):
    config = load_config(
        tmp_path / "missing.cfg",
        environ={
            "KIOSK_AGENT_SERVER_URL": "https://control.example.com",
            "KIOSK_AGENT_APPLIANCE_ID": APPLIANCE_ID,
            "KIOSK_AGENT_TOKEN": "token",
        },
    )

    assert config.push.enabled is False
    assert config.actuator.strategies == ["playwright", "process", "synthetic_input"]


def test_invalid_configuration_lists_every_problem(tmp_path):
    path = _write(
        tmp_path,
        """
[cloud]
server_url = http://insecure.example.com
appliance_id = not-a-uuid

[push]
enabled = true

[agent]
heartbeat_interval_seconds = 5
default_volume = 150
polling_interval_seconds = often

[actuator]
strategies = teleport
""",
    )

    with pytest.raises(ConfigurationError) as excinfo:
        load_config(path, environ={})

    problems = "\n".join(excinfo.value.problems)
    assert "server_url must be an https:// URL" in problems
    assert "appliance_id must be a UUID" in problems
    assert "appliance_token is required" in problems
    assert "key and host are required" in problems
    assert "heartbeat_interval_seconds must be at least 10" in problems
    assert "default_volume must be between 0 and 100" in problems
    assert "polling_interval_seconds must be an integer" in problems
    assert "unknown strategy 'teleport'" in problems


def test_malformed_boolean_is_reported(tmp_path):
    text = VALID.replace("enabled = true", "enabled = sometimes") + "\n[health]\nenabled = maybe\n"

    with pytest.raises(ConfigurationError) as excinfo:
        load_config(_write(tmp_path, text), environ={})

    problems = "\n".join(excinfo.value.problems)
    assert "[push] enabled must be a boolean" in problems
    assert "[health] enabled must be a boolean" in problems


def test_redacted_items_masks_secrets(tmp_path):
    config = load_config(_write(tmp_path, VALID), environ={})

    cloud = dict(redacted_items(config, "cloud"))
    push = dict(redacted_items(config, "push"))

    assert cloud["appliance_token"] == "***"
    assert cloud["appliance_id"] == APPLIANCE_ID
    assert push["key"] == "***"
