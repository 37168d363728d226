import pytest

from kiosk_agent.connection import (
    ConnectionMonitor,
    FailureKind,
    backoff_delay,
    classify_status,
)
from kiosk_agent.state import ConnectionStatus


@pytest.fixture
def monitor(device, scheduler):
    return ConnectionMonitor(device, scheduler)


def test_classify_status():
    assert classify_status(None) == FailureKind.CONNECTIVITY
    assert classify_status(500) == FailureKind.CONNECTIVITY
    assert classify_status(401) == FailureKind.AUTH
    assert classify_status(403) == FailureKind.AUTH
    assert classify_status(429) == FailureKind.RATE_LIMITED


def test_backoff_delay_caps_at_last_step():
    schedule = (5, 10, 20, 60)

    assert [backoff_delay(schedule, attempt) for attempt in range(0, 7)] == [
        0.0,
        5.0,
        10.0,
        20.0,
        60.0,
        60.0,
        60.0,
    ]


def test_offline_after_three_failures_then_backoff(monitor, device):
    delays = [monitor.poll_failed(None) for _ in range(7)]

    assert delays == [0.0, 0.0, 5.0, 10.0, 20.0, 60.0, 60.0]
    assert device.connection_status == ConnectionStatus.OFFLINE
    assert monitor.consecutive_failures == 7


def test_reconnecting_below_threshold(monitor, device):
    device.set_connection_status(ConnectionStatus.CONNECTED)

    monitor.poll_failed(None)

    assert device.connection_status == ConnectionStatus.RECONNECTING


def test_success_resets_failures(monitor, device):
    for _ in range(4):
        monitor.poll_failed(None)

    monitor.poll_succeeded()

    assert monitor.consecutive_failures == 0
    assert device.connection_status == ConnectionStatus.CONNECTED
    assert monitor.poll_failed(None) == 0.0


def test_auth_failure_enters_dormant_state(monitor, device, scheduler):
    device.set_connection_status(ConnectionStatus.CONNECTED)

    assert monitor.poll_failed(401) == 0.0
    assert monitor.dormant
    assert monitor.consecutive_failures == 0
    assert device.connection_status == ConnectionStatus.CONNECTED
    assert monitor.allow_request() is False

    scheduler.advance(300)
    assert monitor.allow_request() is True
    assert monitor.allow_request() is False

    monitor.poll_succeeded()
    assert not monitor.dormant
    assert monitor.allow_request() is True


def test_rate_limit_backoff_doubles_to_cap(monitor, scheduler):
    delays = [monitor.poll_failed(429) for _ in range(7)]

    assert delays == [2.0, 4.0, 8.0, 16.0, 32.0, 60.0, 60.0]
    assert monitor.throttled
    assert monitor.allow_request() is False

    scheduler.advance(60)
    assert monitor.allow_request() is True


def test_rate_limit_does_not_count_as_connectivity_failure(monitor, device):
    monitor.poll_failed(429)

    assert monitor.consecutive_failures == 0
    assert device.connection_status == ConnectionStatus.RECONNECTING


def test_success_clears_rate_limit(monitor):
    monitor.poll_failed(429)
    monitor.poll_failed(429)

    monitor.record_success()

    assert monitor.rate_limit_hits == 0
    assert not monitor.throttled
    assert monitor.poll_failed(429) == 2.0


def test_request_failed_ignores_connectivity(monitor, device):
    device.set_connection_status(ConnectionStatus.CONNECTED)

    for _ in range(5):
        assert monitor.request_failed(503) == 0.0

    assert device.connection_status == ConnectionStatus.CONNECTED
    assert monitor.consecutive_failures == 0

    monitor.request_failed(403)
    assert monitor.dormant
