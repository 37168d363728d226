import pytest

from kiosk_agent.state import ConnectionStatus, DeviceStatus


def test_initial_state(device):
    snapshot = device.snapshot()

    assert snapshot.status == DeviceStatus.IDLE
    assert snapshot.connection_status == ConnectionStatus.RECONNECTING
    assert snapshot.current_media is None
    assert snapshot.current_meeting is None
    assert snapshot.volume == 80


def test_playing_and_meeting_are_exclusive(device):
    device.set_playing("https://jw.org/a", "video")
    assert device.is_playing
    assert device.current_media is not None

    device.set_meeting("https://zoom.us/j/1", "1")

    assert device.is_calling
    assert device.current_media is None
    assert device.current_meeting.meeting_id == "1"

    device.set_playing("https://jw.org/b", "audio")

    assert device.current_meeting is None
    assert device.current_media.media_type == "audio"


def test_stop_playing_returns_to_idle(device):
    device.set_playing("https://jw.org/a", "video")
    device.stop_playing()

    assert device.status == DeviceStatus.IDLE
    assert device.current_media is None


def test_leave_meeting_returns_to_idle(device):
    device.set_meeting("https://zoom.us/j/1")
    device.leave_meeting()

    assert device.status == DeviceStatus.IDLE
    assert device.current_meeting is None


def test_pause_requires_media(device):
    with pytest.raises(RuntimeError):
        device.set_paused(True)

    device.set_playing("https://jw.org/a", "video")
    device.set_paused(True)

    assert device.is_paused
    assert device.status == DeviceStatus.PLAYING


def test_error_recovers_after_ten_seconds(device, scheduler):
    device.set_playing("https://jw.org/a", "video")
    device.set_error("player crashed")

    assert device.status == DeviceStatus.ERROR
    assert device.snapshot().error_reason == "player crashed"

    scheduler.advance(9.9)
    assert device.status == DeviceStatus.ERROR

    scheduler.advance(0.1)
    assert device.status == DeviceStatus.IDLE
    assert device.current_media is None
    assert device.snapshot().error_reason is None
    assert not device.recovery_pending


def test_transition_cancels_pending_recovery(device, scheduler):
    device.set_error("boom")
    device.set_playing("https://jw.org/a", "video")

    assert not device.recovery_pending
    scheduler.advance(20)
    assert device.status == DeviceStatus.PLAYING


def test_repeated_error_restarts_timer(device, scheduler):
    device.set_error("first")
    scheduler.advance(6)
    device.set_error("second")
    scheduler.advance(6)

    assert device.status == DeviceStatus.ERROR
    assert len(scheduler.pending) == 1

    scheduler.advance(4)
    assert device.status == DeviceStatus.IDLE


def test_set_status_rejects_unknown_value(device):
    with pytest.raises(ValueError):
        device.set_status("sleeping")


def test_set_status_requires_context(device):
    with pytest.raises(ValueError):
        device.set_status("playing")

    device.set_playing("https://jw.org/a", "video")
    device.set_status("idle")

    assert device.current_media is None


def test_volume_is_clamped(device):
    assert device.set_volume(150) == 100
    assert device.set_volume(-5) == 0
    assert device.set_volume(42.6) == 43


def test_connection_status_changes_notify_once(device):
    changes = []
    device.add_listener(changes.append)

    device.set_connection_status("connected")
    device.set_connection_status(ConnectionStatus.CONNECTED)

    connection_changes = [change for change in changes if change.kind == "connection"]
    assert len(connection_changes) == 1
    assert connection_changes[0].current == ConnectionStatus.CONNECTED

    with pytest.raises(ValueError):
        device.set_connection_status("sideways")


def test_listener_failure_does_not_break_transition(device):
    def broken(change):
        raise RuntimeError("listener bug")

    device.add_listener(broken)
    device.set_playing("https://jw.org/a", "video")

    assert device.is_playing


def test_snapshot_serialises(device):
    device.set_playing("https://jw.org/a", "video")
    device.record_heartbeat()

    payload = device.snapshot().as_dict()

    assert payload["status"] == "playing"
    assert payload["current_media"]["url"] == "https://jw.org/a"
    assert payload["last_heartbeat"] is not None


def test_close_cancels_recovery(device, scheduler):
    device.set_error("boom")
    device.close()
    scheduler.advance(30)

    assert device.status == DeviceStatus.ERROR
