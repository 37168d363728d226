import pytest

from kiosk_agent.ack_queue import AckRetryQueue
from kiosk_agent.commands import CommandDispatcher, CommandHandlerError
from kiosk_agent.core.models import AckStatus, Command, ErrorCode
from kiosk_agent.handlers import (
    CallHandlers,
    MediaHandlers,
    is_jw_media_page,
    parse_meeting_url,
    register_default_handlers,
)
from kiosk_agent.state import DeviceStatus

STANDBY = "http://localhost:3000"


class FakeActuator:
    def __init__(self) -> None:
        self.calls = []
        self.pause_ok = True
        self.resume_ok = True

    async def navigate(self, url):
        self.calls.append(("navigate", url))

    async def go_to_standby(self):
        self.calls.append(("standby",))

    async def pause(self):
        self.calls.append(("pause",))
        return self.pause_ok

    async def resume(self):
        self.calls.append(("resume",))
        return self.resume_ok


class FakeReporter:
    def __init__(self) -> None:
        self.events = []
        self.fail = False

    async def report_playback_event(self, event):
        if self.fail:
            raise RuntimeError("reporting down")
        self.events.append(event)


@pytest.fixture
def actuator():
    return FakeActuator()


@pytest.fixture
def reporter():
    return FakeReporter()


@pytest.fixture
def media(device, reporter):
    return MediaHandlers(device, standby_url=STANDBY, reporter=reporter)


@pytest.fixture
def call(device):
    return CallHandlers(device)


def _play(url="https://b.jw-cdn.org/video.mp4", **payload):
    return Command(
        id="p1",
        type="play_media",
        payload={"url": url, "media_type": "video", **payload},
    )


def test_jw_media_page_detection():
    assert is_jw_media_page("https://www.jw.org/finder?item=pub-jwb_201_VIDEO")
    assert is_jw_media_page("https://www.jw.org/en/library/videos/#en/mediaitems/x")
    assert not is_jw_media_page("https://b.jw-cdn.org/video.mp4")


def test_parse_meeting_url():
    assert parse_meeting_url("https://zoom.us/j/123456?pwd=secret") == ("123456", "secret")
    assert parse_meeting_url("https://zoom.us/my/room") == (None, None)


@pytest.mark.asyncio
async def test_play_media_navigates_and_reports(media, device, actuator, reporter):
    await media.play_media(_play(start_position=12), actuator)

    assert actuator.calls == [("navigate", "https://b.jw-cdn.org/video.mp4")]
    assert device.status == DeviceStatus.PLAYING
    assert device.current_media.url == "https://b.jw-cdn.org/video.mp4"
    assert reporter.events[0]["event"] == "started"
    assert reporter.events[0]["position"] == 12


@pytest.mark.asyncio
async def test_play_media_uses_local_player_for_jw_pages(media, actuator):
    url = "https://www.jw.org/finder?item=pub-jwb_201_VIDEO"

    await media.play_media(_play(url), actuator)

    target = actuator.calls[0][1]
    assert target.startswith(f"{STANDBY}/player.html?")
    assert "autoplay=true" in target


@pytest.mark.asyncio
async def test_play_media_without_autoplay_pauses(media, device, actuator):
    await media.play_media(_play(autoplay="false"), actuator)

    assert ("pause",) in actuator.calls
    assert device.is_paused


@pytest.mark.asyncio
async def test_play_media_stops_current_playback(media, device, actuator, reporter):
    device.set_playing("https://b.jw-cdn.org/old.mp4", "video")

    await media.play_media(_play(), actuator)

    assert actuator.calls[0] == ("standby",)
    assert [event["event"] for event in reporter.events] == ["stopped", "started"]


@pytest.mark.asyncio
async def test_play_media_rejects_unlisted_url(media, actuator):
    with pytest.raises(CommandHandlerError) as excinfo:
        await media.play_media(_play("https://evil.com/x.mp4"), actuator)

    assert excinfo.value.code == ErrorCode.URL_NOT_WHITELISTED
    assert actuator.calls == []


@pytest.mark.asyncio
async def test_reporting_failure_does_not_fail_playback(media, device, actuator, reporter):
    reporter.fail = True

    await media.play_media(_play(), actuator)

    assert device.is_playing


@pytest.mark.asyncio
async def test_stop_media_is_noop_when_idle(media, actuator):
    await media.stop_media(Command(id="s", type="stop_media"), actuator)

    assert actuator.calls == []


@pytest.mark.asyncio
async def test_pause_and_resume(media, device, actuator):
    command = Command(id="x", type="pause_media")
    device.set_playing("https://b.jw-cdn.org/v.mp4", "video")

    await media.pause_media(command, actuator)
    await media.pause_media(command, actuator)
    assert device.is_paused
    assert actuator.calls.count(("pause",)) == 1

    await media.resume_media(command, actuator)
    assert not device.is_paused


@pytest.mark.asyncio
async def test_pause_requires_media(media, actuator):
    with pytest.raises(CommandHandlerError, match="Not playing any media"):
        await media.pause_media(Command(id="x", type="pause_media"), actuator)


@pytest.mark.asyncio
async def test_pause_failure_is_reported(media, device, actuator):
    device.set_playing("https://b.jw-cdn.org/v.mp4", "video")
    actuator.pause_ok = False

    with pytest.raises(CommandHandlerError):
        await media.pause_media(Command(id="x", type="pause_media"), actuator)
    assert not device.is_paused


@pytest.mark.asyncio
async def test_join_zoom_replaces_playback(call, device, actuator):
    device.set_playing("https://b.jw-cdn.org/v.mp4", "video")
    command = Command(
        id="z", type="join_zoom", payload={"meeting_url": "https://zoom.us/j/987?pwd=a"}
    )

    await call.join_zoom(command, actuator)

    assert device.status == DeviceStatus.CALLING
    assert device.current_media is None
    assert device.current_meeting.meeting_id == "987"
    assert actuator.calls == [("navigate", "https://zoom.us/j/987?pwd=a")]


@pytest.mark.asyncio
async def test_join_zoom_leaves_existing_meeting(call, device, actuator):
    device.set_meeting("https://zoom.us/j/1", "1")
    command = Command(
        id="z", type="join_zoom", payload={"meeting_url": "https://zoom.us/j/2"}
    )

    await call.join_zoom(command, actuator)

    assert actuator.calls == [("standby",), ("navigate", "https://zoom.us/j/2")]
    assert device.current_meeting.meeting_id == "2"


@pytest.mark.asyncio
async def test_leave_zoom(call, device, actuator):
    command = Command(id="l", type="leave_zoom")
    await call.leave_zoom(command, actuator)
    assert actuator.calls == []

    device.set_meeting("https://zoom.us/j/1", "1")
    await call.leave_zoom(command, actuator)

    assert actuator.calls == [("standby",)]
    assert device.status == DeviceStatus.IDLE


@pytest.mark.asyncio
async def test_default_handlers_through_dispatcher(device, actuator):
    sent = []

    async def sender(ack):
        sent.append(ack)

    dispatcher = CommandDispatcher(
        state=device,
        actuator=actuator,
        ack_sender=sender,
        retry_queue=AckRetryQueue(),
    )
    register_default_handlers(dispatcher, device, standby_url=STANDBY)

    acks = await dispatcher.process_batch(
        [
            {
                "id": "a",
                "type": "play_media",
                "payload": {"url": "https://b.jw-cdn.org/v.mp4", "media_type": "video"},
            },
            {"id": "b", "type": "resume_media"},
            {"id": "c", "type": "set_volume", "payload": {"level": 10}},
        ]
    )
    by_id = {ack.command_id: ack for ack in acks}

    assert by_id["a"].status == AckStatus.SUCCESS
    assert by_id["b"].status == AckStatus.SUCCESS
    assert by_id["c"].error_code == ErrorCode.UNKNOWN_COMMAND_TYPE
    assert dispatcher.has_handler("leave_zoom")
    assert device.is_playing
