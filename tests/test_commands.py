import asyncio

import pytest

from kiosk_agent.ack_queue import AckRetryQueue
from kiosk_agent.commands import CommandDispatcher, CommandHandlerError
from kiosk_agent.core.models import AckStatus, Command, ErrorCode
from kiosk_agent.state import DeviceStatus


class RecordingSender:
    def __init__(self) -> None:
        self.acks = []
        self.fail = False

    async def __call__(self, ack):
        if self.fail:
            raise RuntimeError("network down")
        self.acks.append(ack)


@pytest.fixture
def sender():
    return RecordingSender()


@pytest.fixture
def retry_queue():
    return AckRetryQueue()


@pytest.fixture
def dispatcher(device, sender, retry_queue):
    return CommandDispatcher(
        state=device,
        actuator=object(),
        ack_sender=sender,
        retry_queue=retry_queue,
    )


def _cmd(command_id, command_type, payload=None):
    return {"id": command_id, "type": command_type, "payload": payload or {}}


@pytest.mark.asyncio
async def test_batch_runs_in_priority_order(dispatcher):
    order = []

    async def handler(command, actuator):
        order.append(command.id)

    for command_type in ("stop_media", "set_volume", "get_system_info", "leave_zoom"):
        dispatcher.register_handler(command_type, handler)

    acks = await dispatcher.process_batch(
        [
            _cmd("diag", "get_system_info"),
            _cmd("vol", "set_volume", {"level": 10}),
            _cmd("stop-1", "stop_media"),
            _cmd("leave", "leave_zoom"),
            _cmd("stop-2", "stop_media"),
        ]
    )

    assert order == ["leave", "stop-1", "stop-2", "vol", "diag"]
    assert [ack.command_id for ack in acks] == order
    assert all(ack.status == AckStatus.SUCCESS for ack in acks)


@pytest.mark.asyncio
async def test_batches_never_overlap(dispatcher):
    running = 0
    peak = 0
    order = []
    release = asyncio.Event()

    async def handler(command, actuator):
        nonlocal running, peak
        running += 1
        peak = max(peak, running)
        if command.id == "first":
            await release.wait()
        order.append(command.id)
        running -= 1

    dispatcher.register_handler("stop_media", handler)

    first = asyncio.create_task(dispatcher.process_batch([_cmd("first", "stop_media")]))
    await asyncio.sleep(0)
    second = asyncio.create_task(dispatcher.process_batch([_cmd("second", "stop_media")]))
    await asyncio.sleep(0)

    assert dispatcher.busy
    assert dispatcher.queued_batches == 1
    assert order == []

    release.set()
    await asyncio.gather(first, second)

    assert order == ["first", "second"]
    assert peak == 1


@pytest.mark.asyncio
async def test_resubmitted_command_is_not_queued_while_running(dispatcher, sender):
    release = asyncio.Event()
    calls = []

    async def handler(command, actuator):
        calls.append(command.id)
        await release.wait()

    dispatcher.register_handler("stop_media", handler)

    first = asyncio.create_task(dispatcher.process_batch([_cmd("slow", "stop_media")]))
    await asyncio.sleep(0)
    for _ in range(5):
        assert await dispatcher.process_batch([_cmd("slow", "stop_media")]) == []

    assert dispatcher.queued_batches == 0

    release.set()
    acks = await first

    assert calls == ["slow"]
    assert [ack.command_id for ack in sender.acks] == ["slow"]
    assert acks == sender.acks


@pytest.mark.asyncio
async def test_repeated_id_within_batch_runs_once(dispatcher, sender):
    calls = []

    async def handler(command, actuator):
        calls.append(command.id)

    dispatcher.register_handler("stop_media", handler)

    acks = await dispatcher.process_batch(
        [_cmd("twice", "stop_media"), _cmd("twice", "stop_media")]
    )

    assert calls == ["twice"]
    assert len(acks) == 1
    assert len(sender.acks) == 1


@pytest.mark.asyncio
async def test_critical_command_preempts_playback(dispatcher, device):
    seen = []

    async def reboot(command, actuator):
        seen.append(device.status)

    dispatcher.register_handler("reboot", reboot)
    device.set_playing("https://jw.org/a", "video")

    await dispatcher.process_batch([_cmd("r1", "reboot")])

    assert seen == [DeviceStatus.IDLE]


@pytest.mark.asyncio
async def test_non_critical_command_does_not_preempt(dispatcher, device):
    async def volume(command, actuator):
        return {"volume": command.payload["level"]}

    dispatcher.register_handler("set_volume", volume)
    device.set_playing("https://jw.org/a", "video")

    acks = await dispatcher.process_batch([_cmd("v1", "set_volume", {"level": 30})])

    assert device.is_playing
    assert acks[0].result == {"volume": 30}


@pytest.mark.asyncio
async def test_missing_handler_fails_with_e006(dispatcher, sender):
    acks = await dispatcher.process_batch([_cmd("r1", "reboot")])

    assert acks[0].status == AckStatus.FAILED
    assert acks[0].error_code == ErrorCode.UNKNOWN_COMMAND_TYPE
    assert sender.acks == acks


@pytest.mark.asyncio
async def test_validation_failure_skips_handler(dispatcher):
    called = []

    async def handler(command, actuator):
        called.append(command.id)

    dispatcher.register_handler("play_media", handler)

    acks = await dispatcher.process_batch(
        [_cmd("p1", "play_media", {"url": "https://evil.com/", "media_type": "video"})]
    )

    assert called == []
    assert acks[0].error_code == ErrorCode.URL_NOT_WHITELISTED


@pytest.mark.asyncio
async def test_duplicate_command_replays_acknowledgment(dispatcher, sender):
    calls = []

    async def handler(command, actuator):
        calls.append(command.id)

    dispatcher.register_handler("stop_media", handler)

    await dispatcher.process_batch([_cmd("dup", "stop_media")])
    await dispatcher.process_batch([{"uuid": "dup", "type": "stop_media"}])

    assert calls == ["dup"]
    assert len(sender.acks) == 2
    assert sender.acks[0] is sender.acks[1]


@pytest.mark.asyncio
async def test_failed_ack_goes_to_retry_queue(dispatcher, sender, retry_queue):
    async def handler(command, actuator):
        return None

    dispatcher.register_handler("stop_media", handler)
    sender.fail = True

    acks = await dispatcher.process_batch([_cmd("s1", "stop_media")])

    assert acks[0].status == AckStatus.SUCCESS
    assert retry_queue.contains("s1")


@pytest.mark.asyncio
async def test_handler_errors_map_to_codes(dispatcher):
    async def explicit(command, actuator):
        raise CommandHandlerError("nope", code=ErrorCode.URL_NOT_WHITELISTED)

    async def generic(command, actuator):
        raise RuntimeError("player gone")

    async def slow(command, actuator):
        raise asyncio.TimeoutError()

    dispatcher.register_handler("stop_media", explicit)
    dispatcher.register_handler("leave_zoom", generic)
    dispatcher.register_handler("get_logs", slow)

    acks = await dispatcher.process_batch(
        [
            _cmd("a", "stop_media"),
            _cmd("b", "leave_zoom"),
            _cmd("c", "get_logs"),
        ]
    )
    by_id = {ack.command_id: ack for ack in acks}

    assert by_id["a"].error_code == ErrorCode.URL_NOT_WHITELISTED
    assert by_id["b"].error_code == ErrorCode.CALL_ERROR
    assert by_id["b"].error_message == "player gone"
    assert by_id["c"].error_code == ErrorCode.EXECUTION_TIMEOUT


@pytest.mark.asyncio
async def test_handler_error_without_code_uses_family(dispatcher):
    async def handler(command, actuator):
        raise CommandHandlerError("Not playing any media")

    dispatcher.register_handler("pause_media", handler)

    acks = await dispatcher.process_batch([_cmd("p", "pause_media")])

    assert acks[0].error_code == ErrorCode.MEDIA_ERROR


@pytest.mark.asyncio
async def test_command_without_id_is_skipped(dispatcher, sender):
    acks = await dispatcher.process_batch([{"type": "stop_media"}])

    assert acks == []
    assert sender.acks == []


@pytest.mark.asyncio
async def test_listeners_receive_outcomes(dispatcher):
    seen = []

    async def handler(command, actuator):
        return None

    dispatcher.register_handler("stop_media", handler)
    dispatcher.add_listener(lambda command, ack: seen.append((command.type, ack.status)))

    await dispatcher.process_batch([Command(id="s", type="stop_media")])

    assert seen == [("stop_media", AckStatus.SUCCESS)]


@pytest.mark.asyncio
async def test_stop_cancels_queued_batches(dispatcher):
    release = asyncio.Event()

    async def handler(command, actuator):
        await release.wait()

    dispatcher.register_handler("stop_media", handler)

    first = asyncio.create_task(dispatcher.process_batch([_cmd("a", "stop_media")]))
    await asyncio.sleep(0)
    second = asyncio.create_task(dispatcher.process_batch([_cmd("b", "stop_media")]))
    await asyncio.sleep(0)

    await dispatcher.stop()

    with pytest.raises(asyncio.CancelledError):
        await first
    with pytest.raises(asyncio.CancelledError):
        await second
