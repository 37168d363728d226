import asyncio

import pytest

from kiosk_agent.ack_queue import AckRetryQueue
from kiosk_agent.adapters.api import ApiError
from kiosk_agent.commands import CommandDispatcher
from kiosk_agent.connection import ConnectionMonitor
from kiosk_agent.core.models import Acknowledgment
from kiosk_agent.polling import PollingChannel
from kiosk_agent.state import ConnectionStatus


class FakeApi:
    def __init__(self) -> None:
        self.responses = []
        self.calls = 0
        self.acked = []
        self.gate = None

    async def fetch_pending_commands(self):
        self.calls += 1
        if self.gate is not None:
            await self.gate.wait()
        item = self.responses.pop(0) if self.responses else []
        if isinstance(item, Exception):
            raise item
        return item

    async def acknowledge(self, ack):
        self.acked.append(ack.command_id)


class BatchRecorder:
    def __init__(self) -> None:
        self.batches = []

    async def __call__(self, commands):
        self.batches.append(commands)
        return []


@pytest.fixture
def api():
    return FakeApi()


@pytest.fixture
def batches():
    return BatchRecorder()


@pytest.fixture
def retry_queue():
    return AckRetryQueue()


@pytest.fixture
def monitor(device, scheduler):
    return ConnectionMonitor(device, scheduler)


@pytest.fixture
def channel(api, monitor, retry_queue, batches, scheduler):
    return PollingChannel(
        api=api,
        monitor=monitor,
        retry_queue=retry_queue,
        process_batch=batches,
        scheduler=scheduler,
        interval=5,
    )


@pytest.mark.asyncio
async def test_successful_poll_dispatches_commands(channel, api, batches, device):
    api.responses.append([{"id": "c1", "type": "stop_media"}])

    assert await channel.poll_once() is True
    await channel.wait_dispatched()

    assert batches.batches == [[{"id": "c1", "type": "stop_media"}]]
    assert device.connection_status == ConnectionStatus.CONNECTED


@pytest.mark.asyncio
async def test_empty_poll_dispatches_nothing(channel, batches):
    await channel.poll_once()
    await channel.wait_dispatched()

    assert batches.batches == []


@pytest.mark.asyncio
async def test_successful_poll_drains_retry_queue(channel, api, retry_queue):
    retry_queue.enqueue(Acknowledgment.success("old-1"))

    await channel.poll_once()

    assert api.acked == ["old-1"]
    assert len(retry_queue) == 0


@pytest.mark.asyncio
async def test_failed_poll_leaves_retry_queue(channel, api, retry_queue):
    retry_queue.enqueue(Acknowledgment.success("old-1"))
    api.responses.append(ApiError("down"))

    await channel.poll_once()

    assert api.acked == []
    assert retry_queue.contains("old-1")


@pytest.mark.asyncio
async def test_only_one_fetch_in_flight(channel, api):
    api.gate = asyncio.Event()

    first = asyncio.create_task(channel.poll_once())
    await asyncio.sleep(0)

    assert channel.in_flight
    assert await channel.poll_once() is False
    assert api.calls == 1

    api.gate.set()
    assert await first is True
    assert not channel.in_flight


@pytest.mark.asyncio
async def test_offline_backoff_schedule(channel, api, device, scheduler):
    for _ in range(6):
        api.responses.append(ApiError("unreachable"))

    for _ in range(6):
        await channel.poll_once()

    assert device.connection_status == ConnectionStatus.OFFLINE
    assert scheduler.sleeps == [5.0, 10.0, 20.0, 60.0]


@pytest.mark.asyncio
async def test_recovery_after_offline(channel, api, device):
    for _ in range(3):
        api.responses.append(ApiError("unreachable"))
    for _ in range(3):
        await channel.poll_once()

    await channel.poll_once()

    assert device.connection_status == ConnectionStatus.CONNECTED


@pytest.mark.asyncio
async def test_auth_rejection_suspends_polling(channel, api, monitor, scheduler):
    api.responses.append(ApiError("unauthorized", status=401))

    await channel.poll_once()
    assert monitor.dormant

    assert await channel.poll_once() is False
    assert api.calls == 1

    scheduler.advance(300)
    assert await channel.poll_once() is True
    assert api.calls == 2
    assert not monitor.dormant


@pytest.mark.asyncio
async def test_rate_limit_backoff(channel, api, scheduler, device):
    api.responses.append(ApiError("slow down", status=429))
    api.responses.append(ApiError("slow down", status=429))

    await channel.poll_once()
    await channel.poll_once()

    assert scheduler.sleeps == [2.0, 4.0]
    assert device.connection_status == ConnectionStatus.RECONNECTING


@pytest.mark.asyncio
async def test_loop_polls_on_interval(channel, api, scheduler):
    channel.start()
    for _ in range(5):
        await asyncio.sleep(0)
    await channel.stop()

    assert api.calls >= 2
    assert 5 in scheduler.sleeps
    assert not channel.running


@pytest.mark.asyncio
async def test_pending_command_runs_once_while_handler_blocks(
    api, monitor, retry_queue, scheduler, device
):
    release = asyncio.Event()
    runs = []

    async def handler(command, actuator):
        runs.append(command.id)
        await release.wait()

    dispatcher = CommandDispatcher(
        state=device,
        actuator=object(),
        ack_sender=api.acknowledge,
        retry_queue=retry_queue,
    )
    dispatcher.register_handler("stop_media", handler)
    channel = PollingChannel(
        api=api,
        monitor=monitor,
        retry_queue=retry_queue,
        process_batch=dispatcher.process_batch,
        scheduler=scheduler,
        interval=5,
    )
    # The server keeps returning the command until it is acknowledged.
    for _ in range(10):
        api.responses.append([{"id": "cmd-1", "type": "stop_media"}])

    for _ in range(10):
        await channel.poll_once()
        await asyncio.sleep(0)

    assert runs == ["cmd-1"]
    assert dispatcher.queued_batches == 0

    release.set()
    await channel.wait_dispatched()

    assert runs == ["cmd-1"]
    assert api.acked == ["cmd-1"]
