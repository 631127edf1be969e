from __future__ import annotations

import asyncio

import pytest

from conftest import wait_for
from nirgendwo.lib.command import Ack, Command, CommandIdAllocator
from nirgendwo.lib.dispatcher import CommandDispatcher
from nirgendwo.lib.transport import PlayerTransport


class RecordingTransport:
    """Transport stub that records send order and overlap."""

    address = "stub:0"

    def __init__(self, delay: float = 0.0, fail_on: str | None = None):
        self.sent: list[Command] = []
        self.delay = delay
        self.fail_on = fail_on
        self.in_flight = 0
        self.max_in_flight = 0

    async def send(self, command, timeout=None):
        self.in_flight += 1
        self.max_in_flight = max(self.max_in_flight, self.in_flight)
        try:
            if self.delay:
                await asyncio.sleep(self.delay)
            if command.name == self.fail_on:
                raise RuntimeError("boom")
            self.sent.append(command)
            return Ack(command, success=True, value="")
        finally:
            self.in_flight -= 1


async def _collect(queue: asyncio.Queue, n: int, timeout: float = 2.0) -> list[Ack]:
    return [await asyncio.wait_for(queue.get(), timeout) for _ in range(n)]


@pytest.mark.asyncio
async def test_concurrent_submissions_reach_player_in_admission_order(player):
    player.reply = "ok"
    ids = CommandIdAllocator()
    dispatcher = CommandDispatcher(PlayerTransport("127.0.0.1", player.port, read_timeout=0.1))
    dispatcher.start()

    async def caller(name):
        await dispatcher.submit(Command(ids.next(), name))

    await asyncio.gather(caller("one"), caller("two"), caller("three"))
    acks = await _collect(dispatcher.results, 3)
    await dispatcher.stop()

    assert [a.command.id for a in acks] == [1, 2, 3]
    assert player.lines == [a.command.to_line() for a in acks]
    assert all(a.success and a.value == "ok" for a in acks)


@pytest.mark.asyncio
async def test_every_command_gets_exactly_one_ack():
    transport = RecordingTransport(delay=0.001)
    dispatcher = CommandDispatcher(transport)
    dispatcher.start()

    for i in range(1, 51):
        await dispatcher.submit(Command(i, "step", (i,)))
    acks = await _collect(dispatcher.results, 50)
    await asyncio.sleep(0.05)
    await dispatcher.stop()

    assert [a.command.id for a in acks] == list(range(1, 51))
    assert dispatcher.results.empty()
    assert transport.max_in_flight == 1


@pytest.mark.asyncio
async def test_unreachable_player_still_acks(closed_port):
    dispatcher = CommandDispatcher(PlayerTransport("127.0.0.1", closed_port))
    dispatcher.start()
    await dispatcher.submit(Command(1, "play"))
    (ack,) = await _collect(dispatcher.results, 1)
    await dispatcher.stop()

    assert ack.command.id == 1
    assert ack.success is False
    assert ack.value == ""


@pytest.mark.asyncio
async def test_unexpected_error_becomes_failed_ack_and_worker_survives():
    transport = RecordingTransport(fail_on="bad")
    dispatcher = CommandDispatcher(transport)
    dispatcher.start()

    await dispatcher.submit(Command(1, "bad"))
    await dispatcher.submit(Command(2, "good"))
    first, second = await _collect(dispatcher.results, 2)
    await dispatcher.stop()

    assert (first.command.id, first.success) == (1, False)
    assert (second.command.id, second.success) == (2, True)


@pytest.mark.asyncio
async def test_submit_blocks_when_queue_is_full():
    dispatcher = CommandDispatcher(RecordingTransport(), queue_size=2)
    # worker not started: nothing drains the queue
    await dispatcher.submit(Command(1, "a"))
    await dispatcher.submit(Command(2, "b"))

    blocked = asyncio.create_task(dispatcher.submit(Command(3, "c")))
    await asyncio.sleep(0.05)
    assert not blocked.done()
    assert dispatcher.pending() == 2

    dispatcher.start()
    await asyncio.wait_for(blocked, 1.0)
    acks = await _collect(dispatcher.results, 3)
    await dispatcher.stop()
    assert [a.command.id for a in acks] == [1, 2, 3]


@pytest.mark.asyncio
async def test_stop_drains_queued_commands():
    transport = RecordingTransport(delay=0.01)
    dispatcher = CommandDispatcher(transport)
    dispatcher.start()
    for i in range(1, 6):
        await dispatcher.submit(Command(i, "x"))

    await dispatcher.stop(drain=True, timeout=2.0)

    assert [c.id for c in transport.sent] == [1, 2, 3, 4, 5]
    assert dispatcher.results.qsize() == 5
    assert not dispatcher.running


@pytest.mark.asyncio
async def test_start_is_idempotent():
    dispatcher = CommandDispatcher(RecordingTransport())
    dispatcher.start()
    worker = dispatcher._worker
    dispatcher.start()
    assert dispatcher._worker is worker
    await dispatcher.stop()
    await wait_for(lambda: not dispatcher.running)
