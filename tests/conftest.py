from __future__ import annotations

import asyncio
import socket

import pytest
import pytest_asyncio


class FakePlayer:
    """TCP stand-in for the movie player.

    Records every command line it receives.  ``reply`` is either a fixed
    string, a callable ``line -> str | None``, or None for no answer.
    ``hold`` keeps the connection open that long before answering, so
    tests can outlast the relay's read deadline.
    """

    def __init__(self):
        self.lines: list[str] = []
        self.reply = None
        self.hold = 0.0
        self.active = 0
        self.max_active = 0
        self._server: asyncio.AbstractServer | None = None
        self.port = 0

    async def start(self):
        self._server = await asyncio.start_server(self._handle, "127.0.0.1", 0)
        self.port = self._server.sockets[0].getsockname()[1]

    async def stop(self):
        self._server.close()
        await self._server.wait_closed()

    def commands(self) -> list[str]:
        """Received lines without the poller's state queries."""
        return [line for line in self.lines if line != "playstate"]

    async def _handle(self, reader: asyncio.StreamReader, writer: asyncio.StreamWriter):
        self.active += 1
        self.max_active = max(self.max_active, self.active)
        try:
            line = await reader.readline()
            text = line.decode().rstrip("\n")
            self.lines.append(text)
            reply = self.reply(text) if callable(self.reply) else self.reply
            if self.hold:
                await asyncio.sleep(self.hold)
            if reply is not None:
                writer.write(reply.encode())
                await writer.drain()
        except ConnectionError:
            pass
        finally:
            self.active -= 1
            writer.close()


@pytest_asyncio.fixture
async def player():
    p = FakePlayer()
    await p.start()
    yield p
    await p.stop()


@pytest.fixture
def closed_port() -> int:
    """A local port nothing listens on."""
    s = socket.socket(socket.AF_INET, socket.SOCK_STREAM)
    s.bind(("127.0.0.1", 0))
    port = s.getsockname()[1]
    s.close()
    return port


async def wait_for(predicate, timeout: float = 2.0, step: float = 0.01):
    """Poll *predicate* until it is true or *timeout* expires."""
    deadline = asyncio.get_running_loop().time() + timeout
    while not predicate():
        if asyncio.get_running_loop().time() > deadline:
            raise AssertionError("condition not met in time")
        await asyncio.sleep(step)
