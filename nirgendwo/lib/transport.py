"""
TCP transport to the player.

Every exchange is one short-lived connection: connect, write the command
line, wait briefly for a reply, close.  Nothing is retried — a player
that is off or busy simply produces an ACK with ``success=False``.

All exchanges through one ``PlayerTransport`` are serialized by a lock,
so the dispatcher and the state poller never talk to the player at the
same time.

Usage:
    transport = PlayerTransport("127.0.0.1", 33333)
    ack = await transport.send(Command(1, "pause"))
"""

import asyncio
import logging

from .command import Ack, Command

logger = logging.getLogger(__name__)

READ_BUFFER_SIZE = 1 << 12
DEFAULT_READ_TIMEOUT = 0.05   # 50 ms — the player answers fast or not at all
DEFAULT_CONNECT_TIMEOUT = 1.0


class PlayerTransport:
    """One-shot request/reply exchanges with the player."""

    def __init__(self, host: str, port: int, *,
                 read_timeout: float = DEFAULT_READ_TIMEOUT,
                 connect_timeout: float = DEFAULT_CONNECT_TIMEOUT,
                 buffer_size: int = READ_BUFFER_SIZE):
        self.host = host
        self.port = port
        self.read_timeout = read_timeout
        self.connect_timeout = connect_timeout
        self.buffer_size = buffer_size
        self._lock = asyncio.Lock()

    @property
    def address(self) -> str:
        return f"{self.host}:{self.port}"

    async def send(self, command: Command, timeout: float | None = None) -> Ack:
        """Send *command* and return its ACK.  Never raises for device problems."""
        if timeout is None:
            timeout = self.read_timeout
        async with self._lock:
            return await self._exchange(command, timeout)

    async def _exchange(self, command: Command, timeout: float) -> Ack:
        ack = Ack(command)
        try:
            reader, writer = await asyncio.wait_for(
                asyncio.open_connection(self.host, self.port),
                timeout=self.connect_timeout,
            )
        except asyncio.TimeoutError:
            logger.debug("Connect to %s timed out (%s)", self.address, command)
            return ack
        except OSError as e:
            logger.debug("Player %s unreachable (%s): %s", self.address, command, e)
            return ack

        try:
            try:
                writer.write((command.to_line() + "\n").encode("utf-8"))
                await writer.drain()
            except OSError as e:
                logger.warning("Write to %s failed (%s): %s", self.address, command, e)
                return ack

            # command could be transferred
            ack.success = True

            try:
                data = await asyncio.wait_for(reader.read(self.buffer_size), timeout=timeout)
            except asyncio.TimeoutError:
                logger.debug("%s -> (no reply)", command)
            except OSError as e:
                logger.debug("%s -> read failed: %s", command, e)
            else:
                ack.value = data.decode("utf-8", errors="replace")
                if ack.value:
                    logger.debug("%s -> %s", command, ack.value.rstrip())
            return ack
        finally:
            writer.close()
            try:
                await writer.wait_closed()
            except OSError:
                pass
