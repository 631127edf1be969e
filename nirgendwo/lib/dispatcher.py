# Zug ins Nirgendwo
# SPDX-License-Identifier: GPL-3.0-or-later

"""
CommandDispatcher — turns concurrent command submissions into one ordered
stream toward the player.

    HTTP handlers ──submit()──▶ [commands, bounded] ──worker──▶ transport
                                                         │
                            hub ◀── [results, bounded] ◀─┘

A single worker task drains the command queue strictly FIFO and waits for
each exchange (connect + write + bounded read) to finish before taking the
next command.  Both queues are bounded: ``submit()`` blocks while the
command queue is full, and the worker blocks while nobody drains results.
"""

import asyncio
import logging

from .command import Ack, Command
from .transport import PlayerTransport

log = logging.getLogger(__name__)

QUEUE_SIZE = 100


class CommandDispatcher:

    def __init__(self, transport: PlayerTransport, queue_size: int = QUEUE_SIZE):
        self.transport = transport
        self.commands: asyncio.Queue[Command] = asyncio.Queue(maxsize=queue_size)
        self.results: asyncio.Queue[Ack] = asyncio.Queue(maxsize=queue_size)
        self._worker: asyncio.Task | None = None

    # ── Lifecycle ──

    def start(self):
        if self._worker is None or self._worker.done():
            self._worker = asyncio.create_task(self._run(), name="command-dispatcher")
            log.info("Dispatcher started (player %s)", self.transport.address)

    async def stop(self, drain: bool = True, timeout: float = 2.0):
        """Stop the worker, optionally giving queued commands *timeout*
        seconds to reach the player first."""
        if self._worker is None:
            return
        if drain and not self._worker.done():
            try:
                await asyncio.wait_for(self.commands.join(), timeout=timeout)
            except asyncio.TimeoutError:
                log.warning("Dispatcher stopped with %d command(s) undelivered", self.pending())
        self._worker.cancel()
        try:
            await self._worker
        except asyncio.CancelledError:
            pass
        self._worker = None
        log.info("Dispatcher stopped")

    @property
    def running(self) -> bool:
        return self._worker is not None and not self._worker.done()

    # ── Producer side ──

    async def submit(self, command: Command):
        """Queue *command* for the player.  Blocks while the queue is full."""
        await self.commands.put(command)
        log.info("command: %s (id=%d, %d queued)", command, command.id, self.pending())

    def pending(self) -> int:
        return self.commands.qsize()

    # ── Worker ──

    async def _run(self):
        while True:
            command = await self.commands.get()
            try:
                ack = await self._dispatch(command)
                await self.results.put(ack)
            finally:
                self.commands.task_done()

    async def _dispatch(self, command: Command) -> Ack:
        try:
            ack = await self.transport.send(command)
        except asyncio.CancelledError:
            raise
        except Exception:
            log.exception("Unexpected error dispatching %s", command)
            return Ack(command, success=False)
        if ack.success:
            if ack.value:
                log.info("%s -> %s", command, ack.value.rstrip())
            else:
                log.debug("%s -> ok (no reply)", command)
        else:
            log.warning("%s -> not delivered (player %s unreachable)", command, self.transport.address)
        return ack
