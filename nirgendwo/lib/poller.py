# Zug ins Nirgendwo
# SPDX-License-Identifier: GPL-3.0-or-later

"""
StatePoller — asks the player what it is doing, once per interval.

Owns the process' single PlaybackState.  A failed or unreadable poll is
not an error: it is how we learn the player went away, so the state is
marked disconnected and published like any other update.

The poller talks to the transport directly (not through the dispatcher
queue) so a backlog of commands never delays state updates.  The
transport's lock still keeps it from overlapping a command exchange.
"""

import asyncio
import logging
import time
from typing import Awaitable, Callable

from .command import Command
from .playback import PlaybackDecodeError, PlaybackState, decode_state
from .transport import PlayerTransport

log = logging.getLogger(__name__)

QUERY_COMMAND = "playstate"
POLL_INTERVAL = 1.0     # seconds
POLL_TIMEOUT = 0.05     # read deadline for the query

Publisher = Callable[[PlaybackState], Awaitable[None]]


class StatePoller:

    def __init__(self, transport: PlayerTransport, publish: Publisher | None = None,
                 interval: float = POLL_INTERVAL, timeout: float = POLL_TIMEOUT,
                 initial: PlaybackState | None = None):
        self.transport = transport
        self.interval = interval
        self.timeout = timeout
        self._publish = publish
        self._state = initial or PlaybackState()
        self._task: asyncio.Task | None = None
        self._stop_event = asyncio.Event()

    # ── Shared state ──

    def get_state(self) -> PlaybackState:
        # PlaybackState is frozen, so handing out the instance is a snapshot.
        return self._state

    def set_state(self, state: PlaybackState):
        """Replace the state, e.g. to pre-set indices the player doesn't know."""
        self._state = state

    # ── Lifecycle ──

    def start(self):
        if self._task is None or self._task.done():
            self._stop_event.clear()
            self._task = asyncio.create_task(self._run(), name="state-poller")
            log.info("Polling %s every %.1fs", self.transport.address, self.interval)

    async def stop(self):
        """Halt the poll loop.  Safe to call more than once."""
        self._stop_event.set()
        if self._task is None:
            return
        task, self._task = self._task, None
        try:
            await asyncio.wait_for(task, timeout=self.interval + 1.0)
        except asyncio.TimeoutError:
            log.warning("Poller did not stop in time, cancelled")
        except asyncio.CancelledError:
            pass
        log.info("Poller stopped")

    async def _run(self):
        while not self._stop_event.is_set():
            started = time.monotonic()
            try:
                await self.poll_once()
            except asyncio.CancelledError:
                raise
            except Exception:
                log.exception("Poll failed unexpectedly")
            delay = max(0.0, self.interval - (time.monotonic() - started))
            try:
                await asyncio.wait_for(self._stop_event.wait(), timeout=delay)
            except asyncio.TimeoutError:
                pass

    # ── One tick ──

    async def poll_once(self) -> PlaybackState:
        """Query the player once, update and publish the state."""
        previous = self._state
        # id 0: the query never goes through the allocator or the dispatcher
        ack = await self.transport.send(Command(0, QUERY_COMMAND), timeout=self.timeout)

        new_state = None
        if ack.success:
            try:
                new_state = decode_state(ack.value, self._state)
            except PlaybackDecodeError as e:
                if previous.connected:
                    log.warning("Unreadable playstate reply (%s): %r", e, ack.value[:200])
                else:
                    log.debug("Unreadable playstate reply (%s)", e)
        if new_state is None:
            # self._state, not previous: set_state() may have run during the send
            new_state = self._state.disconnected()

        if new_state.connected != previous.connected:
            if new_state.connected:
                log.info("Player %s connected", self.transport.address)
            else:
                log.warning("Player %s disconnected", self.transport.address)

        self._state = new_state
        if self._publish is not None:
            await self._publish(new_state)
        return new_state
