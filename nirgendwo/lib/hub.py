# Zug ins Nirgendwo
# SPDX-License-Identifier: GPL-3.0-or-later

"""
BroadcastHub — fans command ACKs and playback states out to every
connected live-update (SSE) client.

One loop owns the subscriber registry.  Joins, leaves, ACKs and state
updates all arrive through the same inbox, so the registry has a single
writer and every subscriber sees events in publish order.

Each subscriber gets its own bounded mailbox.  When a client stops
reading, its mailbox fills up and its *oldest* messages are dropped —
the loop itself never waits on a client.

Usage:
    hub = BroadcastHub()
    hub.start(acks=dispatcher.results)
    sub = await hub.join()
    msg = await sub.get()        # "event: playbackState\\ndata: {...}\\n\\n"
    await hub.leave(sub)
"""

import asyncio
import itertools
import json
import logging

from .command import Ack
from .playback import PlaybackState

log = logging.getLogger(__name__)

MAILBOX_SIZE = 64
INBOX_SIZE = 100

EVENT_ACK = "commandACK"
EVENT_STATE = "playbackState"

_subscriber_ids = itertools.count(1)


def format_event(event: str, data) -> str:
    """Frame *data* as one server-sent event."""
    return f"event: {event}\ndata: {json.dumps(data, separators=(',', ':'), allow_nan=False)}\n\n"


class Subscriber:
    """One live-update client: a bounded mailbox the hub writes into."""

    def __init__(self, mailbox_size: int = MAILBOX_SIZE):
        self.id = next(_subscriber_ids)
        self._mailbox: asyncio.Queue[str | None] = asyncio.Queue(maxsize=mailbox_size)
        self.dropped = 0
        self.closed = False

    def deliver(self, message: str | None) -> bool:
        """Queue *message*, evicting the oldest one if the mailbox is full.

        Returns False if an older message had to be dropped.
        """
        try:
            self._mailbox.put_nowait(message)
            return True
        except asyncio.QueueFull:
            pass
        try:
            self._mailbox.get_nowait()
        except asyncio.QueueEmpty:
            pass
        self._mailbox.put_nowait(message)
        self.dropped += 1
        if self.dropped == 1 or self.dropped % 100 == 0:
            log.warning("Subscriber %d is not keeping up (%d messages dropped)",
                        self.id, self.dropped)
        return False

    def close(self):
        """Wake the reader with ``None`` (end of stream)."""
        if not self.closed:
            self.closed = True
            self.deliver(None)

    async def get(self) -> str | None:
        """Next message, or None once the hub has closed this subscriber."""
        if self.closed and self._mailbox.empty():
            return None
        return await self._mailbox.get()

    def pending(self) -> int:
        return self._mailbox.qsize()

    def __repr__(self):
        return f"<Subscriber {self.id} pending={self.pending()} dropped={self.dropped}>"


class BroadcastHub:

    def __init__(self, mailbox_size: int = MAILBOX_SIZE, inbox_size: int = INBOX_SIZE):
        self.mailbox_size = mailbox_size
        self._inbox: asyncio.Queue[tuple[str, object]] = asyncio.Queue(maxsize=inbox_size)
        self._subscribers: set[Subscriber] = set()
        self._loop_task: asyncio.Task | None = None
        self._forward_task: asyncio.Task | None = None

    # ── Lifecycle ──

    def start(self, acks: asyncio.Queue | None = None):
        """Start the hub loop; with *acks*, also drain that ACK queue into it."""
        if self._loop_task is None or self._loop_task.done():
            self._loop_task = asyncio.create_task(self._run(), name="broadcast-hub")
        if acks is not None and (self._forward_task is None or self._forward_task.done()):
            self._forward_task = asyncio.create_task(self._forward_acks(acks), name="ack-forwarder")
        log.info("Broadcast hub started")

    async def stop(self):
        for task in (self._forward_task, self._loop_task):
            if task is None:
                continue
            task.cancel()
            try:
                await task
            except asyncio.CancelledError:
                pass
        self._forward_task = self._loop_task = None
        self._close_all()
        log.info("Broadcast hub stopped")

    async def close_subscribers(self):
        """End every live stream (server shutdown); the hub keeps running."""
        if not self.running:
            self._close_all()
            return
        await self._inbox.put(("close", None))

    @property
    def running(self) -> bool:
        return self._loop_task is not None and not self._loop_task.done()

    # ── Subscribers ──

    async def join(self) -> Subscriber:
        subscriber = Subscriber(self.mailbox_size)
        await self._inbox.put(("join", subscriber))
        return subscriber

    async def leave(self, subscriber: Subscriber):
        """Deregister *subscriber*.  Fine for handles that never made it in."""
        if not self.running:
            self._subscribers.discard(subscriber)
            return
        await self._inbox.put(("leave", subscriber))

    def subscriber_count(self) -> int:
        return len(self._subscribers)

    # ── Publishing ──

    async def publish_ack(self, ack: Ack):
        await self._inbox.put(("ack", ack))

    async def publish_state(self, state: PlaybackState):
        await self._inbox.put(("state", state))

    async def _forward_acks(self, acks: asyncio.Queue):
        while True:
            ack = await acks.get()
            await self.publish_ack(ack)

    # ── Hub loop ──

    async def _run(self):
        while True:
            kind, payload = await self._inbox.get()
            try:
                self._handle(kind, payload)
            except Exception:
                log.exception("Hub failed to handle %s event", kind)

    def _handle(self, kind: str, payload):
        if kind == "join":
            self._subscribers.add(payload)
            log.info("Client added. %d registered clients", len(self._subscribers))
        elif kind == "leave":
            if payload in self._subscribers:
                self._subscribers.discard(payload)
                log.info("Removed client. %d registered clients", len(self._subscribers))
        elif kind == "ack":
            self._broadcast(format_event(EVENT_ACK, payload.to_dict()))
        elif kind == "state":
            self._broadcast(format_event(EVENT_STATE, payload.to_dict()))
        elif kind == "close":
            self._close_all()
        else:
            log.error("Unknown hub event %r", kind)

    def _broadcast(self, message: str):
        for subscriber in self._subscribers:
            subscriber.deliver(message)

    def _close_all(self):
        if self._subscribers:
            log.info("Closing %d client stream(s)", len(self._subscribers))
        for subscriber in self._subscribers:
            subscriber.close()
        self._subscribers.clear()
