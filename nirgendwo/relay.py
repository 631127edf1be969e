#!/usr/bin/env python3
# Zug ins Nirgendwo
# SPDX-License-Identifier: GPL-3.0-or-later

"""
Zug ins Nirgendwo player relay (nirgendwo-relay)

Sits between the web UI and the movie player.  The UI posts commands,
the relay feeds them one at a time to the player over TCP, polls the
player's state every second, and pushes ACKs and state updates to every
browser listening on the /events stream.

Usage:
    nirgendwo-relay [static_root] [port]
"""

import asyncio
import json
import logging
import os
import sys
from dataclasses import replace

from aiohttp import web

from .lib.command import Command, CommandError, CommandIdAllocator, parse_command
from .lib.config import DEFAULT_DEVICE_ADDRESS, cfg, config_source, parse_address
from .lib.debounce import SAVE_COOLDOWN, SaveTrigger
from .lib.dispatcher import QUEUE_SIZE, CommandDispatcher
from .lib.hub import EVENT_STATE, MAILBOX_SIZE, BroadcastHub, format_event
from .lib.playlist import PlaylistError, PlaylistStore
from .lib.poller import POLL_INTERVAL, POLL_TIMEOUT, StatePoller
from .lib.transport import DEFAULT_CONNECT_TIMEOUT, DEFAULT_READ_TIMEOUT, PlayerTransport
from .lib.watchdog import watchdog_loop

logger = logging.getLogger("nirgendwo-relay")

# ---------------------------------------------------------------------------
# Config
# ---------------------------------------------------------------------------
HTTP_PORT = 8080
STATIC_ROOT = "./public"
PLAYLISTS_PATH = "./playlists.json"
SAVE_SETTINGS_COMMAND = "save_settings"
LOAD_COMMAND = "load"
DRAIN_TIMEOUT = 2.0


# ---------------------------------------------------------------------------
# Relay service
# ---------------------------------------------------------------------------
class RelayService:
    """Owns every long-lived piece of the relay; one per process."""

    def __init__(self, transport: PlayerTransport, playlists: PlaylistStore, *,
                 poll_interval: float = POLL_INTERVAL,
                 poll_timeout: float = POLL_TIMEOUT,
                 save_cooldown: float = SAVE_COOLDOWN,
                 queue_size: int = QUEUE_SIZE,
                 mailbox_size: int = MAILBOX_SIZE):
        self.transport = transport
        self.playlists = playlists
        self.ids = CommandIdAllocator()
        self.hub = BroadcastHub(mailbox_size=mailbox_size)
        self.dispatcher = CommandDispatcher(transport, queue_size=queue_size)
        self.poller = StatePoller(transport, publish=self.hub.publish_state,
                                  interval=poll_interval, timeout=poll_timeout)
        self.saver = SaveTrigger(self.persist, cooldown=save_cooldown)
        self._watchdog: asyncio.Task | None = None

    @classmethod
    def from_config(cls) -> "RelayService":
        host, port = parse_address(cfg("device", "address", default=DEFAULT_DEVICE_ADDRESS))
        transport = PlayerTransport(
            host, port,
            read_timeout=float(cfg("device", "read_timeout", default=DEFAULT_READ_TIMEOUT)),
            connect_timeout=float(cfg("device", "connect_timeout", default=DEFAULT_CONNECT_TIMEOUT)),
        )
        playlists = PlaylistStore(cfg("playlists", "path", default=PLAYLISTS_PATH))
        return cls(
            transport, playlists,
            poll_interval=float(cfg("poll", "interval", default=POLL_INTERVAL)),
            poll_timeout=float(cfg("poll", "timeout", default=POLL_TIMEOUT)),
            save_cooldown=float(cfg("save", "cooldown", default=SAVE_COOLDOWN)),
            queue_size=int(cfg("queues", "size", default=QUEUE_SIZE)),
            mailbox_size=int(cfg("hub", "mailbox_size", default=MAILBOX_SIZE)),
        )

    async def start(self, watchdog: bool = True):
        loop = asyncio.get_running_loop()
        await loop.run_in_executor(None, self.playlists.load)
        self.hub.start(acks=self.dispatcher.results)
        self.dispatcher.start()
        self.poller.start()
        self.saver.start()
        if watchdog:
            self._watchdog = asyncio.create_task(watchdog_loop(status=self.status_line))
        logger.info("Relay started (player %s)", self.transport.address)

    async def stop(self):
        if self._watchdog:
            self._watchdog.cancel()
            try:
                await self._watchdog
            except asyncio.CancelledError:
                pass
            self._watchdog = None
        await self.poller.stop()
        await self.saver.stop(flush=True)
        await self.dispatcher.stop(drain=True, timeout=DRAIN_TIMEOUT)
        await self.hub.stop()
        logger.info("Relay stopped")

    async def submit(self, command: Command):
        await self.dispatcher.submit(command)

    async def persist(self):
        """Save playlists and ask the player to save its settings."""
        loop = asyncio.get_running_loop()
        await loop.run_in_executor(None, self.playlists.save)
        await self.dispatcher.submit(Command(self.ids.next(), SAVE_SETTINGS_COMMAND))

    async def play(self, playlist_index: int, movie_index: int) -> Command:
        """Load one movie of a playlist.  Raises IndexError for unknown positions."""
        path = self.playlists.movie_path(playlist_index, movie_index)
        # the player doesn't know about playlists — remember the selection here
        self.poller.set_state(replace(self.poller.get_state(),
                                      playlist_index=playlist_index,
                                      movie_index=movie_index))
        command = Command(self.ids.next(), LOAD_COMMAND, (path,))
        await self.dispatcher.submit(command)
        return command

    def status_line(self) -> str:
        state = self.poller.get_state()
        return "player {} {}, {} client(s)".format(
            self.transport.address,
            "connected" if state.connected else "unreachable",
            self.hub.subscriber_count(),
        )

    def status(self) -> dict:
        state = self.poller.get_state()
        return {
            "player": self.transport.address,
            "connected": state.connected,
            "clients": self.hub.subscriber_count(),
            "queued_commands": self.dispatcher.pending(),
            "saves": self.saver.saves,
            "config": config_source(),
        }


RELAY = web.AppKey("relay", RelayService)


# ---------------------------------------------------------------------------
# HTTP handlers
# ---------------------------------------------------------------------------
async def _read_json(request: web.Request):
    try:
        return await request.json()
    except (json.JSONDecodeError, UnicodeDecodeError):
        raise web.HTTPBadRequest(
            text=json.dumps({"error": "invalid json"}), content_type="application/json")


async def handle_command(request: web.Request) -> web.Response:
    """POST /cmd — queue a command for the player; answers before it runs."""
    relay = request.app[RELAY]
    data = await _read_json(request)
    try:
        command = parse_command(data, relay.ids)
    except CommandError as e:
        logger.warning("Rejected command %r: %s", data, e)
        return web.json_response({"error": str(e)}, status=400)

    await relay.submit(command)
    relay.saver.try_signal()
    return web.json_response(True)


async def handle_events(request: web.Request) -> web.StreamResponse:
    """GET /events — server-sent events: commandACK and playbackState."""
    relay = request.app[RELAY]
    response = web.StreamResponse(
        status=200,
        headers={
            "Content-Type": "text/event-stream",
            "Cache-Control": "no-cache",
            "Connection": "keep-alive",
            "Access-Control-Allow-Origin": "*",
        },
    )
    await response.prepare(request)

    subscriber = await relay.hub.join()
    try:
        # new clients shouldn't wait a poll interval for their first state
        initial = format_event(EVENT_STATE, relay.poller.get_state().to_dict())
        await response.write(initial.encode("utf-8"))
        while True:
            message = await subscriber.get()
            if message is None:
                break
            await response.write(message.encode("utf-8"))
    except ConnectionResetError:
        logger.debug("Event stream client %d went away", subscriber.id)
    finally:
        await relay.hub.leave(subscriber)
    return response


async def handle_state(request: web.Request) -> web.Response:
    """GET /state — current playback state."""
    return web.json_response(request.app[RELAY].poller.get_state().to_dict())


async def handle_playlists(request: web.Request) -> web.Response:
    """GET /playlists"""
    return web.json_response(request.app[RELAY].playlists.playlists)


async def handle_playlists_set(request: web.Request) -> web.Response:
    """POST /playlists — replace all playlists; saved on the next save window."""
    relay = request.app[RELAY]
    data = await _read_json(request)
    try:
        count = relay.playlists.replace(data)
    except PlaylistError as e:
        return web.json_response({"error": str(e)}, status=400)
    relay.saver.try_signal()
    return web.json_response({"status": "ok", "playlists": count})


async def handle_play(request: web.Request) -> web.Response:
    """POST /play — {"playlist_index": n, "movie_index": m}"""
    relay = request.app[RELAY]
    data = await _read_json(request)
    try:
        playlist_index = int(data["playlist_index"])
        movie_index = int(data.get("movie_index", 0))
        command = await relay.play(playlist_index, movie_index)
    except (KeyError, TypeError, ValueError, IndexError, AttributeError) as e:
        logger.warning("Play request %r rejected: %s", data, e)
        return web.json_response({"error": f"cannot play: {e}"}, status=400)

    relay.saver.try_signal()
    return web.json_response({"status": "ok", "id": command.id})


async def handle_status(request: web.Request) -> web.Response:
    """GET /status — relay health."""
    return web.json_response(request.app[RELAY].status())


def _index_handler(root: str):
    index = os.path.join(root, "index.html")

    async def handle_index(request: web.Request) -> web.StreamResponse:
        if not os.path.isfile(index):
            raise web.HTTPNotFound()
        return web.FileResponse(index)

    return handle_index


# ---------------------------------------------------------------------------
# App lifecycle
# ---------------------------------------------------------------------------
async def on_startup(app: web.Application):
    await app[RELAY].start()


async def on_shutdown(app: web.Application):
    # end open /events streams so shutdown does not wait on them
    await app[RELAY].hub.close_subscribers()


async def on_cleanup(app: web.Application):
    await app[RELAY].stop()


CORS_HEADERS = {
    "Access-Control-Allow-Origin": "*",
    "Access-Control-Allow-Methods": "GET, POST, OPTIONS",
    "Access-Control-Allow-Headers": "Content-Type",
}


@web.middleware
async def cors_middleware(request, handler):
    if request.method == "OPTIONS":
        resp = web.Response()
    else:
        try:
            resp = await handler(request)
        except web.HTTPException as e:
            # error replies (bad JSON, 404) need the headers too
            e.headers.update(CORS_HEADERS)
            raise
    if not resp.prepared:
        resp.headers.update(CORS_HEADERS)
    return resp


def create_app(relay: RelayService, static_root: str | None = None) -> web.Application:
    app = web.Application(middlewares=[cors_middleware])
    app[RELAY] = relay
    app.router.add_post("/cmd", handle_command)
    app.router.add_get("/events", handle_events)
    app.router.add_get("/state", handle_state)
    app.router.add_get("/playlists", handle_playlists)
    app.router.add_post("/playlists", handle_playlists_set)
    app.router.add_post("/play", handle_play)
    app.router.add_get("/status", handle_status)

    if static_root:
        if os.path.isdir(static_root):
            app.router.add_get("/", _index_handler(static_root))
            app.router.add_static("/", static_root)
        else:
            logger.warning("Static root %s does not exist — not serving files", static_root)

    app.on_startup.append(on_startup)
    app.on_shutdown.append(on_shutdown)
    app.on_cleanup.append(on_cleanup)
    return app


def main(argv: list[str] | None = None):
    logging.basicConfig(
        level=logging.INFO,
        format="[%(asctime)s] %(levelname)s %(message)s",
        datefmt="%Y-%m-%d %H:%M:%S",
    )
    argv = sys.argv[1:] if argv is None else argv
    logger.info("welcome %s", sys.argv[0])

    static_root = cfg("http", "static_root", default=STATIC_ROOT)
    port = int(cfg("http", "port", default=HTTP_PORT))
    if len(argv) > 0:
        static_root = argv[0]
    if len(argv) > 1:
        try:
            port = int(argv[1])
        except ValueError:
            logger.warning("Ignoring invalid port %r, using %d", argv[1], port)

    try:
        relay = RelayService.from_config()
    except ValueError as e:
        logger.error("Bad configuration: %s", e)
        sys.exit(1)

    app = create_app(relay, static_root)
    logger.info("server listening on port %d -- serving files from %s", port, static_root)
    web.run_app(app, host="0.0.0.0", port=port, print=lambda msg: logger.info(msg))


if __name__ == "__main__":
    main()
