"""Systemd watchdog heartbeat for the relay.

Sends WATCHDOG=1 to the systemd notify socket at regular intervals, along
with a STATUS= line so ``systemctl status`` shows whether the player is
reachable.  Silently no-ops when NOTIFY_SOCKET is unset (macOS / dev mode).

Usage:
    from .watchdog import watchdog_loop
    asyncio.create_task(watchdog_loop(status=lambda: "player connected"))
"""

import asyncio
import logging
import os
import socket
from typing import Callable

logger = logging.getLogger(__name__)


def sd_notify(msg: str) -> bool:
    """Send a notification message to the systemd notify socket.

    Returns False when there is no socket to notify (not running under systemd).
    """
    addr = os.environ.get("NOTIFY_SOCKET")
    if not addr:
        return False
    if addr[0] == "@":
        addr = "\0" + addr[1:]
    sock = socket.socket(socket.AF_UNIX, socket.SOCK_DGRAM)
    try:
        sock.sendto(msg.encode(), addr)
    except OSError as e:
        logger.warning("sd_notify failed: %s", e)
        return False
    finally:
        sock.close()
    return True


async def watchdog_loop(interval: float = 20, status: Callable[[], str] | None = None):
    """Send WATCHDOG=1 every *interval* seconds.  Call as asyncio.create_task().

    Also sends READY=1 on first invocation so systemd knows the service
    has finished startup (requires Type=notify in the unit file).  When
    *status* is given its result is reported as STATUS= on every beat.
    """
    sd_notify("READY=1")
    logger.info("Watchdog started (interval=%ss)", interval)
    last_status = None
    while True:
        msg = "WATCHDOG=1"
        if status is not None:
            current = status()
            if current != last_status:
                msg += f"\nSTATUS={current}"
                last_status = current
        sd_notify(msg)
        await asyncio.sleep(interval)
