# Zug ins Nirgendwo
# SPDX-License-Identifier: GPL-3.0-or-later

"""
Commands sent to the player and the ACKs that come back.

A command travels to the player as a single text line:

    "<name> <arg1> <arg2> ...\\n"

and to UI clients as JSON (``{"id": .., "cmd": .., "arg": [..]}``), the
same shape the web client posts to ``/cmd``.
"""

import itertools
import json
import math
import threading
from dataclasses import dataclass, field


class CommandError(ValueError):
    """Raised for a malformed command body; never reaches the queues."""


def _format_arg(arg) -> str:
    """Render one argument the way the player's line parser expects."""
    if isinstance(arg, bool):
        return "true" if arg else "false"
    if isinstance(arg, str):
        return arg
    if isinstance(arg, int):
        return str(arg)
    if isinstance(arg, float):
        if arg.is_integer() and abs(arg) < 1e21:
            return str(int(arg))
        return repr(arg)
    return json.dumps(arg, separators=(",", ":"))


def _finite(value) -> bool:
    """False if *value* holds NaN or an infinity anywhere inside it."""
    if isinstance(value, float):
        return math.isfinite(value)
    if isinstance(value, dict):
        return all(_finite(v) for v in value.values())
    if isinstance(value, list):
        return all(_finite(v) for v in value)
    return True


@dataclass(frozen=True)
class Command:
    id: int
    name: str
    arguments: tuple = ()

    def to_line(self) -> str:
        """Serialize to the player's line format (without the newline)."""
        return " ".join([self.name, *(_format_arg(a) for a in self.arguments)])

    def to_dict(self) -> dict:
        return {"id": self.id, "cmd": self.name, "arg": list(self.arguments)}

    def __str__(self):
        return self.to_line()


@dataclass
class Ack:
    """Dispatch outcome for one command.

    ``success`` means the command bytes were written; ``value`` holds the
    player's reply if it answered before the read deadline.
    """
    command: Command
    success: bool = False
    value: str = field(default="")

    def to_dict(self) -> dict:
        return {"command": self.command.to_dict(), "success": self.success, "value": self.value}


class CommandIdAllocator:
    """Process-wide, thread-safe, strictly increasing command ids."""

    def __init__(self, start: int = 1):
        self._counter = itertools.count(start)
        self._lock = threading.Lock()

    def next(self) -> int:
        with self._lock:
            return next(self._counter)


def parse_command(body, allocator: CommandIdAllocator) -> Command:
    """Validate a ``{"cmd": str, "arg": [...]}`` body and admit it.

    The id is only drawn once the body is known to be valid, so rejected
    requests leave no gaps in the sequence.
    """
    if not isinstance(body, dict):
        raise CommandError("command body must be a JSON object")
    name = body.get("cmd")
    if not isinstance(name, str) or not name.strip():
        raise CommandError("'cmd' must be a non-empty string")
    if any(c.isspace() for c in name.strip()):
        raise CommandError("'cmd' must be a single word")
    args = body.get("arg", [])
    if args is None:
        args = []
    if not isinstance(args, list):
        raise CommandError("'arg' must be a list")
    for arg in args:
        if isinstance(arg, str) and ("\n" in arg or "\r" in arg):
            raise CommandError("arguments must not contain line breaks")
        if not _finite(arg):
            raise CommandError("arguments must be finite numbers")
    return Command(allocator.next(), name.strip(), tuple(args))
